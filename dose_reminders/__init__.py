"""Daily vaccine reminder push notifications for parents."""

__version__ = "0.1.0"
