"""
Structured logging setup for the reminder worker.
Provides JSON-formatted logs with consistent fields for scheduled runs.
"""

import logging
import sys

import structlog
from structlog.stdlib import LoggerFactory


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging with JSON output.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    structlog.configure(
        processors=[
            # Run context (run_id, target_date) bound by the reminder job
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


def bind_run_context(**values) -> None:
    """Attach fields to every log line emitted during the current run."""
    structlog.contextvars.bind_contextvars(**values)


def clear_run_context() -> None:
    structlog.contextvars.clear_contextvars()


def log_delivery(recipient_id: str, success_count: int, failure_count: int, error: str = None):
    """Log a push delivery outcome with consistent fields."""
    logger = get_logger("delivery")

    log_data = {
        "recipient_id": recipient_id,
        "success_count": success_count,
        "failure_count": failure_count,
        "log_type": "push_delivery",
    }

    if error:
        log_data["error"] = error
        logger.error("Push delivery failed", **log_data)
    elif failure_count:
        logger.warning("Push delivery partially failed", **log_data)
    else:
        logger.info("Push delivery completed", **log_data)
