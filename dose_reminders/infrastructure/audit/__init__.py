"""
Audit trail for reminder dispatches.

Success and failure records are written once and never mutated.
"""

from dose_reminders.infrastructure.audit.audit_recorder import (
    FAILURE_NAMESPACE,
    SUCCESS_NAMESPACE,
    AuditRecorder,
)

__all__ = ["AuditRecorder", "FAILURE_NAMESPACE", "SUCCESS_NAMESPACE"]
