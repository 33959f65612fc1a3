"""
AuditRecorder - write-once delivery records for reminder dispatches.

Success records live under `notifications/{parent}/{child}/{date}`,
failures under `notifications_failures/{parent}/{child}/{date}`. A
success record is the durable answer to "was this reminder handled".

Usage:
    recorder = AuditRecorder(store)

    await recorder.record_success(
        recipient_id="parent-1",
        event_id="child-1",
        target_date=date(2024, 3, 5),
        body="Reminder: ...",
        result=DeliveryResult(success_count=2, failure_count=0),
    )

Each call is one independent write; callers guarantee that a key is
targeted by a single dispatch per run.
"""

from datetime import date

from dose_reminders.db.realtime_db import SERVER_TIMESTAMP, DocumentStore
from dose_reminders.infrastructure.observability.logging import get_logger
from dose_reminders.models.domain.reminder_domain import DeliveryResult
from dose_reminders.services.scheduling.temporal_calculator import Clock, utc_now

logger = get_logger(__name__)

SUCCESS_NAMESPACE = "notifications"
FAILURE_NAMESPACE = "notifications_failures"


class AuditRecorder:
    """Persists dispatch outcomes keyed by (recipient, event, target date)."""

    def __init__(self, store: DocumentStore, clock: Clock = utc_now):
        self.store = store
        self._clock = clock

    @staticmethod
    def record_path(namespace: str, recipient_id: str, event_id: str, target_date: date) -> str:
        return f"{namespace}/{recipient_id}/{event_id}/{target_date.isoformat()}"

    async def record_success(
        self,
        recipient_id: str,
        event_id: str,
        target_date: date,
        body: str,
        result: DeliveryResult,
    ) -> None:
        """
        Write the success record for one event.

        Raises:
            RealtimeDatabaseError: If the write fails
        """
        path = self.record_path(SUCCESS_NAMESPACE, recipient_id, event_id, target_date)
        await self.store.set(
            path,
            {
                "sentAt": SERVER_TIMESTAMP,
                "body": body,
                "result": result.to_record(),
            },
        )

        logger.info(
            "Audit record written",
            audit_action="reminder_sent",
            recipient_id=recipient_id,
            event_id=event_id,
            target_date=target_date.isoformat(),
            success_count=result.success_count,
            failure_count=result.failure_count,
        )

    async def record_failure(
        self, recipient_id: str, event_id: str, target_date: date, error: str
    ) -> None:
        """
        Write the failure record for one event.

        Raises:
            RealtimeDatabaseError: If the write fails
        """
        path = self.record_path(FAILURE_NAMESPACE, recipient_id, event_id, target_date)
        await self.store.set(
            path,
            {
                "error": error,
                "ts": int(self._clock().timestamp() * 1000),
            },
        )

        logger.info(
            "Audit failure record written",
            audit_action="reminder_failed",
            recipient_id=recipient_id,
            event_id=event_id,
            target_date=target_date.isoformat(),
            error=error,
        )
