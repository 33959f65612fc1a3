"""
Parent/child records in the Realtime Database.

Maps the `Parents` tree to Recipient/TrackedEvent models and stages
lastNotifiedDate writes as a single multi-path update.
"""

from collections.abc import Iterable
from datetime import date
from typing import Any

from dose_reminders.db.realtime_db import DocumentStore
from dose_reminders.infrastructure.observability.logging import get_logger
from dose_reminders.models.domain.reminder_domain import Recipient, TrackedEvent

logger = get_logger(__name__)

PARENTS_PATH = "Parents"


def _as_mapping(value: Any) -> dict[str, Any]:
    """
    Normalize a stored collection to a key -> value dict.

    The REST API renders sequential integer keys as a JSON array, with
    nulls for missing indices.
    """
    if isinstance(value, dict):
        return value
    if isinstance(value, list):
        return {str(index): item for index, item in enumerate(value) if item is not None}
    return {}


def _optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def event_from_document(event_id: str, document: Any) -> TrackedEvent:
    document = document if isinstance(document, dict) else {}
    return TrackedEvent(
        event_id=event_id,
        due_date=document.get("nextDueDate"),
        label=_optional_str(document.get("name")) or "your child",
        category=_optional_str(document.get("nextDueVaccine")) or "vaccine",
        last_notified_date=document.get("lastNotifiedDate"),
    )


def recipient_from_document(recipient_id: str, document: Any) -> Recipient:
    document = document if isinstance(document, dict) else {}
    children = _as_mapping(document.get("children"))
    return Recipient(
        recipient_id=recipient_id,
        timezone=_optional_str(document.get("timezone")),
        delivery_addresses=list(_as_mapping(document.get("fcmTokens")).keys()),
        muted=bool(document.get("muteReminders")),
        events=[event_from_document(str(child_id), child) for child_id, child in children.items()],
    )


class RecipientRepository:
    """Bulk read of parents and notified-marker writes."""

    def __init__(self, store: DocumentStore, parents_path: str = PARENTS_PATH):
        self.store = store
        self.parents_path = parents_path

    async def get_all_recipients(self) -> list[Recipient]:
        """
        Read every parent in one request, in store order.

        Raises:
            RealtimeDatabaseError: If the read fails
        """
        snapshot = await self.store.get(self.parents_path)
        parents = _as_mapping(snapshot)
        recipients = [recipient_from_document(str(pid), doc) for pid, doc in parents.items()]

        logger.info("Loaded recipients", recipient_count=len(recipients))
        return recipients

    def notified_path(self, recipient_id: str, event_id: str) -> str:
        return f"{self.parents_path}/{recipient_id}/children/{event_id}/lastNotifiedDate"

    async def mark_notified(
        self, recipient_id: str, event_ids: Iterable[str], target_date: date
    ) -> None:
        """Set lastNotifiedDate = target_date for every event in one update."""
        updates = {
            self.notified_path(recipient_id, event_id): target_date.isoformat()
            for event_id in event_ids
        }
        await self.store.update(updates)
