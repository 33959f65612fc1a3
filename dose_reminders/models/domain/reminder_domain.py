import re
from datetime import date
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

SkipReason = Literal["muted", "no_delivery_addresses", "no_due_events", "not_send_day"]

# Calendar form only; fromisoformat alone also accepts week dates like 2024-W10-3
ISO_DATE_PATTERN = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}")


def parse_iso_date(value: Any) -> date | None:
    """
    Parse a stored YYYY-MM-DD string.

    Anything that is not a well-formed ISO date is treated as absent, so it
    can never equal a target due date.
    """
    if value is None or isinstance(value, date):
        return value
    if not isinstance(value, str) or not ISO_DATE_PATTERN.fullmatch(value):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


class TrackedEvent(BaseModel):
    """A child's next due vaccine attached to a parent."""

    event_id: str
    due_date: date | None = None
    label: str = "your child"
    category: str = "vaccine"
    last_notified_date: date | None = None

    @field_validator("due_date", "last_notified_date", mode="before")
    @classmethod
    def _parse_dates(cls, value: Any) -> date | None:
        return parse_iso_date(value)

    def is_handled_for(self, target_date: date) -> bool:
        return self.last_notified_date is not None and self.last_notified_date == target_date

    @property
    def fragment(self) -> str:
        return f"{self.category} ({self.label})"


class Recipient(BaseModel):
    """A parent account that may receive reminders."""

    recipient_id: str
    timezone: str | None = None
    delivery_addresses: list[str] = Field(default_factory=list)
    muted: bool = False
    events: list[TrackedEvent] = Field(default_factory=list)


class DeliveryResult(BaseModel):
    """Aggregated outcome of one multicast push."""

    success_count: int = 0
    failure_count: int = 0

    # Per-token error codes, for logging only
    failed_tokens: dict[str, str] = Field(default_factory=dict)

    def merge(self, other: "DeliveryResult") -> "DeliveryResult":
        return DeliveryResult(
            success_count=self.success_count + other.success_count,
            failure_count=self.failure_count + other.failure_count,
            failed_tokens={**self.failed_tokens, **other.failed_tokens},
        )

    def to_record(self) -> dict[str, int]:
        return {"successCount": self.success_count, "failureCount": self.failure_count}


class EligibilityDecision(BaseModel):
    """Whether a recipient gets a reminder in this run, and why not."""

    recipient: Recipient
    eligible: bool
    skip_reason: SkipReason | None = None
    candidates: list[TrackedEvent] = Field(default_factory=list)
    send_date: date | None = None
    local_today: date | None = None

    @property
    def recipient_id(self) -> str:
        return self.recipient.recipient_id


class DispatchUnit(BaseModel):
    """One recipient's in-flight notification work for the current run."""

    recipient: Recipient
    events: list[TrackedEvent]
    target_date: date
    title: str
    body: str
    result: DeliveryResult | None = None
    error: str | None = None
    notified: bool = False

    @property
    def recipient_id(self) -> str:
        return self.recipient.recipient_id

    @property
    def settled(self) -> bool:
        return self.result is not None or self.error is not None


class RunSummary(BaseModel):
    """Outcome of one reminder run."""

    run_id: str
    target_date: date | None = None
    dry_run: bool = False
    recipients_scanned: int = 0
    skipped: dict[str, int] = Field(default_factory=dict)
    dispatched: int = 0
    notified: int = 0
    failed: int = 0
    events_notified: int = 0
    duration_seconds: float = 0.0
    exit_code: int = 0
    error: str | None = None
    skipped_run: bool = False
