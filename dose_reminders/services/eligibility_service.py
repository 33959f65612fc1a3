"""
Eligibility rules for vaccine reminders.

Decides, per parent, which children are due on the run's target date and
have not been notified for it yet, and whether today (in the parent's own
timezone) is the day the reminder should go out.
"""

from collections.abc import Iterable
from datetime import date

from dose_reminders.infrastructure.observability.logging import get_logger
from dose_reminders.models.domain.reminder_domain import (
    EligibilityDecision,
    Recipient,
    TrackedEvent,
)
from dose_reminders.services.scheduling.temporal_calculator import TemporalCalculator

logger = get_logger(__name__)


def select_candidates(events: Iterable[TrackedEvent], target_date: date) -> list[TrackedEvent]:
    """Events due on target_date that were not already notified for it."""
    return [
        event
        for event in events
        if event.due_date is not None
        and event.due_date == target_date
        and not event.is_handled_for(target_date)
    ]


class EligibilityResolver:
    """Filters recipients down to the ones that get a reminder today."""

    def __init__(self, calculator: TemporalCalculator):
        self.calculator = calculator

    def resolve(self, recipient: Recipient, target_date: date) -> EligibilityDecision:
        """
        Evaluate one recipient against the run's target due date.

        Args:
            recipient: Parent record from the store
            target_date: Due date this run is looking for

        Returns:
            EligibilityDecision: eligible with candidates, or a skip reason
        """
        if recipient.muted:
            return self._skip(recipient, "muted")

        if not recipient.delivery_addresses:
            return self._skip(recipient, "no_delivery_addresses")

        candidates = select_candidates(recipient.events, target_date)
        if not candidates:
            return self._skip(recipient, "no_due_events")

        # Every candidate shares target_date as due date, so the first one decides
        send_date = self.calculator.send_date_for(candidates[0].due_date, recipient.timezone)
        local_today = self.calculator.today(recipient.timezone)

        if send_date != local_today:
            return self._skip(
                recipient,
                "not_send_day",
                candidates=candidates,
                send_date=send_date,
                local_today=local_today,
            )

        return EligibilityDecision(
            recipient=recipient,
            eligible=True,
            candidates=candidates,
            send_date=send_date,
            local_today=local_today,
        )

    def resolve_all(
        self, recipients: Iterable[Recipient], target_date: date
    ) -> list[EligibilityDecision]:
        return [self.resolve(recipient, target_date) for recipient in recipients]

    @staticmethod
    def _skip(recipient: Recipient, reason: str, **details) -> EligibilityDecision:
        logger.debug(
            "Recipient skipped",
            recipient_id=recipient.recipient_id,
            reason=reason,
            send_date=details.get("send_date").isoformat() if details.get("send_date") else None,
        )
        return EligibilityDecision(
            recipient=recipient, eligible=False, skip_reason=reason, **details
        )
