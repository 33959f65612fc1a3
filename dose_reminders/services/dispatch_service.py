"""
Reminder dispatch: one aggregated push per parent, then reconcile.

Each eligible parent becomes an independent dispatch unit. Units run
concurrently (bounded by a semaphore) and the batch returns only after
every unit has settled; one unit's failure never touches another.
"""

import asyncio
from collections.abc import Callable, Iterable
from datetime import date

from dose_reminders.infrastructure.audit.audit_recorder import AuditRecorder
from dose_reminders.infrastructure.observability.logging import get_logger, log_delivery
from dose_reminders.models.domain.reminder_domain import (
    DeliveryResult,
    DispatchUnit,
    EligibilityDecision,
    TrackedEvent,
)
from dose_reminders.repositories.recipient_repository import RecipientRepository
from dose_reminders.services.push.fcm_client import PushTransport

logger = get_logger(__name__)

NOTIFICATION_TITLE = "Vaccine reminder"
NOTIFICATION_TYPE = "vaccine_reminder"
BODY_SEPARATOR = ", "
BODY_TEMPLATE = "Reminder: {items} are due tomorrow. Please enquire or book an appointment."

MAX_CONCURRENT_DISPATCHES = 20

DeliveryPolicy = Callable[[DeliveryResult], bool]


def treat_as_notified(result: DeliveryResult) -> bool:
    """
    Whether a completed multicast marks its events as notified.

    Any returned result counts, including one where every token failed;
    per-token failures are recorded for observability and never retried.
    """
    return True


def compose_body(events: Iterable[TrackedEvent]) -> str:
    return BODY_TEMPLATE.format(items=BODY_SEPARATOR.join(event.fragment for event in events))


def build_payload(target_date: date) -> dict[str, str]:
    return {"type": NOTIFICATION_TYPE, "date": target_date.isoformat()}


class DispatchError(Exception):
    """Raised when a delivered reminder could not be reconciled."""


class DispatchCoordinator:
    """
    Sends reminders and records their outcome.

    Args:
        transport: Push transport (send_to_many)
        repository: Writes the lastNotifiedDate markers
        audit_recorder: Writes success/failure records
        delivery_policy: Decides whether a returned result marks events notified
        max_concurrent: Upper bound on units in flight
    """

    def __init__(
        self,
        transport: PushTransport,
        repository: RecipientRepository,
        audit_recorder: AuditRecorder,
        delivery_policy: DeliveryPolicy = treat_as_notified,
        max_concurrent: int = MAX_CONCURRENT_DISPATCHES,
    ):
        self.transport = transport
        self.repository = repository
        self.audit_recorder = audit_recorder
        self.delivery_policy = delivery_policy
        self.max_concurrent = max(1, max_concurrent)

    def build_unit(self, decision: EligibilityDecision, target_date: date) -> DispatchUnit:
        return DispatchUnit(
            recipient=decision.recipient,
            events=decision.candidates,
            target_date=target_date,
            title=NOTIFICATION_TITLE,
            body=compose_body(decision.candidates),
        )

    async def dispatch_all(
        self, decisions: Iterable[EligibilityDecision], target_date: date
    ) -> list[DispatchUnit]:
        """
        Dispatch every eligible decision and wait for all units to settle.

        Returns:
            list[DispatchUnit]: settled units, in input order
        """
        units = [self.build_unit(decision, target_date) for decision in decisions if decision.eligible]
        if not units:
            return []

        semaphore = asyncio.Semaphore(self.max_concurrent)
        outcomes = await asyncio.gather(
            *(self._dispatch_with_semaphore(semaphore, unit) for unit in units),
            return_exceptions=True,
        )

        for unit, outcome in zip(units, outcomes):
            if isinstance(outcome, BaseException):
                # dispatch() records its own failures; this only catches bugs
                logger.error(
                    "Dispatch unit crashed",
                    recipient_id=unit.recipient_id,
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                )
                unit.error = unit.error or f"{type(outcome).__name__}: {outcome}"

        return units

    async def _dispatch_with_semaphore(self, semaphore: asyncio.Semaphore, unit: DispatchUnit):
        async with semaphore:
            await self.dispatch(unit)

    async def dispatch(self, unit: DispatchUnit) -> DispatchUnit:
        """
        Send one unit's reminder, then write its markers and audit records.

        The transport call strictly precedes any store write.
        """
        tokens = unit.recipient.delivery_addresses

        try:
            result = await self.transport.send_to_many(
                unit.title, unit.body, tokens, build_payload(unit.target_date)
            )
        except Exception as e:
            unit.error = str(e) or type(e).__name__
            log_delivery(unit.recipient_id, 0, len(tokens), error=unit.error)
            await self._record_failures(unit)
            return unit

        unit.result = result
        log_delivery(unit.recipient_id, result.success_count, result.failure_count)
        if result.failed_tokens:
            logger.debug(
                "Per-token delivery failures",
                recipient_id=unit.recipient_id,
                failed_tokens=result.failed_tokens,
            )

        if not self.delivery_policy(result):
            unit.error = (
                f"Delivery not accepted: success={result.success_count} "
                f"failures={result.failure_count}"
            )
            await self._record_failures(unit)
            return unit

        try:
            await self._reconcile(unit, result)
        except Exception as e:
            unit.error = f"Failed to record delivery: {e}"
            logger.error(
                "Reminder sent but reconcile failed",
                recipient_id=unit.recipient_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._record_failures(unit)
            return unit

        unit.notified = True
        return unit

    async def _reconcile(self, unit: DispatchUnit, result: DeliveryResult) -> None:
        """Issue the notified-marker update and every success record together."""
        writes = [
            self.repository.mark_notified(
                unit.recipient_id, [event.event_id for event in unit.events], unit.target_date
            ),
            *(
                self.audit_recorder.record_success(
                    unit.recipient_id, event.event_id, unit.target_date, unit.body, result
                )
                for event in unit.events
            ),
        ]
        outcomes = await asyncio.gather(*writes, return_exceptions=True)
        errors = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
        if errors:
            raise DispatchError("; ".join(str(error) for error in errors)) from errors[0]

    async def _record_failures(self, unit: DispatchUnit) -> None:
        outcomes = await asyncio.gather(
            *(
                self.audit_recorder.record_failure(
                    unit.recipient_id, event.event_id, unit.target_date, unit.error
                )
                for event in unit.events
            ),
            return_exceptions=True,
        )
        for event, outcome in zip(unit.events, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    "CRITICAL: Failed to write failure record",
                    recipient_id=unit.recipient_id,
                    event_id=event.event_id,
                    target_date=unit.target_date.isoformat(),
                    error=str(outcome),
                    fallback_data={"error": unit.error},
                )
