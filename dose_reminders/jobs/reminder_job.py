"""
Vaccine Reminder Job - daily push reminders for children due tomorrow.

One run:
1. Fix the target due date ("tomorrow" in the reference timezone)
2. Read every parent once
3. Keep parents whose local today is the reminder's send day
4. Send one aggregated push per parent, all concurrently, and wait for all
5. Report an exit code: 1 only when the bulk read (or orchestration) failed

Schedule:
- Invoked once a day by an external scheduler (cron, Cloud Scheduler)
- Failed sends stay eligible and are retried by the next invocation
"""

import time
import uuid
from contextlib import asynccontextmanager
from datetime import UTC, date, datetime
from enum import Enum

import httpx

from dose_reminders.config import Settings, settings
from dose_reminders.db.realtime_db import RealtimeDatabaseClient
from dose_reminders.infrastructure.audit.audit_recorder import AuditRecorder
from dose_reminders.infrastructure.observability.logging import (
    bind_run_context,
    clear_run_context,
    get_logger,
)
from dose_reminders.models.domain.reminder_domain import (
    DispatchUnit,
    EligibilityDecision,
    Recipient,
    RunSummary,
)
from dose_reminders.repositories.recipient_repository import RecipientRepository
from dose_reminders.services.dispatch_service import DispatchCoordinator
from dose_reminders.services.eligibility_service import EligibilityResolver
from dose_reminders.services.infrastructure.service_account import (
    ServiceAccountCredentials,
    load_service_account,
)
from dose_reminders.services.push.fcm_client import FcmPushTransport
from dose_reminders.services.scheduling.temporal_calculator import (
    Clock,
    TemporalCalculator,
    utc_now,
)

logger = get_logger(__name__)

# Reminders go out for events due this many days after the reference today
TARGET_DAYS_AHEAD = 1

EXIT_OK = 0
EXIT_FATAL = 1


class RunState(str, Enum):
    INIT = "init"
    RUNNING = "running"
    DONE = "done"


class ReminderJobError(Exception):
    """Custom exception for reminder job operations."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class ReminderJobMetrics:
    """Metrics tracking for one reminder run."""

    def __init__(self):
        self.reset()

    def reset(self):
        """Reset all metrics for new job run."""
        self.start_time = datetime.now(UTC)
        self._started = time.monotonic()
        self.recipients_scanned = 0
        self.skipped: dict[str, int] = {}
        self.dispatched = 0
        self.notified = 0
        self.failed = 0
        self.events_notified = 0
        self.total_duration_seconds = 0.0
        self.errors: list[dict] = []

    def record_decisions(self, decisions: list[EligibilityDecision]):
        self.recipients_scanned = len(decisions)
        for decision in decisions:
            if not decision.eligible:
                self.skipped[decision.skip_reason] = self.skipped.get(decision.skip_reason, 0) + 1

    def record_units(self, units: list[DispatchUnit]):
        self.dispatched = len(units)
        for unit in units:
            if unit.notified:
                self.notified += 1
                self.events_notified += len(unit.events)
            else:
                self.failed += 1
                self.errors.append(
                    {
                        "recipient_id": unit.recipient_id,
                        "error": unit.error,
                        "timestamp": datetime.now(UTC).isoformat(),
                    }
                )

    def finalize(self):
        self.total_duration_seconds = time.monotonic() - self._started

    def to_dict(self) -> dict:
        """Convert metrics to dictionary for logging."""
        return {
            "job_run": "vaccine_reminders",
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 2),
            "recipients_scanned": self.recipients_scanned,
            "skipped": dict(self.skipped),
            "dispatched": self.dispatched,
            "notified": self.notified,
            "failed": self.failed,
            "events_notified": self.events_notified,
            "errors_count": len(self.errors),
        }


class ReminderJob:
    """
    Run orchestrator for vaccine reminders: INIT -> RUNNING -> DONE(exit code).

    Args:
        repository: Bulk read of parents, notified-marker writes
        resolver: Eligibility rules
        coordinator: Concurrent dispatch and reconcile
        calculator: Reference-timezone clock for the target date
        dry_run: Compute and log eligibility without sending or writing
    """

    def __init__(
        self,
        repository: RecipientRepository,
        resolver: EligibilityResolver,
        coordinator: DispatchCoordinator,
        calculator: TemporalCalculator,
        dry_run: bool = False,
    ):
        self.repository = repository
        self.resolver = resolver
        self.coordinator = coordinator
        self.calculator = calculator
        self.dry_run = dry_run
        self.state = RunState.INIT
        self.is_running = False
        self.job_metrics = ReminderJobMetrics()

    def target_date(self) -> date:
        """Due date this run reminds about: tomorrow in the reference timezone."""
        return self.calculator.date_after_days(self.calculator.default_timezone, TARGET_DAYS_AHEAD)

    async def run_once(self) -> RunSummary:
        """
        Run one complete reminder pass.

        Returns:
            RunSummary: metrics and the process exit code
        """
        run_id = uuid.uuid4().hex[:12]

        if self.is_running:
            logger.warning("Reminder job already running, skipping this iteration")
            return RunSummary(run_id=run_id, skipped_run=True, error="already_running")

        self.is_running = True
        self.state = RunState.INIT
        self.job_metrics.reset()
        target_date: date | None = None

        try:
            target_date = self.target_date()
            bind_run_context(run_id=run_id, target_date=target_date.isoformat())
            logger.info(
                "Target due date (due tomorrow)",
                reference_timezone=self.calculator.default_timezone,
                dry_run=self.dry_run,
            )

            recipients = await self._load_recipients()
            if not recipients:
                logger.info("No parents found")
                return self._finish(run_id, target_date, EXIT_OK)

            self.state = RunState.RUNNING
            decisions = self.resolver.resolve_all(recipients, target_date)
            self.job_metrics.record_decisions(decisions)
            eligible = [decision for decision in decisions if decision.eligible]

            logger.info(
                "Eligibility resolved",
                recipient_count=len(recipients),
                eligible_count=len(eligible),
            )

            if self.dry_run:
                self._log_preview(eligible, target_date)
            else:
                units = await self.coordinator.dispatch_all(eligible, target_date)
                self.job_metrics.record_units(units)

            logger.info("All reminders processed.")
            return self._finish(run_id, target_date, EXIT_OK)

        except Exception as e:
            logger.error("Fatal error", error=str(e), error_type=type(e).__name__)
            return self._finish(run_id, target_date, EXIT_FATAL, error=str(e))

        finally:
            self.is_running = False
            clear_run_context()

    async def _load_recipients(self) -> list[Recipient]:
        """
        Bulk read every parent.

        Raises:
            ReminderJobError: If the read fails; nothing is dispatched
        """
        try:
            return await self.repository.get_all_recipients()
        except Exception as e:
            logger.error("Failed to load parents", error=str(e), error_type=type(e).__name__)
            raise ReminderJobError(
                f"Failed to load parents: {e}", operation="load_recipients", recoverable=False
            ) from e

    def _log_preview(self, eligible: list[EligibilityDecision], target_date: date) -> None:
        for decision in eligible:
            logger.info(
                "Would send reminder",
                recipient_id=decision.recipient_id,
                event_ids=[event.event_id for event in decision.candidates],
                token_count=len(decision.recipient.delivery_addresses),
                send_date=decision.send_date.isoformat(),
                target_date=target_date.isoformat(),
            )

    def _finish(
        self, run_id: str, target_date: date | None, exit_code: int, error: str | None = None
    ) -> RunSummary:
        self.state = RunState.DONE
        self.job_metrics.finalize()
        metrics = self.job_metrics.to_dict()

        logger.info("Reminder job completed", exit_code=exit_code, **metrics)

        return RunSummary(
            run_id=run_id,
            target_date=target_date,
            dry_run=self.dry_run,
            recipients_scanned=self.job_metrics.recipients_scanned,
            skipped=dict(self.job_metrics.skipped),
            dispatched=self.job_metrics.dispatched,
            notified=self.job_metrics.notified,
            failed=self.job_metrics.failed,
            events_notified=self.job_metrics.events_notified,
            duration_seconds=round(self.job_metrics.total_duration_seconds, 3),
            exit_code=exit_code,
            error=error,
        )


@asynccontextmanager
async def create_reminder_job(
    config: Settings = settings, dry_run: bool = False, clock: Clock = utc_now
):
    """
    Wire a ReminderJob against Firebase from settings.

    All REST clients share one httpx client, closed on exit.

    Raises:
        ServiceAccountError: If the service account file is missing or invalid
        ReminderJobError: If the database URL or project id cannot be resolved
    """
    info = load_service_account(config.service_account_path())

    database_url = config.database_url(info)
    if not database_url:
        raise ReminderJobError("DATABASE_URL is not configured", operation="configure")
    project_id = config.fcm_project_id(info)
    if not project_id:
        raise ReminderJobError("FCM project id is not configured", operation="configure")

    client = httpx.AsyncClient(
        timeout=httpx.Timeout(config.HTTP_TIMEOUT_SECONDS),
        limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
    )
    try:
        credentials = ServiceAccountCredentials(info, client=client)
        store = RealtimeDatabaseClient(database_url, credentials, client=client)
        calculator = TemporalCalculator(config.DEFAULT_TIMEZONE, clock=clock)
        repository = RecipientRepository(store)
        coordinator = DispatchCoordinator(
            transport=FcmPushTransport(project_id, credentials, client=client),
            repository=repository,
            audit_recorder=AuditRecorder(store, clock=clock),
            max_concurrent=config.MAX_CONCURRENT_DISPATCHES,
        )

        logger.info(
            "Reminder job configured",
            database_url=database_url,
            project_id=project_id,
            default_timezone=config.DEFAULT_TIMEZONE,
            max_concurrent=config.MAX_CONCURRENT_DISPATCHES,
        )

        yield ReminderJob(
            repository=repository,
            resolver=EligibilityResolver(calculator),
            coordinator=coordinator,
            calculator=calculator,
            dry_run=dry_run,
        )
    finally:
        await client.aclose()


# Convenience functions for the worker registry
async def run_reminder_job(dry_run: bool = False) -> int:
    """Run one reminder pass and return the process exit code."""
    try:
        async with create_reminder_job(settings, dry_run=dry_run) as job:
            summary = await job.run_once()
    except Exception as e:
        logger.error("Fatal error", error=str(e), error_type=type(e).__name__)
        return EXIT_FATAL
    return summary.exit_code


async def run_reminder_preview() -> int:
    """Log who would be reminded today without sending anything."""
    return await run_reminder_job(dry_run=True)
