"""
Generic background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable, runs it once and exits with the job's status code.
"""

import asyncio
import sys
from collections.abc import Awaitable, Callable

from dose_reminders.config import settings
from dose_reminders.infrastructure.observability.logging import get_logger, setup_logging
from dose_reminders.jobs.reminder_job import EXIT_FATAL, run_reminder_job, run_reminder_preview

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[int]]

JOB_REGISTRY: dict[str, JobCoroutine] = {
    "send_reminders": run_reminder_job,
    "preview_reminders": run_reminder_preview,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return settings.WORKER_JOB.strip().lower()


async def run_worker(job_name: str | None = None) -> int:
    """Run the requested job and return its exit code."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name)
    return await JOB_REGISTRY[name]()


def main() -> None:
    """CLI entrypoint."""
    setup_logging(settings.LOG_LEVEL)
    try:
        exit_code = asyncio.run(run_worker(_resolve_job_name()))
    except ValueError as e:
        logger.error("Worker failed to start", error=str(e))
        exit_code = EXIT_FATAL
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
