"""Scheduler process for the recurring routine sweep.

Run separately from CLI/manual flows using:
    python -m reminder_engine.jobs.scheduler
"""

from __future__ import annotations

import argparse
import logging
from datetime import datetime, timezone

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, JobExecutionEvent
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from reminder_engine.jobs.tasks import env_int, run_active_routines
from reminder_engine.orchestration.locks import RoutineLocks

JOB_ID = "run_active_routines"

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    """Configure process-wide logging for scheduler mode."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def resolve_interval_minutes() -> int:
    return max(1, env_int("REMINDER_WINDOW_MINUTES", 5))


def _log_job_state(scheduler: BlockingScheduler, event: JobExecutionEvent) -> None:
    """Log last and next run metadata for observability."""
    job = scheduler.get_job(event.job_id)
    job_next_run = getattr(job, "next_run_time", None) if job else None
    next_run = job_next_run.isoformat() if job_next_run else "none"
    last_run_at = (
        event.scheduled_run_time.isoformat()
        if event.scheduled_run_time
        else datetime.now(tz=timezone.utc).isoformat()
    )

    if event.exception:
        logger.error(
            "Job %s failed at %s; next run at %s",
            event.job_id,
            last_run_at,
            next_run,
            exc_info=event.exception,
        )
        return

    logger.info("Job %s completed at %s; next run at %s", event.job_id, last_run_at, next_run)


def build_scheduler(interval_minutes: int | None = None, *, locks: RoutineLocks | None = None) -> BlockingScheduler:
    """Build and configure the scheduler instance."""
    minutes = interval_minutes or resolve_interval_minutes()
    scheduler = BlockingScheduler(timezone=timezone.utc)

    trigger = IntervalTrigger(minutes=minutes, timezone=timezone.utc)
    scheduler.add_job(
        run_active_routines,
        trigger=trigger,
        id=JOB_ID,
        kwargs={"window_minutes": minutes, "locks": locks or RoutineLocks()},
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=60,
    )

    scheduler.add_listener(
        lambda event: _log_job_state(scheduler, event),
        EVENT_JOB_EXECUTED | EVENT_JOB_ERROR,
    )

    logger.info("Registered %s every %s minute(s)", JOB_ID, minutes)
    return scheduler


def main() -> None:
    """Entrypoint for a dedicated scheduler process."""
    parser = argparse.ArgumentParser(description="Run the reminder routine scheduler")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Execute run_active_routines immediately and exit (manual mode)",
    )
    args = parser.parse_args()

    configure_logging()

    if args.once:
        logger.info("Running in manual mode: executing %s once", JOB_ID)
        run_active_routines()
        logger.info("Manual execution of %s completed", JOB_ID)
        return

    scheduler = build_scheduler()
    logger.info("Starting scheduler process")
    scheduler.start()


if __name__ == "__main__":
    main()
