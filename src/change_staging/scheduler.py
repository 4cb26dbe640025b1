"""
APScheduler-based runner for periodic staging.

The core performs no scheduling itself; this is the host that invokes
``run_once`` on a cadence. Runs never overlap: a trigger that fires while
the previous run is still going is skipped.
"""

import logging
from collections.abc import Callable
from typing import Any

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from .errors import ChangeStagingError
from .models import RunResult, RunState

logger = logging.getLogger(__name__)

JOB_ID = "ct_staging_run"


def staging_job(run: Callable[[], RunResult]) -> RunResult | None:
    """
    One scheduled run. Errors are logged, not raised, so the scheduler
    keeps firing; the failed window is retried by the next run.
    """
    try:
        result = run()
    except ChangeStagingError as e:
        logger.error(f"Scheduled staging run aborted: {type(e).__name__}: {e}")
        return None
    except Exception as e:
        logger.error(f"Scheduled staging run crashed: {e}", exc_info=True)
        return None

    if result.state is RunState.PARTIALLY_FAILED:
        logger.warning(
            f"Scheduled staging run {result.run_id} partially failed: "
            f"{', '.join(o.table for o in result.failed_tables)}"
        )
    return result


class StagingScheduler:
    """Wraps a BlockingScheduler holding the single staging job."""

    def __init__(self):
        self.scheduler = BlockingScheduler()
        self.jobs: list[Any] = []

    def _add(self, run: Callable[[], RunResult], trigger: Any) -> None:
        # replace_existing only applies once started; pending jobs must be removed
        if self.scheduler.get_job(JOB_ID) is not None:
            self.scheduler.remove_job(JOB_ID)

        job = self.scheduler.add_job(
            staging_job,
            trigger=trigger,
            id=JOB_ID,
            args=[run],
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.jobs = [job]

    def add_interval_job(self, run: Callable[[], RunResult], interval_seconds: int) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"Interval must be positive, got {interval_seconds}")
        self._add(run, IntervalTrigger(seconds=interval_seconds))
        logger.info(f"Scheduled staging every {interval_seconds}s")

    def add_cron_job(self, run: Callable[[], RunResult], cron_expression: str) -> None:
        """
        Args:
            run: Zero-argument callable performing one run
            cron_expression: Five fields: minute hour day month day_of_week,
                e.g. ``"0 2 * * *"`` for nightly at 02:00
        """
        parts = cron_expression.split()
        if len(parts) != 5:
            raise ValueError(
                "Cron expression must have 5 parts: minute hour day month day_of_week"
            )

        minute, hour, day, month, day_of_week = parts
        self._add(
            run,
            CronTrigger(
                minute=minute, hour=hour, day=day, month=month, day_of_week=day_of_week
            ),
        )
        logger.info(f"Scheduled staging with cron '{cron_expression}'")

    def start(self) -> None:
        """Block running jobs until interrupted."""
        logger.info("Starting staging scheduler")
        try:
            self.scheduler.start()
        except (KeyboardInterrupt, SystemExit):
            logger.info("Scheduler stopped by user")
            self.stop()

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown()
        logger.info("Scheduler stopped")
