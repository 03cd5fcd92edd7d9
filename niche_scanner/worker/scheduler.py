"""APScheduler job definitions."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from niche_scanner.config import settings
from niche_scanner.worker.tasks import TaskRunner

logger = logging.getLogger(__name__)


def setup_scheduler(task_runner: TaskRunner) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Saved searches are re-scanned every settings.rescan_interval_hours;
    an interval of 0 leaves the scheduler without jobs.

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler()
    interval = settings.rescan_interval_hours

    if interval > 0:
        scheduler.add_job(
            task_runner.rescan_saved_searches,
            IntervalTrigger(hours=interval),
            id="saved_search_rescan",
            name="Rescan saved searches",
            max_instances=1,  # Prevent overlapping runs
            coalesce=True,
            misfire_grace_time=600,
            replace_existing=True,
        )
        logger.info(f"Scheduler configured: saved searches rescanned every {interval} hours")
    else:
        logger.info("Scheduler configured: periodic rescans disabled")

    return scheduler
