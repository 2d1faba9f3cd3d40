"""APScheduler job definitions."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from resale_tracker.config import settings
from resale_tracker.worker.tasks import task_runner

logger = logging.getLogger(__name__)


def setup_scheduler() -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler()
    interval = max(1, int(settings.alert_check_interval_minutes))

    scheduler.add_job(
        task_runner.evaluate_alerts,
        IntervalTrigger(minutes=interval),
        id="price_alerts",
        name="Evaluate price alerts",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        misfire_grace_time=600,
        replace_existing=True,
    )

    logger.info(f"Scheduled price alert evaluation every {interval} minutes")
    return scheduler
