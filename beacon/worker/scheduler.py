"""APScheduler job definitions."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from beacon.config import settings
from beacon.worker.tasks import task_runner

logger = logging.getLogger(__name__)


def setup_scheduler() -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Jobs:
    - URL candidate batch every ``url_candidate_interval_minutes``
    - retailer health check every ``retailer_health_check_minutes``
    - retailer slug refresh hourly

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler()
    candidate_interval = max(1, int(settings.url_candidate_interval_minutes))
    health_interval = max(1, int(settings.retailer_health_check_minutes))

    scheduler.add_job(
        task_runner.check_url_candidates,
        IntervalTrigger(minutes=candidate_interval),
        id="url_candidate_check",
        name="Check URL candidates",
        max_instances=1,  # batches must not overlap
        coalesce=True,
        misfire_grace_time=300,
        replace_existing=True,
    )

    scheduler.add_job(
        task_runner.check_retailer_health,
        IntervalTrigger(minutes=health_interval),
        id="retailer_health",
        name="Retailer health check",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        task_runner.refresh_retailers,
        IntervalTrigger(hours=1),
        id="retailer_refresh",
        name="Refresh retailer slugs",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    logger.info(
        "Scheduler configured: candidate check every %d minutes, "
        "retailer health every %d minutes, retailer refresh hourly",
        candidate_interval,
        health_interval,
    )
    return scheduler
