"""
Ingestion Scheduler

Runs the ingestion pipeline on a cron trigger (daily at 2:00 AM by default).
A failed run is logged and left for the next trigger; there is no immediate
retry.
"""

import logging
from typing import Optional
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from .config import INGESTION_CRON
from .database import DatabaseManager, get_database_manager
from .exceptions import PricePieceError, RunInProgressError
from .services.ingestion import download_and_merge

logger = logging.getLogger(__name__)

INGESTION_JOB_ID = "download_and_merge"


def run_ingestion_job(db_manager: Optional[DatabaseManager] = None) -> bool:
    """
    Scheduled entry point for one ingestion run.

    Returns:
        bool: True if the run completed
    """
    try:
        stats = download_and_merge(db_manager or get_database_manager())
        logger.info(f"Ingestion run completed: {stats.products_upserted} products, "
                    f"{stats.prices_inserted} prices")
        return True
    except RunInProgressError:
        logger.warning("Previous ingestion run still in progress, skipping this trigger")
        return False
    except PricePieceError as e:
        logger.error(f"Ingestion run failed, waiting for next scheduled run: {e}", exc_info=True)
        return False


def create_scheduler(cron: str = INGESTION_CRON,
                     db_manager: Optional[DatabaseManager] = None) -> BlockingScheduler:
    """Build a scheduler with the ingestion job registered."""
    scheduler = BlockingScheduler()
    scheduler.add_job(
        run_ingestion_job,
        CronTrigger.from_crontab(cron),
        kwargs={'db_manager': db_manager},
        id=INGESTION_JOB_ID,
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    logger.info(f"Ingestion job scheduled with cron '{cron}'")
    return scheduler


def start_scheduler(cron: str = INGESTION_CRON, db_manager: Optional[DatabaseManager] = None):
    """Block running the ingestion schedule until interrupted."""
    scheduler = create_scheduler(cron, db_manager)
    logger.info("Starting CRON...")
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")
