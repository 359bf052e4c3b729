"""
Background Scheduler - stored file retention

Soft-deleted StoredFile rows older than stored_file_retention_days are
hard-deleted together with their files, every retention_interval_hours.
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.config import get_settings
from app.database import session_scope
from app.services.storage import FileStorage, purge_deleted_files

logger = logging.getLogger(__name__)

settings = get_settings()
scheduler = AsyncIOScheduler()


def purge_expired_files() -> int:
    """Run one retention pass; returns the number of purged files."""
    try:
        with session_scope() as session:
            return purge_deleted_files(session, FileStorage(settings.upload_dir), settings.stored_file_retention_days)
    except Exception as e:
        logger.error(f"Retention pass failed: {e}")
        return 0


def start_scheduler():
    """Start the background scheduler"""
    scheduler.add_job(
        purge_expired_files,
        trigger=IntervalTrigger(hours=settings.retention_interval_hours),
        id="purge_deleted_files",
        replace_existing=True,
    )
    scheduler.start()
    logger.info(f"Scheduler started: purging deleted files every {settings.retention_interval_hours} hours")


def stop_scheduler():
    """Stop the background scheduler"""
    scheduler.shutdown()
