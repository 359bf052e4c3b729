"""
Shared helpers for Celery tasks: metrics, the async bridge and service factories.
"""

import asyncio
import logging
from typing import Any, Awaitable

from prometheus_client import Counter, Histogram

logger = logging.getLogger(__name__)

TASK_DURATION = Histogram(
    "celery_task_duration_seconds",
    "Time spent executing Celery tasks",
    ["task_name"]
)

TASK_FAILURES = Counter(
    "celery_task_failures_total",
    "Number of Celery task failures",
    ["task_name"]
)


def run_async(coro: Awaitable) -> Any:
    """Run a coroutine to completion on a fresh event loop (Celery workers are synchronous)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def get_pipeline():
    from app.services.ocr import get_ocr_service
    from app.services.screening import ScreeningPipeline

    return ScreeningPipeline(ocr_service=get_ocr_service())


def get_ingestion_service():
    from app.services.ingestion import IngestionService
    from app.services.notifications import QueuedNotifier
    from app.services.ocr import get_ocr_service
    from app.services.screening import ScreeningService

    return IngestionService(
        ocr_service=get_ocr_service(),
        screening_service=ScreeningService(),
        notifier=QueuedNotifier(),
    )
