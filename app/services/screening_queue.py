"""
Screening Queue - Celery dispatch for screening jobs

Queues:
    cv-processing   screening pipeline, inbound email processing
    similarity      job-description embedding warm-up
    notifications   candidate emails

Task ids are deterministic per application and attempt
(screening-<applicationId>-<attempt>): enqueueing the same attempt twice
collapses onto one task, while a retry after cancellation gets a fresh id
that the worker's revoked set does not contain.

Priority 0 is the most urgent (Redis transport semantics); 0-10 is accepted
and clamped to the broker's 0-9 steps.
"""

import logging
from typing import Any, Dict, Optional

from app.celery import celery_app
from app.config import get_settings

logger = logging.getLogger(__name__)

SCREENING_QUEUE = "cv-processing"
SIMILARITY_QUEUE = "similarity"
NOTIFICATION_QUEUE = "notifications"

MAX_BROKER_PRIORITY = 9


def screening_task_id(application_id: int, attempt: int = 0) -> str:
    return f"screening-{application_id}-{attempt}"


def retry_countdown(retries: int) -> int:
    """Seconds before retry number retries (0-based): delay·2^n capped at the max delay."""
    settings = get_settings()
    return min(
        settings.screening_retry_delay_seconds * (2 ** retries),
        settings.screening_retry_max_delay_seconds,
    )


class ScreeningQueue:
    """Enqueue, cancel and inspect screening tasks."""

    def __init__(self, app=None):
        self.app = app or celery_app

    def enqueue(self, application_id: int, priority: int = 0, attempt: int = 0) -> str:
        """
        Send the screening task for one application.

        Returns:
            The Celery task id
        """
        from app.tasks.screening import process_screening

        task_id = screening_task_id(application_id, attempt)
        process_screening.apply_async(
            args=[application_id],
            task_id=task_id,
            queue=SCREENING_QUEUE,
            priority=min(max(priority, 0), MAX_BROKER_PRIORITY),
        )
        logger.info(f"Queued screening for application {application_id} as {task_id} (priority {priority})")
        return task_id

    def enqueue_job_embedding(self, job_posting_id: int) -> str:
        from app.tasks.screening import warm_job_embedding

        result = warm_job_embedding.apply_async(args=[job_posting_id], queue=SIMILARITY_QUEUE)
        return result.id

    def cancel(self, task_id: Optional[str]) -> bool:
        """Revoke a queued task; a task already running notices the cancel itself."""
        if not task_id:
            return False
        try:
            self.app.control.revoke(task_id)
            logger.info(f"Revoked screening task {task_id}")
            return True
        except Exception as e:
            logger.warning(f"Could not revoke task {task_id}: {e}")
            return False

    def get_queue_stats(self) -> Dict[str, Any]:
        """
        Active/reserved/scheduled task counts across workers.

        Returns {"available": False, ...} when no broker or worker answers.
        """
        try:
            inspector = self.app.control.inspect(timeout=1.0)
            active = inspector.active() or {}
            reserved = inspector.reserved() or {}
            scheduled = inspector.scheduled() or {}
        except Exception as e:
            logger.warning(f"Queue inspection failed: {e}")
            return {"available": False, "error": str(e)}

        return {
            "available": True,
            "workers": sorted(set(active) | set(reserved) | set(scheduled)),
            "active": sum(len(tasks) for tasks in active.values()),
            "reserved": sum(len(tasks) for tasks in reserved.values()),
            "scheduled": sum(len(tasks) for tasks in scheduled.values()),
        }
