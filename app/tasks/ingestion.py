"""
Ingestion Tasks

- process_inbound_email: handle one inbound-email webhook delivery
- send_thank_you_email: candidate acknowledgement on the notifications queue

Inbound processing is not retried as a whole: each message is recorded by
MessageId before any work starts, so a redelivered batch would be skipped
anyway. Per-attachment download retries happen inside the service.
"""

import logging
import time
from typing import Optional

from app.celery import celery_app
from app.tasks.helpers import TASK_DURATION, TASK_FAILURES, get_ingestion_service, run_async

logger = logging.getLogger(__name__)


@celery_app.task(bind=True)
def process_inbound_email(self, payload: dict) -> dict:
    """
    Process a webhook payload.

    Args:
        payload: Raw JSON body ({"items": [...]})

    Returns:
        Counts of received, processed, duplicate, rejected and failed messages
    """
    start_time = time.time()

    try:
        service = get_ingestion_service()
        return run_async(service.process_inbound_email(payload))

    except Exception as exc:
        TASK_FAILURES.labels(task_name="process_inbound_email").inc()
        logger.error(f"Inbound email processing failed: {exc}")
        return {"error": str(exc)}

    finally:
        duration = time.time() - start_time
        TASK_DURATION.labels(task_name="process_inbound_email").observe(duration)


@celery_app.task
def send_thank_you_email(to_email: str, to_name: Optional[str] = None, job_title: Optional[str] = None) -> dict:
    """Send the thank-you email; the service itself never raises."""
    from app.services.notifications import NotificationService

    start_time = time.time()
    try:
        sent = run_async(NotificationService().send_thank_you(to_email, to_name, job_title))
        if not sent:
            TASK_FAILURES.labels(task_name="send_thank_you_email").inc()
        return {"to": to_email, "sent": sent}
    finally:
        duration = time.time() - start_time
        TASK_DURATION.labels(task_name="send_thank_you_email").observe(duration)
