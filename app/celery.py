"""
Celery Application Configuration

Configures Celery for the document pipeline with:
- Redis as message broker and result backend
- Task autodiscovery from app.tasks module
- Per-concern queues (cv-processing, similarity, notifications)
- Message priorities on the Redis transport

Usage:
    # Start a worker on every queue:
    celery -A app.celery worker -Q cv-processing,similarity,notifications --loglevel=info

    # Enqueue a screening (normally done by ScreeningService):
    from app.services.screening_queue import ScreeningQueue
    ScreeningQueue().enqueue(application_id=42, priority=0)
"""

from celery import Celery
from celery.signals import worker_process_init, worker_process_shutdown
from app.config import get_settings

settings = get_settings()

# Create Celery app
celery_app = Celery(
    "recruitment_pipeline",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

# Configure Celery
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Worker settings
    worker_prefetch_multiplier=1,  # Priorities only hold with one prefetched message
    worker_concurrency=4,

    # Result settings
    result_expires=3600,
    task_track_started=True,

    # Retry settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Priority on Redis: 0 (most urgent) .. 9
    broker_transport_options={
        "priority_steps": list(range(10)),
        "sep": ":",
        "queue_order_strategy": "priority",
    },

    task_routes={
        "app.tasks.screening.process_screening": {"queue": "cv-processing"},
        "app.tasks.screening.warm_job_embedding": {"queue": "similarity"},
        "app.tasks.ingestion.process_inbound_email": {"queue": "cv-processing"},
        "app.tasks.ingestion.send_thank_you_email": {"queue": "notifications"},
    },

    task_default_queue="cv-processing",
)

# Autodiscover tasks
celery_app.autodiscover_tasks(["app.tasks"])


@worker_process_init.connect
def init_worker_database(**kwargs):
    from app.database import init_sync_db

    init_sync_db()


@worker_process_shutdown.connect
def release_worker_ocr_pool(**kwargs):
    from app.services.ocr import shutdown_ocr_service

    shutdown_ocr_service()
