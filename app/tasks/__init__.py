"""
Celery Task Modules

Background tasks for the document pipeline:
- screening.py: Screening pipeline and job embedding warm-up
- ingestion.py: Inbound email processing and candidate notifications
"""

from app.tasks.screening import process_screening, warm_job_embedding
from app.tasks.ingestion import process_inbound_email, send_thank_you_email

__all__ = [
    "process_screening",
    "warm_job_embedding",
    "process_inbound_email",
    "send_thank_you_email",
]
