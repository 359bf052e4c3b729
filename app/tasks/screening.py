"""
Screening Tasks

- process_screening: run the screening pipeline for one application
- warm_job_embedding: embed a job description ahead of screening

process_screening retries unexpected failures (provider outages, timeouts,
database hiccups) with exponential countdown up to screening_max_retries,
then marks the result FAILED. Job-defining failures are handled inside the
pipeline and never retried.
"""

import logging
import time

from app.celery import celery_app
from app.config import get_settings
from app.database import session_scope
from app.services.screening_queue import retry_countdown
from app.tasks.helpers import TASK_DURATION, TASK_FAILURES, get_pipeline, run_async

logger = logging.getLogger(__name__)

settings = get_settings()


@celery_app.task(bind=True, max_retries=settings.screening_max_retries, acks_late=True)
def process_screening(self, application_id: int) -> dict:
    """
    Screen one application.

    Args:
        application_id: Application whose PENDING result should be processed

    Returns:
        Dict with application_id, status and overall_score ("skipped" when
        the result was not pending or was cancelled mid-run)
    """
    start_time = time.time()
    pipeline = get_pipeline()

    try:
        result = run_async(pipeline.process(application_id))
        if result is None:
            return {"application_id": application_id, "status": "skipped"}
        return {
            "application_id": application_id,
            "status": result.status,
            "overall_score": result.overall_score,
        }

    except Exception as exc:
        TASK_FAILURES.labels(task_name="process_screening").inc()
        retries = self.request.retries or 0
        if retries < self.max_retries:
            countdown = retry_countdown(retries)
            logger.warning(
                f"Screening for application {application_id} failed ({exc}), "
                f"retry {retries + 1}/{self.max_retries} in {countdown}s"
            )
            pipeline.release(application_id)
            raise self.retry(exc=exc, countdown=countdown)

        pipeline.fail(application_id, f"Screening failed after {self.max_retries} retries: {exc}")
        return {"application_id": application_id, "status": "FAILED", "error": str(exc)}

    finally:
        duration = time.time() - start_time
        TASK_DURATION.labels(task_name="process_screening").observe(duration)


@celery_app.task(bind=True, max_retries=3)
def warm_job_embedding(self, job_posting_id: int) -> dict:
    """Embed a job posting's text so the first screening does not pay for it."""
    from app.services.embeddings import get_embedding_service
    from app.services.registry import RecruitmentRegistry
    from app.services.scoring import JobRequirements

    start_time = time.time()

    async def _warm() -> dict:
        service = get_embedding_service()
        try:
            with session_scope() as session:
                job = RecruitmentRegistry(session).get_job_posting(job_posting_id)
                if job is None:
                    return {"job_posting_id": job_posting_id, "error": "Job posting not found"}
                record = await service.ensure_job_embedding(
                    session, job_posting_id, JobRequirements.from_posting(job).text
                )
                return {"job_posting_id": job_posting_id, "chunks": len(record.chunks)}
        finally:
            await service.close()

    try:
        return run_async(_warm())

    except Exception as exc:
        TASK_FAILURES.labels(task_name="warm_job_embedding").inc()
        logger.error(f"Job embedding failed for {job_posting_id}: {exc}")
        raise self.retry(exc=exc, countdown=30)

    finally:
        duration = time.time() - start_time
        TASK_DURATION.labels(task_name="warm_job_embedding").observe(duration)
