"""
Screening Orchestrator - one ScreeningResult per application

State machine:
    PENDING → PROCESSING → COMPLETED
                        ↘ FAILED --retry--> PENDING

ScreeningService is the request-time side: trigger (idempotent), bulk
trigger, retry, cancel, queries and stats. It only writes state and puts
work on the queue.

ScreeningPipeline is the worker side. It claims a PENDING row with a
conditional update (so at most one worker runs an application), then runs:
    1. résumé text extraction (PDF / DOCX / OCR)
    2. CV fact extraction
    3. embeddings + similarity (failure degrades to NULL similarity)
    4. rule-based sub-scores and overall score
    5. summary (LLM or rule-based)
and writes the result unless the row was cancelled meanwhile.

Job-defining failures (application/job/résumé missing, no résumé text) end in
FAILED. Anything else propagates so the Celery task can retry.
"""

import asyncio
import logging
import time
from dataclasses import asdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from prometheus_client import Counter
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import Settings, get_settings
from app.database import SessionFactory, SyncSessionLocal, session_scope
from app.exceptions import InputError, InvalidStateError, NotFoundError
from app.models import (
    CvEmbedding, EmbeddingType, ScreeningResult, ScreeningStatus, StoredFile, StoredFileKind,
)
from app.services.cv_extractor import ProcessedCvData, extract_cv_data
from app.services.embeddings import EmbeddingService, cosine_similarity, get_embedding_service, max_chunk_similarity
from app.services.registry import RecruitmentRegistry
from app.services.scoring import JobRequirements, ScoreBreakdown, score_candidate
from app.services.screening_queue import ScreeningQueue
from app.services.storage import FileStorage
from app.services.summarizer import ScreeningSummarizer, get_summarizer
from app.services.text_extraction import extract_text

logger = logging.getLogger(__name__)

SCREENING_OUTCOMES = Counter(
    "screening_outcomes_total",
    "Screening runs by terminal outcome",
    ["outcome"]
)

MAX_PRIORITY = 10
CANCELLED_MESSAGE = "Cancelled by user"


def _validate_application_id(application_id: int) -> None:
    if not isinstance(application_id, int) or application_id <= 0:
        raise ValueError(f"Invalid application id: {application_id}")


def _validate_priority(priority: int) -> None:
    if not isinstance(priority, int) or not 0 <= priority <= MAX_PRIORITY:
        raise ValueError(f"Priority must be between 0 and {MAX_PRIORITY}, got {priority}")


def _find_result(session: Session, application_id: int) -> Optional[ScreeningResult]:
    return session.query(ScreeningResult).filter(ScreeningResult.application_id == application_id).first()


def _reset_scores(result: ScreeningResult) -> None:
    for column in (
        "overall_score", "skills_score", "experience_score", "education_score",
        "vector_similarity", "chunk_similarity", "fit_tier", "extracted_skills",
        "extracted_experience", "extracted_education", "ai_summary", "error_message",
        "started_at", "completed_at", "processing_time_ms",
    ):
        setattr(result, column, None)
    result.key_highlights = []
    result.concerns = []
    result.stage_errors = {}


class ScreeningService:
    """
    Request-time screening operations.

    Args:
        session_factory: Zero-arg callable returning a Session
        queue: ScreeningQueue (Celery) used to dispatch work
    """

    def __init__(
        self,
        session_factory: SessionFactory = SyncSessionLocal,
        queue: Optional[ScreeningQueue] = None,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.queue = queue or ScreeningQueue()
        self.settings = settings or get_settings()

    def _enqueue(self, application_id: int, priority: int, attempt: int) -> None:
        """Dispatch, recording the task id; a broker failure fails the row so it stays retryable."""
        try:
            task_id = self.queue.enqueue(application_id, priority, attempt)
        except Exception as e:
            logger.error(f"Could not enqueue screening for application {application_id}: {e}")
            with session_scope(self.session_factory) as session:
                result = _find_result(session, application_id)
                if result is not None and result.status == ScreeningStatus.PENDING.value:
                    result.status = ScreeningStatus.FAILED.value
                    result.error_message = f"Queue unavailable: {e}"
                    RecruitmentRegistry(session).set_screening_status(application_id, result.status)
            return

        with session_scope(self.session_factory) as session:
            result = _find_result(session, application_id)
            if result is not None:
                result.task_id = task_id

    def trigger_screening(self, application_id: int, priority: int = 0) -> ScreeningResult:
        """
        Create a PENDING result and enqueue it, or return the existing one.

        A non-failed existing result is returned unchanged; a FAILED one is
        retried.

        Raises:
            ValueError: Bad id or priority
            NotFoundError: Application missing
            InputError: Application has no stored résumé
        """
        _validate_application_id(application_id)
        _validate_priority(priority)

        with session_scope(self.session_factory) as session:
            existing = _find_result(session, application_id)
            if existing is not None and existing.status != ScreeningStatus.FAILED.value:
                logger.info(f"Screening for application {application_id} already {existing.status}")
                return existing
            failed = existing is not None

        if failed:
            return self.retry_screening(application_id)

        try:
            with session_scope(self.session_factory) as session:
                registry = RecruitmentRegistry(session)
                application = registry.require_application(application_id)
                resume = session.get(StoredFile, application.resume_file_id) if application.resume_file_id else None
                if resume is None or resume.kind != StoredFileKind.RESUME.value:
                    raise InputError(f"Application {application_id} has no résumé on file")

                result = ScreeningResult(
                    application_id=application_id,
                    job_posting_id=application.job_posting_id,
                    status=ScreeningStatus.PENDING.value,
                    priority=priority,
                    key_highlights=[],
                    concerns=[],
                    stage_errors={},
                )
                session.add(result)
                session.flush()
                registry.set_screening_status(application_id, result.status)
        except IntegrityError:
            # Lost a race with a concurrent trigger for the same application
            with session_scope(self.session_factory) as session:
                logger.info(f"Concurrent trigger for application {application_id}, returning existing result")
                return _find_result(session, application_id)

        logger.info(f"Screening triggered for application {application_id}")
        self._enqueue(application_id, priority, attempt=0)
        return self.get_screening_result(application_id)

    def trigger_bulk_screening(self, application_ids: List[int], priority: int = 0) -> Dict[str, Any]:
        """
        Trigger each application independently.

        Returns:
            {"triggered": n, "failed": m, "results": [...]} with one entry per id
        """
        _validate_priority(priority)
        results = []
        triggered = failed = 0

        for application_id in application_ids:
            try:
                result = self.trigger_screening(application_id, priority)
                results.append({"application_id": application_id, "success": True, "status": result.status})
                triggered += 1
            except Exception as e:
                logger.warning(f"Bulk trigger failed for application {application_id}: {e}")
                results.append({"application_id": application_id, "success": False, "error": str(e)})
                failed += 1

        return {"triggered": triggered, "failed": failed, "results": results}

    def retry_screening(self, application_id: int, force: bool = False) -> ScreeningResult:
        """
        Reset a FAILED result to PENDING and enqueue it again.

        Args:
            force: Also re-run PENDING or COMPLETED results (never PROCESSING)

        Raises:
            NotFoundError: No result for the application
            InvalidStateError: Result is PROCESSING, or not FAILED without force
        """
        _validate_application_id(application_id)

        with session_scope(self.session_factory) as session:
            result = _find_result(session, application_id)
            if result is None:
                raise NotFoundError(f"No screening result for application {application_id}")
            if result.status == ScreeningStatus.PROCESSING.value:
                raise InvalidStateError(f"Screening for application {application_id} is in progress")
            if result.status != ScreeningStatus.FAILED.value and not force:
                raise InvalidStateError(
                    f"Only failed screenings can be retried (application {application_id} is {result.status})"
                )

            _reset_scores(result)
            result.status = ScreeningStatus.PENDING.value
            result.retry_count = (result.retry_count or 0) + 1
            attempt, priority = result.retry_count, result.priority
            RecruitmentRegistry(session).set_screening_status(application_id, result.status)

        logger.info(f"Screening retry #{attempt} for application {application_id}")
        self._enqueue(application_id, priority, attempt=attempt)
        return self.get_screening_result(application_id)

    def cancel_screening(self, application_id: int, reason: Optional[str] = None) -> ScreeningResult:
        """
        Cancel a PENDING or PROCESSING screening (moves it to FAILED).

        A running worker notices the cancel before writing and drops its result.

        Raises:
            NotFoundError: No result for the application
            InvalidStateError: Result already COMPLETED or FAILED (left unchanged)
        """
        _validate_application_id(application_id)

        with session_scope(self.session_factory) as session:
            result = _find_result(session, application_id)
            if result is None:
                raise NotFoundError(f"No screening result for application {application_id}")
            if result.status not in (ScreeningStatus.PENDING.value, ScreeningStatus.PROCESSING.value):
                raise InvalidStateError(
                    f"Cannot cancel screening in status {result.status} for application {application_id}"
                )

            result.status = ScreeningStatus.FAILED.value
            result.error_message = f"{CANCELLED_MESSAGE}: {reason}" if reason else CANCELLED_MESSAGE
            result.completed_at = datetime.utcnow()
            task_id = result.task_id
            RecruitmentRegistry(session).set_screening_status(application_id, result.status)

        self.queue.cancel(task_id)
        SCREENING_OUTCOMES.labels(outcome="cancelled").inc()
        logger.info(f"Screening cancelled for application {application_id}")
        return self.get_screening_result(application_id)

    def get_screening_result(self, application_id: int) -> Optional[ScreeningResult]:
        with session_scope(self.session_factory) as session:
            return _find_result(session, application_id)

    def list_screening_results(
        self,
        job_posting_id: Optional[int] = None,
        status: Optional[str] = None,
        min_score: Optional[float] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[ScreeningResult]:
        """Results, best overall score first."""
        with session_scope(self.session_factory) as session:
            query = session.query(ScreeningResult)
            if job_posting_id is not None:
                query = query.filter(ScreeningResult.job_posting_id == job_posting_id)
            if status:
                query = query.filter(ScreeningResult.status == status.upper())
            if min_score is not None:
                query = query.filter(ScreeningResult.overall_score >= min_score)
            return (
                query.order_by(ScreeningResult.overall_score.desc().nullslast(), ScreeningResult.id)
                .offset(offset)
                .limit(limit)
                .all()
            )

    def get_screening_stats(self, job_posting_id: Optional[int] = None) -> Dict[str, Any]:
        with session_scope(self.session_factory) as session:
            query = session.query(ScreeningResult.status, func.count(ScreeningResult.id))
            averages = session.query(
                func.avg(ScreeningResult.overall_score),
                func.avg(ScreeningResult.processing_time_ms),
            ).filter(ScreeningResult.status == ScreeningStatus.COMPLETED.value)
            if job_posting_id is not None:
                query = query.filter(ScreeningResult.job_posting_id == job_posting_id)
                averages = averages.filter(ScreeningResult.job_posting_id == job_posting_id)

            by_status = {status.value: 0 for status in ScreeningStatus}
            for status, count in query.group_by(ScreeningResult.status).all():
                by_status[status] = count
            average_score, average_time = averages.one()

        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "average_score": round(average_score, 2) if average_score is not None else None,
            "average_processing_time_ms": int(average_time) if average_time is not None else None,
        }

    def reprocess_job_applications(self, job_posting_id: int, priority: int = 0) -> Dict[str, Any]:
        """
        Re-screen every application of a job posting, e.g. after its description changed.

        The stored job vector is dropped first so it is rebuilt from the new
        text. Applications currently PROCESSING are skipped.
        """
        _validate_priority(priority)

        with session_scope(self.session_factory) as session:
            registry = RecruitmentRegistry(session)
            if registry.get_job_posting(job_posting_id) is None:
                raise NotFoundError(f"Job posting {job_posting_id} not found")
            session.query(CvEmbedding).filter(
                CvEmbedding.embedding_type == EmbeddingType.JOB_DESCRIPTION.value,
                CvEmbedding.job_posting_id == job_posting_id,
            ).delete(synchronize_session=False)
            application_ids = registry.application_ids_for_job(job_posting_id)

        try:
            self.queue.enqueue_job_embedding(job_posting_id)
        except Exception as e:
            logger.warning(f"Could not queue job embedding for {job_posting_id}: {e}")

        results = []
        triggered = failed = skipped = 0
        for application_id in application_ids:
            try:
                existing = self.get_screening_result(application_id)
                if existing is None:
                    result = self.trigger_screening(application_id, priority)
                elif existing.status == ScreeningStatus.PROCESSING.value:
                    skipped += 1
                    results.append({"application_id": application_id, "success": False, "error": "in progress"})
                    continue
                else:
                    result = self.retry_screening(application_id, force=True)
                triggered += 1
                results.append({"application_id": application_id, "success": True, "status": result.status})
            except Exception as e:
                failed += 1
                logger.warning(f"Reprocess failed for application {application_id}: {e}")
                results.append({"application_id": application_id, "success": False, "error": str(e)})

        logger.info(f"Reprocessing job {job_posting_id}: {triggered} triggered, {failed} failed, {skipped} skipped")
        return {"triggered": triggered, "failed": failed, "skipped": skipped, "results": results}


class ScreeningPipeline:
    """
    Worker-side screening run for one application.

    Args:
        session_factory: Zero-arg callable returning a Session
        ocr_service: OcrService for image résumés
        storage: FileStorage holding the résumé bytes
        embedding_factory: Builds an EmbeddingService for the current event loop
        summarizer_factory: Builds a ScreeningSummarizer for the current event loop
    """

    def __init__(
        self,
        session_factory: SessionFactory = SyncSessionLocal,
        ocr_service=None,
        storage: Optional[FileStorage] = None,
        embedding_factory: Callable[[], EmbeddingService] = get_embedding_service,
        summarizer_factory: Callable[[], ScreeningSummarizer] = get_summarizer,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.ocr_service = ocr_service
        self.storage = storage or FileStorage()
        self.embedding_factory = embedding_factory
        self.summarizer_factory = summarizer_factory
        self.settings = settings or get_settings()

    # ==================== State transitions ====================

    def claim(self, application_id: int) -> bool:
        """PENDING → PROCESSING as one conditional UPDATE; False if another worker (or a cancel) won."""
        with session_scope(self.session_factory) as session:
            claimed = (
                session.query(ScreeningResult)
                .filter(
                    ScreeningResult.application_id == application_id,
                    ScreeningResult.status == ScreeningStatus.PENDING.value,
                )
                .update(
                    {
                        ScreeningResult.status: ScreeningStatus.PROCESSING.value,
                        ScreeningResult.started_at: datetime.utcnow(),
                        ScreeningResult.error_message: None,
                    },
                    synchronize_session=False,
                )
            )
            if claimed:
                RecruitmentRegistry(session).set_screening_status(application_id, ScreeningStatus.PROCESSING.value)
        return bool(claimed)

    def release(self, application_id: int) -> None:
        """PROCESSING → PENDING so a Celery retry can claim the row again."""
        with session_scope(self.session_factory) as session:
            session.query(ScreeningResult).filter(
                ScreeningResult.application_id == application_id,
                ScreeningResult.status == ScreeningStatus.PROCESSING.value,
            ).update({ScreeningResult.status: ScreeningStatus.PENDING.value}, synchronize_session=False)

    def fail(self, application_id: int, message: str) -> None:
        """PROCESSING → FAILED with a reason; leaves cancelled or finished rows alone."""
        with session_scope(self.session_factory) as session:
            result = _find_result(session, application_id)
            if result is None or result.status not in (
                ScreeningStatus.PROCESSING.value, ScreeningStatus.PENDING.value
            ):
                return
            result.status = ScreeningStatus.FAILED.value
            result.error_message = message
            result.completed_at = datetime.utcnow()
            if result.started_at:
                result.processing_time_ms = int((result.completed_at - result.started_at).total_seconds() * 1000)
            RecruitmentRegistry(session).set_screening_status(application_id, result.status)
        SCREENING_OUTCOMES.labels(outcome="failed").inc()
        logger.error(f"Screening failed for application {application_id}: {message}")

    def is_cancelled(self, application_id: int) -> bool:
        with session_scope(self.session_factory) as session:
            result = _find_result(session, application_id)
            return result is None or result.status != ScreeningStatus.PROCESSING.value

    # ==================== Stages ====================

    def _load_inputs(self, application_id: int) -> Tuple[StoredFile, JobRequirements, int]:
        with session_scope(self.session_factory) as session:
            registry = RecruitmentRegistry(session)
            application = registry.require_application(application_id)
            job = registry.get_job_posting(application.job_posting_id)
            if job is None:
                raise NotFoundError(f"Job posting {application.job_posting_id} not found")
            resume = session.get(StoredFile, application.resume_file_id) if application.resume_file_id else None
            if resume is None:
                raise InputError(f"Application {application_id} has no résumé on file")
            return resume, JobRequirements.from_posting(job), job.id

    async def _extract_resume(self, resume: StoredFile) -> str:
        content = self.storage.read(resume.file_url)
        extracted = await extract_text(content, resume.original_name, resume.mime_type, self.ocr_service)
        if not extracted.text.strip():
            raise InputError(f"No text could be extracted from résumé {resume.original_name}")
        return extracted.text

    async def _similarities(
        self,
        application_id: int,
        job_posting_id: int,
        resume_text: str,
        job: JobRequirements,
        stage_errors: Dict[str, str],
    ) -> Tuple[Optional[float], Optional[float]]:
        """Full-text and best-chunk similarity; (None, None) with a recorded reason on failure."""
        service = self.embedding_factory()
        try:
            with session_scope(self.session_factory) as session:
                job_embedding = await service.ensure_job_embedding(session, job_posting_id, job.text)
                cv_embedding = await service.embed_document(
                    session,
                    EmbeddingType.CV_FULL_TEXT,
                    resume_text,
                    application_id=application_id,
                    job_posting_id=job_posting_id,
                )
                vector_similarity = round(cosine_similarity(cv_embedding.embedding, job_embedding.embedding), 4)
                chunk_similarity = max_chunk_similarity(
                    [c.embedding for c in cv_embedding.chunks],
                    [c.embedding for c in job_embedding.chunks],
                )
            if chunk_similarity is not None:
                chunk_similarity = round(chunk_similarity, 4)
            return vector_similarity, chunk_similarity
        except Exception as e:
            stage_errors["embedding"] = str(e)
            logger.warning(f"Embedding stage failed for application {application_id}, similarity unavailable: {e}")
            return None, None
        finally:
            await service.close()

    def _write_result(
        self,
        application_id: int,
        cv: ProcessedCvData,
        breakdown: ScoreBreakdown,
        summary,
        stage_errors: Dict[str, str],
    ) -> Optional[ScreeningResult]:
        with session_scope(self.session_factory) as session:
            result = _find_result(session, application_id)
            if result is None or result.status != ScreeningStatus.PROCESSING.value:
                logger.info(f"Screening for application {application_id} was cancelled, discarding result")
                return None

            cv_data = cv.to_dict()
            now = datetime.utcnow()
            result.overall_score = breakdown.overall_score
            result.skills_score = breakdown.skills_score
            result.experience_score = breakdown.experience_score
            result.education_score = breakdown.education_score
            result.vector_similarity = breakdown.vector_similarity
            result.chunk_similarity = breakdown.chunk_similarity
            result.fit_tier = breakdown.fit_tier
            result.extracted_skills = {
                **asdict(cv.skills),
                "matched": breakdown.matched_skills,
                "missing": breakdown.missing_skills,
            }
            result.extracted_experience = {
                "total_years": cv.total_experience_years,
                "total_months": cv.total_experience_months,
                "positions": cv_data["work_experience"],
            }
            result.extracted_education = cv_data["education"]
            result.ai_summary = summary.text
            result.key_highlights = summary.highlights
            result.concerns = summary.concerns
            result.stage_errors = dict(stage_errors)
            result.status = ScreeningStatus.COMPLETED.value
            result.completed_at = now
            if result.started_at:
                result.processing_time_ms = int((now - result.started_at).total_seconds() * 1000)

            RecruitmentRegistry(session).set_screening_status(
                application_id, result.status, breakdown.overall_score
            )
            return result

    # ==================== Entry point ====================

    async def process(self, application_id: int) -> Optional[ScreeningResult]:
        """
        Run the full screening for one application.

        Returns:
            The COMPLETED or FAILED result, or None when the row could not be
            claimed or was cancelled mid-run

        Raises:
            Any unexpected (retryable) error; the row is left PROCESSING for
            the caller to release or fail
        """
        if not self.claim(application_id):
            logger.info(f"Application {application_id} is not pending, skipping")
            return None

        started = time.time()
        try:
            return await asyncio.wait_for(
                self._run(application_id), timeout=self.settings.screening_timeout_seconds
            )
        except (InputError, NotFoundError) as e:
            self.fail(application_id, str(e))
            return _result_snapshot(self.session_factory, application_id)
        finally:
            logger.info(f"Screening run for application {application_id} took {time.time() - started:.2f}s")

    async def _run(self, application_id: int) -> Optional[ScreeningResult]:
        stage_errors: Dict[str, str] = {}

        resume, job, job_posting_id = self._load_inputs(application_id)
        resume_text = await self._extract_resume(resume)
        cv = extract_cv_data(resume_text)

        if self.is_cancelled(application_id):
            logger.info(f"Screening for application {application_id} cancelled before scoring")
            return None

        vector_similarity, chunk_similarity = await self._similarities(
            application_id, job_posting_id, resume_text, job, stage_errors
        )
        breakdown = score_candidate(
            cv,
            job,
            vector_similarity,
            chunk_similarity,
            weights=self.settings.score_weights,
            thresholds=self.settings.fit_thresholds,
        )
        summary = await self.summarizer_factory().summarize(cv, job, breakdown)

        result = self._write_result(application_id, cv, breakdown, summary, stage_errors)
        if result is not None:
            SCREENING_OUTCOMES.labels(outcome="completed").inc()
            logger.info(
                f"Screening completed for application {application_id}: "
                f"{breakdown.overall_score} ({breakdown.fit_tier})"
            )
        return result


def _result_snapshot(session_factory: SessionFactory, application_id: int) -> Optional[ScreeningResult]:
    with session_scope(session_factory) as session:
        return _find_result(session, application_id)
