"""
Tests for the screening orchestrator

Tests cover:
- Trigger (idempotent, validation, missing résumé, broker failure)
- Retry, cancel and the state machine guards
- Bulk trigger, listing, stats and job reprocessing
- End-to-end pipeline runs with the deterministic embedding provider
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from app.database import session_scope
from app.exceptions import InputError, InvalidStateError, NotFoundError
from app.models import Application, CvEmbedding, EmbeddingType, ScreeningResult, ScreeningStatus
from app.services.embedding_providers import MockEmbeddingProvider
from app.services.embeddings import EmbeddingService
from app.services.screening import ScreeningPipeline, ScreeningService
from app.services.summarizer import ScreeningSummarizer
from tests.conftest import make_docx


@pytest.fixture
def service(session_factory, fake_queue, settings):
    return ScreeningService(session_factory=session_factory, queue=fake_queue, settings=settings)


@pytest.fixture
def pipeline_factory(session_factory, storage, settings):
    def _make(provider=None, summarizer=None):
        return ScreeningPipeline(
            session_factory=session_factory,
            storage=storage,
            embedding_factory=lambda: EmbeddingService(
                provider or MockEmbeddingProvider(dimensions=16), settings=settings, sleep=AsyncMock()
            ),
            summarizer_factory=lambda: summarizer or ScreeningSummarizer(),
            settings=settings,
        )

    return _make


def _set_status(session_factory, application_id, status, **values):
    with session_scope(session_factory) as session:
        result = session.query(ScreeningResult).filter_by(application_id=application_id).one()
        result.status = status
        for key, value in values.items():
            setattr(result, key, value)


class TestTrigger:
    def test_creates_pending_result(self, service, fake_queue, session_factory, make_application):
        application_id = make_application()

        result = service.trigger_screening(application_id, priority=3)

        assert result.status == ScreeningStatus.PENDING.value
        assert result.priority == 3
        assert result.task_id == f"screening-{application_id}-0"
        fake_queue.enqueue.assert_called_once_with(application_id, 3, 0)
        with session_scope(session_factory) as session:
            assert session.get(Application, application_id).screening_status == "PENDING"

    def test_idempotent(self, service, fake_queue, make_application):
        application_id = make_application()

        first = service.trigger_screening(application_id)
        second = service.trigger_screening(application_id, priority=5)

        assert first.id == second.id
        assert second.priority == 0
        assert fake_queue.enqueue.call_count == 1

    def test_missing_resume(self, service, fake_queue, make_application):
        application_id = make_application(with_resume=False)

        with pytest.raises(InputError):
            service.trigger_screening(application_id)
        assert service.get_screening_result(application_id) is None
        fake_queue.enqueue.assert_not_called()

    def test_missing_application(self, service):
        with pytest.raises(NotFoundError):
            service.trigger_screening(999)

    @pytest.mark.parametrize("application_id,priority", [(0, 0), (-1, 0), (1, 11), (1, -1)])
    def test_invalid_arguments(self, service, application_id, priority):
        with pytest.raises(ValueError):
            service.trigger_screening(application_id, priority)

    def test_broker_failure_leaves_retryable_failure(self, service, fake_queue, make_application):
        application_id = make_application()
        fake_queue.enqueue.side_effect = ConnectionError("redis down")

        result = service.trigger_screening(application_id)

        assert result.status == ScreeningStatus.FAILED.value
        assert "Queue unavailable" in result.error_message

    def test_trigger_on_failed_result_retries(self, service, fake_queue, session_factory, make_application):
        application_id = make_application()
        service.trigger_screening(application_id)
        _set_status(session_factory, application_id, ScreeningStatus.FAILED.value, error_message="boom")

        result = service.trigger_screening(application_id)

        assert result.status == ScreeningStatus.PENDING.value
        assert result.retry_count == 1
        assert result.task_id == f"screening-{application_id}-1"


class TestRetryAndCancel:
    def test_retry_failed(self, service, session_factory, make_application):
        application_id = make_application()
        service.trigger_screening(application_id)
        _set_status(session_factory, application_id, ScreeningStatus.FAILED.value, overall_score=10.0)

        result = service.retry_screening(application_id)

        assert result.status == ScreeningStatus.PENDING.value
        assert result.overall_score is None
        assert result.error_message is None

    def test_retry_requires_failed_unless_forced(self, service, session_factory, make_application):
        application_id = make_application()
        service.trigger_screening(application_id)
        _set_status(session_factory, application_id, ScreeningStatus.COMPLETED.value, overall_score=70.0)

        with pytest.raises(InvalidStateError):
            service.retry_screening(application_id)

        result = service.retry_screening(application_id, force=True)
        assert result.status == ScreeningStatus.PENDING.value

    def test_processing_never_retried(self, service, session_factory, make_application):
        application_id = make_application()
        service.trigger_screening(application_id)
        _set_status(session_factory, application_id, ScreeningStatus.PROCESSING.value)

        with pytest.raises(InvalidStateError):
            service.retry_screening(application_id, force=True)

    def test_retry_without_result(self, service):
        with pytest.raises(NotFoundError):
            service.retry_screening(42)

    def test_cancel_pending(self, service, fake_queue, make_application):
        application_id = make_application()
        service.trigger_screening(application_id)

        result = service.cancel_screening(application_id, reason="duplicate")

        assert result.status == ScreeningStatus.FAILED.value
        assert result.error_message == "Cancelled by user: duplicate"
        fake_queue.cancel.assert_called_once_with(f"screening-{application_id}-0")

    def test_cancel_after_completion_rejected(self, service, session_factory, make_application):
        application_id = make_application()
        service.trigger_screening(application_id)
        _set_status(session_factory, application_id, ScreeningStatus.COMPLETED.value, overall_score=88.0)

        with pytest.raises(InvalidStateError):
            service.cancel_screening(application_id)
        assert service.get_screening_result(application_id).overall_score == 88.0


class TestQueries:
    def test_bulk_counts(self, service, make_application):
        ok = make_application(email="a@example.com")
        no_resume = make_application(email="b@example.com", with_resume=False)

        outcome = service.trigger_bulk_screening([ok, no_resume, 999])

        assert outcome["triggered"] == 1
        assert outcome["failed"] == 2
        assert [r["success"] for r in outcome["results"]] == [True, False, False]

    def test_list_and_stats(self, service, session_factory, job_posting, make_application):
        first = make_application(email="a@example.com")
        second = make_application(email="b@example.com")
        third = make_application(email="c@example.com")
        for application_id in (first, second, third):
            service.trigger_screening(application_id)
        _set_status(session_factory, first, "COMPLETED", overall_score=60.0, processing_time_ms=1000)
        _set_status(session_factory, second, "COMPLETED", overall_score=90.0, processing_time_ms=3000)

        listed = service.list_screening_results(job_posting_id=job_posting.id, status="completed")
        best = service.list_screening_results(min_score=80)
        stats = service.get_screening_stats(job_posting.id)

        assert [r.application_id for r in listed] == [second, first]
        assert [r.application_id for r in best] == [second]
        assert stats["total"] == 3
        assert stats["by_status"]["COMPLETED"] == 2
        assert stats["by_status"]["PENDING"] == 1
        assert stats["average_score"] == 75.0
        assert stats["average_processing_time_ms"] == 2000

    def test_reprocess_job(self, service, session_factory, job_posting, make_application):
        untouched = make_application(email="a@example.com")
        completed = make_application(email="b@example.com")
        running = make_application(email="c@example.com")
        service.trigger_screening(completed)
        service.trigger_screening(running)
        _set_status(session_factory, completed, "COMPLETED", overall_score=50.0)
        _set_status(session_factory, running, "PROCESSING")
        with session_scope(session_factory) as session:
            session.add(CvEmbedding(
                embedding_type=EmbeddingType.JOB_DESCRIPTION.value, job_posting_id=job_posting.id,
                original_text="old", embedding=[1.0], model="mock", dimensions=1,
            ))

        outcome = service.reprocess_job_applications(job_posting.id)

        assert (outcome["triggered"], outcome["failed"], outcome["skipped"]) == (2, 0, 1)
        assert service.get_screening_result(untouched).status == "PENDING"
        assert service.get_screening_result(completed).status == "PENDING"
        with session_scope(session_factory) as session:
            assert session.query(CvEmbedding).count() == 0

    def test_reprocess_unknown_job(self, service):
        with pytest.raises(NotFoundError):
            service.reprocess_job_applications(12345)


class TestPipeline:
    """Worker-side runs against the sample résumé."""

    @pytest.mark.asyncio
    async def test_full_run(self, service, pipeline_factory, session_factory, make_application):
        application_id = make_application()
        service.trigger_screening(application_id)

        result = await pipeline_factory().process(application_id)

        assert result.status == ScreeningStatus.COMPLETED.value
        assert 0.0 <= result.vector_similarity <= 1.0
        assert result.chunk_similarity is not None
        assert 0.0 <= result.overall_score <= 100.0
        assert result.fit_tier in ("strong_fit", "good_fit", "moderate_fit", "poor_fit")
        assert "python" in result.extracted_skills["matched"]
        assert "kubernetes" in result.extracted_skills["missing"]
        assert result.extracted_experience["positions"][0]["company"] == "Acme Corp"
        assert result.stage_errors == {}
        assert result.ai_summary.startswith("Nguyen Van An is a")
        with session_scope(session_factory) as session:
            application = session.get(Application, application_id)
            assert application.screening_status == "COMPLETED"
            assert application.screening_score == result.overall_score
            assert session.query(CvEmbedding).count() == 2

    @pytest.mark.asyncio
    async def test_embedding_failure_degrades(self, service, pipeline_factory, make_application):
        application_id = make_application()
        service.trigger_screening(application_id)
        provider = MagicMock()
        provider.model_name = "broken"
        provider.embed = AsyncMock(side_effect=ValueError("invalid api key"))

        result = await pipeline_factory(provider=provider).process(application_id)

        assert result.status == ScreeningStatus.COMPLETED.value
        assert result.vector_similarity is None
        assert "invalid api key" in result.stage_errors["embedding"]
        assert "Semantic similarity unavailable" in result.concerns

    @pytest.mark.asyncio
    async def test_unreadable_resume_fails(self, service, pipeline_factory, make_application):
        application_id = make_application(resume=make_docx(""))
        service.trigger_screening(application_id)

        result = await pipeline_factory().process(application_id)

        assert result.status == ScreeningStatus.FAILED.value
        assert "No text could be extracted" in result.error_message

    @pytest.mark.asyncio
    async def test_not_pending_is_skipped(self, pipeline_factory, make_application):
        application_id = make_application()
        assert await pipeline_factory().process(application_id) is None

    @pytest.mark.asyncio
    async def test_cancel_mid_run_discards_result(self, service, pipeline_factory, make_application):
        application_id = make_application()
        service.trigger_screening(application_id)

        class CancellingSummarizer(ScreeningSummarizer):
            async def summarize(self, cv, job, breakdown):
                service.cancel_screening(application_id)
                return self.fallback(cv, job, breakdown)

        result = await pipeline_factory(summarizer=CancellingSummarizer()).process(application_id)

        assert result is None
        stored = service.get_screening_result(application_id)
        assert stored.status == ScreeningStatus.FAILED.value
        assert stored.overall_score is None
        assert stored.error_message == "Cancelled by user"

    def test_only_one_claim_wins(self, service, pipeline_factory, make_application):
        application_id = make_application()
        service.trigger_screening(application_id)
        pipeline = pipeline_factory()

        assert pipeline.claim(application_id) is True
        assert pipeline.claim(application_id) is False

        pipeline.release(application_id)
        assert pipeline.claim(application_id) is True
