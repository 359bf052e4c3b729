"""
Tests for the embedding & similarity engine

Tests cover:
- Text preparation and chunking
- Cosine and chunk similarity
- Transient error detection and backoff
- Circuit breaker state machine
- Retry, cache and breaker behavior of EmbeddingService
- CvEmbedding persistence and similar-application ranking
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import IntegrityError

from app.database import session_scope
from app.exceptions import CircuitOpenError, TransientError
from app.models.embedding import CvEmbedding, EmbeddingType
from app.services.embedding_providers import MockEmbeddingProvider
from app.services.embeddings import (
    CircuitBreaker,
    EmbeddingService,
    backoff_wait,
    cosine_similarity,
    is_transient_error,
    max_chunk_similarity,
    prepare_text,
    split_chunks,
)


class CountingProvider(MockEmbeddingProvider):
    def __init__(self, dimensions=8):
        super().__init__(dimensions)
        self.calls = 0

    async def embed(self, text):
        self.calls += 1
        return await super().embed(text)


def _provider(side_effect):
    provider = MagicMock()
    provider.model_name = "test-model"
    provider.embed = AsyncMock(side_effect=side_effect)
    return provider


class TestTextHelpers:
    def test_whitespace_collapsed(self):
        assert prepare_text("  a\n\tb   c ") == "a b c"

    def test_truncates_at_word_boundary(self):
        result = prepare_text("word " * 100, max_chars=103)
        assert len(result) <= 103
        assert all(token == "word" for token in result.split(" "))

    def test_hard_cut_without_late_space(self):
        assert prepare_text("x" * 200, max_chars=100) == "x" * 100

    def test_chunks_are_contiguous(self):
        text = "aaaa bbbb cccc"
        chunks = split_chunks(text, chunk_size=10)

        assert [offset for offset, _ in chunks] == [0, 9]
        assert "".join(piece for _, piece in chunks) == text

    def test_chunk_size_must_be_positive(self):
        with pytest.raises(ValueError):
            split_chunks("abc", 0)

    def test_empty_text_has_no_chunks(self):
        assert split_chunks("") == []


class TestSimilarity:
    def test_identical_vectors(self):
        assert cosine_similarity([1, 2, 3], [1, 2, 3]) == pytest.approx(1.0)

    def test_opposed_vectors_clamped_to_zero(self):
        assert cosine_similarity([1, 0], [-1, 0]) == 0.0

    def test_zero_vector(self):
        assert cosine_similarity([0, 0], [1, 1]) == 0.0

    def test_dimension_mismatch(self):
        with pytest.raises(ValueError):
            cosine_similarity([1, 0], [1, 0, 0])

    def test_best_chunk_pair(self):
        assert max_chunk_similarity([[1, 0], [0, 1]], [[0, 1]]) == pytest.approx(1.0)

    def test_no_chunks(self):
        assert max_chunk_similarity([], [[1, 0]]) is None


class TestTransientErrors:
    @pytest.mark.parametrize("exc", [
        TransientError("provider down"),
        asyncio.TimeoutError(),
        ConnectionError("reset"),
        RuntimeError("Rate limit exceeded"),
    ])
    def test_transient(self, exc):
        assert is_transient_error(exc) is True

    def test_status_code_attribute(self):
        exc = RuntimeError("upstream")
        exc.status_code = 503
        assert is_transient_error(exc) is True

    def test_permanent(self):
        assert is_transient_error(ValueError("invalid input")) is False

    def test_backoff_grows_and_caps(self):
        wait = backoff_wait(1.0, 30.0)

        assert 1.0 <= wait(SimpleNamespace(attempt_number=1)) <= 1.1
        assert 4.0 <= wait(SimpleNamespace(attempt_number=3)) <= 4.1
        assert wait(SimpleNamespace(attempt_number=11)) == 30.0

    def test_zero_base_means_no_wait(self):
        assert backoff_wait(0.0, 0.0)(SimpleNamespace(attempt_number=4)) == 0.0


class TestCircuitBreaker:
    """closed → open → half_open → closed"""

    def _breaker(self):
        now = [0.0]
        breaker = CircuitBreaker(max_failures=2, reset_seconds=60, half_open_successes=2, clock=lambda: now[0])
        return breaker, now

    def test_opens_after_consecutive_failures(self):
        breaker, _ = self._breaker()
        breaker.record_failure()
        assert breaker.state == CircuitBreaker.CLOSED
        breaker.record_failure()
        assert breaker.state == CircuitBreaker.OPEN
        assert breaker.allow() is False

    def test_success_resets_failure_count(self):
        breaker, _ = self._breaker()
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        assert breaker.state == CircuitBreaker.CLOSED

    def test_half_open_then_closed(self):
        breaker, now = self._breaker()
        breaker.record_failure()
        breaker.record_failure()

        now[0] = 60.0
        assert breaker.state == CircuitBreaker.HALF_OPEN
        breaker.record_success()
        assert breaker.state == CircuitBreaker.HALF_OPEN
        breaker.record_success()
        assert breaker.state == CircuitBreaker.CLOSED

    def test_half_open_failure_reopens(self):
        breaker, now = self._breaker()
        breaker.record_failure()
        breaker.record_failure()
        now[0] = 61.0
        breaker.record_failure()
        assert breaker.state == CircuitBreaker.OPEN


class TestEmbeddingService:
    """Retry, cache and breaker behavior."""

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self, settings):
        provider = _provider([TransientError("503"), TransientError("503"), [0.1, 0.2]])
        sleep = AsyncMock()
        service = EmbeddingService(provider, settings=settings, sleep=sleep)

        vector = await service.embed("hello world")

        assert vector == [0.1, 0.2]
        assert provider.embed.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self, settings):
        provider = _provider(ValueError("invalid input"))
        service = EmbeddingService(provider, settings=settings, sleep=AsyncMock())

        with pytest.raises(ValueError):
            await service.embed("hello")
        assert provider.embed.await_count == 1

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, settings):
        provider = _provider(TransientError("timeout"))
        service = EmbeddingService(provider, settings=settings, sleep=AsyncMock())

        with pytest.raises(TransientError):
            await service.embed("hello")
        assert provider.embed.await_count == settings.embedding_max_retries + 1

    @pytest.mark.asyncio
    async def test_exhausted_provider_error_wrapped_as_transient(self, settings):
        provider = _provider(RuntimeError("Rate limit exceeded"))
        sleep = AsyncMock()
        service = EmbeddingService(provider, settings=settings, sleep=sleep)

        with pytest.raises(TransientError, match="after"):
            await service.embed("hello")
        assert sleep.await_count == settings.embedding_max_retries

    @pytest.mark.asyncio
    async def test_circuit_opening_mid_retry_stops_retrying(self, settings):
        breaker = CircuitBreaker(max_failures=2)
        provider = _provider(TransientError("503"))
        service = EmbeddingService(provider, breaker=breaker, settings=settings, sleep=AsyncMock())

        with pytest.raises(CircuitOpenError):
            await service.embed("hello")
        assert provider.embed.await_count == 2

    @pytest.mark.asyncio
    async def test_open_circuit_refuses_calls(self, settings):
        breaker = CircuitBreaker(max_failures=1)
        breaker.record_failure()
        provider = _provider([[1.0]])
        service = EmbeddingService(provider, breaker=breaker, settings=settings)

        with pytest.raises(CircuitOpenError):
            await service.embed("hello")
        provider.embed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_text_rejected(self, settings):
        service = EmbeddingService(_provider([[1.0]]), settings=settings)
        with pytest.raises(ValueError):
            await service.embed("   ")

    @pytest.mark.asyncio
    async def test_cache_hit_skips_provider(self, settings):
        cache = MagicMock()
        cache.get_embedding = AsyncMock(return_value=[0.5, 0.5])
        cache.set_embedding = AsyncMock()
        provider = _provider([[1.0, 0.0]])
        service = EmbeddingService(provider, cache=cache, settings=settings)

        assert await service.embed("cached text") == [0.5, 0.5]
        provider.embed.assert_not_awaited()
        cache.get_embedding.assert_awaited_once()
        assert cache.get_embedding.await_args.args[0] == "test-model"

    @pytest.mark.asyncio
    async def test_cache_miss_stores_vector(self, settings):
        cache = MagicMock()
        cache.get_embedding = AsyncMock(return_value=None)
        cache.set_embedding = AsyncMock()
        service = EmbeddingService(_provider([[1.0, 0.0]]), cache=cache, settings=settings)

        await service.embed("fresh text")

        cache.set_embedding.assert_awaited_once()
        assert cache.set_embedding.await_args.args[2] == [1.0, 0.0]

    @pytest.mark.asyncio
    async def test_chunks_keep_offsets(self, settings):
        settings.embedding_chunk_size = 10
        service = EmbeddingService(MockEmbeddingProvider(dimensions=4), settings=settings)

        chunks = await service.embed_chunks("aaaa bbbb cccc")

        assert [(c.index, c.start_offset) for c in chunks] == [(0, 0), (1, 9)]
        assert all(len(c.vector) == 4 for c in chunks)


class TestPersistence:
    """CvEmbedding storage and ranking."""

    @pytest.mark.asyncio
    async def test_job_embedding_reused_when_unchanged(self, settings, session_factory):
        provider = CountingProvider()
        service = EmbeddingService(provider, settings=settings)

        with session_scope(session_factory) as session:
            first = await service.ensure_job_embedding(session, 1, "Python developer role")
            second = await service.ensure_job_embedding(session, 1, "Python   developer role")

            assert first.id == second.id
            assert provider.calls == 1
            assert first.dimensions == 8
            assert len(first.chunks) == 1

    @pytest.mark.asyncio
    async def test_changed_job_text_reembeds(self, settings, session_factory):
        provider = CountingProvider()
        service = EmbeddingService(provider, settings=settings)

        with session_scope(session_factory) as session:
            first = await service.ensure_job_embedding(session, 1, "Python developer role")
            second = await service.ensure_job_embedding(session, 1, "Go developer role")

            assert first.id == second.id
            assert provider.calls == 2
            assert second.original_text == "Go developer role"

    def test_find_similar_applications(self, settings, session_factory):
        service = EmbeddingService(MockEmbeddingProvider(dimensions=2), settings=settings)

        with session_scope(session_factory) as session:
            service.store_embedding(session, EmbeddingType.JOB_DESCRIPTION, "job", [1.0, 0.0], job_posting_id=7)
            for application_id, vector in [(1, [1.0, 0.0]), (2, [0.0, 1.0]), (3, [1.0, 1.0])]:
                service.store_embedding(
                    session, EmbeddingType.CV_FULL_TEXT, "cv", vector,
                    application_id=application_id, job_posting_id=7,
                )

            ranked = service.find_similar_applications(session, 7, threshold=0.5)

        assert [r["application_id"] for r in ranked] == [1, 3]
        assert ranked[0]["similarity"] == 1.0
        assert ranked[1]["similarity"] == pytest.approx(0.7071, abs=1e-4)

    def test_find_similar_without_job_vector(self, settings, session_factory):
        service = EmbeddingService(MockEmbeddingProvider(dimensions=2), settings=settings)
        with session_scope(session_factory) as session:
            assert service.find_similar_applications(session, 99) == []

    def test_job_embedding_rows_stay_unique(self, session_factory):
        with session_scope(session_factory) as session:
            session.add(CvEmbedding(
                embedding_type=EmbeddingType.JOB_DESCRIPTION.value, job_posting_id=7,
                original_text="job", embedding=[1.0, 0.0], model="m", dimensions=2,
            ))

        with pytest.raises(IntegrityError):
            with session_scope(session_factory) as session:
                session.add(CvEmbedding(
                    embedding_type=EmbeddingType.JOB_DESCRIPTION.value, job_posting_id=7,
                    original_text="job again", embedding=[0.0, 1.0], model="m", dimensions=2,
                ))

    def test_concurrent_job_embedding_writes_collapse_to_one_row(self, settings, session_factory):
        """A writer that missed the other's row updates it instead of adding a second."""
        service = EmbeddingService(MockEmbeddingProvider(dimensions=2), settings=settings)
        with session_scope(session_factory) as session:
            service.store_embedding(session, EmbeddingType.JOB_DESCRIPTION, "first", [1.0, 0.0], job_posting_id=7)

        real_lookup = service.get_embedding_record
        calls = []

        def stale_first_lookup(*args):
            calls.append(args)
            return None if len(calls) == 1 else real_lookup(*args)

        with patch.object(service, "get_embedding_record", side_effect=stale_first_lookup):
            with session_scope(session_factory) as session:
                service.store_embedding(
                    session, EmbeddingType.JOB_DESCRIPTION, "second", [0.0, 1.0], job_posting_id=7
                )

        with session_scope(session_factory) as session:
            rows = session.query(CvEmbedding).filter(CvEmbedding.job_posting_id == 7).all()
            assert len(rows) == 1
            assert rows[0].original_text == "second"
            assert rows[0].embedding == [0.0, 1.0]
