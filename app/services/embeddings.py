"""
Embedding & Similarity Engine

Turns résumé and job-description text into vectors and compares them at two
granularities:
    - full text: one vector per document, cosine similarity résumé vs. job
    - chunks: fixed-size, non-overlapping windows of the same text; the chunk
      score is the best similarity over all résumé-chunk × job-chunk pairs

The provider is treated as an unreliable dependency:
    - transient errors (429, 5xx, timeouts, connection resets) are retried with
      tenacity: base 1s, doubled per attempt, capped at 30s, plus a little jitter
    - a circuit breaker opens after 5 consecutive failures, half-opens after 60s
      and closes again after 3 successes
    - vectors are cached in Redis by model + content hash

Key Functions:
    - prepare_text(): whitespace cleanup + truncation at a word boundary
    - split_chunks(): non-overlapping windows with start offsets
    - cosine_similarity(): clamped to [0, 1]
    - max_chunk_similarity(): best pair across two chunk sets (numpy matrix product)
    - EmbeddingService: retrying/caching embedder plus CvEmbedding persistence
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import openai
from prometheus_client import Counter
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from app.config import Settings, get_settings
from app.exceptions import CircuitOpenError, TransientError
from app.models.embedding import CvEmbedding, CvEmbeddingChunk, EmbeddingType
from app.services.cache import EmbeddingCache, get_embedding_cache, hash_content
from app.services.embedding_providers import EmbeddingProvider, get_embedding_provider

logger = logging.getLogger(__name__)

EMBEDDINGS_GENERATED = Counter(
    "embeddings_generated_total",
    "Embedding provider calls by outcome",
    ["outcome"]
)

WORD_BOUNDARY_RATIO = 0.8
RETRY_JITTER = 0.1

TRANSIENT_STATUS_CODES = {408, 409, 429, 500, 502, 503, 504}
TRANSIENT_MESSAGES = ("rate limit", "quota", "unavailable", "timeout", "timed out", "connection reset", "econnreset")

_WHITESPACE = re.compile(r"\s+")


# ==================== Text Helpers ====================

def prepare_text(text: str, max_chars: int = 8000) -> str:
    """
    Collapse whitespace and cap the length.

    When the text is too long it is cut at the last space before max_chars,
    provided that space lies past 80% of the limit; otherwise it is cut hard.
    """
    text = _WHITESPACE.sub(" ", text or "").strip()
    if len(text) <= max_chars:
        return text

    truncated = text[:max_chars]
    last_space = truncated.rfind(" ")
    if last_space > max_chars * WORD_BOUNDARY_RATIO:
        truncated = truncated[:last_space]
    return truncated.strip()


def split_chunks(text: str, chunk_size: int = 1200) -> List[Tuple[int, str]]:
    """
    Split text into ordered, non-overlapping windows of at most chunk_size chars.

    A window ends at the last whitespace inside it when that keeps at least
    half the window, so words are not cut in two. Windows are contiguous:
    each one starts where the previous ended.

    Returns:
        List of (start_offset, chunk_text); whitespace-only windows are skipped
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")

    chunks = []
    start = 0
    length = len(text or "")
    while start < length:
        end = min(start + chunk_size, length)
        if end < length:
            boundary = text.rfind(" ", start, end)
            if boundary > start + chunk_size // 2:
                end = boundary
        piece = text[start:end]
        if piece.strip():
            chunks.append((start, piece))
        start = end
    return chunks


def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    """
    Cosine similarity mapped onto [0, 1].

    Negative cosines (opposed vectors) count as no similarity. Returns 0.0
    if either vector has zero magnitude.

    Raises:
        ValueError: Vectors of different dimensions
    """
    a = np.asarray(vec1, dtype=float)
    b = np.asarray(vec2, dtype=float)
    if a.shape != b.shape:
        raise ValueError(f"Vector dimensions differ: {a.shape[0]} vs {b.shape[0]}")

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.clip(np.dot(a, b) / (norm_a * norm_b), 0.0, 1.0))


def max_chunk_similarity(
    chunks_a: Sequence[Sequence[float]],
    chunks_b: Sequence[Sequence[float]],
) -> Optional[float]:
    """
    Highest cosine similarity over all pairs (a_i, b_j).

    Returns:
        Value in [0, 1], or None when either side has no chunks
    """
    if not chunks_a or not chunks_b:
        return None

    a = np.asarray(chunks_a, dtype=float)
    b = np.asarray(chunks_b, dtype=float)
    if a.shape[1] != b.shape[1]:
        raise ValueError(f"Vector dimensions differ: {a.shape[1]} vs {b.shape[1]}")

    a_norms = np.linalg.norm(a, axis=1, keepdims=True)
    b_norms = np.linalg.norm(b, axis=1, keepdims=True)
    a_norms[a_norms == 0] = 1.0
    b_norms[b_norms == 0] = 1.0

    matrix = (a / a_norms) @ (b / b_norms).T
    return float(np.clip(matrix.max(), 0.0, 1.0))


def is_transient_error(exc: Exception) -> bool:
    """Whether a provider error is worth retrying."""
    if isinstance(exc, (TransientError, asyncio.TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, (openai.RateLimitError, openai.APITimeoutError, openai.APIConnectionError)):
        return True
    if isinstance(exc, openai.InternalServerError):
        return True

    status = getattr(exc, "status_code", None)
    if status in TRANSIENT_STATUS_CODES:
        return True

    message = str(exc).lower()
    return any(marker in message for marker in TRANSIENT_MESSAGES)


def backoff_wait(base: float = 1.0, cap: float = 30.0) -> wait_exponential_jitter:
    """Tenacity wait: base·2^(n-1) plus jitter up to 10% of base, capped at cap."""
    return wait_exponential_jitter(initial=base, max=cap, jitter=base * RETRY_JITTER)


def _should_retry(exc: BaseException) -> bool:
    # never retry an open circuit
    return not isinstance(exc, CircuitOpenError) and isinstance(exc, Exception) and is_transient_error(exc)


# ==================== Circuit Breaker ====================

class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    States:
        closed    calls pass; max_failures consecutive failures open the circuit
        open      calls are refused until reset_seconds have elapsed
        half_open calls pass; half_open_successes successes close the circuit,
                  any failure reopens it
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        max_failures: int = 5,
        reset_seconds: float = 60,
        half_open_successes: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_failures = max_failures
        self.reset_seconds = reset_seconds
        self.half_open_successes = half_open_successes
        self._clock = clock
        self._state = self.CLOSED
        self._failures = 0
        self._successes = 0
        self._opened_at = 0.0

    @property
    def state(self) -> str:
        if self._state == self.OPEN and self._clock() - self._opened_at >= self.reset_seconds:
            self._state = self.HALF_OPEN
            self._successes = 0
            logger.info("Embedding circuit breaker half-open")
        return self._state

    def allow(self) -> bool:
        return self.state != self.OPEN

    def record_success(self) -> None:
        if self.state == self.HALF_OPEN:
            self._successes += 1
            if self._successes >= self.half_open_successes:
                self._state = self.CLOSED
                self._failures = 0
                logger.info("Embedding circuit breaker closed")
        else:
            self._failures = 0

    def record_failure(self) -> None:
        if self.state == self.HALF_OPEN:
            self._open()
            return
        self._failures += 1
        if self._failures >= self.max_failures:
            self._open()

    def _open(self) -> None:
        self._state = self.OPEN
        self._opened_at = self._clock()
        self._failures = 0
        logger.warning(f"Embedding circuit breaker open for {self.reset_seconds}s")


# ==================== Service ====================

@dataclass
class ChunkVector:
    index: int
    start_offset: int
    text: str
    vector: List[float]


class EmbeddingService:
    """
    Retrying, caching embedder with CvEmbedding persistence.

    One instance serves one event loop (the Redis client is loop-bound);
    the circuit breaker is usually shared process-wide.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        cache: Optional[EmbeddingCache] = None,
        breaker: Optional[CircuitBreaker] = None,
        settings: Optional[Settings] = None,
        sleep: Callable = asyncio.sleep,
    ):
        self.provider = provider
        self.cache = cache
        self.settings = settings or get_settings()
        self.breaker = breaker or CircuitBreaker(
            max_failures=self.settings.embedding_breaker_max_failures,
            reset_seconds=self.settings.embedding_breaker_reset_seconds,
            half_open_successes=self.settings.embedding_breaker_half_open_successes,
        )
        self._sleep = sleep

    @property
    def model_name(self) -> str:
        return self.provider.model_name

    async def _guarded_call(self, call: Callable):
        if not self.breaker.allow():
            EMBEDDINGS_GENERATED.labels(outcome="circuit_open").inc()
            raise CircuitOpenError("Embedding provider circuit is open")
        try:
            result = await call()
        except Exception:
            self.breaker.record_failure()
            EMBEDDINGS_GENERATED.labels(outcome="failure").inc()
            raise
        self.breaker.record_success()
        EMBEDDINGS_GENERATED.labels(outcome="success").inc()
        return result

    async def _call_with_retry(self, call: Callable, description: str):
        attempts = self.settings.embedding_max_retries + 1
        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=backoff_wait(self.settings.embedding_retry_base_delay, self.settings.embedding_retry_max_delay),
            retry=retry_if_exception(_should_retry),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            return await retrying(self._guarded_call, call)
        except (CircuitOpenError, TransientError):
            raise
        except Exception as e:
            if not is_transient_error(e):
                raise
            raise TransientError(f"{description} failed after {attempts} attempts: {e}") from e

    async def embed(self, text: str) -> List[float]:
        """
        Embed one text (truncated to embedding_max_chars).

        Raises:
            ValueError: Empty text
            CircuitOpenError: Breaker open
            TransientError: Retries exhausted
        """
        prepared = prepare_text(text, self.settings.embedding_max_chars)
        if not prepared:
            raise ValueError("Cannot embed empty text")

        content_hash = hash_content(prepared)
        if self.cache:
            cached = await self.cache.get_embedding(self.model_name, content_hash)
            if cached is not None:
                return cached

        vector = await self._call_with_retry(lambda: self.provider.embed(prepared), "Embedding")

        if self.cache:
            await self.cache.set_embedding(self.model_name, content_hash, vector)
        return vector

    async def embed_chunks(self, text: str) -> List[ChunkVector]:
        """Embed the non-overlapping windows of text in one batched call."""
        prepared = _WHITESPACE.sub(" ", text or "").strip()
        windows = split_chunks(prepared, self.settings.embedding_chunk_size)
        if not windows:
            return []

        texts = [chunk for _, chunk in windows]
        vectors = await self._call_with_retry(
            lambda: self.provider.embed_batch(texts), "Chunk embedding"
        )
        return [
            ChunkVector(index=i, start_offset=offset, text=chunk, vector=vector)
            for i, ((offset, chunk), vector) in enumerate(zip(windows, vectors))
        ]

    # ==================== Persistence ====================

    @staticmethod
    def get_embedding_record(
        session: Session,
        embedding_type: EmbeddingType,
        application_id: Optional[int] = None,
        job_posting_id: Optional[int] = None,
    ) -> Optional[CvEmbedding]:
        query = session.query(CvEmbedding).filter(CvEmbedding.embedding_type == embedding_type.value)
        query = query.filter(
            CvEmbedding.application_id == application_id if application_id is not None
            else CvEmbedding.application_id.is_(None)
        )
        query = query.filter(
            CvEmbedding.job_posting_id == job_posting_id if job_posting_id is not None
            else CvEmbedding.job_posting_id.is_(None)
        )
        return query.first()

    def _insert_record(
        self,
        session: Session,
        embedding_type: EmbeddingType,
        text: str,
        vector: List[float],
        application_id: Optional[int],
        job_posting_id: Optional[int],
    ) -> CvEmbedding:
        """Insert a new owner row; if another writer got there first, return theirs."""
        record = CvEmbedding(
            embedding_type=embedding_type.value,
            application_id=application_id,
            job_posting_id=job_posting_id,
            original_text=text,
            embedding=vector,
            model=self.model_name,
            dimensions=len(vector),
        )
        try:
            with session.begin_nested():
                session.add(record)
        except IntegrityError:
            existing = self.get_embedding_record(session, embedding_type, application_id, job_posting_id)
            if existing is None:
                raise
            logger.info(
                f"{embedding_type.value} embedding for application={application_id} "
                f"job={job_posting_id} already written, updating it"
            )
            return existing
        return record

    def store_embedding(
        self,
        session: Session,
        embedding_type: EmbeddingType,
        text: str,
        vector: List[float],
        chunks: Optional[List[ChunkVector]] = None,
        application_id: Optional[int] = None,
        job_posting_id: Optional[int] = None,
        metadata: Optional[Dict] = None,
    ) -> CvEmbedding:
        """
        Upsert the embedding for (type, application, job posting).

        Chunk rows are replaced wholesale.
        """
        record = self.get_embedding_record(session, embedding_type, application_id, job_posting_id)
        if record is None:
            record = self._insert_record(session, embedding_type, text, vector, application_id, job_posting_id)

        record.original_text = text
        record.embedding = vector
        record.model = self.model_name
        record.dimensions = len(vector)
        record.embedding_metadata = metadata or {}
        record.chunks = [
            CvEmbeddingChunk(
                chunk_index=chunk.index,
                start_offset=chunk.start_offset,
                text=chunk.text,
                embedding=chunk.vector,
            )
            for chunk in (chunks or [])
        ]
        session.flush()
        return record

    async def embed_document(
        self,
        session: Session,
        embedding_type: EmbeddingType,
        text: str,
        application_id: Optional[int] = None,
        job_posting_id: Optional[int] = None,
        metadata: Optional[Dict] = None,
    ) -> CvEmbedding:
        """Embed full text and chunks, then store both."""
        vector = await self.embed(text)
        chunks = await self.embed_chunks(text)
        return self.store_embedding(
            session,
            embedding_type,
            prepare_text(text, self.settings.embedding_max_chars),
            vector,
            chunks=chunks,
            application_id=application_id,
            job_posting_id=job_posting_id,
            metadata=metadata,
        )

    async def ensure_job_embedding(self, session: Session, job_posting_id: int, job_text: str) -> CvEmbedding:
        """
        Reuse the stored job-description vector when text and model are unchanged.
        """
        prepared = prepare_text(job_text, self.settings.embedding_max_chars)
        existing = self.get_embedding_record(
            session, EmbeddingType.JOB_DESCRIPTION, job_posting_id=job_posting_id
        )
        if existing is not None and existing.original_text == prepared and existing.model == self.model_name:
            return existing

        logger.info(f"Embedding job posting {job_posting_id}")
        return await self.embed_document(
            session, EmbeddingType.JOB_DESCRIPTION, job_text, job_posting_id=job_posting_id
        )

    def find_similar_applications(
        self,
        session: Session,
        job_posting_id: int,
        limit: int = 10,
        threshold: float = 0.5,
    ) -> List[Dict]:
        """
        Rank stored résumé vectors of a job posting against its description vector.

        Returns:
            [{"application_id", "similarity"}] sorted by similarity desc,
            only entries at or above threshold
        """
        job = self.get_embedding_record(
            session, EmbeddingType.JOB_DESCRIPTION, job_posting_id=job_posting_id
        )
        if job is None:
            return []

        candidates = (
            session.query(CvEmbedding)
            .filter(
                CvEmbedding.embedding_type == EmbeddingType.CV_FULL_TEXT.value,
                CvEmbedding.job_posting_id == job_posting_id,
            )
            .all()
        )

        ranked = []
        for record in candidates:
            if record.dimensions != job.dimensions:
                continue
            score = cosine_similarity(record.embedding, job.embedding)
            if score >= threshold:
                ranked.append({"application_id": record.application_id, "similarity": round(score, 4)})

        ranked.sort(key=lambda r: r["similarity"], reverse=True)
        return ranked[:limit]

    async def close(self) -> None:
        if self.cache:
            await self.cache.close()


_breaker: Optional[CircuitBreaker] = None


def get_circuit_breaker() -> CircuitBreaker:
    """Process-wide breaker shared by every EmbeddingService."""
    global _breaker
    if _breaker is None:
        settings = get_settings()
        _breaker = CircuitBreaker(
            max_failures=settings.embedding_breaker_max_failures,
            reset_seconds=settings.embedding_breaker_reset_seconds,
            half_open_successes=settings.embedding_breaker_half_open_successes,
        )
    return _breaker


def get_embedding_service(settings: Optional[Settings] = None, use_cache: bool = True) -> EmbeddingService:
    settings = settings or get_settings()
    model_name = (
        settings.local_embedding_model if settings.embedding_provider == "local"
        else settings.embedding_model
    )
    provider = get_embedding_provider(
        settings.embedding_provider,
        api_key=settings.openai_api_key,
        model_name=model_name,
    )
    cache = get_embedding_cache(settings.redis_url) if use_cache else None
    return EmbeddingService(provider, cache=cache, breaker=get_circuit_breaker(), settings=settings)
