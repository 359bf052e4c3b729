"""
Embedding Providers - one interface over remote and local embedding models

Key Classes:
    - EmbeddingProvider: Protocol every provider satisfies
    - OpenAIEmbeddings: OpenAI API (text-embedding-3-*), the default
    - LocalEmbeddings: sentence-transformers, runs in-process
    - MockEmbeddingProvider: deterministic hash-based vectors for tests and offline runs

Providers only turn text into vectors. Retries, truncation, caching and the
circuit breaker live in app.services.embeddings, which wraps whichever
provider get_embedding_provider() returns.
"""

import asyncio
import hashlib
import logging
from typing import List, Optional, Dict, Protocol, runtime_checkable

from openai import AsyncOpenAI

logger = logging.getLogger(__name__)


MODEL_DIMENSIONS: Dict[str, int] = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
    "sentence-transformers/all-MiniLM-L6-v2": 384,
    "sentence-transformers/all-mpnet-base-v2": 768,
    "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2": 384,
    "BAAI/bge-m3": 1024,
}


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Interface shared by all embedding providers."""

    @property
    def model_name(self) -> str:
        ...

    @property
    def dimensions(self) -> int:
        ...

    async def embed(self, text: str) -> List[float]:
        ...

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        ...


class OpenAIEmbeddings:
    """
    OpenAI API embeddings provider.

    Errors from the API (rate limits, 5xx, timeouts) propagate unchanged so
    the caller can decide whether to retry.

    Example:
        >>> provider = OpenAIEmbeddings(api_key="sk-...")
        >>> vector = await provider.embed("Senior Python developer, 6 years")
    """

    def __init__(self, api_key: str, model: str = "text-embedding-3-small") -> None:
        self.api_key = api_key
        self.model = model
        self._client = None

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    @property
    def model_name(self) -> str:
        return self.model

    @property
    def dimensions(self) -> int:
        return MODEL_DIMENSIONS.get(self.model, 1536)

    async def embed(self, text: str) -> List[float]:
        text = text.replace("\n", " ").strip()
        if not text:
            return [0.0] * self.dimensions

        response = await self._get_client().embeddings.create(input=[text], model=self.model)
        return response.data[0].embedding

    async def embed_batch(self, texts: List[str], batch_size: int = 100) -> List[List[float]]:
        """
        Embed several texts, batch_size per API call.

        Empty texts get zero vectors without an API call; output order
        matches input order.
        """
        cleaned = [t.replace("\n", " ").strip() for t in texts]
        non_empty_indices = [i for i, t in enumerate(cleaned) if t]

        result = [[0.0] * self.dimensions for _ in texts]
        if not non_empty_indices:
            return result

        client = self._get_client()
        vectors: List[List[float]] = []
        for start in range(0, len(non_empty_indices), batch_size):
            batch = [cleaned[i] for i in non_empty_indices[start:start + batch_size]]
            response = await client.embeddings.create(input=batch, model=self.model)
            vectors.extend(d.embedding for d in response.data)

        for idx, vector in zip(non_empty_indices, vectors):
            result[idx] = vector
        return result


class LocalEmbeddings:
    """
    Local embeddings using sentence-transformers.

    The model is loaded on first use and encoding runs in the default
    executor so the event loop keeps serving other applications.
    A model that fails to load raises on every call rather than producing
    zero vectors, because a zero vector would silently score 0 similarity.
    """

    def __init__(
        self,
        model_name: str = "sentence-transformers/all-MiniLM-L6-v2",
        lazy_load: bool = True
    ) -> None:
        self._model_name = model_name
        self._model = None
        if not lazy_load:
            self._load_model()

    def _load_model(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            logger.info(f"Loading embedding model: {self._model_name}")
            self._model = SentenceTransformer(self._model_name)
        return self._model

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def dimensions(self) -> int:
        return MODEL_DIMENSIONS.get(self._model_name, 384)

    async def embed(self, text: str) -> List[float]:
        text = text.strip()
        if not text:
            return [0.0] * self.dimensions

        model = self._load_model()
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: model.encode(text).tolist())

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        cleaned = [t.strip() for t in texts]
        if not any(cleaned):
            return [[0.0] * self.dimensions for _ in texts]

        model = self._load_model()
        loop = asyncio.get_running_loop()
        vectors = await loop.run_in_executor(None, lambda: model.encode(cleaned).tolist())

        for i, text in enumerate(cleaned):
            if not text:
                vectors[i] = [0.0] * self.dimensions
        return vectors


class MockEmbeddingProvider:
    """
    Deterministic provider: the same text always yields the same vector.

    Values are derived from the md5 of the text and lie in [-1, 1].
    """

    def __init__(self, dimensions: int = 384) -> None:
        self._dimensions = dimensions

    @property
    def model_name(self) -> str:
        return "mock"

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def _text_to_embedding(self, text: str) -> List[float]:
        if not text:
            return [0.0] * self._dimensions

        text_hash = hashlib.md5(text.encode()).hexdigest()
        embedding = []
        for i in range(self._dimensions):
            idx = (i * 2) % len(text_hash)
            char_val = int(text_hash[idx:idx + 2], 16)
            embedding.append((char_val / 127.5) - 1)
        return embedding

    async def embed(self, text: str) -> List[float]:
        return self._text_to_embedding(text)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return [self._text_to_embedding(t) for t in texts]


def get_embedding_provider(
    provider_name: str = "openai",
    api_key: Optional[str] = None,
    model_name: Optional[str] = None,
    lazy_load: bool = True,
    dimensions: int = 384,
) -> EmbeddingProvider:
    """
    Create an embedding provider.

    Args:
        provider_name: "openai", "local" or "mock"
        api_key: Required for OpenAI
        model_name: Optional model override
        lazy_load: For local models, defer loading until first use
        dimensions: Vector size for the mock provider

    Raises:
        ValueError: Unknown provider or missing OpenAI key
    """
    provider_name = provider_name.lower()

    if provider_name == "openai":
        if not api_key:
            raise ValueError("OpenAI embeddings require api_key")
        return OpenAIEmbeddings(api_key=api_key, model=model_name or "text-embedding-3-small")

    if provider_name == "local":
        return LocalEmbeddings(
            model_name=model_name or "sentence-transformers/all-MiniLM-L6-v2",
            lazy_load=lazy_load,
        )

    if provider_name == "mock":
        return MockEmbeddingProvider(dimensions=dimensions)

    raise ValueError(
        f"Unknown embedding provider: {provider_name}. Supported: openai, local, mock"
    )
