"""
Redis Embedding Cache

Embedding vectors are cached by model and content hash so re-screening an
application, or screening many applications against the same job posting,
does not pay for the same provider call twice.

Cache Key Pattern:
    emb:{model}:{content_hash}

Redis is optional: every operation degrades to a miss (or a no-op) when the
server is unreachable, and the pipeline carries on without caching.

Usage:
    cache = EmbeddingCache(settings.redis_url)
    key = hash_content(text)
    vector = await cache.get_embedding("text-embedding-3-small", key)
    if vector is None:
        vector = await provider.embed(text)
        await cache.set_embedding("text-embedding-3-small", key, vector)
"""

import json
import hashlib
import logging
from typing import Any, Dict, List, Optional

import redis.asyncio as redis

from app.config import get_settings
from app.middleware.metrics import record_cache_hit, record_cache_miss

logger = logging.getLogger(__name__)

EMBEDDING_TTL = 86400 * 7  # 7 days


def hash_content(*args: Any) -> str:
    """
    Generate a 16-character hex hash from content.

    Dict keys are sorted so equal content hashes equally.
    """
    content = json.dumps(args, sort_keys=True, default=str)
    return hashlib.sha256(content.encode()).hexdigest()[:16]


class EmbeddingCache:
    """
    Redis cache for embedding vectors with graceful degradation.

    The client is created lazily on first use, inside the event loop that
    uses it; call close() before that loop ends.
    """

    def __init__(self, redis_url: str, ttl: int = EMBEDDING_TTL):
        self.redis_url = redis_url
        self.ttl = ttl
        self.redis: Optional[redis.Redis] = None
        self.stats: Dict[str, int] = {"hits": 0, "misses": 0, "errors": 0}

    async def _ensure_connected(self) -> Optional[redis.Redis]:
        if self.redis is None:
            try:
                self.redis = redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True
                )
            except Exception as e:
                logger.warning(f"Failed to connect to Redis: {e}")
                return None
        return self.redis

    @staticmethod
    def _key(model: str, content_hash: str) -> str:
        return f"emb:{model}:{content_hash}"

    async def get_embedding(self, model: str, content_hash: str) -> Optional[List[float]]:
        """
        Get a cached vector.

        Returns:
            The vector, or None on miss or Redis error
        """
        try:
            client = await self._ensure_connected()
            if not client:
                return None

            cached = await client.get(self._key(model, content_hash))
            if cached:
                self.stats["hits"] += 1
                record_cache_hit("embedding")
                return json.loads(cached)

            self.stats["misses"] += 1
            record_cache_miss("embedding")
            return None

        except Exception as e:
            logger.warning(f"Redis get error (embedding cache): {e}")
            self.stats["errors"] += 1
            return None

    async def set_embedding(self, model: str, content_hash: str, embedding: List[float]) -> bool:
        try:
            client = await self._ensure_connected()
            if not client:
                return False

            await client.setex(self._key(model, content_hash), self.ttl, json.dumps(embedding))
            return True

        except Exception as e:
            logger.warning(f"Redis set error (embedding cache): {e}")
            self.stats["errors"] += 1
            return False

    async def health_check(self) -> bool:
        try:
            client = await self._ensure_connected()
            if not client:
                return False

            await client.ping()
            return True

        except Exception as e:
            logger.warning(f"Redis health check failed: {e}")
            return False

    async def close(self) -> None:
        if self.redis:
            try:
                await self.redis.aclose()
            except Exception as e:
                logger.warning(f"Redis close error: {e}")
            self.redis = None


def get_embedding_cache(redis_url: Optional[str] = None) -> EmbeddingCache:
    return EmbeddingCache(redis_url=redis_url or get_settings().redis_url)
