"""
Response cache stores for the Gateway.

A store maps a cache key (caller subject plus exact URL) to the raw JSON body
of the first successful response for that key. Stores are created once per
gateway instance and injected into the response cache middleware.
"""

import re
from typing import Any, Dict, Optional, TYPE_CHECKING
import redis.asyncio as redis

from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.config import BaseConfig


REDIS_KEY_PREFIX = "pms:response:"

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def build_cache_key(subject: str, url: str) -> str:
    """Compose the cache key for a caller subject and an exact URL."""
    return f"{subject}|{url}"


def _escape_glob(value: str) -> str:
    """Escape Redis MATCH glob characters so they match literally."""
    return _GLOB_SPECIAL.sub(r"\\\1", value)


def split_cache_key(key: str) -> tuple:
    """Return (subject, url) for a key built by build_cache_key."""
    subject, _, url = key.partition("|")
    return subject, url


class ResponseCacheStore:
    """Interface shared by response cache backends."""

    backend = "abstract"

    async def get(self, key: str) -> Optional[bytes]:
        raise NotImplementedError

    async def set(self, key: str, body: bytes) -> bool:
        raise NotImplementedError

    async def invalidate_path(self, path_prefix: str) -> int:
        """Drop every entry, for any subject, whose URL starts with path_prefix."""
        raise NotImplementedError

    async def clear(self) -> None:
        raise NotImplementedError

    async def stats(self) -> Dict[str, Any]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class InMemoryResponseStore(ResponseCacheStore):
    """Process-local response store.

    Entries live until the owning gateway process exits: there is no TTL and
    no size bound.
    """

    backend = "memory"

    def __init__(self):
        self._entries: Dict[str, bytes] = {}
        self.hits = 0
        self.misses = 0

    async def get(self, key: str) -> Optional[bytes]:
        body = self._entries.get(key)
        if body is None:
            self.misses += 1
        else:
            self.hits += 1
        return body

    async def set(self, key: str, body: bytes) -> bool:
        self._entries[key] = body
        return True

    async def invalidate_path(self, path_prefix: str) -> int:
        stale = [
            key for key in self._entries
            if split_cache_key(key)[1].startswith(path_prefix)
        ]
        for key in stale:
            del self._entries[key]
        return len(stale)

    async def clear(self) -> None:
        self._entries.clear()

    async def stats(self) -> Dict[str, Any]:
        return {
            "backend": self.backend,
            "entries": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
        }


class RedisResponseStore(ResponseCacheStore):
    """Redis-backed response store shared by gateway replicas."""

    backend = "redis"

    def __init__(self, redis_url: str, ttl: Optional[int] = None, key_prefix: str = REDIS_KEY_PREFIX):
        self.redis_url = redis_url
        self.ttl = ttl
        self.key_prefix = key_prefix
        self.logger = get_logger("gateway.response_cache")
        self._redis: Optional[redis.Redis] = None
        self.hits = 0
        self.misses = 0

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url)
        return self._redis

    def _redis_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def get(self, key: str) -> Optional[bytes]:
        try:
            redis_client = await self._get_redis()
            cached = await redis_client.get(self._redis_key(key))
        except Exception as exc:
            self.logger.error("Response cache get error", error=str(exc))
            self.misses += 1
            return None

        if cached is None:
            self.misses += 1
            return None

        self.hits += 1
        return cached if isinstance(cached, bytes) else str(cached).encode("utf-8")

    async def set(self, key: str, body: bytes) -> bool:
        try:
            redis_client = await self._get_redis()
            if self.ttl:
                await redis_client.setex(self._redis_key(key), self.ttl, body)
            else:
                await redis_client.set(self._redis_key(key), body)
            return True
        except Exception as exc:
            self.logger.error("Response cache set error", error=str(exc))
            return False

    async def invalidate_path(self, path_prefix: str) -> int:
        deleted = 0
        try:
            redis_client = await self._get_redis()
            pattern = f"{self.key_prefix}*|{_escape_glob(path_prefix)}*"
            async for redis_key in redis_client.scan_iter(match=pattern):
                deleted += await redis_client.delete(redis_key)
        except Exception as exc:
            self.logger.error("Response cache invalidation error", path_prefix=path_prefix, error=str(exc))
        return deleted

    async def clear(self) -> None:
        try:
            redis_client = await self._get_redis()
            async for redis_key in redis_client.scan_iter(match=f"{self.key_prefix}*"):
                await redis_client.delete(redis_key)
        except Exception as exc:
            self.logger.error("Response cache clear error", error=str(exc))

    async def stats(self) -> Dict[str, Any]:
        entries: Optional[int] = 0
        try:
            redis_client = await self._get_redis()
            async for _ in redis_client.scan_iter(match=f"{self.key_prefix}*"):
                entries += 1
        except Exception as exc:
            self.logger.error("Response cache stats error", error=str(exc))
            entries = None

        return {
            "backend": self.backend,
            "entries": entries,
            "hits": self.hits,
            "misses": self.misses,
            "ttl_seconds": self.ttl,
        }

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def create_response_store(config: "BaseConfig") -> Optional[ResponseCacheStore]:
    """Build the response store selected by configuration.

    Returns None when response caching is disabled.
    """
    backend = config.response_cache_backend.lower()
    if backend == "disabled":
        return None
    if backend == "redis":
        return RedisResponseStore(config.redis_url, ttl=config.response_cache_ttl)
    if backend == "memory":
        return InMemoryResponseStore()
    raise ValueError(f"Unknown response cache backend: {config.response_cache_backend}")
