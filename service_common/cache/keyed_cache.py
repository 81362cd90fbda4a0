"""
Keyed cache with a Redis primary and an in-process fallback.
"""

from datetime import timedelta
from enum import Enum
from typing import Any, Dict, Optional, Union

import redis.asyncio as redis

from ..errors import CacheUnavailableError
from ..logging import get_logger
from ..metrics import ResilienceMetrics
from .memory_store import CacheEntry, MemoryStore

TTL = Union[int, float, timedelta]


class CacheBackend(Enum):
    """Which store the cache currently targets."""
    REMOTE = "remote"
    FALLBACK = "fallback"


def _ttl_seconds(ttl: Optional[TTL]) -> Optional[float]:
    if ttl is None:
        return None
    if isinstance(ttl, timedelta):
        return ttl.total_seconds()
    return float(ttl)


class KeyedCache:
    """String-keyed cache that degrades from Redis to process memory.

    Every operation tries Redis first while the backend is ``REMOTE``. The
    first Redis error is logged, flips the backend to ``FALLBACK`` for all
    later calls, and the same operation is carried out on the in-process
    store before returning. Nothing reconnects on its own; only a fresh
    ``initialize()`` brings Redis back.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client: Optional[redis.Redis] = None,
        required: bool = False,
        memory_store: Optional[MemoryStore] = None,
        metrics: Optional[ResilienceMetrics] = None,
        socket_timeout: float = 5.0,
    ):
        self.redis_url = redis_url
        self.required = required
        self.socket_timeout = socket_timeout
        self.metrics = metrics
        self.logger = get_logger("service_common.cache")
        self.memory = memory_store if memory_store is not None else MemoryStore()

        self._redis: Optional[redis.Redis] = client
        self._backend = CacheBackend.FALLBACK

    @property
    def backend(self) -> CacheBackend:
        return self._backend

    @property
    def using_remote(self) -> bool:
        return self._backend == CacheBackend.REMOTE and self._redis is not None

    async def initialize(self) -> None:
        """Connect to Redis, or settle on the in-process store.

        Raises ``CacheUnavailableError`` only when the cache was built with
        ``required=True``.
        """
        if self.using_remote:
            return

        try:
            if self._redis is None:
                if not self.redis_url:
                    raise CacheUnavailableError("No Redis URL configured")
                self._redis = redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_connect_timeout=self.socket_timeout,
                    socket_timeout=self.socket_timeout,
                )
            await self._redis.ping()
        except Exception as e:
            self._set_backend(CacheBackend.FALLBACK)
            if self.required:
                self.logger.error("Redis required but unavailable", redis_url=self.redis_url, error=str(e))
                raise CacheUnavailableError(
                    "Remote cache unavailable at startup",
                    details={"redis_url": self.redis_url, "error": str(e)},
                ) from e
            self.logger.info(
                "Redis not available, falling back to in-memory cache",
                redis_url=self.redis_url,
                error=str(e),
            )
            return

        self._set_backend(CacheBackend.REMOTE)
        self.logger.info("Connected to Redis", redis_url=self.redis_url)

    async def close(self) -> None:
        """Close the Redis client; the cache keeps serving from memory."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("Redis cache stopped")
        self._set_backend(CacheBackend.FALLBACK)

    async def set(self, key: str, value: str, ttl: Optional[TTL] = None) -> None:
        """Store ``value`` under ``key``, expiring after ``ttl`` seconds if given."""
        seconds = _ttl_seconds(ttl)
        if self.using_remote:
            try:
                await self._redis.set(key, value)
                if seconds is not None:
                    await self._redis.expire(key, max(1, int(seconds)))
                return
            except Exception as e:
                self._fall_back("set", e)

        self.memory.set(key, value, seconds)

    async def get(self, key: str) -> Optional[str]:
        """Return the cached value, or None when absent or expired."""
        if self.using_remote:
            try:
                result = await self._redis.get(key)
                return None if result is None else str(result)
            except Exception as e:
                self._fall_back("get", e)

        entry = self.memory.get_entry(key)
        return entry.value if entry else None

    async def delete(self, key: str) -> None:
        if self.using_remote:
            try:
                await self._redis.delete(key)
                return
            except Exception as e:
                self._fall_back("delete", e)

        self.memory.delete(key)

    async def increment(self, key: str, ttl: Optional[TTL] = None) -> int:
        """Increment a counter and return its new value.

        The TTL is applied only when the counter is created; later increments
        inside the window keep the original expiry, which is what fixed-window
        rate limiting needs.
        """
        seconds = _ttl_seconds(ttl)
        if self.using_remote:
            try:
                value = int(await self._redis.incr(key))
                if value == 1 and seconds is not None:
                    await self._redis.expire(key, max(1, int(seconds)))
                return value
            except Exception as e:
                self._fall_back("increment", e)

        entry = self.memory.get_entry(key)
        current = 0
        if entry is not None:
            try:
                current = int(entry.value)
            except ValueError:
                current = 0

        new_value = current + 1
        if entry is not None:
            expires_at = entry.expires_at
        else:
            expires_at = self.memory.now() + seconds if seconds is not None else None

        self.memory.set_entry(key, CacheEntry(value=str(new_value), expires_at=expires_at))
        return new_value

    async def exists(self, key: str) -> bool:
        if self.using_remote:
            try:
                return int(await self._redis.exists(key)) == 1
            except Exception as e:
                self._fall_back("exists", e)

        return self.memory.get_entry(key) is not None

    async def health_check(self) -> Dict[str, Any]:
        """Report which backend is active and whether Redis answers."""
        redis_ok = False
        if self._redis is not None:
            try:
                redis_ok = bool(await self._redis.ping())
            except Exception:
                redis_ok = False

        return {
            "backend": self._backend.value,
            "redis_reachable": redis_ok,
            "memory_entries": len(self.memory),
        }

    def _fall_back(self, operation: str, error: Exception) -> None:
        self.logger.warning(
            "Redis operation failed, switching to memory fallback",
            operation=operation,
            error=str(error),
        )
        if self.metrics:
            self.metrics.increment_counter("cache_backend_fallbacks_total", operation=operation)
        self._set_backend(CacheBackend.FALLBACK)

    def _set_backend(self, backend: CacheBackend) -> None:
        self._backend = backend
        if self.metrics:
            self.metrics.set_gauge("cache_remote_active", 1 if backend == CacheBackend.REMOTE else 0)
