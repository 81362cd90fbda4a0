"""
Unit tests for KeyedCache.
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from service_common.cache.keyed_cache import CacheBackend, KeyedCache
from service_common.cache.memory_store import MemoryStore
from service_common.errors import CacheUnavailableError
from service_common.metrics import ResilienceMetrics


def make_redis_client():
    """AsyncMock standing in for a redis.asyncio client."""
    client = AsyncMock()
    client.ping.return_value = True
    client.get.return_value = None
    client.incr.return_value = 1
    client.exists.return_value = 0
    return client


class TestKeyedCacheRemote:
    """Test cases for the Redis path."""

    @pytest.fixture
    def redis_client(self):
        return make_redis_client()

    @pytest.fixture
    def cache(self, redis_client, fake_clock):
        return KeyedCache(
            client=redis_client,
            memory_store=MemoryStore(clock=fake_clock),
            metrics=ResilienceMetrics("test"),
        )

    @pytest.mark.asyncio
    async def test_initialize_selects_remote(self, cache, redis_client):
        """Test a successful ping selects the remote backend."""
        await cache.initialize()

        assert cache.backend == CacheBackend.REMOTE
        assert cache.using_remote
        redis_client.ping.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_set_with_ttl_sets_expire(self, cache, redis_client):
        """Test SET followed by EXPIRE when a TTL is given."""
        await cache.initialize()

        await cache.set("user:1", "alice", ttl=timedelta(minutes=5))

        redis_client.set.assert_awaited_once_with("user:1", "alice")
        redis_client.expire.assert_awaited_once_with("user:1", 300)

    @pytest.mark.asyncio
    async def test_set_without_ttl_skips_expire(self, cache, redis_client):
        """Test no EXPIRE is sent without a TTL."""
        await cache.initialize()

        await cache.set("user:1", "alice")

        redis_client.expire.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_get_and_exists(self, cache, redis_client):
        """Test GET and EXISTS go to Redis."""
        await cache.initialize()
        redis_client.get.return_value = "alice"
        redis_client.exists.return_value = 1

        assert await cache.get("user:1") == "alice"
        assert await cache.exists("user:1") is True

    @pytest.mark.asyncio
    async def test_increment_sets_ttl_only_on_creation(self, cache, redis_client):
        """Test EXPIRE follows INCR only when the counter was just created."""
        await cache.initialize()
        redis_client.incr.side_effect = [1, 2]

        assert await cache.increment("rate:client", ttl=60) == 1
        assert await cache.increment("rate:client", ttl=60) == 2

        redis_client.expire.assert_awaited_once_with("rate:client", 60)

    @pytest.mark.asyncio
    async def test_delete(self, cache, redis_client):
        """Test DEL is issued."""
        await cache.initialize()

        await cache.delete("user:1")

        redis_client.delete.assert_awaited_once_with("user:1")

    @pytest.mark.asyncio
    async def test_increment_expire_failure_reruns_on_memory(self, cache, redis_client, fake_clock):
        """Test a failed EXPIRE after INCR repeats the whole increment in memory."""
        await cache.initialize()
        redis_client.incr.return_value = 1
        redis_client.expire.side_effect = RedisConnectionError("connection reset")

        assert await cache.increment("rate:tenant-1", ttl=60) == 1

        assert cache.backend == CacheBackend.FALLBACK
        redis_client.incr.assert_awaited_once_with("rate:tenant-1")
        entry = cache.memory.get_entry("rate:tenant-1")
        assert entry.value == "1"
        assert entry.expires_at == fake_clock.now + 60

        assert await cache.increment("rate:tenant-1", ttl=60) == 2
        assert redis_client.incr.await_count == 1

    @pytest.mark.asyncio
    async def test_failure_falls_back_within_call(self, cache, redis_client):
        """Test a Redis error is absorbed and the same call is served from memory."""
        await cache.initialize()
        redis_client.set.side_effect = RedisConnectionError("connection reset")

        await cache.set("user:1", "alice")

        assert cache.backend == CacheBackend.FALLBACK
        assert await cache.get("user:1") == "alice"
        redis_client.get.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fallback_is_sticky(self, cache, redis_client):
        """Test every later operation targets memory after one failure."""
        await cache.initialize()
        redis_client.get.side_effect = ConnectionError("down")

        assert await cache.get("k") is None
        await cache.set("k", "v")
        assert await cache.increment("counter") == 1
        assert await cache.exists("k") is True
        await cache.delete("k")

        redis_client.set.assert_not_awaited()
        redis_client.incr.assert_not_awaited()
        redis_client.exists.assert_not_awaited()
        redis_client.delete.assert_not_awaited()
        assert redis_client.get.await_count == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("operation, args", [
        ("get", ("k",)),
        ("set", ("k", "v")),
        ("delete", ("k",)),
        ("increment", ("k",)),
        ("exists", ("k",)),
    ])
    async def test_no_exception_escapes(self, cache, redis_client, operation, args):
        """Test each operation swallows backend errors."""
        await cache.initialize()
        for method in ("get", "set", "delete", "incr", "exists", "expire"):
            getattr(redis_client, method).side_effect = OSError("unreachable")

        await getattr(cache, operation)(*args)

        assert cache.backend == CacheBackend.FALLBACK

    @pytest.mark.asyncio
    async def test_fallback_counted_in_metrics(self, cache, redis_client):
        """Test the switch to memory is exported."""
        await cache.initialize()
        redis_client.exists.side_effect = RedisConnectionError("down")

        await cache.exists("k")

        assert cache.metrics.sample("cache_backend_fallbacks_total", operation="exists") == 1
        assert cache.metrics.sample("cache_remote_active") == 0

    @pytest.mark.asyncio
    async def test_reinitialize_restores_remote(self, cache, redis_client):
        """Test only initialize() brings Redis back."""
        await cache.initialize()
        redis_client.get.side_effect = RedisConnectionError("blip")
        await cache.get("k")
        assert cache.backend == CacheBackend.FALLBACK

        redis_client.get.side_effect = None
        redis_client.get.return_value = "remote-value"
        await cache.initialize()

        assert cache.backend == CacheBackend.REMOTE
        assert await cache.get("k") == "remote-value"


class TestKeyedCacheInitialize:
    """Test cases for startup behaviour."""

    @pytest.mark.asyncio
    async def test_unreachable_redis_falls_back(self):
        """Test an optional cache starts on memory when Redis is down."""
        client = make_redis_client()
        client.ping.side_effect = RedisConnectionError("refused")
        cache = KeyedCache(client=client)

        await cache.initialize()

        assert cache.backend == CacheBackend.FALLBACK
        await cache.set("k", "v")
        assert await cache.get("k") == "v"

    @pytest.mark.asyncio
    async def test_required_cache_raises(self):
        """Test a required cache propagates startup failure."""
        client = make_redis_client()
        client.ping.side_effect = RedisConnectionError("refused")
        cache = KeyedCache(client=client, required=True)

        with pytest.raises(CacheUnavailableError):
            await cache.initialize()

    @pytest.mark.asyncio
    async def test_required_without_url_raises(self):
        """Test a required cache with nothing to connect to fails loudly."""
        cache = KeyedCache(required=True)

        with pytest.raises(CacheUnavailableError):
            await cache.initialize()

    @pytest.mark.asyncio
    async def test_close_reverts_to_memory(self):
        """Test closing the client leaves a working memory cache."""
        client = make_redis_client()
        cache = KeyedCache(client=client)
        await cache.initialize()

        await cache.close()

        client.aclose.assert_awaited_once()
        assert cache.backend == CacheBackend.FALLBACK
        await cache.set("k", "v")
        assert await cache.get("k") == "v"

    @pytest.mark.asyncio
    async def test_health_check(self):
        """Test health output reports the active backend."""
        client = make_redis_client()
        cache = KeyedCache(client=client)
        await cache.initialize()

        health = await cache.health_check()

        assert health == {"backend": "remote", "redis_reachable": True, "memory_entries": 0}


class TestKeyedCacheFallbackStore:
    """Test cases for the in-process path."""

    @pytest.fixture
    def cache(self, fake_clock):
        return KeyedCache(memory_store=MemoryStore(clock=fake_clock))

    def test_injected_store_is_kept(self, fake_clock):
        """Test an empty injected store is used rather than replaced."""
        store = MemoryStore(max_entries=50, evict_batch=5, clock=fake_clock)

        cache = KeyedCache(memory_store=store)

        assert cache.memory is store
        assert cache.memory.max_entries == 50

    @pytest.mark.asyncio
    async def test_injected_store_bound_applies(self, fake_clock):
        """Test the injected store's own bound limits the fallback."""
        cache = KeyedCache(memory_store=MemoryStore(max_entries=50, evict_batch=5, clock=fake_clock))

        for i in range(51):
            await cache.set(f"key-{i}", "v")

        assert len(cache.memory) <= 50

    @pytest.mark.asyncio
    async def test_get_missing_is_none(self, cache):
        """Test absence is a normal result."""
        assert await cache.get("nothing") is None
        assert await cache.exists("nothing") is False

    @pytest.mark.asyncio
    async def test_set_ttl_expires(self, cache, fake_clock):
        """Test values expire after their TTL."""
        await cache.set("k", "v", ttl=10)
        fake_clock.advance(10.5)

        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_increment_from_nothing(self, cache, fake_clock):
        """Test the first increment returns 1 and sets the TTL."""
        assert await cache.increment("x", ttl=10) == 1

        entry = cache.memory.get_entry("x")
        assert entry.expires_at == fake_clock.now + 10

    @pytest.mark.asyncio
    async def test_increment_preserves_expiry(self, cache, fake_clock):
        """Test a later increment keeps the window set by the first."""
        await cache.increment("x", ttl=10)
        first_expiry = cache.memory.get_entry("x").expires_at
        fake_clock.advance(4)

        assert await cache.increment("x", ttl=10) == 2
        assert cache.memory.get_entry("x").expires_at == first_expiry

        fake_clock.advance(6.5)
        assert await cache.get("x") is None

    @pytest.mark.asyncio
    async def test_increment_after_expiry_starts_new_window(self, cache, fake_clock):
        """Test an expired counter restarts at 1 with a fresh expiry."""
        await cache.increment("x", ttl=10)
        fake_clock.advance(11)

        assert await cache.increment("x", ttl=10) == 1
        assert cache.memory.get_entry("x").expires_at == fake_clock.now + 10

    @pytest.mark.asyncio
    async def test_increment_non_numeric_value(self, cache):
        """Test a non-integer value counts as zero."""
        await cache.set("x", "not-a-number")

        assert await cache.increment("x") == 1

    @pytest.mark.asyncio
    async def test_increment_without_ttl_never_expires(self, cache):
        """Test counters without TTL have no expiry."""
        await cache.increment("x")

        assert cache.memory.get_entry("x").expires_at is None

    @pytest.mark.asyncio
    async def test_store_stays_bounded(self, cache):
        """Test inserting 10,001 entries keeps the store within its bound."""
        for i in range(10_001):
            await cache.set(f"key-{i}", "v")

        assert len(cache.memory) <= 10_000
