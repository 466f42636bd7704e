"""
Integration tests for shopsync/cache.py

Tests the Redis cache store against an in-memory client, including the
fallback behavior when the backend is unavailable or failing.
"""
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from shopsync.cache import CacheResult, CacheStats, CacheStore
from shopsync.exceptions import CacheBackendError


class TestCacheStats:
    """Tests for CacheStats class."""

    def test_hit_rate_empty(self):
        """Hit rate is 0 when no requests."""
        assert CacheStats().hit_rate == 0.0

    def test_to_dict(self):
        """Converts to dictionary correctly."""
        d = CacheStats(hits=10, misses=5, errors=1, sets=8, invalidations=2).to_dict()

        assert d["errors"] == 1
        assert d["hit_rate_percent"] == pytest.approx(66.67, rel=0.01)


class TestCacheStoreDisabled:
    """Tests for CacheStore when disabled."""

    @pytest.mark.asyncio
    async def test_connect_when_disabled(self):
        """Connect returns False when disabled."""
        store = CacheStore(enabled=False)
        assert await store.connect() is False
        assert store.is_connected is False

    @pytest.mark.asyncio
    async def test_operations_fail_softly(self):
        """Every result-typed operation reports failure instead of raising."""
        store = CacheStore(enabled=False)

        result = await store.try_get("k")
        assert result.ok is False
        assert isinstance(result.error, CacheBackendError)
        assert (await store.try_set("k", 1, ttl=10)).ok is False
        assert await store.get("k") is None
        assert await store.set("k", 1) is False
        assert await store.invalidate_pattern("*") == 0
        assert await store.clear_all() is False

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        """A failing ping leaves the store disconnected."""
        client = MagicMock()
        client.ping = AsyncMock(side_effect=ConnectionError("refused"))
        store = CacheStore(enabled=True, client=client)
        store._connected = False

        assert await store.connect() is False
        assert store.is_connected is False


class TestCacheStoreOperations:
    """Tests for CacheStore against FakeRedis."""

    @pytest.mark.asyncio
    async def test_set_and_get(self, cache, fake_redis):
        """Values are JSON encoded with an explicit TTL."""
        assert await cache.set("dashboard:summary", {"orders": 3}, ttl=60) is True

        assert json.loads(fake_redis.data["dashboard:summary"]) == {"orders": 3}
        assert fake_redis.ttls["dashboard:summary"] == 60
        assert await cache.get("dashboard:summary") == {"orders": 3}

    @pytest.mark.asyncio
    async def test_default_ttl(self, cache, fake_redis):
        """Writes without TTL use the store default."""
        await cache.set("k", "v")
        assert fake_redis.ttls["k"] == 300

    @pytest.mark.asyncio
    async def test_miss_is_success(self, cache):
        """A miss is a successful read without a hit."""
        result = await cache.try_get("absent")
        assert result == CacheResult(ok=True, hit=False)
        assert cache.get_stats()["misses"] == 1

    @pytest.mark.asyncio
    async def test_invalid_ttl(self, cache):
        """Negative TTLs are refused."""
        assert (await cache.try_set("k", 1, ttl=-5)).ok is False

    @pytest.mark.asyncio
    async def test_backend_error_counts(self, cache, fake_redis):
        """Backend exceptions become failed results and bump the error count."""
        fake_redis.fail = True

        result = await cache.try_get("k")

        assert result.ok is False
        assert "redis down" in str(result.error)
        assert cache.get_stats()["errors"] == 1

    @pytest.mark.asyncio
    async def test_ttl_exists_touch(self, cache):
        """TTL, existence and touch reflect the backend."""
        await cache.set("k", 1, ttl=100)

        assert await cache.exists("k") is True
        assert await cache.ttl("k") == 100
        assert await cache.touch("k", 500) is True
        assert await cache.ttl("k") == 500
        assert await cache.ttl("absent") is None
        assert await cache.touch("absent", 10) is False

    @pytest.mark.asyncio
    async def test_delete(self, cache):
        """Delete reports whether a key was removed."""
        await cache.set("k", 1)
        assert await cache.delete("k") is True
        assert await cache.delete("k") is False

    @pytest.mark.asyncio
    async def test_invalidate_pattern(self, cache, fake_redis):
        """Only matching keys are deleted."""
        for key in ("temp:1", "temp:2", "processing:9", "dashboard:summary"):
            await cache.set(key, 1)

        deleted = await cache.invalidate_pattern("temp:*")

        assert deleted == 2
        assert set(fake_redis.data) == {"processing:9", "dashboard:summary"}

    @pytest.mark.asyncio
    async def test_scan_keys(self, cache):
        """Scan returns matching keys."""
        await cache.set("sync:metrics:1", {})
        await cache.set("sync:metrics:2", {})
        await cache.set("sync:last_success", {})

        assert sorted(await cache.scan_keys("sync:metrics:*")) == ["sync:metrics:1", "sync:metrics:2"]

    @pytest.mark.asyncio
    async def test_clear_all(self, cache, fake_redis):
        """Full wipe empties the database."""
        await cache.set("a", 1)

        assert await cache.clear_all() is True
        assert fake_redis.data == {}
        assert fake_redis.flush_count == 1

    @pytest.mark.asyncio
    async def test_disconnect(self, cache, fake_redis):
        """Disconnect closes the client."""
        await cache.disconnect()
        assert fake_redis.closed is True
        assert cache.is_connected is False


class TestGetOrCompute:
    """Tests for the cache-aside read."""

    @pytest.mark.asyncio
    async def test_hit_skips_factory(self, cache):
        """Cached values are returned without computing."""
        await cache.set("k", {"cached": True})
        factory = MagicMock()

        assert await cache.get_or_compute("k", factory, ttl=60) == {"cached": True}
        factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_miss_computes_and_stores(self, cache, fake_redis):
        """Misses call the factory once and store the result."""
        factory = AsyncMock(return_value={"fresh": 1})

        value = await cache.get_or_compute("k", factory, ttl=60)

        assert value == {"fresh": 1}
        factory.assert_awaited_once()
        assert fake_redis.ttls["k"] == 60

    @pytest.mark.asyncio
    async def test_backend_down_still_returns_value(self, cache, fake_redis):
        """Broken get and set fall through to the source of truth."""
        fake_redis.fail = True
        factory = MagicMock(return_value=42)

        assert await cache.get_or_compute("k", factory, ttl=60) == 42
        factory.assert_called_once()

    @pytest.mark.asyncio
    async def test_set_failure_returns_value(self, cache, fake_redis):
        """A failed write after computing does not lose the value."""
        fake_redis.setex = AsyncMock(side_effect=ConnectionError("readonly replica"))

        assert await cache.get_or_compute("k", lambda: "v", ttl=60) == "v"

    @pytest.mark.asyncio
    async def test_factory_error_propagates(self, cache):
        """Errors from the source of truth reach the caller."""
        def factory():
            raise RuntimeError("database down")

        with pytest.raises(RuntimeError):
            await cache.get_or_compute("k", factory, ttl=60)
