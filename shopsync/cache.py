"""
Redis cache store.

Provides:
- Async Redis client (redis.asyncio) with JSON values
- Explicit TTL on every write (SETEX)
- Result-typed operations (`try_get`, `try_set`, ...) that never raise
- Plain convenience forms (`get`, `set`, ...) built on top of them
- Cache-aside `get_or_compute` that survives a broken backend
- Pattern invalidation via SCAN and a full wipe reserved for emergencies

Usage:
    store = CacheStore(url="redis://localhost:6379/0")
    await store.connect()

    await store.set("dashboard:summary", {"orders": 12}, ttl=60)
    summary = await store.get_or_compute("dashboard:summary", build_summary, ttl=60)
"""
import asyncio
import inspect
import json
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

import redis.asyncio as redis

from shopsync.config import config
from shopsync.exceptions import CacheBackendError
from shopsync.observability import Timer, get_logger, metrics

logger = get_logger(__name__)


@dataclass(frozen=True)
class CacheResult:
    """
    Outcome of a cache operation.

    `ok` is False only when the backend failed or is unavailable; a miss
    is a successful read with `hit=False`.
    """
    ok: bool
    hit: bool = False
    value: Any = None
    error: Optional[CacheBackendError] = None

    @classmethod
    def success(cls, value: Any = None, hit: bool = False) -> "CacheResult":
        return cls(ok=True, hit=hit, value=value)

    @classmethod
    def failure(cls, error: CacheBackendError) -> "CacheResult":
        return cls(ok=False, error=error)


@dataclass
class CacheStats:
    """Cache statistics for monitoring."""

    hits: int = 0
    misses: int = 0
    errors: int = 0
    sets: int = 0
    invalidations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return (self.hits / total * 100) if total > 0 else 0.0

    def to_dict(self) -> dict:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "errors": self.errors,
            "sets": self.sets,
            "invalidations": self.invalidations,
            "hit_rate_percent": round(self.hit_rate, 2),
        }

    def reset(self) -> None:
        self.hits = 0
        self.misses = 0
        self.errors = 0
        self.sets = 0
        self.invalidations = 0


class CacheStore:
    """
    Async Redis cache with graceful degradation.

    When Redis is disabled or unreachable every operation returns a failed
    CacheResult (or the miss/no-op value for the plain forms) instead of
    raising. Callers own key naming; there is no invalidation cascade.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        enabled: Optional[bool] = None,
        default_ttl: Optional[int] = None,
        client: Any = None,
    ):
        self.url = url or config.redis.url
        self.enabled = config.redis.enabled if enabled is None else enabled
        self.default_ttl = default_ttl or config.redis.default_ttl
        self._client = client
        self._connected = client is not None
        self._stats = CacheStats()
        self._lock = asyncio.Lock()

    async def connect(self) -> bool:
        """
        Connect to Redis server.

        Returns:
            True if connected successfully, False otherwise
        """
        if not self.enabled:
            logger.info("Redis cache disabled by configuration")
            return False

        async with self._lock:
            if self.is_connected:
                return True
            try:
                if self._client is None:
                    self._client = redis.from_url(
                        self.url,
                        encoding="utf-8",
                        decode_responses=True,
                        socket_timeout=config.redis.socket_timeout,
                        socket_connect_timeout=config.redis.socket_timeout,
                    )
                await self._client.ping()
                self._connected = True
                logger.info(f"Redis connected: {self.url}")
                return True
            except Exception as e:
                logger.warning(f"Redis connection failed: {e}")
                self._connected = False
                return False

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            self._connected = False
            logger.info("Redis disconnected")

    @property
    def is_connected(self) -> bool:
        return self._connected and self._client is not None

    def _unavailable(self, operation: str, key: Optional[str] = None) -> CacheResult:
        reason = "disabled" if not self.enabled else "not connected"
        return CacheResult.failure(CacheBackendError(operation, key, reason))

    def _backend_error(self, operation: str, key: Optional[str], exc: Exception) -> CacheResult:
        self._stats.errors += 1
        metrics.record_error("cache_backend")
        logger.debug(f"Cache {operation} error for {key}: {exc}")
        return CacheResult.failure(CacheBackendError(operation, key, str(exc)))

    # ═══════════════════════════════════════════════════════════════════════════
    # RESULT-TYPED OPERATIONS
    # ═══════════════════════════════════════════════════════════════════════════

    async def try_get(self, key: str) -> CacheResult:
        if not self.is_connected:
            self._stats.misses += 1
            return self._unavailable("get", key)

        try:
            with Timer("cache_get") as t:
                raw = await self._client.get(key)
            metrics.record_timing("cache_get", t.elapsed_ms)
            if raw is None:
                self._stats.misses += 1
                return CacheResult.success(hit=False)
            value = json.loads(raw)
        except Exception as e:
            return self._backend_error("get", key, e)

        self._stats.hits += 1
        return CacheResult.success(value, hit=True)

    async def try_set(self, key: str, value: Any, ttl: Optional[int] = None) -> CacheResult:
        """
        Write a JSON value with an explicit TTL.

        Args:
            key: Cache key
            value: JSON-serializable value (non-JSON types are stringified)
            ttl: Time-to-live in seconds (default: the configured default TTL)
        """
        if not self.is_connected:
            return self._unavailable("set", key)

        ttl = ttl or self.default_ttl
        if ttl <= 0:
            return CacheResult.failure(CacheBackendError("set", key, f"invalid ttl {ttl}"))

        try:
            serialized = json.dumps(value, default=str)
            with Timer("cache_set") as t:
                await self._client.setex(key, ttl, serialized)
            metrics.record_timing("cache_set", t.elapsed_ms)
        except Exception as e:
            return self._backend_error("set", key, e)

        self._stats.sets += 1
        return CacheResult.success(value)

    async def try_delete(self, key: str) -> CacheResult:
        if not self.is_connected:
            return self._unavailable("delete", key)
        try:
            removed = await self._client.delete(key)
        except Exception as e:
            return self._backend_error("delete", key, e)
        self._stats.invalidations += 1
        return CacheResult.success(bool(removed))

    async def try_exists(self, key: str) -> CacheResult:
        if not self.is_connected:
            return self._unavailable("exists", key)
        try:
            count = await self._client.exists(key)
        except Exception as e:
            return self._backend_error("exists", key, e)
        return CacheResult.success(count > 0, hit=count > 0)

    async def try_ttl(self, key: str) -> CacheResult:
        """Remaining lifetime in seconds; value is None for a missing key."""
        if not self.is_connected:
            return self._unavailable("ttl", key)
        try:
            remaining = await self._client.ttl(key)
        except Exception as e:
            return self._backend_error("ttl", key, e)
        # -2: no such key, -1: key without expiry
        if remaining == -2:
            return CacheResult.success(None)
        return CacheResult.success(remaining, hit=True)

    async def try_touch(self, key: str, ttl: int) -> CacheResult:
        """Reset the TTL of an existing key. Value is False if the key is gone."""
        if not self.is_connected:
            return self._unavailable("touch", key)
        try:
            updated = await self._client.expire(key, ttl)
        except Exception as e:
            return self._backend_error("touch", key, e)
        return CacheResult.success(bool(updated))

    async def try_scan(self, pattern: str) -> CacheResult:
        """Collect keys matching a glob pattern using SCAN (never KEYS)."""
        if not self.is_connected:
            return self._unavailable("scan", pattern)
        try:
            found: List[str] = []
            cursor = 0
            while True:
                cursor, keys = await self._client.scan(cursor=cursor, match=pattern, count=100)
                found.extend(keys)
                if cursor == 0:
                    break
        except Exception as e:
            return self._backend_error("scan", pattern, e)
        return CacheResult.success(found)

    # ═══════════════════════════════════════════════════════════════════════════
    # CONVENIENCE FORMS
    # ═══════════════════════════════════════════════════════════════════════════

    async def get(self, key: str) -> Optional[Any]:
        """Cached value, or None on miss or backend failure."""
        result = await self.try_get(key)
        return result.value if result.hit else None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        return (await self.try_set(key, value, ttl)).ok

    async def delete(self, key: str) -> bool:
        result = await self.try_delete(key)
        return result.ok and bool(result.value)

    async def exists(self, key: str) -> bool:
        result = await self.try_exists(key)
        return result.ok and bool(result.value)

    async def ttl(self, key: str) -> Optional[int]:
        result = await self.try_ttl(key)
        return result.value if result.ok else None

    async def touch(self, key: str, ttl: int) -> bool:
        result = await self.try_touch(key, ttl)
        return result.ok and bool(result.value)

    async def scan_keys(self, pattern: str) -> List[str]:
        result = await self.try_scan(pattern)
        return result.value if result.ok else []

    async def get_or_compute(
        self,
        key: str,
        factory: Callable[[], Any],
        ttl: Optional[int] = None,
    ) -> Any:
        """
        Cache-aside read.

        A hit returns the cached value. A miss or a backend error calls
        `factory` exactly once (sync or async), attempts to store the result
        and returns it even if the store fails. Errors raised by `factory`
        propagate to the caller.

        Args:
            key: Cache key
            factory: Callable computing the value from the source of truth
            ttl: Time-to-live in seconds for the stored value
        """
        cached = await self.try_get(key)
        if cached.ok and cached.hit:
            return cached.value
        if not cached.ok:
            logger.warning(
                f"Cache read failed for {key}, computing from source",
                extra={"error": str(cached.error)},
            )

        value = factory()
        if inspect.isawaitable(value):
            value = await value

        written = await self.try_set(key, value, ttl)
        if not written.ok:
            logger.warning(
                f"Cache write failed for {key}, returning computed value",
                extra={"error": str(written.error)},
            )

        return value

    async def invalidate_pattern(self, pattern: str) -> int:
        """
        Delete every key matching a glob pattern.

        Args:
            pattern: Redis glob pattern (e.g., "temp:*")

        Returns:
            Number of keys deleted (0 when the backend is unavailable)
        """
        if not self.is_connected:
            return 0

        try:
            deleted = 0
            cursor = 0
            while True:
                cursor, keys = await self._client.scan(cursor=cursor, match=pattern, count=100)
                if keys:
                    deleted += await self._client.delete(*keys)
                if cursor == 0:
                    break
        except Exception as e:
            self._backend_error("invalidate_pattern", pattern, e)
            return 0

        if deleted:
            self._stats.invalidations += deleted
            logger.debug(f"Invalidated {deleted} keys matching '{pattern}'")
        return deleted

    async def clear_all(self) -> bool:
        """
        Wipe the whole cache database (FLUSHDB).

        Destructive: only the emergency path and explicit operator action
        call this.
        """
        if not self.is_connected:
            logger.warning("Cache clear requested but backend is unavailable")
            return False
        try:
            await self._client.flushdb()
        except Exception as e:
            self._backend_error("clear_all", None, e)
            return False
        logger.warning("Cache cleared (FLUSHDB)")
        return True

    def get_stats(self) -> dict:
        return {
            "enabled": self.enabled,
            "connected": self.is_connected,
            "url": self.url if self.is_connected else None,
            **self._stats.to_dict(),
        }

    def reset_stats(self) -> None:
        self._stats.reset()
