"""
Engine wiring and administrative operations.

SyncEngine builds every component from configuration and exposes the
operations an operator surface (HTTP, CLI) calls:

    engine = get_engine()
    await engine.start()

    await engine.trigger_sync()
    status = engine.get_sync_status()
    health = await engine.get_health(quick=True)

    await engine.stop()
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

from shopsync import cache_keys
from shopsync.aggregation import AggregationAdapter, default_adapter
from shopsync.alerts import AlertStore, InventoryAlertService
from shopsync.cache import CacheStore
from shopsync.cleanup import CleanupManager
from shopsync.config import AppConfig, config
from shopsync.events import EventBus, SyncEvent
from shopsync.models import HealthReport, SyncCycle
from shopsync.monitor import HealthMonitor, MemoryReader
from shopsync.observability import correlation_context, get_logger, metrics
from shopsync.pagination import CursorPaginator
from shopsync.scheduler import JobScheduler, build_job_specs
from shopsync.sync_service import SyncOrchestrator
from shopsync.upstream import UpstreamClient

logger = get_logger(__name__)

# Keys reported by the cache overview
OVERVIEW_KEYS = (
    cache_keys.DASHBOARD_SUMMARY,
    cache_keys.DASHBOARD_SALES,
    cache_keys.DASHBOARD_CUSTOMERS,
    cache_keys.DASHBOARD_INVENTORY,
    cache_keys.DASHBOARD_ORDERS,
    cache_keys.SYNC_LAST_SUCCESS,
)


class SyncEngine:
    """Owns the engine components and their lifecycle."""

    def __init__(
        self,
        app_config: Optional[AppConfig] = None,
        cache: Optional[CacheStore] = None,
        client: Optional[UpstreamClient] = None,
        adapter: Optional[AggregationAdapter] = None,
        memory_reader: Optional[MemoryReader] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Args:
            app_config: Configuration (defaults to the environment)
            cache: Cache store (defaults to one built from REDIS_URL)
            client: Upstream client (defaults to one built from SHOPIFY_*)
            adapter: Aggregators (defaults to the stock dashboard set)
            memory_reader: Callable returning process memory ratio
            sleep: Awaitable sleep used by pagination backoff
        """
        self.config = app_config or config
        self.events = EventBus()
        self.cache = cache or CacheStore(
            url=self.config.redis.url,
            enabled=self.config.redis.enabled,
            default_ttl=self.config.redis.default_ttl,
        )
        self.client = client or UpstreamClient()
        self.paginator = CursorPaginator(
            self.client, sleep=sleep, page_size=self.config.upstream.max_page_size
        )
        self.alert_store = AlertStore(self.cache, self.config.cleanup.alert_list_cap)

        self.orchestrator = SyncOrchestrator(
            self.client,
            self.paginator,
            self.cache,
            adapter=adapter or default_adapter(),
            events=self.events,
            alert_store=self.alert_store,
            sync_config=self.config.sync,
        )
        self.cleanup = CleanupManager(
            self.cache,
            alert_store=self.alert_store,
            events=self.events,
            cleanup_config=self.config.cleanup,
            memory_fail_ratio=self.config.monitor.memory_fail_ratio,
        )
        self.monitor = HealthMonitor(
            self.cache,
            self.client,
            self.orchestrator,
            self.cleanup,
            memory_reader=memory_reader,
            events=self.events,
            alert_store=self.alert_store,
            monitor_config=self.config.monitor,
            version=self.config.version,
        )
        self.inventory_alerts = InventoryAlertService(
            self.paginator,
            self.alert_store,
            critical_threshold=self.config.cleanup.critical_stock_threshold,
            low_threshold=self.config.cleanup.low_stock_threshold,
        )
        self.scheduler = JobScheduler(build_job_specs(
            self.config, self.orchestrator, self.monitor, self.inventory_alerts, self.cleanup
        ))

    # ═══════════════════════════════════════════════════════════════════════════
    # LIFECYCLE
    # ═══════════════════════════════════════════════════════════════════════════

    async def start(self) -> None:
        """Connect the cache and upstream client, then start the jobs."""
        connected = await self.cache.connect()
        if not connected:
            logger.warning("Starting without cache backend; reads fall through to the source")
        await self.client.connect()
        await self.scheduler.start()
        logger.info(
            f"Sync engine {self.config.version} started",
            extra={"sync_interval": self.config.sync.interval_seconds}
        )

    async def stop(self) -> None:
        self.scheduler.shutdown(wait=False)
        await self.client.close()
        await self.cache.disconnect()
        logger.info("Sync engine stopped")

    # ═══════════════════════════════════════════════════════════════════════════
    # ADMIN OPERATIONS
    # ═══════════════════════════════════════════════════════════════════════════

    async def trigger_sync(self) -> Optional[SyncCycle]:
        """Run a sync cycle now. None if one is already running."""
        with correlation_context():
            return await self.orchestrator.trigger_sync()

    def reset_failure_count(self) -> None:
        self.orchestrator.reset_failure_count()

    async def trigger_cleanup(self) -> Dict[str, int]:
        with correlation_context():
            return await self.cleanup.trigger_manual_cleanup()

    async def clear_cache(self, pattern: Optional[str] = None) -> Dict[str, Any]:
        """
        Operator cache wipe.

        Args:
            pattern: Glob of keys to delete; None wipes the whole cache
        """
        if pattern:
            deleted = await self.cache.invalidate_pattern(pattern)
            logger.info(f"Cleared {deleted} keys matching '{pattern}'")
            return {"pattern": pattern, "deleted": deleted}

        cleared = await self.cache.clear_all()
        if cleared:
            await self.events.emit(SyncEvent.CACHE_CLEARED, {"reason": "operator"}, source="engine")
        return {"pattern": None, "cleared": cleared}

    def check_memory_pressure(self) -> float:
        """
        Current memory ratio.

        Raises:
            ResourcePressureError: If above the emergency threshold
        """
        ratio = self.monitor.memory_reader()
        self.cleanup.check_memory_pressure(ratio)
        return ratio

    async def get_cleanup_stats(self) -> Dict[str, Any]:
        return await self.cleanup.get_cleanup_stats()

    def get_sync_status(self) -> Dict[str, Any]:
        status = self.orchestrator.get_status()
        status["metrics"] = self.orchestrator.get_metrics()
        status["next_run"] = _isoformat(self.scheduler.get_next_run("shop_sync"))
        return status

    async def get_health(self, quick: bool = False) -> HealthReport:
        return await self.monitor.check_health(quick=quick)

    async def get_cache_overview(self) -> Dict[str, Any]:
        """Presence and remaining TTL of each dashboard key."""
        keys = {}
        for key in OVERVIEW_KEYS:
            keys[key] = {
                "exists": await self.cache.exists(key),
                "ttl": await self.cache.ttl(key),
            }
        return {
            "keys": keys,
            "last_sync": await self.cache.get(cache_keys.SYNC_LAST_SUCCESS),
            "stats": self.cache.get_stats(),
        }

    def get_metrics(self) -> Dict[str, Any]:
        """In-process counters and timings (upstream calls, cache errors)."""
        return metrics.get_stats()


def _isoformat(value) -> Optional[str]:
    return value.isoformat() if value else None


# ═══════════════════════════════════════════════════════════════════════════════
# SINGLETON INSTANCE
# ═══════════════════════════════════════════════════════════════════════════════

_engine: Optional[SyncEngine] = None


def get_engine() -> SyncEngine:
    """Get the process-wide engine, building it on first use."""
    global _engine
    if _engine is None:
        _engine = SyncEngine()
    return _engine
