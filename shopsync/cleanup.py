"""
Retention and cleanup jobs.

- Hourly: prune day-old alerts, drop temp:* / processing:* keys
- Daily (00:00 UTC): drop week-old per-cycle sync metrics, refresh hot keys
- Weekly (Sunday 02:00 UTC): archive aggregated sync metrics
- Emergency: wipe the cache and collect garbage (memory pressure)

Scheduled jobs log their own errors and never raise into the scheduler.
"""
import gc
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from shopsync import cache_keys
from shopsync.alerts import AlertStore
from shopsync.cache import CacheStore
from shopsync.cache_keys import TTL
from shopsync.config import CleanupConfig, config
from shopsync.events import EventBus, SyncEvent
from shopsync.exceptions import ResourcePressureError
from shopsync.models import parse_timestamp, utc_now
from shopsync.observability import get_logger

logger = get_logger(__name__)


def next_daily_run(now: datetime) -> datetime:
    """Next midnight UTC strictly after `now`."""
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight + timedelta(days=1)


def next_weekly_run(now: datetime) -> datetime:
    """Next Sunday 02:00 UTC strictly after `now`."""
    candidate = now.replace(hour=2, minute=0, second=0, microsecond=0)
    # Monday is 0, Sunday is 6
    candidate += timedelta(days=(6 - now.weekday()) % 7)
    if candidate <= now:
        candidate += timedelta(days=7)
    return candidate


class CleanupManager:
    """Owns retention of everything the engine writes besides reports."""

    def __init__(
        self,
        cache: CacheStore,
        alert_store: Optional[AlertStore] = None,
        events: Optional[EventBus] = None,
        cleanup_config: Optional[CleanupConfig] = None,
        memory_fail_ratio: Optional[float] = None,
    ):
        self.cache = cache
        self.alert_store = alert_store or AlertStore(cache)
        self.events = events or EventBus()
        self.config = cleanup_config or config.cleanup
        self.memory_fail_ratio = memory_fail_ratio or config.monitor.memory_fail_ratio
        self.emergency_count = 0
        self.last_emergency_at: Optional[datetime] = None

    # ═══════════════════════════════════════════════════════════════════════════
    # SCHEDULED JOBS
    # ═══════════════════════════════════════════════════════════════════════════

    async def run_hourly(self) -> Dict[str, int]:
        results = {"alerts_removed": 0, "temp_keys_removed": 0}
        try:
            max_age = timedelta(hours=self.config.alert_max_age_hours)
            for category in self.config.alert_categories:
                results["alerts_removed"] += await self.alert_store.prune(category, max_age)
            for pattern in self.config.temp_key_patterns:
                results["temp_keys_removed"] += await self.cache.invalidate_pattern(pattern)

            if any(results.values()):
                logger.info("Hourly cleanup completed", extra=results)
            else:
                logger.debug("Hourly cleanup found nothing to remove")
        except Exception as e:
            logger.error(f"Hourly cleanup failed: {e}", exc_info=True)
        return results

    async def run_daily(self) -> Dict[str, int]:
        """Prune week-old sync metrics and refresh hot key TTLs."""
        results = {"sync_metrics_removed": 0, "hot_keys_refreshed": 0}
        try:
            logger.info("Starting daily cleanup")
            results["sync_metrics_removed"] = await self._prune_sync_metrics()
            results["hot_keys_refreshed"] = await self._refresh_hot_keys()

            await self.cache.set(
                cache_keys.SYSTEM_LAST_CLEANUP,
                {"timestamp": utc_now().isoformat(), "results": results},
                ttl=TTL.LAST_CLEANUP,
            )
            logger.info("Daily cleanup completed", extra=results)
        except Exception as e:
            logger.error(f"Daily cleanup failed: {e}", exc_info=True)
        return results

    async def run_weekly(self) -> Dict[str, int]:
        """Archive the aggregated sync metrics under this ISO week. Best effort."""
        results = {"archived": 0}
        try:
            logger.info("Starting weekly cleanup")
            now = utc_now()
            aggregated = await self.cache.get(cache_keys.SYNC_METRICS_AGGREGATED)
            if aggregated is not None:
                archived = await self.cache.set(
                    cache_keys.archive_key(now),
                    {"archived_at": now.isoformat(), "metrics": aggregated},
                    ttl=TTL.ARCHIVE,
                )
                results["archived"] = int(archived)

            await self.cache.set(
                cache_keys.SYSTEM_LAST_WEEKLY_CLEANUP,
                {"timestamp": now.isoformat(), "results": results},
                ttl=TTL.LAST_WEEKLY_CLEANUP,
            )
            logger.info("Weekly cleanup completed", extra=results)
        except Exception as e:
            logger.error(f"Weekly cleanup failed: {e}", exc_info=True)
        return results

    async def _prune_sync_metrics(self) -> int:
        cutoff = utc_now() - timedelta(days=self.config.sync_metrics_max_age_days)
        removed = 0
        for key in await self.cache.scan_keys(f"{cache_keys.SYNC_METRICS_PREFIX}*"):
            suffix = key[len(cache_keys.SYNC_METRICS_PREFIX):]
            if not suffix.isdigit():
                continue
            record = await self.cache.get(key)
            started = parse_timestamp(record.get("started_at")) if isinstance(record, dict) else None
            if started is None or started < cutoff:
                if await self.cache.delete(key):
                    removed += 1
        return removed

    async def _refresh_hot_keys(self) -> int:
        """Rewrite hot keys that still exist so they don't expire into a cold miss."""
        refreshed = 0
        for key in cache_keys.HOT_KEYS:
            value = await self.cache.get(key)
            if value is None:
                continue
            if await self.cache.set(key, value, ttl=cache_keys.ttl_for(key)):
                refreshed += 1
        return refreshed

    # ═══════════════════════════════════════════════════════════════════════════
    # EMERGENCY
    # ═══════════════════════════════════════════════════════════════════════════

    async def emergency_cleanup(self, reason: Optional[ResourcePressureError] = None) -> Dict[str, Any]:
        """
        Wipe the whole cache and run a garbage collection pass.

        May run while a sync cycle is in flight; that cycle's writes land
        on an empty store.
        """
        logger.warning(
            f"Performing emergency cleanup: {reason or 'operator request'}",
            extra={"ratio": getattr(reason, "ratio", None)}
        )
        cleared = await self.cache.clear_all()
        collected = gc.collect()

        self.emergency_count += 1
        self.last_emergency_at = utc_now()
        result = {
            "cleared": cleared,
            "objects_collected": collected,
            "reason": str(reason) if reason else None,
            "timestamp": self.last_emergency_at.isoformat(),
        }
        await self.events.emit(SyncEvent.CACHE_CLEARED, result, source="cleanup")
        logger.warning("Emergency cleanup completed", extra={"cleared": cleared, "collected": collected})
        return result

    def check_memory_pressure(self, ratio: float) -> None:
        """
        Raises:
            ResourcePressureError: If `ratio` is above the fail threshold
        """
        if ratio > self.memory_fail_ratio:
            raise ResourcePressureError(ratio, self.memory_fail_ratio)

    # ═══════════════════════════════════════════════════════════════════════════
    # ADMIN
    # ═══════════════════════════════════════════════════════════════════════════

    async def trigger_manual_cleanup(self) -> Dict[str, int]:
        logger.info("Manual cleanup triggered")
        return await self.run_daily()

    async def get_cleanup_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utc_now()
        return {
            "last_daily_cleanup": await self.cache.get(cache_keys.SYSTEM_LAST_CLEANUP),
            "last_weekly_cleanup": await self.cache.get(cache_keys.SYSTEM_LAST_WEEKLY_CLEANUP),
            "next_daily_cleanup": next_daily_run(now).isoformat(),
            "next_weekly_cleanup": next_weekly_run(now).isoformat(),
            "emergency_cleanups": self.emergency_count,
            "last_emergency_at": self.last_emergency_at.isoformat() if self.last_emergency_at else None,
        }
