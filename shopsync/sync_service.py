"""
Sync orchestrator: one fetch, aggregate and cache-write cycle at a time.

State machine:
    Idle --trigger--> Running --body ok------> Idle (Success)
                              --body raised--> Idle (Failure)
    Idle? no --trigger--> logged no-op (not queued)

Features:
- Single-flight guard backed by an asyncio.Lock
- Concurrent per-entity fetches through the cursor paginator
- Tiered TTL writes for aggregates, raw snapshots and the last-sync marker
- Consecutive failure counter with escalation
- Bounded in-memory cycle history plus per-cycle metrics in the cache
"""
import asyncio
from collections import deque
from typing import Any, Deque, Dict, Iterable, List, Optional, Tuple

from shopsync import cache_keys
from shopsync.aggregation import AggregationAdapter, default_adapter
from shopsync.alerts import SYSTEM, AlertStore
from shopsync.cache import CacheStore
from shopsync.cache_keys import TTL
from shopsync.config import SyncConfig, config
from shopsync.events import EventBus, SyncEvent
from shopsync.exceptions import CacheBackendError, TransientUpstreamError, error_summary
from shopsync.models import (
    Alert,
    CycleOutcome,
    EntityKind,
    Severity,
    SyncCycle,
    SyncHealth,
    SyncState,
    utc_now,
)
from shopsync.observability import get_logger, timed
from shopsync.pagination import CursorPaginator, PaginationResult
from shopsync.upstream import UpstreamClient

logger = get_logger(__name__)

SNAPSHOT_KEYS = {
    EntityKind.ORDERS: (cache_keys.ORDERS_LATEST, TTL.ORDERS_SNAPSHOT),
    EntityKind.PRODUCTS: (cache_keys.PRODUCTS_LATEST, TTL.PRODUCTS_SNAPSHOT),
    EntityKind.CUSTOMERS: (cache_keys.CUSTOMERS_LATEST, TTL.CUSTOMERS_SNAPSHOT),
}


class SyncOrchestrator:
    """
    Runs sync cycles and owns the SyncState.

    Only one cycle runs at a time. A trigger that arrives while a cycle
    is running returns immediately with None.
    """

    def __init__(
        self,
        client: UpstreamClient,
        paginator: CursorPaginator,
        cache: CacheStore,
        adapter: Optional[AggregationAdapter] = None,
        events: Optional[EventBus] = None,
        alert_store: Optional[AlertStore] = None,
        sync_config: Optional[SyncConfig] = None,
    ):
        self.client = client
        self.paginator = paginator
        self.cache = cache
        self.adapter = adapter or default_adapter()
        self.events = events or EventBus()
        self.alert_store = alert_store or AlertStore(cache)
        self.config = sync_config or config.sync

        self.state = SyncState()
        self.history: Deque[SyncCycle] = deque(maxlen=self.config.history_size)
        self._guard = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self.state.running

    # ═══════════════════════════════════════════════════════════════════════════
    # CYCLE
    # ═══════════════════════════════════════════════════════════════════════════

    async def run_cycle(self, trigger: str = "schedule") -> Optional[SyncCycle]:
        """
        Run one sync cycle unless one is already running.

        Never raises for a failed cycle: the error is recorded on the
        returned SyncCycle and in the state.

        Returns:
            The closed cycle, or None if the trigger was skipped
        """
        if self._guard.locked():
            logger.info(
                "Sync already running, skipping trigger",
                extra={"trigger": trigger, "cycle_id": self.state.cycle_count}
            )
            await self.events.emit(
                SyncEvent.SYNC_SKIPPED,
                {"trigger": trigger, "running_cycle": self.state.cycle_count},
                source="orchestrator",
            )
            return None

        # Uncontended acquire completes without suspending
        await self._guard.acquire()
        self.state.running = True
        self.state.cycle_count += 1
        cycle = SyncCycle(cycle_id=self.state.cycle_count, trigger=trigger)

        try:
            logger.info(f"Sync cycle {cycle.cycle_id} started", extra={"trigger": trigger})
            await self.events.emit(
                SyncEvent.SYNC_STARTED,
                {"cycle_id": cycle.cycle_id, "trigger": trigger},
                source="orchestrator",
            )
            error_message = await self._run_body(cycle)
            outcome = CycleOutcome.SUCCESS if error_message is None else CycleOutcome.FAILURE
            cycle.close(outcome, error_message)
            self._record_outcome(cycle)
        finally:
            if not cycle.closed:
                # Cancelled from outside
                cycle.close(CycleOutcome.FAILURE, "Sync cycle cancelled")
                self._record_outcome(cycle)
            self.state.running = False
            self._guard.release()

        await self._after_cycle(cycle)
        return cycle

    async def trigger_sync(self) -> Optional[SyncCycle]:
        """Manual trigger; same state machine as the scheduled run."""
        logger.info("Manual sync triggered")
        return await self.run_cycle(trigger="manual")

    async def _run_body(self, cycle: SyncCycle) -> Optional[str]:
        """Execute the cycle body; returns the error message on failure."""
        timeout = self.config.cycle_timeout_seconds
        try:
            if timeout > 0:
                await asyncio.wait_for(self._execute(cycle), timeout=timeout)
            else:
                await self._execute(cycle)
            return None
        except asyncio.TimeoutError:
            logger.error(
                f"Sync cycle {cycle.cycle_id} exceeded {timeout}s deadline",
                extra={"cycle_id": cycle.cycle_id}
            )
            return f"Sync cycle exceeded {timeout}s deadline"
        except Exception as e:
            logger.error(
                f"Sync cycle {cycle.cycle_id} failed: {e}",
                exc_info=True,
                extra={"cycle_id": cycle.cycle_id, **error_summary(e)}
            )
            return str(e) or type(e).__name__

    @timed("sync_cycle")
    async def _execute(self, cycle: SyncCycle) -> None:
        if not await self.client.health_check():
            raise TransientUpstreamError("Upstream API unreachable, skipping fetch")

        results = await self._fetch_entities(self.adapter.required_kinds())

        cycle.record_counts = {kind.value: len(r.records) for kind, r in results.items()}
        truncated = sorted(kind.value for kind, r in results.items() if r.truncated)
        if truncated:
            cycle.truncated = True
            logger.warning(
                f"Sync cycle {cycle.cycle_id} used partial data for: {', '.join(truncated)}",
                extra={"cycle_id": cycle.cycle_id, "truncated": truncated}
            )

        records = {kind: r.records for kind, r in results.items()}
        aggregates = await self.adapter.run(records)

        writes: List[Tuple[str, Any, int]] = []
        ttls = {a.key: a.ttl for a in self.adapter.aggregators}
        for key, value in aggregates.items():
            writes.append((key, value, ttls[key]))
        for kind, kind_records in records.items():
            key, ttl = SNAPSHOT_KEYS[kind]
            writes.append((key, kind_records[:self.config.snapshot_size], ttl))

        await self._write_all(writes)

        await self.cache.set(
            cache_keys.SYNC_LAST_SUCCESS,
            {
                "cycle_id": cycle.cycle_id,
                "timestamp": utc_now().isoformat(),
                "record_counts": cycle.record_counts,
                "truncated": cycle.truncated,
            },
            ttl=self.config.last_success_ttl,
        )

    async def _fetch_entities(
        self, kinds: Iterable[EntityKind]
    ) -> Dict[EntityKind, PaginationResult]:
        """Fetch entity kinds concurrently; one failure cancels the rest."""
        tasks = {kind: asyncio.create_task(self._fetch(kind)) for kind in kinds}
        if not tasks:
            return {}
        try:
            await asyncio.gather(*tasks.values())
        except BaseException:
            for task in tasks.values():
                task.cancel()
            await asyncio.gather(*tasks.values(), return_exceptions=True)
            raise
        return {kind: task.result() for kind, task in tasks.items()}

    async def _fetch(self, kind: EntityKind) -> PaginationResult:
        if kind is EntityKind.ORDERS:
            return await self.paginator.fetch_recent_orders(hours=self.config.recent_order_hours)
        if kind is EntityKind.PRODUCTS:
            return await self.paginator.fetch_all_with_stats(kind, record_cap=self.config.product_cap)
        return await self.paginator.fetch_all_with_stats(kind, record_cap=self.config.customer_cap)

    async def _write_all(self, writes: List[Tuple[str, Any, int]]) -> None:
        """
        Write cache entries concurrently.

        Individual failed writes are logged. If nothing could be written
        the cycle has published nothing and fails.
        """
        results = await asyncio.gather(
            *(self.cache.try_set(key, value, ttl) for key, value, ttl in writes)
        )
        failed = [key for (key, _, _), result in zip(writes, results) if not result.ok]
        if failed and len(failed) == len(writes):
            raise CacheBackendError("set", None, f"all {len(writes)} writes failed")
        if failed:
            logger.warning(
                f"{len(failed)} of {len(writes)} cache writes failed",
                extra={"keys": failed}
            )

    # ═══════════════════════════════════════════════════════════════════════════
    # OUTCOME BOOKKEEPING
    # ═══════════════════════════════════════════════════════════════════════════

    def _record_outcome(self, cycle: SyncCycle) -> None:
        self.state.last_cycle = cycle
        self.history.append(cycle)
        if cycle.outcome is CycleOutcome.SUCCESS:
            self.state.consecutive_failures = 0
        else:
            self.state.consecutive_failures += 1
            self.state.last_error = cycle.error_message

    async def _after_cycle(self, cycle: SyncCycle) -> None:
        """Events, escalation and persisted metrics. Never changes the outcome."""
        try:
            if cycle.outcome is CycleOutcome.SUCCESS:
                logger.info(
                    f"Sync cycle {cycle.cycle_id} completed in {cycle.duration_ms:.0f}ms",
                    extra={"record_counts": cycle.record_counts, "truncated": cycle.truncated}
                )
                await self.events.emit(SyncEvent.SYNC_COMPLETED, cycle.to_dict(), source="orchestrator")
            else:
                await self._handle_failure(cycle)

            await self._store_metrics(cycle)
        except Exception as e:
            logger.error(f"Post-cycle bookkeeping failed for cycle {cycle.cycle_id}: {e}", exc_info=True)

    async def _handle_failure(self, cycle: SyncCycle) -> None:
        failures = self.state.consecutive_failures
        logger.warning(
            f"Sync cycle {cycle.cycle_id} failed ({failures} consecutive)",
            extra={"cycle_id": cycle.cycle_id, "error": cycle.error_message}
        )
        await self.cache.set(
            cache_keys.SYNC_LAST_ERROR,
            {
                "cycle_id": cycle.cycle_id,
                "error": cycle.error_message,
                "consecutive_failures": failures,
                "timestamp": utc_now().isoformat(),
            },
            ttl=TTL.SYNC_LAST_ERROR,
        )
        await self.events.emit(
            SyncEvent.SYNC_FAILED,
            {**cycle.to_dict(), "consecutive_failures": failures},
            source="orchestrator",
        )

        threshold = self.config.failure_escalation_threshold
        if failures >= threshold:
            logger.error(
                f"Sync has failed {failures} times in a row",
                extra={"threshold": threshold, "last_error": cycle.error_message}
            )
            await self.events.emit(
                SyncEvent.SYNC_FAILURE_ESCALATED,
                {"consecutive_failures": failures, "last_error": cycle.error_message},
                source="orchestrator",
            )
            await self.alert_store.append(SYSTEM, Alert(
                type="SYNC_FAILURE_ESCALATED",
                severity=Severity.CRITICAL,
                subject_key="sync",
                details={"consecutive_failures": failures, "last_error": cycle.error_message},
            ))

    async def _store_metrics(self, cycle: SyncCycle) -> None:
        await self.cache.set(
            cache_keys.sync_metrics_key(cycle.cycle_id),
            cycle.to_dict(),
            ttl=TTL.SYNC_METRICS_CYCLE,
        )

        current = await self.cache.get(cache_keys.SYNC_METRICS_AGGREGATED)
        aggregated = current if isinstance(current, dict) else {}
        total = aggregated.get("total_syncs", 0) + 1
        total_duration = aggregated.get("total_duration_ms", 0.0) + (cycle.duration_ms or 0.0)
        success = cycle.outcome is CycleOutcome.SUCCESS
        aggregated.update({
            "total_syncs": total,
            "successful_syncs": aggregated.get("successful_syncs", 0) + (1 if success else 0),
            "failed_syncs": aggregated.get("failed_syncs", 0) + (0 if success else 1),
            "truncated_syncs": aggregated.get("truncated_syncs", 0) + (1 if cycle.truncated else 0),
            "total_duration_ms": round(total_duration, 2),
            "average_duration_ms": round(total_duration / total, 2),
            "last_updated": utc_now().isoformat(),
        })
        await self.cache.set(
            cache_keys.SYNC_METRICS_AGGREGATED, aggregated, ttl=TTL.SYNC_METRICS_AGGREGATED
        )

    # ═══════════════════════════════════════════════════════════════════════════
    # QUERIES & ADMIN
    # ═══════════════════════════════════════════════════════════════════════════

    def reset_failure_count(self) -> None:
        """Clear the consecutive failure counter (nothing else)."""
        previous = self.state.consecutive_failures
        self.state.consecutive_failures = 0
        logger.info(f"Sync failure count reset (was {previous})")

    def get_status(self) -> Dict[str, Any]:
        status = self.state.to_dict()
        status["status"] = SyncHealth.from_failures(self.state.consecutive_failures).value
        status["interval_seconds"] = self.config.interval_seconds
        return status

    def get_metrics(self) -> Dict[str, Any]:
        """Aggregates over the in-memory cycle history."""
        cycles = list(self.history)
        durations = [c.duration_ms for c in cycles if c.duration_ms is not None]
        successes = sum(1 for c in cycles if c.outcome is CycleOutcome.SUCCESS)
        return {
            "cycles": len(cycles),
            "successes": successes,
            "failures": len(cycles) - successes,
            "truncated": sum(1 for c in cycles if c.truncated),
            "success_rate_percent": round(successes / len(cycles) * 100, 1) if cycles else 0.0,
            "average_duration_ms": round(sum(durations) / len(durations), 2) if durations else 0.0,
            "max_duration_ms": max(durations) if durations else 0.0,
            "recent": [c.to_dict() for c in cycles[-10:]],
        }
