"""
Health & resource monitor.

Runs its own probe cycle, independent of the sync schedule:
- cache:        probe key round trip (write, read back, delete) with latency
- upstream:     reachability plus remaining query cost budget
- memory:       process memory ratio (psutil)
- dependencies: runtime stack importable

Separate jobs validate dashboard freshness and record performance
snapshots under the `system:` keys.

Any FAIL makes the report UNHEALTHY, any WARN makes it DEGRADED. When the
memory check fails the cleanup manager's emergency path is invoked.
Nothing raised by a probe escapes the monitor.
"""
import asyncio
import importlib.util
import time
import uuid
from collections import deque
from datetime import datetime
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

import psutil

from shopsync import cache_keys
from shopsync.alerts import PERFORMANCE, AlertStore
from shopsync.cache import CacheStore
from shopsync.cache_keys import TTL
from shopsync.cleanup import CleanupManager
from shopsync.config import MonitorConfig, config
from shopsync.events import EventBus, SyncEvent
from shopsync.exceptions import ResourcePressureError
from shopsync.models import (
    Alert,
    CheckResult,
    CheckStatus,
    HealthReport,
    HealthStatus,
    Severity,
    parse_timestamp,
    utc_now,
)
from shopsync.observability import get_logger
from shopsync.sync_service import SyncOrchestrator
from shopsync.upstream import UpstreamClient

logger = get_logger(__name__)

MemoryReader = Callable[[], float]


def process_memory_ratio() -> float:
    """Resident memory of this process as a fraction of system memory."""
    return psutil.Process().memory_percent() / 100.0


def classify_latency(latency_ms: float, warn_ms: float, fail_ms: float) -> CheckStatus:
    if latency_ms > fail_ms:
        return CheckStatus.FAIL
    if latency_ms > warn_ms:
        return CheckStatus.WARN
    return CheckStatus.PASS


def classify_memory(ratio: float, warn_ratio: float, fail_ratio: float) -> CheckStatus:
    if ratio > fail_ratio:
        return CheckStatus.FAIL
    if ratio > warn_ratio:
        return CheckStatus.WARN
    return CheckStatus.PASS


def derive_status(checks: List[CheckResult]) -> HealthStatus:
    statuses = {c.status for c in checks}
    if CheckStatus.FAIL in statuses:
        return HealthStatus.UNHEALTHY
    if CheckStatus.WARN in statuses:
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


class HealthMonitor:
    """Probes engine dependencies and reacts to memory pressure."""

    def __init__(
        self,
        cache: CacheStore,
        client: UpstreamClient,
        orchestrator: SyncOrchestrator,
        cleanup: CleanupManager,
        memory_reader: Optional[MemoryReader] = None,
        events: Optional[EventBus] = None,
        alert_store: Optional[AlertStore] = None,
        monitor_config: Optional[MonitorConfig] = None,
        version: Optional[str] = None,
    ):
        self.cache = cache
        self.client = client
        self.orchestrator = orchestrator
        self.cleanup = cleanup
        self.memory_reader = memory_reader or process_memory_ratio
        self.events = events or EventBus()
        self.alert_store = alert_store or AlertStore(cache)
        self.config = monitor_config or config.monitor
        self.version = version or config.version

        self._started = time.monotonic()
        self._last_report: Optional[HealthReport] = None
        self._history: Deque[Dict[str, Any]] = deque(maxlen=self.config.history_size)

    # ═══════════════════════════════════════════════════════════════════════════
    # PROBE CYCLE
    # ═══════════════════════════════════════════════════════════════════════════

    async def run_health_cycle(self) -> HealthReport:
        """
        Scheduled entry point: full probe, emergency reaction, persistence.

        Returns:
            The report of this probe cycle
        """
        report = await self.check_health()
        # Written before any emergency wipe so the wipe leaves nothing behind
        await self.cache.set(cache_keys.SYSTEM_HEALTH_STATUS, report.to_dict(), ttl=TTL.HEALTH_STATUS)

        ratio = self._measured_memory_ratio(report)
        if (
            report.overall_status is HealthStatus.UNHEALTHY
            and ratio is not None
            and ratio > self.config.memory_fail_ratio
        ):
            pressure = ResourcePressureError(ratio, self.config.memory_fail_ratio)
            logger.critical(f"Memory pressure detected: {pressure}")
            await self.cleanup.emergency_cleanup(pressure)
        elif report.overall_status is not HealthStatus.HEALTHY:
            await self._record_degradation(report)

        return report

    @staticmethod
    def _measured_memory_ratio(report: HealthReport) -> Optional[float]:
        """Ratio from the memory check, None if the probe produced no reading."""
        memory = report.check("memory")
        if memory is None or not memory.details or "ratio" not in memory.details:
            return None
        return float(memory.details["ratio"])

    async def check_health(self, quick: bool = False) -> HealthReport:
        """
        Build a health report.

        Args:
            quick: Only probe cache and memory

        Returns:
            HealthReport (never raises)
        """
        probes: Dict[str, Callable[[], Awaitable[CheckResult]]] = {
            "cache": self.check_cache,
            "memory": self.check_memory,
        }
        if not quick:
            probes["upstream"] = self.check_upstream
            probes["dependencies"] = self.check_dependencies

        try:
            checks = list(await asyncio.gather(
                *(self._guarded(name, probe) for name, probe in probes.items())
            ))
            report = HealthReport(
                overall_status=derive_status(checks),
                checks=checks,
                uptime_seconds=time.monotonic() - self._started,
                version=self.version,
                sync=self.orchestrator.get_status(),
            )
        except Exception as e:
            logger.error(f"Health check crashed: {e}", exc_info=True)
            report = HealthReport(
                overall_status=HealthStatus.UNHEALTHY,
                checks=[CheckResult("monitor", CheckStatus.FAIL, message=str(e))],
                uptime_seconds=time.monotonic() - self._started,
                version=self.version,
            )

        self._last_report = report
        self._history.append({
            "generated_at": report.generated_at.isoformat(),
            "overall_status": report.overall_status.value,
            "quick": quick,
        })

        log = logger.info if report.overall_status is HealthStatus.HEALTHY else logger.warning
        log(
            f"Health check: {report.overall_status.value}",
            extra={"checks": {c.name: c.status.value for c in report.checks}}
        )
        return report

    async def _guarded(
        self, name: str, probe: Callable[[], Awaitable[CheckResult]]
    ) -> CheckResult:
        try:
            return await probe()
        except Exception as e:
            logger.warning(f"Probe {name} raised: {e}")
            return CheckResult(name, CheckStatus.FAIL, message=f"Probe error: {e}")

    async def _record_degradation(self, report: HealthReport) -> None:
        failing = {c.name: c.status.value for c in report.checks if c.status is not CheckStatus.PASS}
        await self.events.emit(
            SyncEvent.HEALTH_DEGRADED,
            {"overall_status": report.overall_status.value, "checks": failing},
            source="monitor",
        )
        severity = Severity.HIGH if report.overall_status is HealthStatus.UNHEALTHY else Severity.MEDIUM
        await self.alert_store.append(PERFORMANCE, Alert(
            type=f"HEALTH_{report.overall_status.value}",
            severity=severity,
            subject_key=",".join(sorted(failing)),
            details=failing,
        ))

    # ═══════════════════════════════════════════════════════════════════════════
    # PROBES
    # ═══════════════════════════════════════════════════════════════════════════

    async def check_cache(self) -> CheckResult:
        token = uuid.uuid4().hex
        start = time.perf_counter()

        written = await self.cache.try_set(cache_keys.HEALTH_PROBE_KEY, token, ttl=TTL.HEALTH_PROBE)
        if not written.ok:
            return CheckResult("cache", CheckStatus.FAIL, message=str(written.error))

        read = await self.cache.try_get(cache_keys.HEALTH_PROBE_KEY)
        await self.cache.try_delete(cache_keys.HEALTH_PROBE_KEY)
        latency_ms = round((time.perf_counter() - start) * 1000, 2)

        if not read.ok:
            return CheckResult("cache", CheckStatus.FAIL, latency_ms, message=str(read.error))
        if read.value != token:
            return CheckResult("cache", CheckStatus.FAIL, latency_ms, message="Probe value mismatch")

        status = classify_latency(latency_ms, self.config.cache_warn_ms, self.config.cache_fail_ms)
        message = None if status is CheckStatus.PASS else f"Slow cache round trip ({latency_ms:.0f}ms)"
        return CheckResult("cache", status, latency_ms, message, details=self.cache.get_stats())

    async def check_upstream(self) -> CheckResult:
        start = time.perf_counter()
        reachable = await self.client.health_check()
        latency_ms = round((time.perf_counter() - start) * 1000, 2)

        if not reachable:
            return CheckResult("upstream", CheckStatus.FAIL, latency_ms, "Upstream API unreachable")

        usage = self.client.get_api_usage()
        details = usage.to_dict() if usage else {}
        if usage and usage.available_ratio < self.config.api_credit_warn_ratio:
            return CheckResult(
                "upstream",
                CheckStatus.WARN,
                latency_ms,
                f"API query budget low ({usage.available_ratio * 100:.0f}% left)",
                details,
            )
        return CheckResult("upstream", CheckStatus.PASS, latency_ms, details=details)

    async def check_memory(self) -> CheckResult:
        ratio = float(self.memory_reader())
        status = classify_memory(ratio, self.config.memory_warn_ratio, self.config.memory_fail_ratio)
        message = None if status is CheckStatus.PASS else f"Memory usage at {ratio * 100:.1f}%"
        return CheckResult("memory", status, message=message, details={
            "ratio": round(ratio, 4),
            "warn_ratio": self.config.memory_warn_ratio,
            "fail_ratio": self.config.memory_fail_ratio,
        })

    async def check_dependencies(self) -> CheckResult:
        missing = [
            name for name in self.config.critical_modules
            if importlib.util.find_spec(name) is None
        ]
        if missing:
            return CheckResult(
                "dependencies",
                CheckStatus.FAIL,
                message=f"Missing modules: {', '.join(missing)}",
                details={"missing": missing},
            )
        return CheckResult(
            "dependencies", CheckStatus.PASS, details={"modules": list(self.config.critical_modules)}
        )

    # ═══════════════════════════════════════════════════════════════════════════
    # DATA VALIDATION & PERFORMANCE SNAPSHOTS
    # ═══════════════════════════════════════════════════════════════════════════

    async def validate_data(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Check that the published dashboard is present and fresh.

        Results are written to `system:validation_results`. Never raises.

        Returns:
            {timestamp, results, overall_status}
        """
        now = now or utc_now()
        results: List[CheckResult] = []
        try:
            results.append(await self._check_summary_freshness(now))
            reachable = await self.client.health_check()
            results.append(CheckResult(
                "upstream_connectivity",
                CheckStatus.PASS if reachable else CheckStatus.FAIL,
                message="Upstream API is accessible" if reachable else "Upstream API is not accessible",
            ))
        except Exception as e:
            logger.error(f"Data validation failed: {e}", exc_info=True)
            results.append(CheckResult("validation", CheckStatus.FAIL, message=str(e)))

        statuses = {r.status for r in results}
        if CheckStatus.FAIL in statuses:
            overall = CheckStatus.FAIL
        elif CheckStatus.WARN in statuses:
            overall = CheckStatus.WARN
        else:
            overall = CheckStatus.PASS

        validation = {
            "timestamp": now.isoformat(),
            "results": [r.to_dict() for r in results],
            "overall_status": overall.value,
        }
        await self.cache.set(
            cache_keys.SYSTEM_VALIDATION_RESULTS, validation, ttl=TTL.VALIDATION_RESULTS
        )
        if overall is not CheckStatus.PASS:
            logger.warning(
                f"Data validation: {overall.value}",
                extra={"checks": {r.name: r.status.value for r in results}}
            )
        return validation

    async def _check_summary_freshness(self, now: datetime) -> CheckResult:
        summary = await self.cache.get(cache_keys.DASHBOARD_SUMMARY)
        if not summary:
            return CheckResult(
                "dashboard_summary_exists", CheckStatus.FAIL,
                message="Dashboard summary not found in cache",
            )

        generated_at = parse_timestamp(summary.get("generated_at")) if isinstance(summary, dict) else None
        if generated_at is None:
            return CheckResult("dashboard_summary_exists", CheckStatus.PASS)

        age_minutes = (now - generated_at).total_seconds() / 60
        if age_minutes > self.config.summary_max_age_minutes:
            return CheckResult(
                "dashboard_summary_freshness", CheckStatus.WARN,
                message=f"Dashboard summary is {round(age_minutes)} minutes old",
                details={"age_minutes": round(age_minutes, 1)},
            )
        return CheckResult(
            "dashboard_summary_freshness", CheckStatus.PASS,
            message="Dashboard summary is fresh",
            details={"age_minutes": round(age_minutes, 1)},
        )

    async def record_performance_snapshot(self) -> Dict[str, Any]:
        """Write engine counters, memory and uptime to `system:performance`."""
        status = self.orchestrator.get_status()
        last_cycle = status.get("last_cycle") or {}
        try:
            memory_ratio: Optional[float] = round(float(self.memory_reader()), 4)
        except Exception as e:
            logger.warning(f"Memory reading failed: {e}")
            memory_ratio = None

        snapshot = {
            "timestamp": utc_now().isoformat(),
            "cycle_count": status.get("cycle_count", 0),
            "last_sync_time": last_cycle.get("finished_at"),
            "running": status.get("running", False),
            "memory_ratio": memory_ratio,
            "uptime_seconds": round(time.monotonic() - self._started, 1),
        }
        await self.cache.set(cache_keys.SYSTEM_PERFORMANCE, snapshot, ttl=TTL.PERFORMANCE)
        await self.cache.set(
            cache_keys.SYSTEM_CACHE_HEALTH, self.cache.get_stats(), ttl=TTL.PERFORMANCE
        )
        logger.debug("Performance snapshot recorded", extra={"cycle_id": snapshot["cycle_count"]})
        return snapshot

    # ═══════════════════════════════════════════════════════════════════════════
    # QUERIES
    # ═══════════════════════════════════════════════════════════════════════════

    def get_last_report(self) -> Optional[HealthReport]:
        return self._last_report

    def get_history(self, limit: int = 24) -> List[Dict[str, Any]]:
        return list(self._history)[-limit:]
