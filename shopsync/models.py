"""
Domain models for the sync engine.

Dataclasses for sync cycles, the orchestrator's state, upstream pages,
health reports and alerts. Everything here is plain data; behavior lives
in the components that own these objects.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp as returned by the upstream API."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class EntityKind(str, Enum):
    """Upstream entity kinds and their GraphQL connection names."""
    ORDERS = "orders"
    PRODUCTS = "products"
    CUSTOMERS = "customers"


class CycleOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


class HealthStatus(str, Enum):
    """Overall engine health."""
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    UNHEALTHY = "UNHEALTHY"


class CheckStatus(str, Enum):
    """Result of a single health probe."""
    PASS = "PASS"
    WARN = "WARN"
    FAIL = "FAIL"


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class SyncHealth(str, Enum):
    """Coarse status derived from the consecutive failure counter."""
    HEALTHY = "HEALTHY"
    WARNING = "WARNING"
    ERROR = "ERROR"

    @classmethod
    def from_failures(cls, consecutive_failures: int) -> "SyncHealth":
        if consecutive_failures > 3:
            return cls.ERROR
        if consecutive_failures > 0:
            return cls.WARNING
        return cls.HEALTHY


# ═══════════════════════════════════════════════════════════════════════════════
# SYNC
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class SyncCycle:
    """
    One execution of the fetch, aggregate and cache-write pipeline.

    Created when the orchestrator enters Running and closed exactly once
    when it leaves. A closed cycle is never modified again.
    """
    cycle_id: int
    trigger: str = "schedule"
    started_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    outcome: Optional[CycleOutcome] = None
    error_message: Optional[str] = None
    record_counts: Dict[str, int] = field(default_factory=dict)
    truncated: bool = False

    @property
    def closed(self) -> bool:
        return self.outcome is not None

    def close(self, outcome: CycleOutcome, error_message: Optional[str] = None) -> None:
        """
        Stamp the end of the cycle.

        Raises:
            RuntimeError: If the cycle was already closed
        """
        if self.closed:
            raise RuntimeError(f"Sync cycle {self.cycle_id} is already closed")
        self.finished_at = utc_now()
        self.duration_ms = round((self.finished_at - self.started_at).total_seconds() * 1000, 2)
        self.outcome = outcome
        self.error_message = error_message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "trigger": self.trigger,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": self.duration_ms,
            "outcome": self.outcome.value if self.outcome else None,
            "error_message": self.error_message,
            "record_counts": dict(self.record_counts),
            "truncated": self.truncated,
        }


@dataclass
class SyncState:
    """Mutable state owned by one orchestrator instance."""
    running: bool = False
    last_cycle: Optional[SyncCycle] = None
    cycle_count: int = 0
    consecutive_failures: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "last_cycle": self.last_cycle.to_dict() if self.last_cycle else None,
            "cycle_count": self.cycle_count,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
        }


@dataclass
class FetchPage:
    """A single page returned by the upstream API."""
    records: List[Dict[str, Any]]
    next_cursor: Optional[str] = None
    has_more: bool = False
    rate_limit_remaining: Optional[float] = None


# ═══════════════════════════════════════════════════════════════════════════════
# HEALTH
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class CheckResult:
    name: str
    status: CheckStatus
    latency_ms: Optional[float] = None
    message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": self.latency_ms,
            "message": self.message,
            "details": self.details,
        }


@dataclass
class HealthReport:
    """Snapshot of engine health. Replaced wholesale on every probe."""
    overall_status: HealthStatus
    checks: List[CheckResult]
    generated_at: datetime = field(default_factory=utc_now)
    uptime_seconds: float = 0.0
    version: str = ""
    sync: Dict[str, Any] = field(default_factory=dict)

    def check(self, name: str) -> Optional[CheckResult]:
        """Look up a check by name."""
        for result in self.checks:
            if result.name == name:
                return result
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall_status": self.overall_status.value,
            "checks": [c.to_dict() for c in self.checks],
            "generated_at": self.generated_at.isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "version": self.version,
            "sync": self.sync,
        }


# ═══════════════════════════════════════════════════════════════════════════════
# ALERTS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class Alert:
    """Operational alert stored in an `alerts:<category>` list."""
    type: str
    severity: Severity
    subject_key: str
    timestamp: datetime = field(default_factory=utc_now)
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "severity": self.severity.value,
            "subject_key": self.subject_key,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["Alert"]:
        """Rebuild an alert read back from the cache; None if unreadable."""
        timestamp = parse_timestamp(data.get("timestamp"))
        if timestamp is None:
            return None
        try:
            severity = Severity(data.get("severity", Severity.LOW.value))
        except ValueError:
            severity = Severity.LOW
        return cls(
            type=data.get("type", "UNKNOWN"),
            severity=severity,
            subject_key=data.get("subject_key", ""),
            timestamp=timestamp,
            details=data.get("details") or {},
        )
