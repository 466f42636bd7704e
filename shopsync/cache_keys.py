"""
Cache key namespace and TTL tiers.

Every key the engine writes is listed here together with its lifetime.
Lifetimes are chosen per freshness need: the primary dashboard aggregate
is refreshed every sync cycle, secondary aggregates and raw snapshots can
tolerate several missed cycles.
"""
from datetime import datetime
from typing import Dict, Optional

# ─── Aggregates ──────────────────────────────────────────────────────────────
DASHBOARD_SUMMARY = "dashboard:summary"
DASHBOARD_SALES = "dashboard:sales"
DASHBOARD_CUSTOMERS = "dashboard:customers"
DASHBOARD_INVENTORY = "dashboard:inventory"
DASHBOARD_ORDERS = "dashboard:orders"

# ─── Raw snapshots ───────────────────────────────────────────────────────────
ORDERS_LATEST = "orders:latest"
PRODUCTS_LATEST = "products:latest"
CUSTOMERS_LATEST = "customers:latest"

# ─── Sync bookkeeping ────────────────────────────────────────────────────────
SYNC_LAST_SUCCESS = "sync:last_success"
SYNC_LAST_ERROR = "sync:last_error"
SYNC_METRICS_AGGREGATED = "sync:metrics:aggregated"
SYNC_METRICS_PREFIX = "sync:metrics:"

# ─── System records ──────────────────────────────────────────────────────────
SYSTEM_HEALTH_STATUS = "system:health_status"
SYSTEM_LAST_CLEANUP = "system:last_cleanup"
SYSTEM_LAST_WEEKLY_CLEANUP = "system:last_weekly_cleanup"
SYSTEM_VALIDATION_RESULTS = "system:validation_results"
SYSTEM_PERFORMANCE = "system:performance"
SYSTEM_CACHE_HEALTH = "system:cache_health"
HEALTH_PROBE_KEY = "health:probe"
ARCHIVE_SYNC_METRICS_PREFIX = "archive:sync_metrics:"

ALERTS_PREFIX = "alerts:"

MINUTE = 60
HOUR = 60 * MINUTE
DAY = 24 * HOUR


class TTL:
    """Lifetime of each key class, in seconds."""

    DASHBOARD_SUMMARY = MINUTE
    DASHBOARD_SECONDARY = 5 * MINUTE
    ORDERS_SNAPSHOT = 10 * MINUTE
    PRODUCTS_SNAPSHOT = 20 * MINUTE
    CUSTOMERS_SNAPSHOT = 20 * MINUTE
    ALERTS = 15 * MINUTE
    SYNC_METRICS_CYCLE = HOUR
    SYNC_METRICS_AGGREGATED = DAY
    SYNC_LAST_ERROR = DAY
    HEALTH_STATUS = 10 * MINUTE
    HEALTH_PROBE = MINUTE
    VALIDATION_RESULTS = 30 * MINUTE
    PERFORMANCE = 10 * MINUTE
    LAST_CLEANUP = DAY
    LAST_WEEKLY_CLEANUP = 7 * DAY
    ARCHIVE = 30 * DAY


# Keys written by the orchestrator on every successful cycle
SYNC_WRITTEN_TTLS: Dict[str, int] = {
    DASHBOARD_SUMMARY: TTL.DASHBOARD_SUMMARY,
    DASHBOARD_SALES: TTL.DASHBOARD_SECONDARY,
    DASHBOARD_CUSTOMERS: TTL.DASHBOARD_SECONDARY,
    DASHBOARD_INVENTORY: TTL.DASHBOARD_SECONDARY,
    DASHBOARD_ORDERS: TTL.DASHBOARD_SECONDARY,
    ORDERS_LATEST: TTL.ORDERS_SNAPSHOT,
    PRODUCTS_LATEST: TTL.PRODUCTS_SNAPSHOT,
    CUSTOMERS_LATEST: TTL.CUSTOMERS_SNAPSHOT,
}

# Keys whose TTL the daily cleanup refreshes
HOT_KEYS = (
    DASHBOARD_SUMMARY,
    DASHBOARD_SALES,
    DASHBOARD_CUSTOMERS,
    DASHBOARD_INVENTORY,
)


def ttl_for(key: str) -> Optional[int]:
    """TTL tier of an orchestrator-written key, or None if it is not one."""
    return SYNC_WRITTEN_TTLS.get(key)


def shortest_sync_ttl() -> int:
    return min(SYNC_WRITTEN_TTLS.values())


def alerts_key(category: str) -> str:
    return f"{ALERTS_PREFIX}{category}"


def sync_metrics_key(cycle_id: int) -> str:
    return f"{SYNC_METRICS_PREFIX}{cycle_id}"


def archive_key(when: datetime) -> str:
    """Archive key for the ISO week containing `when`, e.g. 2026-W42."""
    year, week, _ = when.isocalendar()
    return f"{ARCHIVE_SYNC_METRICS_PREFIX}{year}-W{week:02d}"
