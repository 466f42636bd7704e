"""
Operational alerts.

Alerts live in capped, TTL-bound lists under `alerts:<category>`:
- inventory:   stock level snapshot, rebuilt every check
- performance: degraded health probes
- system:      failure escalations, emergency cleanups
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from shopsync import cache_keys
from shopsync.cache import CacheStore
from shopsync.cache_keys import TTL
from shopsync.config import config
from shopsync.models import Alert, EntityKind, Severity, utc_now
from shopsync.observability import get_logger
from shopsync.pagination import CursorPaginator
from shopsync.upstream import edge_nodes

logger = get_logger(__name__)

INVENTORY = "inventory"
PERFORMANCE = "performance"
SYSTEM = "system"


class AlertStore:
    """Reads and writes alert lists in the cache."""

    def __init__(self, cache: CacheStore, list_cap: Optional[int] = None, ttl: int = TTL.ALERTS):
        self.cache = cache
        self.list_cap = list_cap or config.cleanup.alert_list_cap
        self.ttl = ttl

    async def read(self, category: str) -> List[Alert]:
        raw = await self.cache.get(cache_keys.alerts_key(category))
        if not isinstance(raw, list):
            return []
        alerts = []
        for item in raw:
            if isinstance(item, dict):
                alert = Alert.from_dict(item)
                if alert is not None:
                    alerts.append(alert)
        return alerts

    async def replace(self, category: str, alerts: Iterable[Alert]) -> bool:
        """Overwrite a category with the given alerts (newest kept past the cap)."""
        items = [a.to_dict() for a in alerts][-self.list_cap:]
        return await self.cache.set(cache_keys.alerts_key(category), items, self.ttl)

    async def append(self, category: str, *alerts: Alert) -> bool:
        existing = await self.read(category)
        return await self.replace(category, [*existing, *alerts])

    async def prune(
        self,
        category: str,
        max_age: timedelta,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Drop alerts older than `max_age`.

        Returns:
            Number of alerts removed
        """
        alerts = await self.read(category)
        if not alerts:
            return 0
        cutoff = (now or utc_now()) - max_age
        fresh = [a for a in alerts if a.timestamp >= cutoff]
        removed = len(alerts) - len(fresh)
        if removed:
            if fresh:
                await self.replace(category, fresh)
            else:
                await self.cache.delete(cache_keys.alerts_key(category))
        return removed


# ═══════════════════════════════════════════════════════════════════════════════
# INVENTORY
# ═══════════════════════════════════════════════════════════════════════════════

def classify_stock(quantity: int, critical: int, low: int) -> Optional[Tuple[str, Severity]]:
    """Alert type and severity for a stock level, None if stock is fine."""
    if quantity <= 0:
        return "OUT_OF_STOCK", Severity.CRITICAL
    if quantity <= critical:
        return "CRITICAL_LOW_STOCK", Severity.HIGH
    if quantity <= low:
        return "LOW_STOCK", Severity.MEDIUM
    return None


def build_inventory_alerts(
    products: List[Dict[str, Any]],
    critical: int,
    low: int,
    now: Optional[datetime] = None,
) -> List[Alert]:
    """Stock alerts for every tracked variant at or below the low threshold."""
    now = now or utc_now()
    alerts = []
    for product in products:
        for variant in edge_nodes(product.get("variants")):
            if not (variant.get("inventoryItem") or {}).get("tracked"):
                continue
            quantity = int(variant.get("inventoryQuantity") or 0)
            level = classify_stock(quantity, critical, low)
            if level is None:
                continue
            alert_type, severity = level
            alerts.append(Alert(
                type=alert_type,
                severity=severity,
                subject_key=variant.get("sku") or variant.get("id") or "",
                timestamp=now,
                details={
                    "product_title": product.get("title"),
                    "variant_title": variant.get("title"),
                    "current_stock": quantity,
                },
            ))
    return alerts


class InventoryAlertService:
    """Periodic stock level check feeding `alerts:inventory`."""

    def __init__(
        self,
        paginator: CursorPaginator,
        store: AlertStore,
        critical_threshold: Optional[int] = None,
        low_threshold: Optional[int] = None,
    ):
        self.paginator = paginator
        self.store = store
        self.critical_threshold = critical_threshold or config.cleanup.critical_stock_threshold
        self.low_threshold = low_threshold or config.cleanup.low_stock_threshold

    async def check_inventory_alerts(self) -> List[Alert]:
        """
        Fetch products and rebuild the inventory alert list.

        Errors are logged and yield an empty list; the previous alerts
        then simply expire with their TTL.
        """
        try:
            result = await self.paginator.fetch_all_with_stats(EntityKind.PRODUCTS)
            alerts = build_inventory_alerts(
                result.records, self.critical_threshold, self.low_threshold
            )
            if alerts:
                await self.store.replace(INVENTORY, alerts)
                logger.warning(
                    f"Found {len(alerts)} inventory alerts",
                    extra={"products_checked": len(result.records), "truncated": result.truncated}
                )
            else:
                logger.debug("No inventory alerts found")
            return alerts
        except Exception as e:
            logger.error(f"Inventory alerts check failed: {e}", exc_info=True)
            return []
