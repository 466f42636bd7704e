"""
Aggregation adapter: turns raw upstream records into cached report values.

The engine treats every aggregator as an opaque function of the fetched
records. Each one is registered under the cache key it produces, declares
which entity kinds it needs and carries the TTL its key is written with.

Usage:
    adapter = AggregationAdapter()

    @adapter.register(cache_keys.DASHBOARD_SUMMARY, requires={EntityKind.ORDERS})
    def summary(records):
        return {"orders": len(records[EntityKind.ORDERS])}

    aggregates = await adapter.run({EntityKind.ORDERS: orders})
"""
import inspect
from collections import Counter
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Set

from shopsync import cache_keys
from shopsync.exceptions import AggregationError
from shopsync.models import EntityKind, parse_timestamp, utc_now
from shopsync.observability import get_logger
from shopsync.upstream import edge_nodes

logger = get_logger(__name__)

Records = Mapping[EntityKind, List[Dict[str, Any]]]
AggregatorFn = Callable[[Records], Any]


@dataclass(frozen=True)
class Aggregator:
    key: str
    requires: FrozenSet[EntityKind]
    func: AggregatorFn
    ttl: int


class AggregationAdapter:
    """Registry of aggregators keyed by the cache key they populate."""

    def __init__(self):
        self._aggregators: Dict[str, Aggregator] = {}

    def register(
        self,
        key: str,
        requires: Iterable[EntityKind],
        ttl: Optional[int] = None,
    ) -> Callable[[AggregatorFn], AggregatorFn]:
        """
        Decorator registering an aggregator.

        Args:
            key: Cache key the result is written to
            requires: Entity kinds the function reads
            ttl: Lifetime of the key; defaults to the key's TTL tier

        Raises:
            ValueError: If no TTL is given and the key has no tier
        """
        lifetime = ttl if ttl is not None else cache_keys.ttl_for(key)
        if lifetime is None or lifetime <= 0:
            raise ValueError(f"No TTL tier for aggregate key {key!r}")

        def decorator(func: AggregatorFn) -> AggregatorFn:
            self._aggregators[key] = Aggregator(key, frozenset(requires), func, lifetime)
            return func

        return decorator

    def unregister(self, key: str) -> bool:
        return self._aggregators.pop(key, None) is not None

    @property
    def aggregators(self) -> List[Aggregator]:
        return list(self._aggregators.values())

    def required_kinds(self) -> Set[EntityKind]:
        """Union of entity kinds every registered aggregator reads."""
        kinds: Set[EntityKind] = set()
        for aggregator in self._aggregators.values():
            kinds |= aggregator.requires
        return kinds

    async def run(self, records: Records) -> Dict[str, Any]:
        """
        Run every aggregator over the fetched records.

        Returns:
            Mapping of cache key to aggregate value

        Raises:
            AggregationError: The first aggregator that fails aborts the run
        """
        results: Dict[str, Any] = {}
        for aggregator in self._aggregators.values():
            subset = {kind: records.get(kind, []) for kind in aggregator.requires}
            try:
                value = aggregator.func(subset)
                if inspect.isawaitable(value):
                    value = await value
            except Exception as e:
                raise AggregationError(aggregator.key, e) from e
            results[aggregator.key] = value
        return results


# ═══════════════════════════════════════════════════════════════════════════════
# DEFAULT AGGREGATORS
# ═══════════════════════════════════════════════════════════════════════════════

def _money(node: Optional[Dict[str, Any]], field_name: str) -> float:
    """Amount from a `<field>{shopMoney{amount}}` MoneyBag, 0.0 if absent."""
    try:
        return float(((node or {}).get(field_name) or {})["shopMoney"]["amount"])
    except (KeyError, TypeError, ValueError):
        return 0.0


def _plain_money(node: Optional[Dict[str, Any]], field_name: str) -> float:
    try:
        return float(((node or {}).get(field_name) or {})["amount"])
    except (KeyError, TypeError, ValueError):
        return 0.0


def summarize(records: Records) -> Dict[str, Any]:
    orders = records.get(EntityKind.ORDERS, [])
    products = records.get(EntityKind.PRODUCTS, [])
    customers = records.get(EntityKind.CUSTOMERS, [])
    revenue = sum(_money(o, "totalPriceSet") for o in orders)
    return {
        "orders": len(orders),
        "revenue": round(revenue, 2),
        "average_order_value": round(revenue / len(orders), 2) if orders else 0.0,
        "products": len(products),
        "customers": len(customers),
        "generated_at": utc_now().isoformat(),
    }


def sales_by_day(records: Records) -> Dict[str, Any]:
    revenue: Dict[str, float] = {}
    count: Counter = Counter()
    for order in records.get(EntityKind.ORDERS, []):
        created = parse_timestamp(order.get("createdAt"))
        day = created.date().isoformat() if created else "unknown"
        revenue[day] = revenue.get(day, 0.0) + _money(order, "totalPriceSet")
        count[day] += 1
    return {
        "by_day": [
            {"date": day, "orders": count[day], "revenue": round(revenue[day], 2)}
            for day in sorted(revenue)
        ],
        "total_revenue": round(sum(revenue.values()), 2),
    }


def customer_overview(records: Records, top: int = 10) -> Dict[str, Any]:
    customers = records.get(EntityKind.CUSTOMERS, [])
    ranked = sorted(customers, key=lambda c: _plain_money(c, "amountSpent"), reverse=True)
    repeat = sum(1 for c in customers if int(c.get("numberOfOrders") or 0) > 1)
    return {
        "total": len(customers),
        "repeat_customers": repeat,
        "top_spenders": [
            {
                "id": c.get("id"),
                "name": c.get("displayName"),
                "spent": _plain_money(c, "amountSpent"),
                "orders": int(c.get("numberOfOrders") or 0),
            }
            for c in ranked[:top]
        ],
    }


def inventory_overview(records: Records) -> Dict[str, Any]:
    products = records.get(EntityKind.PRODUCTS, [])
    tracked = 0
    out_of_stock = 0
    units = 0
    for product in products:
        for variant in edge_nodes(product.get("variants")):
            if not (variant.get("inventoryItem") or {}).get("tracked"):
                continue
            tracked += 1
            quantity = int(variant.get("inventoryQuantity") or 0)
            units += max(quantity, 0)
            if quantity <= 0:
                out_of_stock += 1
    return {
        "products": len(products),
        "tracked_variants": tracked,
        "out_of_stock_variants": out_of_stock,
        "units_on_hand": units,
    }


def order_overview(records: Records, recent: int = 20) -> Dict[str, Any]:
    orders = records.get(EntityKind.ORDERS, [])
    financial = Counter(o.get("displayFinancialStatus") or "UNKNOWN" for o in orders)
    fulfillment = Counter(o.get("displayFulfillmentStatus") or "UNKNOWN" for o in orders)
    return {
        "by_financial_status": dict(financial),
        "by_fulfillment_status": dict(fulfillment),
        "recent": [
            {
                "id": o.get("id"),
                "name": o.get("name"),
                "created_at": o.get("createdAt"),
                "total": _money(o, "totalPriceSet"),
            }
            for o in orders[:recent]
        ],
    }


def default_adapter() -> AggregationAdapter:
    """Adapter populated with the stock dashboard aggregates."""
    adapter = AggregationAdapter()
    everything = {EntityKind.ORDERS, EntityKind.PRODUCTS, EntityKind.CUSTOMERS}
    adapter.register(cache_keys.DASHBOARD_SUMMARY, everything)(summarize)
    adapter.register(cache_keys.DASHBOARD_SALES, {EntityKind.ORDERS})(sales_by_day)
    adapter.register(cache_keys.DASHBOARD_CUSTOMERS, {EntityKind.CUSTOMERS})(customer_overview)
    adapter.register(cache_keys.DASHBOARD_INVENTORY, {EntityKind.PRODUCTS})(inventory_overview)
    adapter.register(cache_keys.DASHBOARD_ORDERS, {EntityKind.ORDERS})(order_overview)
    return adapter
