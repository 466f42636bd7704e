"""
Pytest configuration and shared fixtures.
"""
import fnmatch
from typing import Any, Dict, List, Optional, Union
from unittest.mock import AsyncMock

import pytest

from shopsync.cache import CacheStore
from shopsync.models import EntityKind, FetchPage


class FakeRedis:
    """
    In-memory stand-in for a redis.asyncio client (decode_responses=True).

    Records the TTL of every SETEX so tests can check key lifetimes.
    Set `fail` to make every command raise ConnectionError.
    """

    def __init__(self):
        self.data: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}
        self.setex_calls: List[tuple] = []
        self.flush_count = 0
        self.fail = False
        self.closed = False

    def _check(self):
        if self.fail:
            raise ConnectionError("redis down")

    async def ping(self):
        self._check()
        return True

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def setex(self, key, ttl, value):
        self._check()
        self.data[key] = value
        self.ttls[key] = ttl
        self.setex_calls.append((key, ttl))
        return True

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if key in self.data:
                del self.data[key]
                self.ttls.pop(key, None)
                removed += 1
        return removed

    async def exists(self, key):
        self._check()
        return 1 if key in self.data else 0

    async def ttl(self, key):
        self._check()
        if key not in self.data:
            return -2
        return self.ttls.get(key, -1)

    async def expire(self, key, ttl):
        self._check()
        if key not in self.data:
            return False
        self.ttls[key] = ttl
        return True

    async def scan(self, cursor=0, match=None, count=None):
        self._check()
        keys = [k for k in self.data if match is None or fnmatch.fnmatchcase(k, match)]
        return 0, keys

    async def flushdb(self):
        self._check()
        self.data.clear()
        self.ttls.clear()
        self.flush_count += 1
        return True

    async def aclose(self):
        self.closed = True


PageStep = Union[FetchPage, Exception]


class ScriptedPageSource:
    """
    Page source replaying a fixed script of pages and errors per entity kind.

    Every call is recorded as (entity_kind, cursor, page_size, query_filter).
    """

    def __init__(self, script: Optional[Dict[EntityKind, List[PageStep]]] = None):
        self.script = {kind: list(steps) for kind, steps in (script or {}).items()}
        self.calls: List[tuple] = []

    async def fetch_page(self, entity_kind, query_filter=None, cursor=None, page_size=50):
        self.calls.append((entity_kind, cursor, page_size, query_filter))
        steps = self.script.get(entity_kind)
        if not steps:
            return FetchPage(records=[], has_more=False)
        step = steps.pop(0)
        if isinstance(step, Exception):
            raise step
        return step

    def calls_for(self, entity_kind: EntityKind) -> List[tuple]:
        return [c for c in self.calls if c[0] is entity_kind]


def make_pages(total: int, page_size: int = 50, prefix: str = "r") -> List[FetchPage]:
    """Split `total` fake records into consecutive pages with cursors."""
    pages = []
    produced = 0
    index = 0
    while produced < total:
        size = min(page_size, total - produced)
        records = [{"id": f"{prefix}{produced + i}"} for i in range(size)]
        produced += size
        index += 1
        more = produced < total
        pages.append(FetchPage(records=records, next_cursor=f"c{index}" if more else None, has_more=more))
    return pages


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def cache(fake_redis) -> CacheStore:
    """Connected cache store backed by FakeRedis."""
    return CacheStore(url="redis://test:6379/0", enabled=True, default_ttl=300, client=fake_redis)


@pytest.fixture
def make_source():
    """Factory for ScriptedPageSource."""
    return ScriptedPageSource


@pytest.fixture
def pages():
    """Factory for consecutive cursor pages."""
    return make_pages


@pytest.fixture
def no_sleep() -> AsyncMock:
    """Replacement for asyncio.sleep that returns immediately."""
    return AsyncMock(return_value=None)


@pytest.fixture
def sample_order() -> Dict[str, Any]:
    """Sample order node from the Admin GraphQL API."""
    return {
        "id": "gid://shopify/Order/1001",
        "name": "#1001",
        "createdAt": "2026-10-17T14:30:00Z",
        "updatedAt": "2026-10-17T14:35:00Z",
        "displayFinancialStatus": "PAID",
        "displayFulfillmentStatus": "UNFULFILLED",
        "totalPriceSet": {"shopMoney": {"amount": "125.50", "currencyCode": "USD"}},
        "lineItems": {
            "edges": [
                {"node": {
                    "title": "Canvas Tote",
                    "sku": "TOTE-01",
                    "quantity": 2,
                    "variant": {"id": "gid://shopify/ProductVariant/11", "product": {
                        "id": "gid://shopify/Product/1", "title": "Canvas Tote"
                    }},
                }},
            ]
        },
        "customer": {"id": "gid://shopify/Customer/501", "displayName": "Ada L.", "email": "ada@example.com"},
    }


@pytest.fixture
def sample_orders(sample_order) -> List[Dict[str, Any]]:
    """Orders over two days with mixed payment states."""
    second = dict(sample_order, id="gid://shopify/Order/1002", name="#1002",
                  createdAt="2026-10-17T18:00:00Z",
                  totalPriceSet={"shopMoney": {"amount": "74.50", "currencyCode": "USD"}})
    third = dict(sample_order, id="gid://shopify/Order/1003", name="#1003",
                 createdAt="2026-10-18T09:15:00Z",
                 displayFinancialStatus="PENDING",
                 totalPriceSet={"shopMoney": {"amount": "50.00", "currencyCode": "USD"}})
    return [sample_order, second, third]


def _variant(variant_id: int, sku: str, quantity: int, tracked: bool = True) -> Dict[str, Any]:
    return {"node": {
        "id": f"gid://shopify/ProductVariant/{variant_id}",
        "title": sku,
        "sku": sku,
        "inventoryQuantity": quantity,
        "inventoryItem": {"id": f"gid://shopify/InventoryItem/{variant_id}", "tracked": tracked},
    }}


@pytest.fixture
def sample_products() -> List[Dict[str, Any]]:
    """Products whose variants cover every stock level."""
    return [
        {
            "id": "gid://shopify/Product/1",
            "title": "Canvas Tote",
            "productType": "Bags",
            "vendor": "Acme",
            "status": "ACTIVE",
            "totalInventory": 45,
            "variants": {"edges": [
                _variant(11, "TOTE-BLK", 40),
                _variant(12, "TOTE-RED", 5),
            ]},
        },
        {
            "id": "gid://shopify/Product/2",
            "title": "Enamel Mug",
            "productType": "Kitchen",
            "vendor": "Acme",
            "status": "ACTIVE",
            "totalInventory": 8,
            "variants": {"edges": [
                _variant(21, "MUG-WHT", 8),
                _variant(22, "MUG-BLU", 0),
                _variant(23, "MUG-GFT", 0, tracked=False),
            ]},
        },
    ]


@pytest.fixture
def sample_customers() -> List[Dict[str, Any]]:
    return [
        {
            "id": "gid://shopify/Customer/501",
            "displayName": "Ada L.",
            "email": "ada@example.com",
            "createdAt": "2025-01-10T09:00:00Z",
            "numberOfOrders": "4",
            "amountSpent": {"amount": "480.00", "currencyCode": "USD"},
        },
        {
            "id": "gid://shopify/Customer/502",
            "displayName": "Grace H.",
            "email": "grace@example.com",
            "createdAt": "2026-10-01T09:00:00Z",
            "numberOfOrders": "1",
            "amountSpent": {"amount": "35.00", "currencyCode": "USD"},
        },
    ]
