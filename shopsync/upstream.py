"""
Async GraphQL client for the commerce platform (Shopify Admin API).

Features:
- Connection pooling with httpx
- One request per call: retries and pagination live in pagination.py
- Error classification into the transient / fatal taxonomy
- Throttle status tracking from `extensions.cost`
- Request correlation IDs for tracing
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from shopsync.config import config
from shopsync.exceptions import (
    FatalUpstreamError,
    TransientUpstreamError,
    UpstreamDataError,
    classify_error,
)
from shopsync.models import EntityKind, FetchPage, utc_now
from shopsync.observability import Timer, get_correlation_id, get_logger, metrics
from shopsync.resilience import RetryPolicy, retry_with_backoff

logger = get_logger(__name__)

# The reachability probe retries once on a transient failure
PROBE_POLICY = RetryPolicy(max_retries=2, base_delay=0.5)

MAX_PAGE_SIZE = 50

# HTTP statuses that abort the fetch; everything else >= 400 is retried
FATAL_STATUSES = {400, 401, 402, 403, 404, 422}

# GraphQL error codes that mean "slow down" rather than "your query is wrong"
THROTTLE_CODES = {"THROTTLED", "MAX_COST_EXCEEDED_RETRY"}


# ═══════════════════════════════════════════════════════════════════════════════
# QUERIES
# ═══════════════════════════════════════════════════════════════════════════════

_PAGE_INFO = """
          pageInfo {
            hasNextPage
            endCursor
          }"""

ORDERS_QUERY = """
query GetOrders($first: Int!, $after: String, $query: String) {
  orders(first: $first, after: $after, query: $query, sortKey: CREATED_AT, reverse: true) {
    edges {
      node {
        id
        name
        createdAt
        updatedAt
        displayFinancialStatus
        displayFulfillmentStatus
        totalPriceSet { shopMoney { amount currencyCode } }
        lineItems(first: 50) {
          edges { node { title sku quantity variant { id product { id title } } } }
        }
        customer { id displayName email }
      }
    }""" + _PAGE_INFO + """
  }
}
"""

PRODUCTS_QUERY = """
query GetProducts($first: Int!, $after: String, $query: String) {
  products(first: $first, after: $after, query: $query) {
    edges {
      node {
        id
        title
        productType
        vendor
        status
        totalInventory
        variants(first: 50) {
          edges {
            node {
              id
              title
              sku
              inventoryQuantity
              inventoryItem { id tracked }
            }
          }
        }
      }
    }""" + _PAGE_INFO + """
  }
}
"""

CUSTOMERS_QUERY = """
query GetCustomers($first: Int!, $after: String, $query: String) {
  customers(first: $first, after: $after, query: $query) {
    edges {
      node {
        id
        displayName
        email
        createdAt
        numberOfOrders
        amountSpent { amount currencyCode }
      }
    }""" + _PAGE_INFO + """
  }
}
"""

QUERIES: Dict[EntityKind, str] = {
    EntityKind.ORDERS: ORDERS_QUERY,
    EntityKind.PRODUCTS: PRODUCTS_QUERY,
    EntityKind.CUSTOMERS: CUSTOMERS_QUERY,
}


def edge_nodes(connection: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Flatten a GraphQL connection (`{edges: [{node: ...}]}`) into its nodes."""
    if not connection:
        return []
    return [edge["node"] for edge in connection.get("edges") or [] if edge.get("node") is not None]


# ═══════════════════════════════════════════════════════════════════════════════
# FILTERS & USAGE
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class QueryFilter:
    """Search filter rendered into the platform's query syntax."""
    created_at_min: Optional[datetime] = None
    created_at_max: Optional[datetime] = None
    updated_at_min: Optional[datetime] = None
    updated_at_max: Optional[datetime] = None
    status: Optional[str] = None
    financial_status: Optional[str] = None
    fulfillment_status: Optional[str] = None

    def to_search_query(self) -> Optional[str]:
        """
        Render as `created_at:>=... AND status:...`.

        Returns None when no criteria are set.
        """
        parts = []
        if self.created_at_min:
            parts.append(f"created_at:>={self.created_at_min.isoformat()}")
        if self.created_at_max:
            parts.append(f"created_at:<={self.created_at_max.isoformat()}")
        if self.updated_at_min:
            parts.append(f"updated_at:>={self.updated_at_min.isoformat()}")
        if self.updated_at_max:
            parts.append(f"updated_at:<={self.updated_at_max.isoformat()}")
        if self.status:
            parts.append(f"status:{self.status}")
        if self.financial_status:
            parts.append(f"financial_status:{self.financial_status}")
        if self.fulfillment_status:
            parts.append(f"fulfillment_status:{self.fulfillment_status}")
        return " AND ".join(parts) if parts else None


@dataclass
class ApiUsage:
    """Query cost budget as last reported by the API."""
    currently_available: float
    maximum_available: float
    restore_rate: float
    requested_cost: Optional[float] = None
    actual_cost: Optional[float] = None
    observed_at: datetime = field(default_factory=utc_now)

    @property
    def available_ratio(self) -> float:
        if self.maximum_available <= 0:
            return 0.0
        return self.currently_available / self.maximum_available

    def to_dict(self) -> Dict[str, Any]:
        return {
            "currently_available": self.currently_available,
            "maximum_available": self.maximum_available,
            "restore_rate": self.restore_rate,
            "requested_cost": self.requested_cost,
            "actual_cost": self.actual_cost,
            "available_percent": round(self.available_ratio * 100, 1),
            "observed_at": self.observed_at.isoformat(),
        }

    @classmethod
    def from_extensions(cls, extensions: Optional[Dict[str, Any]]) -> Optional["ApiUsage"]:
        cost = (extensions or {}).get("cost") or {}
        throttle = cost.get("throttleStatus")
        if not throttle:
            return None
        try:
            return cls(
                currently_available=float(throttle["currentlyAvailable"]),
                maximum_available=float(throttle["maximumAvailable"]),
                restore_rate=float(throttle.get("restoreRate", 0)),
                requested_cost=cost.get("requestedQueryCost"),
                actual_cost=cost.get("actualQueryCost"),
            )
        except (KeyError, TypeError, ValueError):
            return None


# ═══════════════════════════════════════════════════════════════════════════════
# CLIENT
# ═══════════════════════════════════════════════════════════════════════════════

class UpstreamClient:
    """
    Async GraphQL client.

    Usage:
        async with UpstreamClient() as client:
            page = await client.fetch_page(EntityKind.ORDERS, cursor=None)
    """

    def __init__(
        self,
        endpoint: Optional[str] = None,
        access_token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        probe_policy: RetryPolicy = PROBE_POLICY,
    ):
        """
        Args:
            endpoint: GraphQL endpoint (defaults to SHOPIFY_GRAPHQL_ENDPOINT)
            access_token: Admin API token (defaults to SHOPIFY_ACCESS_TOKEN)
            timeout: Request timeout in seconds
            transport: Custom httpx transport
            probe_policy: Retry policy for health_check
        """
        self.probe_policy = probe_policy
        self.endpoint = endpoint or config.upstream.graphql_endpoint
        self.access_token = access_token or config.upstream.access_token
        self.timeout = timeout or config.upstream.request_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._last_usage: Optional[ApiUsage] = None

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "X-Shopify-Access-Token": self.access_token,
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    async def connect(self) -> None:
        """Create HTTP client with connection pooling."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers=self.headers,
                timeout=self.timeout,
                transport=self._transport,
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "UpstreamClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def execute(
        self,
        query: str,
        variables: Optional[Dict[str, Any]] = None,
        operation_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Run one GraphQL operation and return its `data` object.

        Raises:
            TransientUpstreamError: Rate limit, timeout, network error, 5xx
            FatalUpstreamError: Auth/validation failure or GraphQL error
            UpstreamDataError: Response is not a GraphQL payload
        """
        try:
            return await self._do_request(query, variables or {}, operation_name)
        except (TransientUpstreamError, FatalUpstreamError) as e:
            metrics.record_error(classify_error(e).value)
            raise

    async def _do_request(
        self,
        query: str,
        variables: Dict[str, Any],
        operation_name: Optional[str],
    ) -> Dict[str, Any]:
        if not self._client:
            await self.connect()

        request_headers = {}
        correlation_id = get_correlation_id()
        if correlation_id:
            request_headers["X-Request-ID"] = correlation_id

        operation = operation_name or "graphql"
        metrics.record_call(f"upstream_{operation}")

        try:
            with Timer(f"upstream_{operation}", logger) as timer:
                response = await self._client.post(
                    self.endpoint,
                    json={"query": query, "variables": variables, "operationName": operation_name},
                    headers=request_headers or None,
                )
            metrics.record_timing(f"upstream_{operation}", timer.elapsed_ms)

        except httpx.TimeoutException as e:
            logger.warning(
                f"Request timeout: {operation}",
                extra={"operation": operation, "timeout": self.timeout}
            )
            raise TransientUpstreamError(
                f"Request timeout after {self.timeout}s", error_code="TIMEOUT"
            ) from e

        except httpx.RequestError as e:
            logger.warning(
                f"Request failed: {operation} - {e}",
                extra={"operation": operation, "error": str(e)}
            )
            raise TransientUpstreamError("Connection error", details=str(e)) from e

        self._check_status(response, operation)

        try:
            payload = response.json()
        except ValueError as e:
            raise UpstreamDataError(
                "Response is not valid JSON",
                details=response.text[:200],
                expected="JSON object",
                got="unparseable body",
            ) from e

        if not isinstance(payload, dict):
            raise UpstreamDataError(
                "Unexpected response format",
                expected="JSON object",
                got=type(payload).__name__,
            )

        usage = ApiUsage.from_extensions(payload.get("extensions"))
        if usage:
            self._last_usage = usage
            logger.debug(
                f"API cost {usage.actual_cost}/{usage.requested_cost}, "
                f"available {usage.currently_available:.0f}/{usage.maximum_available:.0f}"
            )

        errors = payload.get("errors")
        if errors:
            self._raise_graphql_error(errors, operation, usage)

        data = payload.get("data")
        if not isinstance(data, dict):
            raise UpstreamDataError(
                "Response has no data object",
                expected="data: object",
                got=type(data).__name__,
            )
        return data

    def _check_status(self, response: httpx.Response, operation: str) -> None:
        status = response.status_code
        if status < 400:
            return

        error_text = response.text[:500]
        if status == 429:
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            logger.warning(
                f"Rate limited on {operation}",
                extra={"operation": operation, "retry_after": retry_after}
            )
            raise TransientUpstreamError(
                "Rate limit exceeded",
                status_code=429,
                error_code="THROTTLED",
                retry_after=retry_after,
            )

        logger.error(
            f"API error {status}: {error_text}",
            extra={"operation": operation, "status_code": status}
        )
        if status in FATAL_STATUSES:
            raise FatalUpstreamError(
                f"API returned {status}", details=error_text, status_code=status
            )
        raise TransientUpstreamError(
            f"API returned {status}", details=error_text, status_code=status
        )

    def _raise_graphql_error(
        self,
        errors: List[Dict[str, Any]],
        operation: str,
        usage: Optional[ApiUsage],
    ) -> None:
        first = errors[0] if isinstance(errors[0], dict) else {"message": str(errors[0])}
        message = first.get("message", "unknown error")
        code = (first.get("extensions") or {}).get("code")

        if code in THROTTLE_CODES:
            retry_after = None
            if usage and usage.restore_rate > 0:
                # Time for the bucket to refill to the cost of this query
                needed = (usage.requested_cost or 0) - usage.currently_available
                retry_after = max(needed, 0) / usage.restore_rate or None
            logger.warning(
                f"Query throttled: {operation}",
                extra={"operation": operation, "retry_after": retry_after}
            )
            raise TransientUpstreamError(
                f"GraphQL error: {message}", error_code=code, retry_after=retry_after
            )

        logger.error(
            f"GraphQL errors on {operation}: {message}",
            extra={"operation": operation, "error_count": len(errors)}
        )
        raise FatalUpstreamError(f"GraphQL error: {message}", error_code=code)

    # ═══════════════════════════════════════════════════════════════════════════
    # PAGE & PROBE
    # ═══════════════════════════════════════════════════════════════════════════

    async def fetch_page(
        self,
        entity_kind: EntityKind,
        query_filter: Optional[QueryFilter] = None,
        cursor: Optional[str] = None,
        page_size: int = MAX_PAGE_SIZE,
    ) -> FetchPage:
        """
        Fetch one page of an entity connection.

        Args:
            entity_kind: orders, products or customers
            query_filter: Optional search filter
            cursor: Continuation cursor from the previous page
            page_size: Requested records (capped at 50)
        """
        first = max(1, min(page_size, MAX_PAGE_SIZE))
        variables: Dict[str, Any] = {"first": first}
        if cursor:
            variables["after"] = cursor
        search = query_filter.to_search_query() if query_filter else None
        if search:
            variables["query"] = search

        operation = f"Get{entity_kind.value.capitalize()}"
        data = await self.execute(QUERIES[entity_kind], variables, operation)

        connection = data.get(entity_kind.value)
        if not isinstance(connection, dict) or not isinstance(connection.get("edges"), list):
            raise UpstreamDataError(
                f"Malformed {entity_kind.value} connection",
                expected="{edges: [...], pageInfo: {...}}",
                got=type(connection).__name__,
            )

        page_info = connection.get("pageInfo") or {}
        usage = self._last_usage
        return FetchPage(
            records=edge_nodes(connection),
            next_cursor=page_info.get("endCursor"),
            has_more=bool(page_info.get("hasNextPage")),
            rate_limit_remaining=usage.currently_available if usage else None,
        )

    async def health_check(self) -> bool:
        """Cheap reachability probe (one order). Never raises."""
        try:
            await retry_with_backoff(
                self.fetch_page, EntityKind.ORDERS, page_size=1, policy=self.probe_policy
            )
            return True
        except Exception as e:
            logger.warning(f"Upstream health check failed: {e}")
            return False

    def get_api_usage(self) -> Optional[ApiUsage]:
        """Last throttle status seen, or None before the first response."""
        return self._last_usage


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None
