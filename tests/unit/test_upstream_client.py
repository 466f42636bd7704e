"""
Tests for shopsync.upstream module.

Uses httpx.MockTransport so no network is touched.
"""
import json
from datetime import datetime, timezone

import httpx
import pytest

from shopsync.exceptions import (
    FatalUpstreamError,
    TransientUpstreamError,
    UpstreamDataError,
)
from shopsync.models import EntityKind
from shopsync.observability import correlation_context
from shopsync.resilience import RetryPolicy
from shopsync.upstream import ApiUsage, QueryFilter, UpstreamClient, edge_nodes

ENDPOINT = "https://test-shop.myshopify.com/admin/api/2025-04/graphql.json"

COST = {
    "requestedQueryCost": 52,
    "actualQueryCost": 12,
    "throttleStatus": {"maximumAvailable": 2000.0, "currentlyAvailable": 1988, "restoreRate": 100.0},
}


def connection(nodes, has_next=False, end_cursor=None):
    return {
        "edges": [{"node": n} for n in nodes],
        "pageInfo": {"hasNextPage": has_next, "endCursor": end_cursor},
    }


def make_client(handler) -> UpstreamClient:
    return UpstreamClient(
        endpoint=ENDPOINT,
        access_token="shpat_test",
        timeout=5,
        transport=httpx.MockTransport(handler),
    )


class TestFetchPage:
    """Tests for UpstreamClient.fetch_page."""

    @pytest.mark.asyncio
    async def test_parses_connection(self, sample_order):
        """Nodes, cursor and has_more come from the connection."""
        def handler(request):
            return httpx.Response(200, json={
                "data": {"orders": connection([sample_order], has_next=True, end_cursor="abc")},
                "extensions": {"cost": COST},
            })

        async with make_client(handler) as client:
            page = await client.fetch_page(EntityKind.ORDERS)

        assert page.records == [sample_order]
        assert page.next_cursor == "abc"
        assert page.has_more is True
        assert page.rate_limit_remaining == 1988

    @pytest.mark.asyncio
    async def test_request_variables_and_headers(self):
        """Page size, cursor, filter and auth header are sent."""
        seen = {}

        def handler(request):
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"data": {"products": connection([])}})

        query_filter = QueryFilter(status="active")
        async with make_client(handler) as client:
            with correlation_context("req-42"):
                await client.fetch_page(EntityKind.PRODUCTS, query_filter, cursor="xyz", page_size=80)

        variables = seen["body"]["variables"]
        assert variables == {"first": 50, "after": "xyz", "query": "status:active"}
        assert seen["body"]["operationName"] == "GetProducts"
        assert seen["headers"]["X-Shopify-Access-Token"] == "shpat_test"
        assert seen["headers"]["X-Request-ID"] == "req-42"

    @pytest.mark.asyncio
    async def test_malformed_connection(self):
        """Missing edges is a data error."""
        def handler(request):
            return httpx.Response(200, json={"data": {"orders": {"nodes": []}}})

        async with make_client(handler) as client:
            with pytest.raises(UpstreamDataError):
                await client.fetch_page(EntityKind.ORDERS)


class TestErrorClassification:
    """HTTP and GraphQL failures map onto the transient / fatal taxonomy."""

    @pytest.mark.asyncio
    async def test_rate_limit_is_transient_with_retry_after(self):
        """429 carries Retry-After."""
        def handler(request):
            return httpx.Response(429, headers={"Retry-After": "2.5"}, text="slow down")

        async with make_client(handler) as client:
            with pytest.raises(TransientUpstreamError) as exc_info:
                await client.fetch_page(EntityKind.ORDERS)

        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after == 2.5

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        """5xx is retryable."""
        def handler(request):
            return httpx.Response(503, text="unavailable")

        async with make_client(handler) as client:
            with pytest.raises(TransientUpstreamError) as exc_info:
                await client.fetch_page(EntityKind.ORDERS)

        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403, 422])
    async def test_client_errors_are_fatal(self, status):
        """Auth and validation failures abort."""
        def handler(request):
            return httpx.Response(status, text="nope")

        async with make_client(handler) as client:
            with pytest.raises(FatalUpstreamError) as exc_info:
                await client.fetch_page(EntityKind.CUSTOMERS)

        assert exc_info.value.status_code == status
        assert not isinstance(exc_info.value, TransientUpstreamError)

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        """Timeouts are retryable."""
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        async with make_client(handler) as client:
            with pytest.raises(TransientUpstreamError) as exc_info:
                await client.fetch_page(EntityKind.ORDERS)

        assert exc_info.value.error_code == "TIMEOUT"

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        """Network errors are retryable."""
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with make_client(handler) as client:
            with pytest.raises(TransientUpstreamError):
                await client.fetch_page(EntityKind.ORDERS)

    @pytest.mark.asyncio
    async def test_graphql_throttle_is_transient(self):
        """THROTTLED GraphQL error is retryable and estimates the refill time."""
        def handler(request):
            return httpx.Response(200, json={
                "errors": [{"message": "Throttled", "extensions": {"code": "THROTTLED"}}],
                "extensions": {"cost": {
                    "requestedQueryCost": 252,
                    "throttleStatus": {
                        "maximumAvailable": 2000.0, "currentlyAvailable": 52, "restoreRate": 100.0,
                    },
                }},
            })

        async with make_client(handler) as client:
            with pytest.raises(TransientUpstreamError) as exc_info:
                await client.fetch_page(EntityKind.ORDERS)

        assert exc_info.value.error_code == "THROTTLED"
        assert exc_info.value.retry_after == pytest.approx(2.0)

    @pytest.mark.asyncio
    async def test_graphql_query_error_is_fatal(self):
        """Other GraphQL errors abort."""
        def handler(request):
            return httpx.Response(200, json={
                "errors": [{"message": "Field 'foo' doesn't exist on type 'Order'"}],
            })

        async with make_client(handler) as client:
            with pytest.raises(FatalUpstreamError) as exc_info:
                await client.fetch_page(EntityKind.ORDERS)

        assert "foo" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        """Unparseable body is a data error."""
        def handler(request):
            return httpx.Response(200, text="<html>maintenance</html>")

        async with make_client(handler) as client:
            with pytest.raises(UpstreamDataError) as exc_info:
                await client.fetch_page(EntityKind.ORDERS)

        assert exc_info.value.expected == "JSON object"

    @pytest.mark.asyncio
    async def test_missing_data_object(self):
        """A payload without data is a data error."""
        def handler(request):
            return httpx.Response(200, json={"extensions": {}})

        async with make_client(handler) as client:
            with pytest.raises(UpstreamDataError):
                await client.fetch_page(EntityKind.ORDERS)


class TestHealthAndUsage:
    """Tests for the reachability probe and usage tracking."""

    @pytest.mark.asyncio
    async def test_health_check_true(self):
        """Reachable API reports healthy with a one-record probe."""
        seen = {}

        def handler(request):
            seen["first"] = json.loads(request.content)["variables"]["first"]
            return httpx.Response(200, json={"data": {"orders": connection([])}, "extensions": {"cost": COST}})

        async with make_client(handler) as client:
            assert await client.health_check() is True
            usage = client.get_api_usage()

        assert seen["first"] == 1
        assert usage.available_ratio == pytest.approx(0.994)

    @pytest.mark.asyncio
    async def test_health_check_never_raises(self):
        """Failures become False."""
        def handler(request):
            return httpx.Response(401, text="bad token")

        async with make_client(handler) as client:
            assert await client.health_check() is False

    @pytest.mark.asyncio
    async def test_health_check_retries_transient_once(self):
        """A single 503 is retried before the probe gives up."""
        responses = [
            httpx.Response(503, text="unavailable"),
            httpx.Response(200, json={"data": {"orders": connection([])}}),
        ]

        client = UpstreamClient(
            endpoint=ENDPOINT,
            access_token="shpat_test",
            transport=httpx.MockTransport(lambda request: responses.pop(0)),
            probe_policy=RetryPolicy(max_retries=2, base_delay=0),
        )
        async with client:
            assert await client.health_check() is True

        assert responses == []

    def test_usage_before_first_response(self):
        """No usage known yet."""
        assert make_client(lambda r: httpx.Response(200)).get_api_usage() is None

    def test_usage_from_extensions(self):
        """Throttle status is parsed from extensions.cost."""
        usage = ApiUsage.from_extensions({"cost": COST})

        assert usage.currently_available == 1988
        assert usage.requested_cost == 52
        assert usage.to_dict()["available_percent"] == 99.4

    def test_usage_without_throttle_status(self):
        """Missing cost info yields None."""
        assert ApiUsage.from_extensions(None) is None
        assert ApiUsage.from_extensions({"cost": {}}) is None


class TestHelpers:
    """Tests for query helpers."""

    def test_edge_nodes(self):
        """Connections flatten to their nodes."""
        assert edge_nodes({"edges": [{"node": {"id": 1}}, {"node": None}]}) == [{"id": 1}]
        assert edge_nodes(None) == []

    def test_query_filter_joins_criteria(self):
        """Criteria are joined with AND."""
        since = datetime(2026, 10, 1, tzinfo=timezone.utc)
        query_filter = QueryFilter(created_at_min=since, financial_status="paid")

        assert query_filter.to_search_query() == (
            "created_at:>=2026-10-01T00:00:00+00:00 AND financial_status:paid"
        )

    def test_empty_query_filter(self):
        """No criteria renders as None."""
        assert QueryFilter().to_search_query() is None
