"""
Tests for shopsync.pagination module.
"""
from datetime import datetime, timezone

import pytest

from shopsync.config import config
from shopsync.exceptions import FatalUpstreamError, TransientUpstreamError
from shopsync.models import EntityKind, FetchPage
from shopsync.pagination import (
    CursorPaginator,
    StopReason,
    record_cap_for_window,
)
from shopsync.resilience import BackoffStrategy, RetryPolicy

POLICY = RetryPolicy(max_retries=3, base_delay=1.0, strategy=BackoffStrategy.LINEAR,
                     honor_retry_after=False)


def paginator_for(source, sleep, inter_page_delay=0.0):
    return CursorPaginator(source, policy=POLICY, inter_page_delay=inter_page_delay, sleep=sleep)


class TestCursorPaginator:
    """Tests for CursorPaginator.fetch_all_with_stats."""

    @pytest.mark.asyncio
    async def test_single_page(self, make_source, no_sleep):
        """A page without more data ends pagination after one call."""
        source = make_source({EntityKind.PRODUCTS: [
            FetchPage(records=[{"id": 1}, {"id": 2}], has_more=False),
        ]})

        result = await paginator_for(source, no_sleep).fetch_all_with_stats(EntityKind.PRODUCTS)

        assert [r["id"] for r in result.records] == [1, 2]
        assert result.calls_made == 1
        assert result.truncated is False
        assert result.stop_reason is StopReason.EXHAUSTED

    @pytest.mark.asyncio
    async def test_follows_cursors_across_pages(self, make_source, pages, no_sleep):
        """50, 50, 20 records: three calls, 120 records, cursors threaded through."""
        source = make_source({EntityKind.ORDERS: pages(120)})

        result = await paginator_for(source, no_sleep).fetch_all_with_stats(EntityKind.ORDERS)

        assert len(result.records) == 120
        assert result.calls_made == 3
        assert result.pages_fetched == 3
        assert [c[1] for c in source.calls] == [None, "c1", "c2"]
        assert result.truncated is False

    @pytest.mark.asyncio
    async def test_page_size_never_exceeds_fifty(self, make_source, no_sleep):
        """Requested page size is capped at 50."""
        source = make_source({EntityKind.PRODUCTS: [FetchPage(records=[], has_more=False)]})

        await paginator_for(source, no_sleep).fetch_all_with_stats(
            EntityKind.PRODUCTS, page_size_max=250
        )

        assert source.calls[0][2] == 50

    @pytest.mark.asyncio
    async def test_configured_page_size(self, make_source, pages, no_sleep):
        """The paginator's page size is used when the caller gives none."""
        source = make_source({EntityKind.ORDERS: pages(45, page_size=20)})
        paginator = CursorPaginator(source, policy=POLICY, inter_page_delay=0, sleep=no_sleep, page_size=20)

        result = await paginator.fetch_all_with_stats(EntityKind.ORDERS)

        assert len(result.records) == 45
        assert [c[2] for c in source.calls] == [20, 20, 20]

    def test_page_size_default_from_config(self, make_source):
        """Without an explicit size the configured one applies, capped at 50."""
        assert CursorPaginator(make_source()).page_size == min(config.upstream.max_page_size, 50)
        assert CursorPaginator(make_source(), page_size=500).page_size == 50

    @pytest.mark.asyncio
    async def test_invalid_page_size(self, make_source, no_sleep):
        """Non-positive page size is rejected."""
        with pytest.raises(ValueError):
            await paginator_for(make_source(), no_sleep).fetch_all_with_stats(
                EntityKind.PRODUCTS, page_size_max=0
            )

    @pytest.mark.asyncio
    async def test_record_cap_limits_result_and_page_size(self, make_source, pages, no_sleep):
        """Record cap shrinks the last request and stops pagination."""
        source = make_source({EntityKind.CUSTOMERS: pages(200)})

        result = await paginator_for(source, no_sleep).fetch_all_with_stats(
            EntityKind.CUSTOMERS, record_cap=70
        )

        assert len(result.records) == 70
        assert [c[2] for c in source.calls] == [50, 20]
        assert result.stop_reason is StopReason.RECORD_CAP

    @pytest.mark.asyncio
    async def test_zero_record_cap_makes_no_calls(self, make_source, no_sleep):
        """A zero budget returns an empty result without calling upstream."""
        source = make_source()

        result = await paginator_for(source, no_sleep).fetch_all_with_stats(
            EntityKind.ORDERS, record_cap=0
        )

        assert result.records == []
        assert source.calls == []

    @pytest.mark.asyncio
    async def test_max_pages(self, make_source, pages, no_sleep):
        """max_pages stops after that many successful pages."""
        source = make_source({EntityKind.PRODUCTS: pages(500)})

        result = await paginator_for(source, no_sleep).fetch_all_with_stats(
            EntityKind.PRODUCTS, max_pages=2
        )

        assert result.pages_fetched == 2
        assert len(result.records) == 100
        assert result.stop_reason is StopReason.MAX_PAGES

    @pytest.mark.asyncio
    async def test_has_more_without_cursor_stops(self, make_source, no_sleep):
        """A page claiming more data but no cursor ends pagination."""
        source = make_source({EntityKind.ORDERS: [
            FetchPage(records=[{"id": 1}], next_cursor=None, has_more=True),
        ]})

        result = await paginator_for(source, no_sleep).fetch_all_with_stats(EntityKind.ORDERS)

        assert result.calls_made == 1
        assert result.stop_reason is StopReason.NO_CURSOR

    @pytest.mark.asyncio
    async def test_transient_errors_retried_on_same_page(self, make_source, pages, no_sleep):
        """Page 2 fails twice then succeeds: 4 calls, complete result, linear delays."""
        first, second = pages(70)
        source = make_source({EntityKind.ORDERS: [
            first,
            TransientUpstreamError("Rate limit exceeded", status_code=429),
            TransientUpstreamError("API returned 503", status_code=503),
            second,
        ]})

        result = await paginator_for(source, no_sleep).fetch_all_with_stats(EntityKind.ORDERS)

        assert result.calls_made == 4
        assert result.retries == 2
        assert len(result.records) == 70
        assert result.truncated is False
        assert [c[1] for c in source.calls] == [None, "c1", "c1", "c1"]
        assert [c.args[0] for c in no_sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhausted_retries_return_partial(self, make_source, pages, no_sleep):
        """Three consecutive failures return what was gathered, flagged truncated."""
        first = pages(120)[0]
        source = make_source({EntityKind.ORDERS: [
            first,
            TransientUpstreamError("timeout"),
            TransientUpstreamError("timeout"),
            TransientUpstreamError("timeout"),
        ]})

        result = await paginator_for(source, no_sleep).fetch_all_with_stats(EntityKind.ORDERS)

        assert len(result.records) == 50
        assert result.truncated is True
        assert result.stop_reason is StopReason.RETRIES_EXHAUSTED
        assert result.calls_made == 4

    @pytest.mark.asyncio
    async def test_first_page_exhausted_returns_empty(self, make_source, no_sleep):
        """Failing from the start yields an empty truncated result, not an error."""
        source = make_source({EntityKind.PRODUCTS: [TransientUpstreamError("down")] * 3})

        result = await paginator_for(source, no_sleep).fetch_all_with_stats(EntityKind.PRODUCTS)

        assert result.records == []
        assert result.truncated is True

    @pytest.mark.asyncio
    async def test_fatal_error_propagates_without_retry(self, make_source, pages, no_sleep):
        """Fatal errors abort immediately."""
        source = make_source({EntityKind.ORDERS: [
            pages(120)[0],
            FatalUpstreamError("API returned 401", status_code=401),
        ]})

        with pytest.raises(FatalUpstreamError):
            await paginator_for(source, no_sleep).fetch_all_with_stats(EntityKind.ORDERS)

        assert len(source.calls) == 2

    @pytest.mark.asyncio
    async def test_inter_page_delay_skipped_after_last_page(self, make_source, pages, no_sleep):
        """Delay between pages only, never after the final one."""
        source = make_source({EntityKind.ORDERS: pages(120)})

        await paginator_for(source, no_sleep, inter_page_delay=0.2).fetch_all_with_stats(
            EntityKind.ORDERS
        )

        assert [c.args[0] for c in no_sleep.await_args_list] == [0.2, 0.2]

    @pytest.mark.asyncio
    async def test_fetch_all_returns_records(self, make_source, pages, no_sleep):
        """fetch_all is the records-only form."""
        source = make_source({EntityKind.CUSTOMERS: pages(3)})

        records = await paginator_for(source, no_sleep).fetch_all(EntityKind.CUSTOMERS)

        assert len(records) == 3


class TestRecentOrders:
    """Tests for fetch_recent_orders."""

    @pytest.mark.asyncio
    async def test_window_filter_and_budget(self, make_source, pages, no_sleep):
        """A day-long window filters by creation time and caps at 200 orders."""
        source = make_source({EntityKind.ORDERS: pages(400)})
        now = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)

        result = await paginator_for(source, no_sleep).fetch_recent_orders(hours=24, now=now)

        assert len(result.records) == 200
        query_filter = source.calls[0][3]
        assert query_filter.created_at_min == datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)
        assert query_filter.to_search_query() == "created_at:>=2026-10-17T12:00:00+00:00"

    @pytest.mark.asyncio
    async def test_window_clamped_to_ninety_days(self, make_source, no_sleep):
        """Oversized windows are clamped."""
        source = make_source()
        now = datetime(2026, 10, 18, tzinfo=timezone.utc)

        await paginator_for(source, no_sleep).fetch_recent_orders(hours=10_000, now=now)

        query_filter = source.calls[0][3]
        assert (now - query_filter.created_at_min).days == 90

    def test_record_cap_for_window(self):
        """Budget shrinks with the window."""
        assert record_cap_for_window(1) == 200
        assert record_cap_for_window(24) == 200
        assert record_cap_for_window(72) == 500
        assert record_cap_for_window(168) == 500
        assert record_cap_for_window(720) is None
