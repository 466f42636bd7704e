"""
Cursor pagination over the upstream API.

Follows continuation cursors page by page within a record and page
budget. Transient errors are retried on the same page with linear
backoff; when a page keeps failing the records gathered so far are
returned as a truncated (partial) result. Fatal errors propagate.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from shopsync.config import config
from shopsync.exceptions import is_retryable
from shopsync.models import EntityKind, FetchPage, utc_now
from shopsync.observability import get_logger
from shopsync.resilience import BackoffStrategy, RetryPolicy
from shopsync.upstream import MAX_PAGE_SIZE, QueryFilter

logger = get_logger(__name__)

# Order lookback windows longer than this are clamped
MAX_ORDER_WINDOW_HOURS = 2160


class PageSource(Protocol):
    async def fetch_page(
        self,
        entity_kind: EntityKind,
        query_filter: Optional[QueryFilter] = None,
        cursor: Optional[str] = None,
        page_size: int = MAX_PAGE_SIZE,
    ) -> FetchPage:
        ...


class StopReason(str, Enum):
    EXHAUSTED = "exhausted"            # upstream reported no more pages
    RECORD_CAP = "record_cap"
    MAX_PAGES = "max_pages"
    NO_CURSOR = "no_cursor"            # has_more without a cursor
    RETRIES_EXHAUSTED = "retries_exhausted"


@dataclass
class PaginationResult:
    """Records plus the bookkeeping of how they were obtained."""
    records: List[Dict[str, Any]] = field(default_factory=list)
    pages_fetched: int = 0
    calls_made: int = 0
    retries: int = 0
    truncated: bool = False
    stop_reason: StopReason = StopReason.EXHAUSTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "records": len(self.records),
            "pages_fetched": self.pages_fetched,
            "calls_made": self.calls_made,
            "retries": self.retries,
            "truncated": self.truncated,
            "stop_reason": self.stop_reason.value,
        }


def default_retry_policy() -> RetryPolicy:
    return RetryPolicy(
        max_retries=config.upstream.max_retries,
        base_delay=config.upstream.retry_base_delay,
        strategy=BackoffStrategy.LINEAR,
        honor_retry_after=False,
    )


def record_cap_for_window(hours: int) -> Optional[int]:
    """Record budget for an order lookback window (None = unbounded)."""
    if hours <= 24:
        return 200
    if hours <= 168:
        return 500
    return None


class CursorPaginator:
    """
    Drives a page source until the data, or the budget, runs out.

    Usage:
        paginator = CursorPaginator(upstream_client)
        orders = await paginator.fetch_all(EntityKind.ORDERS, record_cap=200)
    """

    def __init__(
        self,
        source: PageSource,
        policy: Optional[RetryPolicy] = None,
        inter_page_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        page_size: Optional[int] = None,
    ):
        """
        Args:
            source: Object exposing `fetch_page` (normally UpstreamClient)
            policy: Per-page retry policy (default: 3 tries, 1s linear backoff)
            inter_page_delay: Pause between successful pages in seconds
            sleep: Awaitable sleep, replaceable in tests
            page_size: Default page size (defaults to SHOPIFY_PAGE_SIZE)
        """
        self.source = source
        self.policy = policy or default_retry_policy()
        self.inter_page_delay = (
            config.upstream.inter_page_delay if inter_page_delay is None else inter_page_delay
        )
        self.page_size = min(page_size or config.upstream.max_page_size, MAX_PAGE_SIZE)
        self._sleep = sleep

    async def fetch_all(
        self,
        entity_kind: EntityKind,
        query_filter: Optional[QueryFilter] = None,
        page_size_max: Optional[int] = None,
        record_cap: Optional[int] = None,
        max_pages: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch records across pages. See fetch_all_with_stats."""
        result = await self.fetch_all_with_stats(
            entity_kind, query_filter, page_size_max, record_cap, max_pages
        )
        return result.records

    async def fetch_all_with_stats(
        self,
        entity_kind: EntityKind,
        query_filter: Optional[QueryFilter] = None,
        page_size_max: Optional[int] = None,
        record_cap: Optional[int] = None,
        max_pages: Optional[int] = None,
    ) -> PaginationResult:
        """
        Fetch records across pages.

        Args:
            entity_kind: Entity connection to page through
            query_filter: Optional search filter passed to every page
            page_size_max: Largest page to request (default: the paginator's
                page size; never above 50)
            record_cap: Stop once this many records are collected
            max_pages: Stop after this many successful pages

        Returns:
            PaginationResult; `truncated` is set when a page exhausted its
            retries and the records are incomplete

        Raises:
            FatalUpstreamError: Immediately, without retrying
            ValueError: If page_size_max is not positive
        """
        if page_size_max is None:
            page_size_max = self.page_size
        if page_size_max < 1:
            raise ValueError(f"page_size_max must be positive, got {page_size_max}")

        result = PaginationResult()
        if (record_cap is not None and record_cap <= 0) or (max_pages is not None and max_pages <= 0):
            result.stop_reason = StopReason.RECORD_CAP if record_cap is not None else StopReason.MAX_PAGES
            return result

        cursor: Optional[str] = None
        kind = entity_kind.value

        while True:
            page_size = min(page_size_max, MAX_PAGE_SIZE)
            if record_cap is not None:
                page_size = min(page_size, record_cap - len(result.records))

            page = await self._fetch_with_retry(entity_kind, query_filter, cursor, page_size, result)
            if page is None:
                result.truncated = True
                result.stop_reason = StopReason.RETRIES_EXHAUSTED
                logger.warning(
                    f"Giving up on {kind} after {self.policy.max_retries} failed attempts, "
                    f"returning {len(result.records)} records",
                    extra={"entity": kind, "pages_fetched": result.pages_fetched}
                )
                return result

            result.pages_fetched += 1
            result.records.extend(page.records)
            if record_cap is not None and len(result.records) > record_cap:
                del result.records[record_cap:]

            if not page.has_more:
                result.stop_reason = StopReason.EXHAUSTED
            elif not page.next_cursor:
                logger.warning(
                    f"{kind} page reported more data without a cursor, stopping",
                    extra={"entity": kind, "pages_fetched": result.pages_fetched}
                )
                result.stop_reason = StopReason.NO_CURSOR
            elif record_cap is not None and len(result.records) >= record_cap:
                result.stop_reason = StopReason.RECORD_CAP
            elif max_pages is not None and result.pages_fetched >= max_pages:
                result.stop_reason = StopReason.MAX_PAGES
            else:
                cursor = page.next_cursor
                if self.inter_page_delay > 0:
                    await self._sleep(self.inter_page_delay)
                continue
            break

        logger.debug(
            f"Fetched {len(result.records)} {kind} in {result.pages_fetched} pages",
            extra={"entity": kind, **result.to_dict()}
        )
        return result

    async def _fetch_with_retry(
        self,
        entity_kind: EntityKind,
        query_filter: Optional[QueryFilter],
        cursor: Optional[str],
        page_size: int,
        result: PaginationResult,
    ) -> Optional[FetchPage]:
        """One page with bounded retries; None once retries are exhausted."""
        failures = 0
        while True:
            result.calls_made += 1
            try:
                return await self.source.fetch_page(entity_kind, query_filter, cursor, page_size)
            except Exception as e:
                if not is_retryable(e):
                    raise
                failures += 1
                if failures >= self.policy.max_retries:
                    return None
                delay = self.policy.compute_delay(failures, e)
                result.retries += 1
                logger.warning(
                    f"Transient error on {entity_kind.value} page, retry {failures} in {delay:.2f}s: {e}",
                    extra={"entity": entity_kind.value, "attempt": failures, "delay": delay}
                )
                await self._sleep(delay)

    async def fetch_recent_orders(
        self,
        hours: int = 24,
        now: Optional[datetime] = None,
    ) -> PaginationResult:
        """
        Orders created within the last `hours`.

        The window is clamped to 90 days and the record budget shrinks with
        it: up to a day gets 200 orders, up to a week 500, beyond that all.
        """
        hours = max(1, min(hours, MAX_ORDER_WINDOW_HOURS))
        now = now or utc_now()
        query_filter = QueryFilter(created_at_min=now - timedelta(hours=hours))
        return await self.fetch_all_with_stats(
            EntityKind.ORDERS,
            query_filter,
            record_cap=record_cap_for_window(hours),
        )
