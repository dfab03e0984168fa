"""
Paginated fetch loop shared by every connector.

Pages are fetched strictly one after another (cursor and offset both depend on the previous
page). Each page is handed to `on_batch` before the next request, so a later failure never
discards work already done.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from channelsync.config import settings
from channelsync.connectors.base import ChannelConnector, OrderFilter, Pagination
from channelsync.errors import ChannelSyncError, TransportError
from channelsync.models import ChannelAccount

logger = logging.getLogger(__name__)

OnBatch = Callable[[list[dict]], Awaitable[None]]


@dataclass
class FetchOutcome:
    pages: int = 0
    fetched: int = 0
    complete: bool = True
    capped: bool = False
    error: Optional[ChannelSyncError] = None


class PaginatedFetchEngine:
    def __init__(
        self,
        *,
        max_records: Optional[int] = None,
        max_pages: Optional[int] = None,
        page_timeout: Optional[float] = None,
        overall_timeout: Optional[float] = None,
        page_size: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_records = settings.SYNC_MAX_RECORDS if max_records is None else max_records
        self.max_pages = settings.SYNC_MAX_PAGES if max_pages is None else max_pages
        self.page_timeout = settings.PAGE_FETCH_TIMEOUT if page_timeout is None else page_timeout
        self.overall_timeout = settings.SYNC_TIMEOUT_SECONDS if overall_timeout is None else overall_timeout
        self.page_size = page_size
        self.clock = clock

    async def run(
        self,
        connector: ChannelConnector,
        account: ChannelAccount,
        token: str,
        order_filter: OrderFilter,
        on_batch: OnBatch,
    ) -> FetchOutcome:
        outcome = FetchOutcome()
        deadline = self.clock() + self.overall_timeout
        cursor: Any = 0 if connector.pagination == Pagination.OFFSET else None

        while True:
            if outcome.pages >= self.max_pages or outcome.fetched >= self.max_records:
                outcome.capped = True
                logger.info(
                    "%s sync for account %s stopped at cap (pages=%s, records=%s)",
                    connector.name, account.id, outcome.pages, outcome.fetched,
                )
                break

            remaining = deadline - self.clock()
            if remaining <= 0:
                outcome.complete = False
                outcome.error = TransportError(
                    f"Sync deadline of {self.overall_timeout}s exceeded after {outcome.pages} pages",
                    provider=connector.name,
                    account_id=account.id,
                )
                break

            limit = min(self.page_size, self.max_records - outcome.fetched)
            timeout = min(self.page_timeout, remaining)
            try:
                page = await asyncio.wait_for(
                    connector.fetch_orders(account, token, order_filter, cursor, limit),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                outcome.complete = False
                outcome.error = TransportError(
                    f"Page {outcome.pages + 1} timed out after {timeout:.1f}s",
                    provider=connector.name,
                    account_id=account.id,
                )
                break
            except ChannelSyncError as e:
                e.account_id = e.account_id or account.id
                outcome.complete = False
                outcome.error = e
                logger.warning("%s page %s failed for account %s: %s", connector.name, outcome.pages + 1, account.id, e.message)
                break

            outcome.pages += 1
            batch = page.orders[: self.max_records - outcome.fetched]
            outcome.fetched += len(batch)
            if batch:
                await on_batch(batch)

            if connector.pagination == Pagination.CURSOR:
                cursor = page.next_cursor
                has_more = cursor is not None
            else:
                cursor = int(cursor or 0) + len(page.orders)
                has_more = bool(page.orders) and page.total_count is not None and cursor < page.total_count

            if not has_more:
                break
            if connector.page_delay and outcome.pages < self.max_pages and outcome.fetched < self.max_records:
                # Courtesy delay between pages for provider rate limits
                await asyncio.sleep(connector.page_delay)

        logger.info(
            "%s fetch for account %s: %s pages, %s orders%s",
            connector.name, account.id, outcome.pages, outcome.fetched,
            "" if outcome.complete else " (incomplete)",
        )
        return outcome
