"""
Paginated fetch tests against an in-memory connector.
"""
import asyncio
from types import SimpleNamespace

import pytest

from channelsync.connectors.base import OrderFilter, OrderPage, Pagination
from channelsync.errors import ProviderError, TransportError
from channelsync.services.fetch_engine import PaginatedFetchEngine

ACCOUNT = SimpleNamespace(id="acct-1")


class FakeConnector:
    name = "fake"
    page_delay = 0

    def __init__(self, orders, pagination=Pagination.CURSOR, fail_on_page=None, slow_page=None, error=None):
        self.orders = orders
        self.pagination = pagination
        self.fail_on_page = fail_on_page
        self.slow_page = slow_page
        self.error = error or TransportError("connection reset", provider="fake")
        self.calls = []

    async def fetch_orders(self, account, token, order_filter, cursor, limit):
        self.calls.append((cursor, limit))
        page_no = len(self.calls)
        if page_no == self.fail_on_page:
            raise self.error
        if page_no == self.slow_page:
            await asyncio.sleep(1)

        start = int(cursor or 0)
        chunk = self.orders[start:start + limit]
        end = start + len(chunk)
        if self.pagination == Pagination.CURSOR:
            return OrderPage(orders=chunk, next_cursor=str(end) if end < len(self.orders) else None)
        return OrderPage(orders=chunk, total_count=len(self.orders))


def orders(n):
    return [{"id": i} for i in range(1, n + 1)]


def engine(**kwargs):
    kwargs.setdefault("max_records", 1000)
    kwargs.setdefault("max_pages", 10)
    kwargs.setdefault("page_timeout", 5)
    kwargs.setdefault("overall_timeout", 30)
    kwargs.setdefault("page_size", 2)
    return PaginatedFetchEngine(**kwargs)


class Collector:
    def __init__(self):
        self.batches = []

    async def __call__(self, batch):
        self.batches.append([o["id"] for o in batch])


class TestPaginatedFetch:
    @pytest.mark.asyncio
    async def test_cursor_pagination_reads_every_page(self):
        connector = FakeConnector(orders(5))
        seen = Collector()

        outcome = await engine().run(connector, ACCOUNT, "tok", OrderFilter(), seen)

        assert outcome.complete and not outcome.capped
        assert outcome.pages == 3
        assert outcome.fetched == 5
        assert seen.batches == [[1, 2], [3, 4], [5]]
        assert [c[0] for c in connector.calls] == [None, "2", "4"]

    @pytest.mark.asyncio
    async def test_offset_pagination_stops_at_total_count(self):
        connector = FakeConnector(orders(4), pagination=Pagination.OFFSET)
        seen = Collector()

        outcome = await engine().run(connector, ACCOUNT, "tok", OrderFilter(), seen)

        assert outcome.complete
        assert outcome.pages == 2
        assert [c[0] for c in connector.calls] == [0, 2]
        assert seen.batches == [[1, 2], [3, 4]]

    @pytest.mark.asyncio
    async def test_empty_first_page(self):
        connector = FakeConnector([], pagination=Pagination.OFFSET)
        seen = Collector()

        outcome = await engine().run(connector, ACCOUNT, "tok", OrderFilter(), seen)

        assert outcome.complete
        assert outcome.pages == 1
        assert outcome.fetched == 0
        assert seen.batches == []

    @pytest.mark.asyncio
    async def test_record_cap_trims_last_request(self):
        connector = FakeConnector(orders(10))
        seen = Collector()

        outcome = await engine(max_records=3).run(connector, ACCOUNT, "tok", OrderFilter(), seen)

        assert outcome.capped
        assert outcome.fetched == 3
        assert connector.calls[-1][1] == 1
        assert seen.batches == [[1, 2], [3]]

    @pytest.mark.asyncio
    async def test_page_cap(self):
        connector = FakeConnector(orders(10))

        outcome = await engine(max_pages=2).run(connector, ACCOUNT, "tok", OrderFilter(), Collector())

        assert outcome.capped
        assert outcome.pages == 2
        assert len(connector.calls) == 2

    @pytest.mark.asyncio
    async def test_failed_page_keeps_earlier_batches(self):
        connector = FakeConnector(orders(6), fail_on_page=2)
        seen = Collector()

        outcome = await engine().run(connector, ACCOUNT, "tok", OrderFilter(), seen)

        assert not outcome.complete
        assert isinstance(outcome.error, TransportError)
        assert outcome.error.account_id == "acct-1"
        assert outcome.pages == 1
        assert seen.batches == [[1, 2]]

    @pytest.mark.asyncio
    async def test_provider_error_is_reported(self):
        connector = FakeConnector(orders(2), fail_on_page=1, error=ProviderError("unauthorized", status_code=401))

        outcome = await engine().run(connector, ACCOUNT, "tok", OrderFilter(), Collector())

        assert outcome.pages == 0
        assert outcome.error.status_code == 401
        assert not outcome.error.retryable

    @pytest.mark.asyncio
    async def test_page_timeout(self):
        connector = FakeConnector(orders(6), slow_page=2)
        seen = Collector()

        outcome = await engine(page_timeout=0.05).run(connector, ACCOUNT, "tok", OrderFilter(), seen)

        assert not outcome.complete
        assert isinstance(outcome.error, TransportError)
        assert "timed out" in outcome.error.message
        assert seen.batches == [[1, 2]]

    @pytest.mark.asyncio
    async def test_overall_deadline(self):
        ticks = iter([0.0, 0.0, 100.0, 100.0])
        connector = FakeConnector(orders(6))
        slow_clock_engine = engine(overall_timeout=10, clock=lambda: next(ticks))

        outcome = await slow_clock_engine.run(connector, ACCOUNT, "tok", OrderFilter(), Collector())

        assert not outcome.complete
        assert outcome.pages == 1
        assert "deadline" in outcome.error.message
