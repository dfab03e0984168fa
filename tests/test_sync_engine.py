"""
End-to-end sync tests: token -> paginated Etsy fetch -> reconciliation -> SyncJob.
"""
from datetime import datetime, timezone

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from channelsync.models import ChannelProvider, Order, SyncJob, SyncJobStatus, SyncTrigger
from channelsync.services.credentials import CredentialStore
from channelsync.services.fetch_engine import PaginatedFetchEngine
from channelsync.services.sync_engine import SyncEngine, sync_active_accounts

from conftest import ETSY_SHOP_ID, make_etsy_receipt

RECEIPTS_PATH = f"/v3/application/shops/{ETSY_SHOP_ID}/receipts"


def receipts_provider(receipts, fail_at_offset=None):
    def handler(request):
        if request.url.path != RECEIPTS_PATH:
            return httpx.Response(404, json={"error": "not found"})
        offset = int(request.url.params["offset"])
        limit = int(request.url.params["limit"])
        if offset == fail_at_offset:
            return httpx.Response(500, json={"error": "internal"})
        return httpx.Response(200, json={"count": len(receipts), "results": receipts[offset:offset + limit]})

    return handler


def sync_engine(db_session, registry):
    fetch = PaginatedFetchEngine(max_records=100, max_pages=10, page_timeout=5, overall_timeout=30, page_size=2)
    return SyncEngine(db_session, registry, fetch_engine=fetch)


class TestSyncOrders:
    @pytest.mark.asyncio
    async def test_full_sync(self, db_session, registry, provider, etsy_account):
        provider.handler = receipts_provider([make_etsy_receipt(i) for i in range(1, 6)])

        result = await sync_engine(db_session, registry).sync_orders(etsy_account.id)

        assert result.success
        assert (result.total_fetched, result.total_inserted, result.pages) == (5, 5, 3)
        assert db_session.query(Order).count() == 5
        job = db_session.get(SyncJob, result.job_id)
        assert job.status == SyncJobStatus.SUCCESS
        assert job.trigger == SyncTrigger.MANUAL
        assert job.records_inserted == 5
        assert etsy_account.last_sync_at is not None

        params = provider.requests[0].url.params
        assert params["was_paid"] == "true"
        assert params["was_shipped"] == "false"
        assert "min_last_modified" in params
        assert provider.requests[0].headers["authorization"] == "Bearer etsy-access-token"

    @pytest.mark.asyncio
    async def test_explicit_modified_since(self, db_session, registry, provider, etsy_account):
        provider.handler = receipts_provider([])
        since = datetime(2024, 1, 1, tzinfo=timezone.utc)

        await sync_engine(db_session, registry).sync_orders(etsy_account.id, min_modified_since=since)

        assert provider.requests[0].url.params["min_last_modified"] == str(int(since.timestamp()))

    @pytest.mark.asyncio
    async def test_second_run_is_idempotent(self, db_session, registry, provider, etsy_account):
        provider.handler = receipts_provider([make_etsy_receipt(i) for i in range(1, 4)])
        engine = sync_engine(db_session, registry)

        await engine.sync_orders(etsy_account.id)
        second = await engine.sync_orders(etsy_account.id)

        assert second.total_inserted == 0
        assert second.total_skipped == 3
        assert db_session.query(Order).count() == 3

    @pytest.mark.asyncio
    async def test_page_failure_keeps_imported_orders_and_watermark(self, db_session, registry, provider, etsy_account):
        provider.handler = receipts_provider([make_etsy_receipt(i) for i in range(1, 6)], fail_at_offset=2)

        result = await sync_engine(db_session, registry).sync_orders(etsy_account.id)

        assert result.aborted
        assert not result.success
        assert result.total_inserted == 2
        assert result.errors[-1].kind == "ProviderError"
        assert db_session.query(Order).count() == 2
        assert db_session.get(SyncJob, result.job_id).status == SyncJobStatus.PARTIAL
        assert etsy_account.last_sync_at is None

    @pytest.mark.asyncio
    async def test_rate_limited_page_is_retried(self, db_session, registry, provider, etsy_account):
        inner = receipts_provider([make_etsy_receipt(i) for i in range(1, 4)])
        limited = []

        def handler(request):
            offset = request.url.params.get("offset")
            if offset == "2" and not limited:
                limited.append(offset)
                return httpx.Response(429, headers={"Retry-After": "0"}, json={"error": "Too many requests"})
            return inner(request)

        provider.handler = handler

        result = await sync_engine(db_session, registry).sync_orders(etsy_account.id)

        assert result.success
        assert result.total_inserted == 3
        assert limited == ["2"]

    @pytest.mark.asyncio
    async def test_malformed_order_is_reported_not_fatal(self, db_session, registry, provider, etsy_account):
        receipts = [make_etsy_receipt(1), make_etsy_receipt(None, name="bad"), make_etsy_receipt(3)]
        provider.handler = receipts_provider(receipts)

        result = await sync_engine(db_session, registry).sync_orders(etsy_account.id)

        assert not result.aborted
        assert result.total_inserted == 2
        assert result.total_failed == 1
        assert [e.kind for e in result.errors] == ["MappingError"]
        assert db_session.get(SyncJob, result.job_id).status == SyncJobStatus.PARTIAL
        assert etsy_account.last_sync_at is not None

    @pytest.mark.asyncio
    async def test_account_needing_reauth_is_not_synced(self, db_session, registry, provider, etsy_account):
        CredentialStore(db_session).mark_needs_reauth(etsy_account)

        result = await sync_engine(db_session, registry).sync_orders(etsy_account.id)

        assert result.aborted
        assert result.errors[0].kind == "TokenError"
        assert provider.requests == []
        assert db_session.get(SyncJob, result.job_id).status == SyncJobStatus.FAILED

    @pytest.mark.asyncio
    async def test_inactive_account(self, db_session, registry, provider, etsy_account):
        CredentialStore(db_session).deactivate(etsy_account)

        result = await sync_engine(db_session, registry).sync_orders(etsy_account.id)

        assert result.aborted
        assert result.job_id is None
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_sync_history(self, db_session, registry, provider, etsy_account):
        provider.handler = receipts_provider([make_etsy_receipt(1)])
        engine = sync_engine(db_session, registry)
        await engine.sync_orders(etsy_account.id, trigger=SyncTrigger.WEBHOOK)

        jobs = engine.get_sync_history(etsy_account.id)

        assert len(jobs) == 1
        assert jobs[0]["status"] == "SUCCESS"
        assert jobs[0]["trigger"] == "WEBHOOK"
        assert jobs[0]["recordsInserted"] == 1


class TestScheduledSync:
    @pytest.mark.asyncio
    async def test_skips_accounts_needing_reauth(self, db_session, session_factory, registry, provider, etsy_account):
        provider.handler = receipts_provider([make_etsy_receipt(1)])
        flagged = CredentialStore(db_session).upsert(
            tenant_id="tenant-2",
            provider=ChannelProvider.ETSY,
            external_shop_id="999",
            shop_name=None,
            access_token="t2",
            refresh_token=None,
            token_expires_at=None,
            scope=None,
        )
        CredentialStore(db_session).mark_needs_reauth(flagged)

        results = await sync_active_accounts(session_factory, registry)

        assert [r.channel_account_id for r in results] == [etsy_account.id]
        assert results[0].total_inserted == 1

    @pytest.mark.asyncio
    async def test_database_error_on_one_account_keeps_other_results(
        self, db_session, session_factory, registry, provider, etsy_account, shopify_account, monkeypatch
    ):
        provider.handler = lambda request: httpx.Response(200, json={"data": {"orders": {
            "edges": [],
            "pageInfo": {"hasNextPage": False, "endCursor": None},
        }}})
        original = SyncEngine.sync_orders

        async def flaky_sync(self, channel_account_id, *args, **kwargs):
            if channel_account_id == etsy_account.id:
                raise OperationalError("SELECT 1", {}, Exception("database is locked"))
            return await original(self, channel_account_id, *args, **kwargs)

        monkeypatch.setattr(SyncEngine, "sync_orders", flaky_sync)

        results = {r.channel_account_id: r for r in await sync_active_accounts(session_factory, registry)}

        assert set(results) == {etsy_account.id, shopify_account.id}
        assert results[etsy_account.id].aborted
        assert results[etsy_account.id].errors[0].kind == "OperationalError"
        assert results[shopify_account.id].success
