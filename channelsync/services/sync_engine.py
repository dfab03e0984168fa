"""
Order sync engine: token -> paginated fetch -> reconciliation, recorded as a SyncJob.
sync_orders never raises for expected failures; everything lands in the SyncResult.
"""
import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session

from channelsync.config import settings
from channelsync.connectors import ConnectorRegistry
from channelsync.connectors.base import OrderFilter
from channelsync.errors import ChannelSyncError
from channelsync.models import ChannelAccount, SyncJob, SyncJobStatus, SyncTrigger
from channelsync.services.credentials import CredentialStore
from channelsync.services.fetch_engine import PaginatedFetchEngine
from channelsync.services.reconciliation import OrderReconciliationEngine, SyncError
from channelsync.services.token_manager import TokenLifecycleManager

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    channel_account_id: str
    total_fetched: int = 0
    total_inserted: int = 0
    total_updated: int = 0
    total_skipped: int = 0
    total_failed: int = 0
    pages: int = 0
    aborted: bool = False
    job_id: Optional[str] = None
    errors: list[SyncError] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.aborted and not self.errors

    def to_dict(self) -> dict:
        data = asdict(self)
        data["success"] = self.success
        return data


class SyncEngine:
    """Background sync engine for order ingestion"""

    def __init__(
        self,
        db: Session,
        registry: ConnectorRegistry,
        *,
        fetch_engine: Optional[PaginatedFetchEngine] = None,
        token_manager: Optional[TokenLifecycleManager] = None,
    ):
        self.db = db
        self.registry = registry
        self.credentials = CredentialStore(db)
        self.fetch_engine = fetch_engine or PaginatedFetchEngine()
        self.token_manager = token_manager or TokenLifecycleManager(db, registry)
        self.reconciler = OrderReconciliationEngine(db, registry)

    def _since(self, account: ChannelAccount, min_modified_since: Optional[datetime]) -> datetime:
        if min_modified_since is not None:
            return min_modified_since
        if account.last_sync_at is not None:
            last = account.last_sync_at
            return last if last.tzinfo else last.replace(tzinfo=timezone.utc)
        return datetime.now(timezone.utc) - timedelta(days=settings.SYNC_LOOKBACK_DAYS)

    async def sync_orders(
        self,
        channel_account_id: str,
        min_modified_since: Optional[datetime] = None,
        trigger: SyncTrigger = SyncTrigger.MANUAL,
    ) -> SyncResult:
        """Sync orders from channel."""
        result = SyncResult(channel_account_id=channel_account_id)
        account = self.credentials.get(channel_account_id)
        if account is None or not account.is_active:
            result.aborted = True
            result.errors.append(SyncError(None, "ChannelSyncError", "Channel account not found or inactive"))
            return result

        connector = self.registry.get(account.provider)
        if connector is None:
            result.aborted = True
            result.errors.append(SyncError(None, "ChannelSyncError", f"No connector for {account.provider.value}"))
            return result

        started_at = datetime.now(timezone.utc)
        sync_job = SyncJob(
            channel_account_id=account.id,
            status=SyncJobStatus.RUNNING,
            trigger=trigger,
            started_at=started_at,
        )
        self.db.add(sync_job)
        self.db.commit()
        self.db.refresh(sync_job)
        result.job_id = sync_job.id

        token_result = await self.token_manager.ensure_valid_token(account)
        if not token_result.ok:
            result.aborted = True
            result.errors.append(SyncError.from_exception(token_result.error))
            self._finish(sync_job, result, SyncJobStatus.FAILED, token_result.error.message)
            return result

        order_filter = OrderFilter(modified_since=self._since(account, min_modified_since))

        async def on_batch(batch: list[dict]) -> None:
            outcome = self.reconciler.reconcile_batch(account, batch)
            result.total_inserted += outcome.inserted
            result.total_updated += outcome.updated
            result.total_skipped += outcome.skipped
            result.total_failed += outcome.failed
            result.errors.extend(outcome.errors)

        fetch = await self.fetch_engine.run(connector, account, token_result.value, order_filter, on_batch)
        result.pages = fetch.pages
        result.total_fetched = fetch.fetched

        if fetch.error is not None:
            result.aborted = True
            result.errors.append(SyncError.from_exception(fetch.error))
            status = SyncJobStatus.PARTIAL if fetch.pages else SyncJobStatus.FAILED
            self._finish(sync_job, result, status, fetch.error.message)
        else:
            # Watermark only advances after a complete pass, to the time this run started
            self.credentials.update_last_sync_at(account, started_at)
            status = SyncJobStatus.PARTIAL if result.errors else SyncJobStatus.SUCCESS
            self._finish(sync_job, result, status, None)

        logger.info(
            "Order sync for account %s: fetched=%s inserted=%s updated=%s skipped=%s errors=%s%s",
            account.id, result.total_fetched, result.total_inserted, result.total_updated,
            result.total_skipped, len(result.errors), " (aborted)" if result.aborted else "",
        )
        return result

    def _finish(self, sync_job: SyncJob, result: SyncResult, status: SyncJobStatus, error_message: Optional[str]) -> None:
        sync_job.status = status
        sync_job.finished_at = datetime.now(timezone.utc)
        sync_job.records_fetched = result.total_fetched
        sync_job.records_inserted = result.total_inserted
        sync_job.records_skipped = result.total_skipped
        sync_job.records_failed = result.total_failed
        sync_job.error_message = (error_message or "")[:1000] or None
        self.db.commit()

    def get_sync_history(self, account_id: str, limit: int = 50) -> list:
        """Get sync job history for an account"""
        jobs = self.db.query(SyncJob).filter(
            SyncJob.channel_account_id == account_id
        ).order_by(SyncJob.started_at.desc()).limit(limit).all()

        return [
            {
                "id": job.id,
                "trigger": job.trigger.value if job.trigger else None,
                "status": job.status.value,
                "startedAt": job.started_at.isoformat() if job.started_at else None,
                "completedAt": job.finished_at.isoformat() if job.finished_at else None,
                "recordsFetched": job.records_fetched,
                "recordsInserted": job.records_inserted,
                "recordsSkipped": job.records_skipped,
                "recordsFailed": job.records_failed,
                "errorMessage": job.error_message,
            }
            for job in jobs
        ]


async def sync_active_accounts(
    session_factory: Callable[[], Session],
    registry: ConnectorRegistry,
    trigger: SyncTrigger = SyncTrigger.SCHEDULED,
) -> list[SyncResult]:
    """Sync every active account concurrently; each run gets its own session."""
    db = session_factory()
    try:
        account_ids = [a.id for a in CredentialStore(db).list_active() if not a.needs_reauth]
    finally:
        db.close()

    async def run_one(account_id: str) -> SyncResult:
        session = session_factory()
        try:
            return await SyncEngine(session, registry).sync_orders(account_id, trigger=trigger)
        except ChannelSyncError as e:
            logger.error("Sync for account %s failed: %s", account_id, e.message)
            return SyncResult(channel_account_id=account_id, aborted=True, errors=[SyncError.from_exception(e)])
        except Exception as e:
            # Failures stay confined to this account's result
            logger.exception("Sync for account %s crashed", account_id)
            session.rollback()
            error = SyncError(external_ref=None, kind=type(e).__name__, message=str(e)[:500])
            return SyncResult(channel_account_id=account_id, aborted=True, errors=[error])
        finally:
            session.close()

    if not account_ids:
        return []
    results = await asyncio.gather(*(run_one(a) for a in account_ids))
    logger.info("Scheduled sync finished for %s accounts", len(results))
    return list(results)
