"""
Channel account routes: list, disconnect, manual sync, sync history, webhook registration.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from channelsync.config import settings
from channelsync.connectors import ConnectorRegistry
from channelsync.database import get_db
from channelsync.http.deps import get_handshake_store, get_registry, get_tenant_id
from channelsync.http.requests.schemas import ChannelAccountResponse, SyncRequest, SyncResultResponse
from channelsync.errors import ChannelSyncError
from channelsync.models import ChannelAccount, SyncTrigger
from channelsync.services.credentials import CredentialStore
from channelsync.services.handshake_store import HandshakeStore
from channelsync.services.oauth import OAuthHandshakeService
from channelsync.services.sync_engine import SyncEngine
from channelsync.services.token_manager import TokenLifecycleManager

logger = logging.getLogger(__name__)
router = APIRouter()


def _tenant_account(db: Session, account_id: str, tenant_id: str) -> ChannelAccount:
    account = CredentialStore(db).get(account_id)
    if account is None or account.tenant_id != tenant_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Channel account not found")
    return account


@router.get("")
async def list_channels(
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
):
    """List the tenant's channel accounts (tokens are never returned)."""
    accounts = CredentialStore(db).list_for_tenant(tenant_id)
    return {
        "accounts": [
            ChannelAccountResponse.model_validate(acc).model_dump(mode="json")
            for acc in accounts
        ]
    }


@router.delete("/{account_id}")
async def disconnect_channel(
    account_id: str,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    registry: ConnectorRegistry = Depends(get_registry),
    store: HandshakeStore = Depends(get_handshake_store),
):
    """Deactivate a channel account. Orders already imported are kept."""
    result = OAuthHandshakeService(db, registry, store).disconnect(account_id, tenant_id=tenant_id)
    if not result.ok:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Channel account not found")
    return {"success": True, "accountId": account_id}


@router.post("/{account_id}/sync", response_model=SyncResultResponse)
async def sync_channel(
    account_id: str,
    body: Optional[SyncRequest] = None,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    registry: ConnectorRegistry = Depends(get_registry),
):
    """Run an order sync now. Always 200; failures are reported in the result."""
    _tenant_account(db, account_id, tenant_id)
    since = body.min_modified_since if body else None
    result = await SyncEngine(db, registry).sync_orders(account_id, min_modified_since=since, trigger=SyncTrigger.MANUAL)
    return result.to_dict()


@router.get("/{account_id}/sync-history")
async def sync_history(
    account_id: str,
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    registry: ConnectorRegistry = Depends(get_registry),
):
    _tenant_account(db, account_id, tenant_id)
    return {"jobs": SyncEngine(db, registry).get_sync_history(account_id, limit=limit)}


@router.post("/{account_id}/webhooks")
async def register_webhooks(
    account_id: str,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    registry: ConnectorRegistry = Depends(get_registry),
):
    """Re-register provider webhook subscriptions for this account."""
    account = _tenant_account(db, account_id, tenant_id)
    webhook_base_url = (settings.WEBHOOK_BASE_URL or "").strip().rstrip("/")
    if not webhook_base_url:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="WEBHOOK_BASE_URL not configured")

    connector = registry.get(account.provider)
    if connector is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"No connector for {account.provider.value}")
    token_result = await TokenLifecycleManager(db, registry).ensure_valid_token(account)
    if not token_result.ok:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=token_result.error.to_dict())
    try:
        return await connector.register_webhooks(account, token_result.value, webhook_base_url)
    except ChannelSyncError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.to_dict())
