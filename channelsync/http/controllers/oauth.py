"""
OAuth connect/callback routes for every marketplace connector.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from channelsync.connectors import ConnectorRegistry
from channelsync.database import get_db
from channelsync.errors import AuthError, InvalidState
from channelsync.http.deps import get_connector, get_handshake_store, get_registry, get_tenant_id
from channelsync.http.requests.schemas import ChannelAccountResponse, ConnectResponse
from channelsync.services.handshake_store import HandshakeStore
from channelsync.services.oauth import OAuthHandshakeService

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/{provider}/connect", response_model=ConnectResponse)
async def connect(
    provider: str,
    request: Request,
    shop: Optional[str] = Query(None, description="Shop domain (Shopify)"),
    redirect_uri: Optional[str] = Query(None),
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
    registry: ConnectorRegistry = Depends(get_registry),
    store: HandshakeStore = Depends(get_handshake_store),
):
    """Start the OAuth handshake and return the provider consent URL."""
    get_connector(provider, request)
    service = OAuthHandshakeService(db, registry, store)
    try:
        url = service.generate_auth_url(provider, tenant_id, redirect_uri=redirect_uri, shop=shop)
    except AuthError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    return ConnectResponse(provider=provider.lower(), authorization_url=url)


@router.get("/{provider}/callback")
async def callback(
    provider: str,
    request: Request,
    db: Session = Depends(get_db),
    registry: ConnectorRegistry = Depends(get_registry),
    store: HandshakeStore = Depends(get_handshake_store),
):
    """
    Provider redirects here after consent.
    PKCE providers send code+state; Shopify adds shop, timestamp and an hmac over the query.
    """
    get_connector(provider, request)
    params = dict(request.query_params)
    if params.get("error"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=params.get("error_description") or params["error"],
        )

    service = OAuthHandshakeService(db, registry, store)
    result = await service.complete_handshake(provider, params.get("code"), params.get("state"), params)
    if not result.ok:
        error = result.error
        if isinstance(error, InvalidState):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=error.to_dict())
        if isinstance(error, AuthError):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=error.to_dict())
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=error.to_dict())

    account = result.value
    return {"account": ChannelAccountResponse.model_validate(account).model_dump(mode="json")}
