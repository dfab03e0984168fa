"""
Public webhook receiver. No tenant header; the provider signature authenticates the call.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from channelsync.connectors import ConnectorRegistry
from channelsync.database import get_db
from channelsync.http.deps import get_connector, get_registry
from channelsync.http.requests.schemas import WebhookResponse
from channelsync.services.webhook_gateway import WebhookGateway

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/{provider}/webhook", response_model=WebhookResponse)
async def receive_webhook(
    provider: str,
    request: Request,
    db: Session = Depends(get_db),
    registry: ConnectorRegistry = Depends(get_registry),
):
    """
    Verify the provider HMAC over the raw body, persist the event, route by topic.
    200 for handled and ignored topics (so the provider does not retry), 401 on bad signature.
    """
    connector = get_connector(provider, request)
    raw_body = await request.body()
    headers = request.headers

    result = await WebhookGateway(db, registry).handle_webhook(
        provider,
        topic=headers.get(connector.topic_header),
        shop_identifier=headers.get(connector.shop_header),
        raw_body=raw_body,
        signature_header=headers.get(connector.signature_header),
        delivery_id=headers.get(connector.delivery_header),
        headers=headers,
    )
    if result.rejected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")
    if result.malformed:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.message)
    if not result.success:
        logger.warning("%s webhook processing failed: %s", connector.name, result.message)
    return WebhookResponse(success=result.success, message=result.message)
