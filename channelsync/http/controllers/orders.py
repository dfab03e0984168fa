"""
Order routes: canonical order lookup and fulfillment push-back.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from channelsync.connectors import ConnectorRegistry
from channelsync.database import get_db
from channelsync.errors import FulfillmentError, TokenError
from channelsync.http.deps import get_registry, get_tenant_id
from channelsync.http.requests.schemas import FulfillmentRequest, FulfillmentResponse
from channelsync.models import Order, OrderStatus
from channelsync.services.fulfillment import FulfillmentPushbackService

logger = logging.getLogger(__name__)
router = APIRouter()


def _order_dict(order: Order, with_items: bool = False) -> dict:
    data = {
        "id": order.id,
        "externalOrderId": order.external_order_id,
        "sourceChannel": order.source_channel.value,
        "status": order.status.value,
        "customerName": order.customer_name,
        "customerEmail": order.customer_email,
        "shippingAddress": order.shipping_address,
        "totalAmount": float(order.total_amount or 0),
        "currency": order.currency,
        "trackingNumber": order.tracking_number,
        "trackingUrl": order.tracking_url,
        "carrier": order.carrier,
        "createdAt": order.created_at.isoformat() if order.created_at else None,
    }
    if with_items:
        data["items"] = [
            {
                "id": item.id,
                "sku": item.sku,
                "title": item.title,
                "quantity": item.quantity,
                "unitPrice": float(item.unit_price or 0),
                "variations": item.variation_descriptors or [],
                "designLinks": item.design_links or [],
                "imageUrl": item.image_url,
            }
            for item in order.items
        ]
        data["history"] = [
            {
                "from": h.from_status.value if h.from_status else None,
                "to": h.to_status.value,
                "note": h.note,
                "createdAt": h.created_at.isoformat() if h.created_at else None,
            }
            for h in order.history
        ]
    return data


@router.get("")
async def list_orders(
    status_filter: OrderStatus = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
):
    query = db.query(Order).filter(Order.tenant_id == tenant_id)
    if status_filter is not None:
        query = query.filter(Order.status == status_filter)
    orders = query.order_by(Order.created_at.desc()).limit(limit).all()
    return {"orders": [_order_dict(o) for o in orders]}


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
):
    order = db.query(Order).filter(Order.id == order_id, Order.tenant_id == tenant_id).first()
    if not order:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    return _order_dict(order, with_items=True)


@router.post("/{order_id}/fulfillment", response_model=FulfillmentResponse)
async def push_fulfillment(
    order_id: str,
    request: FulfillmentRequest,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    registry: ConnectorRegistry = Depends(get_registry),
):
    """Push tracking to the originating channel; the order becomes SHIPPED only if the channel accepts it."""
    exists = db.query(Order.id).filter(Order.id == order_id, Order.tenant_id == tenant_id).first()
    if not exists:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")

    result = await FulfillmentPushbackService(db, registry).push_tracking(
        order_id,
        request.tracking_number,
        request.carrier,
        request.tracking_url,
        tenant_id=tenant_id,
    )
    if not result.ok:
        error = result.error
        if isinstance(error, FulfillmentError):
            code = status.HTTP_502_BAD_GATEWAY if error.retryable else status.HTTP_422_UNPROCESSABLE_ENTITY
            raise HTTPException(status_code=code, detail=error.to_dict())
        if isinstance(error, TokenError):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=error.to_dict())
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=error.to_dict())

    value = result.value
    return FulfillmentResponse(
        order_id=value.order_id,
        external_order_id=value.external_order_id,
        fulfillment_id=value.fulfillment_id,
        tracking_number=value.tracking_number,
        carrier=value.carrier,
        tracking_url=value.tracking_url,
    )
