"""
Fulfillment push-back: send a tracking number to the channel the order came from.
The local order only changes after the channel accepted the fulfillment.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from channelsync.connectors import ConnectorRegistry
from channelsync.errors import ChannelSyncError, FulfillmentError
from channelsync.models import ChannelAccount, Order, OrderStatus
from channelsync.result import Result
from channelsync.services.credentials import CredentialStore
from channelsync.services.reconciliation import OrderReconciliationEngine, TrackingInfo
from channelsync.services.token_manager import TokenLifecycleManager

logger = logging.getLogger(__name__)


@dataclass
class FulfillmentResult:
    order_id: str
    external_order_id: str
    fulfillment_id: Optional[str]
    tracking_number: str
    carrier: str
    tracking_url: Optional[str] = None


class FulfillmentPushbackService:
    def __init__(self, db: Session, registry: ConnectorRegistry, *, token_manager: Optional[TokenLifecycleManager] = None):
        self.db = db
        self.registry = registry
        self.credentials = CredentialStore(db)
        self.token_manager = token_manager or TokenLifecycleManager(db, registry)
        self.reconciler = OrderReconciliationEngine(db, registry)

    def _account_for(self, order: Order) -> Optional[ChannelAccount]:
        account = order.channel_account
        if account is not None and account.is_active:
            return account
        # Order's own account was disconnected; fall back to the tenant's active account
        candidates = self.credentials.find_active_for_tenant(order.tenant_id, order.source_channel)
        return candidates[0] if candidates else None

    async def push_tracking(
        self,
        order_id: str,
        tracking_number: str,
        carrier: str,
        tracking_url: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> Result[FulfillmentResult]:
        query = self.db.query(Order).filter(Order.id == order_id)
        if tenant_id is not None:
            query = query.filter(Order.tenant_id == tenant_id)
        order = query.first()
        if order is None:
            return Result.failure(ChannelSyncError(f"Order {order_id} not found"))
        if not (tracking_number or "").strip():
            return Result.failure(FulfillmentError(
                "Tracking number is required",
                user_errors=[{"field": ["trackingNumber"], "message": "Tracking number is required"}],
                retryable=False,
            ))

        connector = self.registry.get(order.source_channel)
        account = self._account_for(order)
        if connector is None or account is None:
            return Result.failure(ChannelSyncError(
                f"No active {order.source_channel.value} channel account for order {order.external_order_id}"
            ))

        token_result = await self.token_manager.ensure_valid_token(account)
        if not token_result.ok:
            return Result.failure(token_result.error)

        try:
            receipt = await connector.push_tracking(
                account,
                token_result.value,
                order,
                tracking_number=tracking_number.strip(),
                carrier=carrier,
                tracking_url=tracking_url,
            )
        except FulfillmentError as e:
            logger.warning("Fulfillment for order %s rejected by %s: %s", order.external_order_id, connector.name, e.message)
            return Result.failure(e)
        except ChannelSyncError as e:
            # Transport/HTTP failures surface as retryable fulfillment errors
            logger.warning("Fulfillment push for order %s failed: %s", order.external_order_id, e.message)
            return Result.failure(FulfillmentError(
                e.message,
                status_code=getattr(e, "status_code", None),
                retryable=getattr(e, "retryable", True),
                provider=connector.name,
                account_id=account.id,
            ))

        update = self.reconciler.apply_status(
            order.tenant_id,
            order.external_order_id,
            OrderStatus.SHIPPED,
            f"Tracking {receipt.tracking_number} pushed to {connector.name}",
            TrackingInfo(receipt.tracking_number, receipt.tracking_url, receipt.carrier),
        )
        if not update.ok:
            # Channel already has the fulfillment; the next sync brings the local row in line
            logger.error("Order %s fulfilled on %s but local update failed: %s",
                         order.external_order_id, connector.name, update.error.message)

        logger.info("Order %s fulfilled on %s with %s %s",
                    order.external_order_id, connector.name, receipt.carrier, receipt.tracking_number)
        return Result.success(FulfillmentResult(
            order_id=order.id,
            external_order_id=order.external_order_id,
            fulfillment_id=receipt.fulfillment_id,
            tracking_number=receipt.tracking_number,
            carrier=receipt.carrier,
            tracking_url=receipt.tracking_url,
        ))
