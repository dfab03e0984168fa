"""
Order reconciliation - idempotent upsert of provider orders into the canonical order store.

Idempotency key is (tenant_id, external_order_id). New orders are inserted with
INSERT ... ON CONFLICT DO NOTHING so two overlapping sync runs can never create duplicates;
existing orders only get compare-and-set status changes and newly reported tracking.
"""
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from channelsync.connectors import ConnectorRegistry
from channelsync.connectors.base import CanonicalOrderDraft
from channelsync.errors import ChannelSyncError, MappingError
from channelsync.models import ChannelAccount, Order, OrderItem, OrderStatus, OrderStatusHistory
from channelsync.result import Result

logger = logging.getLogger(__name__)

# Status only moves forward; a stale provider read never reopens a shipped/cancelled order
STATUS_RANK = {
    OrderStatus.NEW: 0,
    OrderStatus.PROCESSING: 1,
    OrderStatus.SHIPPED: 2,
    OrderStatus.CANCELLED: 3,
}


@dataclass
class TrackingInfo:
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    carrier: Optional[str] = None


@dataclass
class ReconcileOutcome:
    order_id: str
    external_order_id: str
    new: bool = False
    status_changed: bool = False


@dataclass
class SyncError:
    external_ref: Optional[str]
    kind: str
    message: str

    @classmethod
    def from_exception(cls, error: ChannelSyncError, external_ref: Optional[str] = None) -> "SyncError":
        return cls(
            external_ref=external_ref or getattr(error, "external_ref", None),
            kind=error.kind,
            message=error.message,
        )


@dataclass
class BatchOutcome:
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[SyncError] = field(default_factory=list)


def _external_ref(provider_order: Any) -> Optional[str]:
    if isinstance(provider_order, dict):
        for key in ("receipt_id", "id", "name"):
            if provider_order.get(key):
                return str(provider_order[key])
    return None


def _insert_for_dialect(dialect_name: str):
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
        return insert
    if dialect_name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
        return insert
    return None


class OrderReconciliationEngine:
    def __init__(self, db: Session, registry: ConnectorRegistry):
        self.db = db
        self.registry = registry

    def reconcile(self, account: ChannelAccount, provider_order: Any) -> Result[ReconcileOutcome]:
        connector = self.registry.get(account.provider)
        if connector is None:
            return Result.failure(ChannelSyncError(
                f"No connector registered for {account.provider.value}", account_id=account.id
            ))

        try:
            draft = connector.map_to_canonical(provider_order)
        except MappingError as e:
            e.external_ref = e.external_ref or _external_ref(provider_order)
            e.account_id = account.id
            return Result.failure(e)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            return Result.failure(MappingError(
                f"Unusable {connector.name} order payload: {e}",
                external_ref=_external_ref(provider_order),
                provider=connector.name,
                account_id=account.id,
            ))

        try:
            order_id = self._insert_new(account, draft)
            if order_id is not None:
                self.db.commit()
                logger.info("Imported %s order %s for tenant %s", connector.name, draft.external_order_id, account.tenant_id)
                return Result.success(ReconcileOutcome(order_id=order_id, external_order_id=draft.external_order_id, new=True))

            existing = self._find(account.tenant_id, draft.external_order_id)
            if existing is None:
                # Conflicting row vanished between insert and read
                self.db.rollback()
                return Result.failure(ChannelSyncError(
                    f"Order {draft.external_order_id} conflicted but could not be loaded", account_id=account.id
                ))
            changed = self._transition(existing, draft.status, f"Updated from {connector.name} sync")
            if draft.tracking_number:
                self._set_tracking(existing, TrackingInfo(draft.tracking_number, draft.tracking_url, draft.carrier))
            self.db.commit()
            return Result.success(ReconcileOutcome(
                order_id=existing.id, external_order_id=draft.external_order_id, status_changed=changed
            ))
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Failed to reconcile order %s: %s", draft.external_order_id, e)
            return Result.failure(ChannelSyncError(
                f"Database error reconciling {draft.external_order_id}: {e.__class__.__name__}",
                provider=connector.name,
                account_id=account.id,
            ))

    def reconcile_batch(self, account: ChannelAccount, provider_orders: list[Any]) -> BatchOutcome:
        """Reconcile each order independently; one bad order never blocks the rest."""
        outcome = BatchOutcome()
        for provider_order in provider_orders:
            result = self.reconcile(account, provider_order)
            if not result.ok:
                outcome.failed += 1
                outcome.errors.append(SyncError.from_exception(result.error, _external_ref(provider_order)))
                logger.warning("Skipping order %s: %s", _external_ref(provider_order), result.error.message)
                continue
            if result.value.new:
                outcome.inserted += 1
            elif result.value.status_changed:
                outcome.updated += 1
            else:
                outcome.skipped += 1
        return outcome

    def apply_status(
        self,
        tenant_id: str,
        external_order_id: str,
        status: OrderStatus,
        note: str,
        tracking: Optional[TrackingInfo] = None,
    ) -> Result[ReconcileOutcome]:
        """Direct state update (webhooks, fulfillment) without re-fetching the order."""
        order = self._find(tenant_id, external_order_id)
        if order is None:
            return Result.failure(ChannelSyncError(f"Order {external_order_id} not found"))
        try:
            changed = self._transition(order, status, note)
            if tracking and tracking.tracking_number:
                self._set_tracking(order, tracking)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Failed to update order %s: %s", external_order_id, e)
            return Result.failure(ChannelSyncError(f"Database error updating {external_order_id}"))
        return Result.success(ReconcileOutcome(order_id=order.id, external_order_id=external_order_id, status_changed=changed))

    # --- internals ---

    def _find(self, tenant_id: str, external_order_id: str) -> Optional[Order]:
        return (
            self.db.query(Order)
            .filter(Order.tenant_id == tenant_id, Order.external_order_id == external_order_id)
            .first()
        )

    def _insert_new(self, account: ChannelAccount, draft: CanonicalOrderDraft) -> Optional[str]:
        """Insert order + items + first history row. Returns None when the key already exists."""
        values = {
            "id": str(uuid.uuid4()),
            "tenant_id": account.tenant_id,
            "channel_account_id": account.id,
            "external_order_id": draft.external_order_id,
            "source_channel": draft.source_channel,
            "status": draft.status,
            "customer_name": draft.customer_name,
            "customer_email": draft.customer_email,
            "shipping_address": draft.shipping_address,
            "total_amount": draft.total_amount,
            "shipping_amount": draft.shipping_amount,
            "tax_amount": draft.tax_amount,
            "currency": draft.currency,
            "tracking_number": draft.tracking_number,
            "tracking_url": draft.tracking_url,
            "carrier": draft.carrier,
            "channel_data": draft.channel_data,
            "is_gift": draft.is_gift,
            "gift_message": draft.gift_message,
        }

        insert = _insert_for_dialect(self.db.get_bind().dialect.name)
        if insert is not None:
            stmt = (
                insert(Order)
                .values(**values)
                .on_conflict_do_nothing(index_elements=["tenant_id", "external_order_id"])
                .returning(Order.id)
            )
            row = self.db.execute(stmt).first()
            if row is None:
                return None
            order_id = row[0]
        else:
            savepoint = self.db.begin_nested()
            try:
                self.db.add(Order(**values))
                self.db.flush()
                savepoint.commit()
            except IntegrityError:
                savepoint.rollback()
                return None
            order_id = values["id"]

        self.db.add_all([
            OrderItem(
                order_id=order_id,
                listing_ref=item.listing_ref,
                sku=item.sku,
                title=item.title,
                quantity=item.quantity,
                unit_price=item.unit_price,
                variation_descriptors=item.variation_descriptors,
                design_links=item.design_links,
                image_url=item.image_url,
            )
            for item in draft.items
        ])
        self.db.add(OrderStatusHistory(
            order_id=order_id,
            from_status=None,
            to_status=draft.status,
            note=f"Imported from {draft.source_channel.value.lower()}",
        ))
        return order_id

    def _transition(self, order: Order, new_status: OrderStatus, note: str) -> bool:
        """Compare-and-set status change; adds a history row only if this call won the update."""
        old_status = order.status
        if old_status == new_status or STATUS_RANK[new_status] < STATUS_RANK[old_status]:
            return False
        rows = (
            self.db.query(Order)
            .filter(Order.id == order.id, Order.status == old_status)
            .update({Order.status: new_status}, synchronize_session=False)
        )
        if rows != 1:
            logger.debug("Order %s status already changed by a concurrent run", order.external_order_id)
            return False
        self.db.add(OrderStatusHistory(order_id=order.id, from_status=old_status, to_status=new_status, note=note))
        order.status = new_status
        return True

    def _set_tracking(self, order: Order, tracking: TrackingInfo) -> None:
        if (
            order.tracking_number == tracking.tracking_number
            and (tracking.tracking_url is None or order.tracking_url == tracking.tracking_url)
            and (tracking.carrier is None or order.carrier == tracking.carrier)
        ):
            return
        order.tracking_number = tracking.tracking_number
        if tracking.tracking_url:
            order.tracking_url = tracking.tracking_url
        if tracking.carrier:
            order.carrier = tracking.carrier
