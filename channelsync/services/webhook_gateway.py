"""
Inbound webhook gateway: verify signature, persist event, route by topic.

The signature is checked against the raw body before anything is parsed or written; a
rejected delivery leaves no trace in the database. Redeliveries are absorbed by the
WebhookEvent.delivery_id unique key and the order idempotency key.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from channelsync.connectors import ConnectorRegistry
from channelsync.connectors.base import ChannelConnector, TopicRoute, WebhookOrderRef
from channelsync.errors import ChannelSyncError
from channelsync.models import ChannelAccount, OrderStatus, SyncTrigger, WebhookEvent
from channelsync.services.credentials import CredentialStore
from channelsync.services.reconciliation import OrderReconciliationEngine, TrackingInfo
from channelsync.services.sync_engine import SyncEngine
from channelsync.services.token_manager import TokenLifecycleManager

logger = logging.getLogger(__name__)


@dataclass
class WebhookResult:
    success: bool
    message: str
    rejected: bool = False
    duplicate: bool = False
    malformed: bool = False


class WebhookGateway:
    def __init__(self, db: Session, registry: ConnectorRegistry):
        self.db = db
        self.registry = registry
        self.credentials = CredentialStore(db)
        self.reconciler = OrderReconciliationEngine(db, registry)
        self.token_manager = TokenLifecycleManager(db, registry)

    async def handle_webhook(
        self,
        provider: str,
        topic: Optional[str],
        shop_identifier: Optional[str],
        raw_body: bytes,
        signature_header: Optional[str],
        delivery_id: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> WebhookResult:
        connector = self.registry.get(provider)
        if connector is None:
            return WebhookResult(success=False, message=f"Unknown provider: {provider}")

        if not connector.verify_webhook(raw_body, signature_header, headers):
            logger.warning("%s webhook: signature verification failed (shop=%s topic=%s)", connector.name, shop_identifier, topic)
            return WebhookResult(success=False, message="Invalid webhook signature", rejected=True)

        try:
            payload = json.loads(raw_body.decode("utf-8")) if raw_body else {}
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning("%s webhook: invalid JSON %s", connector.name, e)
            return WebhookResult(success=False, message="Invalid JSON", malformed=True)
        if not isinstance(payload, dict):
            return WebhookResult(success=False, message="Unexpected payload shape", malformed=True)

        body_topic, body_shop = connector.webhook_envelope(payload)
        topic = topic or body_topic or ""
        shop = connector.normalize_shop(shop_identifier) or connector.normalize_shop(body_shop) or body_shop

        event = self._record_event(connector, topic, shop, delivery_id, payload)
        if event is None:
            logger.info("%s webhook %s already processed (delivery %s)", connector.name, topic, delivery_id)
            return WebhookResult(success=True, message="Duplicate delivery ignored", duplicate=True)

        try:
            result = await self._route(connector, topic, shop, payload)
        except ChannelSyncError as e:
            result = WebhookResult(success=False, message=e.message)

        event.processed_at = datetime.now(timezone.utc)
        event.error = None if result.success else result.message[:500]
        self.db.commit()
        return result

    def _record_event(
        self,
        connector: ChannelConnector,
        topic: str,
        shop: Optional[str],
        delivery_id: Optional[str],
        payload: dict,
    ) -> Optional[WebhookEvent]:
        """Persist the event; None when this delivery id was already processed."""
        if delivery_id:
            existing = self.db.query(WebhookEvent).filter(WebhookEvent.delivery_id == delivery_id).first()
            if existing is not None:
                # A failed earlier attempt may be retried; a processed one may not
                return None if existing.processed_at and not existing.error else existing

        oid = payload.get("id") or payload.get("order_id") or payload.get("receipt_id")
        event = WebhookEvent(
            source=connector.name,
            shop_domain=shop,
            topic=topic,
            delivery_id=delivery_id,
            payload_summary=f"id={oid}" if oid is not None else None,
        )
        self.db.add(event)
        try:
            self.db.commit()
        except IntegrityError:
            # Concurrent redelivery inserted the same delivery id first
            self.db.rollback()
            return None
        return event

    async def _route(self, connector: ChannelConnector, topic: str, shop: Optional[str], payload: dict) -> WebhookResult:
        route = connector.topic_routes.get(topic)
        if route is None:
            logger.info("%s webhook topic %s acknowledged without processing", connector.name, topic)
            return WebhookResult(success=True, message=f"Topic {topic or '(none)'} ignored")

        if route == TopicRoute.COMPLIANCE:
            # No customer data is held beyond order records; acknowledge
            logger.info("%s compliance webhook %s for shop %s acknowledged", connector.name, topic, shop)
            return WebhookResult(success=True, message="Compliance request acknowledged")

        if not shop:
            return WebhookResult(success=False, message="Missing shop identifier")
        accounts = self.credentials.find_by_shop(connector.provider, shop)
        if not accounts:
            logger.info("%s webhook for unknown/inactive shop %s ignored", connector.name, shop)
            return WebhookResult(success=True, message="No active channel account for shop")

        if route == TopicRoute.UNINSTALL:
            for account in accounts:
                self.credentials.deactivate(account)
            return WebhookResult(success=True, message=f"Deactivated {len(accounts)} channel account(s)")

        ref = connector.order_ref_from_webhook(topic, payload)
        errors = []
        for account in accounts:
            try:
                if route == TopicRoute.ORDER_UPSERT:
                    await self._upsert_order(connector, account, ref)
                elif route == TopicRoute.FULFILLMENT:
                    await self._mark_shipped(connector, account, ref)
                elif route == TopicRoute.CANCELLATION:
                    self._mark_cancelled(connector, account, ref)
            except ChannelSyncError as e:
                logger.warning("%s webhook %s failed for account %s: %s", connector.name, topic, account.id, e.message)
                errors.append(e.message)

        if errors:
            return WebhookResult(success=False, message="; ".join(errors)[:500])
        return WebhookResult(success=True, message=f"Processed {topic}")

    async def _upsert_order(self, connector: ChannelConnector, account: ChannelAccount, ref: WebhookOrderRef) -> None:
        """Re-fetch the single order and reconcile it; without an order id run an incremental sync."""
        if ref.native_id:
            token = (await self.token_manager.ensure_valid_token(account)).unwrap()
            provider_order = await connector.fetch_order(account, token, ref.native_id)
            if provider_order is not None:
                self.reconciler.reconcile(account, provider_order).unwrap()
                return
        result = await SyncEngine(self.db, self.registry, token_manager=self.token_manager).sync_orders(
            account.id, trigger=SyncTrigger.WEBHOOK
        )
        if result.aborted and result.errors:
            raise ChannelSyncError(result.errors[-1].message, provider=connector.name, account_id=account.id)

    async def _mark_shipped(self, connector: ChannelConnector, account: ChannelAccount, ref: WebhookOrderRef) -> None:
        if not ref.external_order_id:
            raise ChannelSyncError("Fulfillment webhook without order id", provider=connector.name)
        tracking = TrackingInfo(ref.tracking_number, ref.tracking_url, ref.carrier)
        result = self.reconciler.apply_status(
            account.tenant_id, ref.external_order_id, OrderStatus.SHIPPED, f"Fulfilled on {connector.name}", tracking
        )
        if not result.ok:
            # Order not imported yet; import it (it arrives already shipped)
            await self._upsert_order(connector, account, ref)

    def _mark_cancelled(self, connector: ChannelConnector, account: ChannelAccount, ref: WebhookOrderRef) -> None:
        if not ref.external_order_id:
            raise ChannelSyncError("Cancellation webhook without order id", provider=connector.name)
        result = self.reconciler.apply_status(
            account.tenant_id, ref.external_order_id, OrderStatus.CANCELLED, f"Cancelled on {connector.name}"
        )
        if not result.ok:
            logger.info("Cancellation for unknown order %s ignored", ref.external_order_id)
