"""
Reconciliation tests: idempotent import, per-order failure isolation, forward-only status.
"""
from decimal import Decimal

import pytest

from channelsync.models import Order, OrderItem, OrderStatus, OrderStatusHistory
from channelsync.services.credentials import CredentialStore
from channelsync.services.reconciliation import OrderReconciliationEngine, TrackingInfo

from conftest import make_etsy_receipt, make_shopify_order


def history(db_session, order_id):
    return (
        db_session.query(OrderStatusHistory)
        .filter(OrderStatusHistory.order_id == order_id)
        .all()
    )


class TestReconcile:
    def test_new_order_is_inserted_with_items_and_history(self, db_session, registry, etsy_account):
        result = OrderReconciliationEngine(db_session, registry).reconcile(etsy_account, make_etsy_receipt(1001))

        assert result.ok
        assert result.value.new
        order = db_session.query(Order).one()
        assert order.external_order_id == "ETSY-1001"
        assert order.tenant_id == etsy_account.tenant_id
        assert order.channel_account_id == etsy_account.id
        assert order.status == OrderStatus.PROCESSING
        assert order.total_amount == Decimal("25.99")
        assert order.shipping_address["city"] == "Portland"
        item = db_session.query(OrderItem).one()
        assert item.sku == "MUG-BLUE"
        assert item.variation_descriptors == ["Color: Blue", "Size: Large"]
        rows = history(db_session, order.id)
        assert [(h.from_status, h.to_status) for h in rows] == [(None, OrderStatus.PROCESSING)]

    def test_reimport_is_idempotent(self, db_session, registry, etsy_account):
        engine = OrderReconciliationEngine(db_session, registry)
        receipt = make_etsy_receipt(1001)

        first = engine.reconcile(etsy_account, receipt)
        second = engine.reconcile(etsy_account, receipt)

        assert first.value.new
        assert not second.value.new
        assert not second.value.status_changed
        assert second.value.order_id == first.value.order_id
        assert db_session.query(Order).count() == 1
        assert db_session.query(OrderItem).count() == 1
        assert len(history(db_session, first.value.order_id)) == 1

    def test_same_external_id_in_two_tenants(self, db_session, registry, etsy_account):
        other = CredentialStore(db_session).upsert(
            tenant_id="tenant-2",
            provider=etsy_account.provider,
            external_shop_id=etsy_account.external_shop_id,
            shop_name=None,
            access_token="t2",
            refresh_token=None,
            token_expires_at=None,
            scope=None,
        )
        engine = OrderReconciliationEngine(db_session, registry)

        assert engine.reconcile(etsy_account, make_etsy_receipt(1001)).value.new
        assert engine.reconcile(other, make_etsy_receipt(1001)).value.new
        assert db_session.query(Order).count() == 2

    def test_status_change_only_touches_status_and_tracking(self, db_session, registry, etsy_account):
        engine = OrderReconciliationEngine(db_session, registry)
        created = engine.reconcile(etsy_account, make_etsy_receipt(1001)).value

        shipped = make_etsy_receipt(
            1001,
            name="Someone Else",
            grandtotal={"amount": 1, "divisor": 100, "currency_code": "USD"},
            is_shipped=True,
            shipments=[{"tracking_code": "9400111", "carrier_name": "usps"}],
        )
        result = engine.reconcile(etsy_account, shipped)

        assert result.value.status_changed
        order = db_session.get(Order, created.order_id)
        db_session.refresh(order)
        assert order.status == OrderStatus.SHIPPED
        assert order.tracking_number == "9400111"
        assert order.carrier == "usps"
        assert order.customer_name == "Jane Buyer"
        assert order.total_amount == Decimal("25.99")
        transitions = sorted((h.from_status or "", h.to_status) for h in history(db_session, order.id))
        assert transitions == [("", OrderStatus.PROCESSING), (OrderStatus.PROCESSING, OrderStatus.SHIPPED)]

    def test_stale_read_never_moves_status_backwards(self, db_session, registry, etsy_account):
        engine = OrderReconciliationEngine(db_session, registry)
        engine.reconcile(etsy_account, make_etsy_receipt(1001, is_shipped=True))

        result = engine.reconcile(etsy_account, make_etsy_receipt(1001))

        assert not result.value.status_changed
        assert db_session.query(Order).one().status == OrderStatus.SHIPPED

    def test_unmappable_order_is_a_failure(self, db_session, registry, etsy_account):
        result = OrderReconciliationEngine(db_session, registry).reconcile(etsy_account, "garbage")
        assert not result.ok
        assert result.error.kind == "MappingError"
        assert db_session.query(Order).count() == 0

    def test_shopify_order_keeps_channel_data(self, db_session, registry, shopify_account):
        result = OrderReconciliationEngine(db_session, registry).reconcile(shopify_account, make_shopify_order(2002))

        order = db_session.get(Order, result.value.order_id)
        assert order.external_order_id == "SHOPIFY-2002"
        assert order.channel_data["fulfillment_order_id"] == "gid://shopify/FulfillmentOrder/20029"
        assert order.items[0].design_links == ["https://files.example.com/design.pdf"]


class TestReconcileBatch:
    def test_one_malformed_order_does_not_block_the_rest(self, db_session, registry, etsy_account):
        batch = [make_etsy_receipt(i) for i in (1, 2, 3, 4, 5)]
        batch[2] = make_etsy_receipt(None, name="Broken Receipt")

        outcome = OrderReconciliationEngine(db_session, registry).reconcile_batch(etsy_account, batch)

        assert outcome.inserted == 4
        assert outcome.failed == 1
        assert len(outcome.errors) == 1
        assert outcome.errors[0].kind == "MappingError"
        assert outcome.errors[0].external_ref == "Broken Receipt"
        ids = sorted(o.external_order_id for o in db_session.query(Order).all())
        assert ids == ["ETSY-1", "ETSY-2", "ETSY-4", "ETSY-5"]

    def test_counts_updates_and_skips(self, db_session, registry, etsy_account):
        engine = OrderReconciliationEngine(db_session, registry)
        engine.reconcile_batch(etsy_account, [make_etsy_receipt(1), make_etsy_receipt(2)])

        outcome = engine.reconcile_batch(
            etsy_account, [make_etsy_receipt(1), make_etsy_receipt(2, is_shipped=True), make_etsy_receipt(3)]
        )

        assert (outcome.inserted, outcome.updated, outcome.skipped, outcome.failed) == (1, 1, 1, 0)


class TestApplyStatus:
    def test_apply_status_with_tracking(self, db_session, registry, etsy_account):
        engine = OrderReconciliationEngine(db_session, registry)
        engine.reconcile(etsy_account, make_etsy_receipt(7))

        result = engine.apply_status(
            etsy_account.tenant_id, "ETSY-7", OrderStatus.SHIPPED, "Shipped",
            TrackingInfo("TRK-7", "https://track.example/TRK-7", "ups"),
        )

        assert result.value.status_changed
        order = db_session.query(Order).one()
        assert order.status == OrderStatus.SHIPPED
        assert order.tracking_url == "https://track.example/TRK-7"

    def test_repeated_apply_status_adds_one_history_row(self, db_session, registry, etsy_account):
        engine = OrderReconciliationEngine(db_session, registry)
        order_id = engine.reconcile(etsy_account, make_etsy_receipt(7)).value.order_id

        engine.apply_status(etsy_account.tenant_id, "ETSY-7", OrderStatus.CANCELLED, "Cancelled")
        again = engine.apply_status(etsy_account.tenant_id, "ETSY-7", OrderStatus.CANCELLED, "Cancelled")

        assert not again.value.status_changed
        assert len(history(db_session, order_id)) == 2

    def test_unknown_order(self, db_session, registry):
        result = OrderReconciliationEngine(db_session, registry).apply_status(
            "tenant-1", "ETSY-404", OrderStatus.SHIPPED, "Shipped"
        )
        assert not result.ok

    @pytest.mark.parametrize("status", [OrderStatus.NEW, OrderStatus.PROCESSING])
    def test_cancelled_is_terminal(self, db_session, registry, etsy_account, status):
        engine = OrderReconciliationEngine(db_session, registry)
        engine.reconcile(etsy_account, make_etsy_receipt(8, status="Canceled"))

        result = engine.apply_status(etsy_account.tenant_id, "ETSY-8", status, "reopen")

        assert not result.value.status_changed
        assert db_session.query(Order).one().status == OrderStatus.CANCELLED
