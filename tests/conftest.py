"""
Shared fixtures: in-memory SQLite database, connectors wired to httpx.MockTransport,
and connected Etsy/Shopify/TikTok accounts.
"""
import base64
import json
import os
import time

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key-for-channelsync")
os.environ["WEBHOOK_BASE_URL"] = ""
os.environ["ENABLE_SCHEDULER"] = "false"

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from channelsync.config import ProviderConfig
from channelsync.connectors import ConnectorRegistry
from channelsync.connectors.etsy import EtsyConnector
from channelsync.connectors.shopify import ShopifyConnector
from channelsync.connectors.tiktok import TikTokConnector
from channelsync.database import Base
from channelsync.models import ChannelProvider
from channelsync.services.credentials import CredentialStore

TENANT_ID = "tenant-1"
ETSY_SHOP_ID = "5551234"
SHOPIFY_SHOP = "demo-store.myshopify.com"
TIKTOK_SHOP_ID = "7495000111"
TIKTOK_SHOP_CIPHER = "ROW_cipher_abc"
ETSY_WEBHOOK_KEY = b"etsy-webhook-signing-key"

ETSY_CONFIG = ProviderConfig(
    client_id="etsy-keystring",
    client_secret="etsy-shared-secret",
    redirect_uri="https://api.example.com/api/etsy/callback",
    scopes=["transactions_r", "transactions_w"],
    webhook_secret="whsec_" + base64.b64encode(ETSY_WEBHOOK_KEY).decode(),
)

SHOPIFY_CONFIG = ProviderConfig(
    client_id="shopify-api-key",
    client_secret="shopify-api-secret",
    redirect_uri="https://api.example.com/api/shopify/callback",
    scopes=["read_orders", "write_fulfillments"],
)

TIKTOK_CONFIG = ProviderConfig(
    client_id="tiktok-app-key",
    client_secret="tiktok-app-secret",
    redirect_uri="https://api.example.com/api/tiktok/callback",
    service_id="7001122334455",
)


class ProviderStub:
    """Routes MockTransport requests to a handler and keeps every request for assertions."""

    def __init__(self, handler=None):
        self.handler = handler or (lambda request: httpx.Response(404, json={"error": "not stubbed"}))
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.handler(request)
        if hasattr(response, "__await__"):
            response = await response
        return response

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


def json_body(request: httpx.Request) -> dict:
    return json.loads(request.content.decode("utf-8"))


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def provider():
    return ProviderStub()


@pytest.fixture
def registry(provider):
    registry = ConnectorRegistry()
    registry.register(EtsyConnector(ETSY_CONFIG, transport=provider.transport, page_delay=0))
    registry.register(ShopifyConnector(SHOPIFY_CONFIG, transport=provider.transport, page_delay=0))
    registry.register(TikTokConnector(TIKTOK_CONFIG, transport=provider.transport, page_delay=0))
    return registry


@pytest.fixture
def etsy_account(db_session):
    return CredentialStore(db_session).upsert(
        tenant_id=TENANT_ID,
        provider=ChannelProvider.ETSY,
        external_shop_id=ETSY_SHOP_ID,
        shop_name="Crafty Corner",
        access_token="etsy-access-token",
        refresh_token="etsy-refresh-token",
        token_expires_at=int(time.time()) + 3600,
        scope="transactions_r transactions_w",
    )


@pytest.fixture
def shopify_account(db_session):
    return CredentialStore(db_session).upsert(
        tenant_id=TENANT_ID,
        provider=ChannelProvider.SHOPIFY,
        external_shop_id=SHOPIFY_SHOP,
        shop_name="Demo Store",
        access_token="shpat_offline_token",
        refresh_token=None,
        token_expires_at=None,
        scope="read_orders,write_fulfillments",
    )


@pytest.fixture
def tiktok_account(db_session):
    return CredentialStore(db_session).upsert(
        tenant_id=TENANT_ID,
        provider=ChannelProvider.TIKTOK,
        external_shop_id=TIKTOK_SHOP_ID,
        shop_name="Trend Threads",
        access_token="tiktok-access-token",
        refresh_token="tiktok-refresh-token",
        token_expires_at=int(time.time()) + 3600,
        scope=None,
        shop_metadata={"shop_cipher": TIKTOK_SHOP_CIPHER, "region": "US"},
    )


def make_tiktok_order(order_id, **overrides) -> dict:
    order = {
        "id": str(order_id),
        "status": "AWAITING_SHIPMENT",
        "buyer_email": "v8x2@scs.tiktokw.us",
        "buyer_message": "",
        "delivery_option_id": "7091146663229654785",
        "fulfillment_type": "FULFILLMENT_BY_SELLER",
        "payment": {"currency": "USD", "total_amount": "31.50", "shipping_fee": "4.00", "tax": "2.50"},
        "recipient_address": {
            "name": "Riley Buyer",
            "phone_number": "(+1)555****01",
            "address_line1": "9 Ocean Ave",
            "address_line2": "",
            "postal_code": "90401",
            "region_code": "US",
            "district_info": [
                {"address_level": "L0", "address_name": "United States"},
                {"address_level": "L1", "address_name": "California"},
                {"address_level": "L3", "address_name": "Santa Monica"},
            ],
        },
        "line_items": [
            {
                "id": "577086512123755123",
                "product_id": "1729582718312380123",
                "product_name": "Graphic Tee",
                "sku_id": "2729382476852921560",
                "seller_sku": "TEE-BLK-M",
                "sku_name": "Black, M",
                "sale_price": "12.50",
                "sku_image": {"url": "https://p16.tiktokcdn.example/tee.jpg"},
            },
            {
                "id": "577086512123755124",
                "product_id": "1729582718312380123",
                "product_name": "Graphic Tee",
                "sku_id": "2729382476852921560",
                "seller_sku": "TEE-BLK-M",
                "sku_name": "Black, M",
                "sale_price": "12.50",
                "sku_image": {"url": "https://p16.tiktokcdn.example/tee.jpg"},
            },
        ],
    }
    order.update(overrides)
    return order


def make_etsy_receipt(receipt_id, **overrides) -> dict:
    receipt = {
        "receipt_id": receipt_id,
        "name": "Jane Buyer",
        "buyer_email": "jane@example.com",
        "first_line": "1 Main St",
        "second_line": None,
        "city": "Portland",
        "state": "OR",
        "zip": "97201",
        "country_iso": "US",
        "status": "Paid",
        "is_paid": True,
        "is_shipped": False,
        "grandtotal": {"amount": 2599, "divisor": 100, "currency_code": "USD"},
        "total_shipping_cost": {"amount": 500, "divisor": 100, "currency_code": "USD"},
        "total_tax_cost": {"amount": 0, "divisor": 100, "currency_code": "USD"},
        "buyer_user_id": 9001,
        "payment_method": "cc",
        "message_from_buyer": "Please gift wrap",
        "is_gift": False,
        "shipments": [],
        "transactions": [
            {
                "listing_id": 42,
                "sku": "MUG-BLUE",
                "title": "Hand-thrown mug",
                "quantity": 2,
                "price": {"amount": 1050, "divisor": 100, "currency_code": "USD"},
                "variations": [
                    {"formatted_name": "Color", "formatted_value": "Blue"},
                    {"formatted_name": "Size", "formatted_value": "Large"},
                ],
            }
        ],
    }
    receipt.update(overrides)
    return receipt


def make_shopify_order(order_id, **overrides) -> dict:
    order = {
        "id": f"gid://shopify/Order/{order_id}",
        "name": f"#{order_id}",
        "email": "sam@example.com",
        "createdAt": "2024-03-01T10:00:00Z",
        "cancelledAt": None,
        "displayFinancialStatus": "PAID",
        "displayFulfillmentStatus": "UNFULFILLED",
        "currencyCode": "USD",
        "note": None,
        "fulfillmentOrders": {"edges": [{"node": {"id": f"gid://shopify/FulfillmentOrder/{order_id}9", "status": "OPEN"}}]},
        "customer": {"id": "gid://shopify/Customer/1", "email": "sam@example.com", "firstName": "Sam", "lastName": "Shopper"},
        "shippingAddress": {
            "name": "Sam Shopper",
            "company": None,
            "address1": "22 Market St",
            "address2": "Apt 4",
            "city": "Austin",
            "province": "Texas",
            "provinceCode": "TX",
            "zip": "73301",
            "country": "United States",
            "countryCodeV2": "US",
            "phone": "+15550100",
        },
        "totalPriceSet": {"shopMoney": {"amount": "48.00", "currencyCode": "USD"}},
        "totalTaxSet": {"shopMoney": {"amount": "3.00", "currencyCode": "USD"}},
        "currentShippingPriceSet": {"shopMoney": {"amount": "5.00", "currencyCode": "USD"}},
        "lineItems": {
            "edges": [
                {
                    "node": {
                        "id": "gid://shopify/LineItem/7001",
                        "title": "Poster",
                        "quantity": 1,
                        "sku": "POSTER-A2",
                        "variant": {
                            "id": "gid://shopify/ProductVariant/3",
                            "title": "A2 / Matte",
                            "selectedOptions": [{"name": "Size", "value": "A2"}, {"name": "Finish", "value": "Matte"}],
                        },
                        "product": {"id": "gid://shopify/Product/300", "title": "Poster"},
                        "originalUnitPriceSet": {"shopMoney": {"amount": "40.00", "currencyCode": "USD"}},
                        "image": {"src": "https://cdn.example.com/poster.png"},
                    }
                }
            ]
        },
        "metafields": {
            "nodes": [
                {
                    "namespace": "custom",
                    "key": "design",
                    "jsonValue": {"type": "root", "children": [{"type": "link", "url": "https://files.example.com/design.pdf"}]},
                }
            ]
        },
    }
    order.update(overrides)
    return order
