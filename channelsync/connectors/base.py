"""
Connector contract shared by every marketplace.

Each marketplace is a variant implementing ChannelConnector and is selected through the
registry by provider name, so the sync, webhook and fulfillment services stay provider-agnostic.
"""
import enum
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Mapping, Optional, Protocol

from channelsync.config import ProviderConfig
from channelsync.models import ChannelAccount, ChannelProvider, Order, OrderStatus


class Pagination(str, enum.Enum):
    CURSOR = "cursor"
    OFFSET = "offset"


class TopicRoute(str, enum.Enum):
    ORDER_UPSERT = "order_upsert"
    FULFILLMENT = "fulfillment"
    CANCELLATION = "cancellation"
    COMPLIANCE = "compliance"
    UNINSTALL = "uninstall"


@dataclass
class OrderFilter:
    """Generic filter intent; connectors translate it to their native query syntax."""
    paid_only: bool = True
    unfulfilled_only: bool = True
    modified_since: Optional[datetime] = None


@dataclass
class OrderPage:
    orders: list[dict]
    next_cursor: Optional[str] = None  # cursor idiom
    total_count: Optional[int] = None  # offset idiom


@dataclass
class TokenGrant:
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None  # unix seconds
    scope: Optional[str] = None

    @classmethod
    def from_response(cls, data: dict, now: Optional[float] = None) -> "TokenGrant":
        now = time.time() if now is None else now
        expires_in = data.get("expires_in")
        return cls(
            access_token=str(data["access_token"]),
            refresh_token=data.get("refresh_token") or None,
            expires_at=int(now) + int(expires_in) if expires_in else None,
            scope=data.get("scope") or None,
        )


@dataclass
class ShopIdentity:
    external_shop_id: str
    shop_name: Optional[str] = None
    metadata: dict = field(default_factory=dict)


@dataclass
class CanonicalLineItemDraft:
    listing_ref: Optional[str]
    quantity: int
    unit_price: Decimal
    sku: Optional[str] = None
    title: Optional[str] = None
    variation_descriptors: list[str] = field(default_factory=list)
    design_links: list[str] = field(default_factory=list)
    image_url: Optional[str] = None


@dataclass
class CanonicalOrderDraft:
    external_order_id: str
    source_channel: ChannelProvider
    status: OrderStatus
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    shipping_address: Optional[dict] = None
    total_amount: Decimal = Decimal("0")
    shipping_amount: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    currency: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    carrier: Optional[str] = None
    channel_data: dict = field(default_factory=dict)
    is_gift: bool = False
    gift_message: Optional[str] = None
    items: list[CanonicalLineItemDraft] = field(default_factory=list)


@dataclass(frozen=True)
class StatusRule:
    """One row of a connector's status table: first matching rule wins."""
    label: str
    matches: Callable[[dict], bool]
    status: OrderStatus


def resolve_status(rules: list[StatusRule], payload: dict, default: OrderStatus = OrderStatus.NEW) -> OrderStatus:
    for rule in rules:
        try:
            if rule.matches(payload):
                return rule.status
        except (KeyError, TypeError, AttributeError):
            continue
    return default


@dataclass
class FulfillmentReceipt:
    fulfillment_id: Optional[str]
    tracking_number: str
    carrier: str
    tracking_url: Optional[str] = None


@dataclass
class WebhookOrderRef:
    """What a webhook payload tells us about an order without a re-fetch."""
    external_order_id: Optional[str] = None
    native_id: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    carrier: Optional[str] = None


class ChannelConnector(Protocol):
    config: ProviderConfig
    provider: ChannelProvider
    pagination: Pagination
    page_delay: float
    uses_pkce: bool
    signed_callback: bool
    signature_header: str
    topic_header: str
    shop_header: str
    delivery_header: str
    topic_routes: dict[str, TopicRoute]
    status_rules: list[StatusRule]
    carrier_map: dict[str, str]

    @property
    def name(self) -> str: ...

    def authorize_url(
        self,
        *,
        state: str,
        redirect_uri: str,
        scopes: list[str],
        code_challenge: Optional[str] = None,
        shop: Optional[str] = None,
    ) -> str: ...

    def normalize_shop(self, shop: Optional[str]) -> Optional[str]: ...

    def verify_callback(self, query_params: dict[str, Any]) -> bool: ...

    async def exchange_code(
        self,
        code: str,
        *,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
        shop: Optional[str] = None,
    ) -> TokenGrant: ...

    async def refresh_token(self, account: ChannelAccount, refresh_token: str) -> TokenGrant: ...

    async def fetch_shop_identity(self, token: str, *, shop: Optional[str] = None) -> ShopIdentity: ...

    async def fetch_orders(
        self,
        account: ChannelAccount,
        token: str,
        order_filter: OrderFilter,
        cursor: Optional[Any],
        limit: int,
    ) -> OrderPage: ...

    async def fetch_order(self, account: ChannelAccount, token: str, native_id: str) -> Optional[dict]: ...

    def map_to_canonical(self, provider_order: Any) -> CanonicalOrderDraft: ...

    def external_order_id(self, native_id: Any) -> str: ...

    async def push_tracking(
        self,
        account: ChannelAccount,
        token: str,
        order: Order,
        *,
        tracking_number: str,
        carrier: str,
        tracking_url: Optional[str] = None,
    ) -> FulfillmentReceipt: ...

    def verify_webhook(
        self, raw_body: bytes, signature_header: Optional[str], headers: Optional[Mapping[str, str]] = None
    ) -> bool: ...

    def webhook_envelope(self, payload: dict) -> tuple[Optional[str], Optional[str]]:
        """(topic, shop id) carried in the body, for providers that do not send them as headers."""
        ...

    def order_ref_from_webhook(self, topic: str, payload: dict) -> WebhookOrderRef: ...

    async def register_webhooks(self, account: ChannelAccount, token: str, base_url: str) -> dict: ...
