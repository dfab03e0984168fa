"""
TikTok Shop Open API connector.
Authorization-code OAuth without PKCE, expiring tokens with a refresh token, cursor pagination
over order search. Every Open API call is signed: HMAC-SHA256 over path, sorted query and body,
wrapped in the app secret, plus the shop_cipher of the shop being addressed.
"""
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Callable, Mapping, Optional
from urllib.parse import urlencode

import httpx

from channelsync.config import ProviderConfig
from channelsync.connectors.base import (
    CanonicalLineItemDraft,
    CanonicalOrderDraft,
    FulfillmentReceipt,
    OrderFilter,
    OrderPage,
    Pagination,
    ShopIdentity,
    StatusRule,
    TokenGrant,
    TopicRoute,
    WebhookOrderRef,
    resolve_status,
)
from channelsync.errors import AuthError, FulfillmentError, MappingError, ProviderError
from channelsync.models import ChannelAccount, ChannelProvider, Order, OrderStatus
from channelsync.services.http_client import error_message, parse_json, provider_request, raise_for_provider_status
from channelsync.services.mapping import (
    build_address,
    clean_str,
    normalize_carrier,
    to_decimal,
    to_int,
    variation_descriptors,
)

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://services.tiktokshop.com/open/authorize"
TOKEN_URL = "https://auth.tiktok-shops.com/api/v2/token/get"
REFRESH_URL = "https://auth.tiktok-shops.com/api/v2/token/refresh"
BASE_URL = "https://open-api.tiktokglobalshop.com"
API_VERSION = "202309"
MAX_PAGE_SIZE = 100

# Query keys never covered by the request signature
UNSIGNED_PARAMS = ("sign", "access_token")

TIKTOK_STATUS_RULES = [
    StatusRule("cancelled", lambda o: o.get("status") == "CANCELLED", OrderStatus.CANCELLED),
    StatusRule(
        "shipped",
        lambda o: o.get("status") in ("IN_TRANSIT", "DELIVERED", "COMPLETED"),
        OrderStatus.SHIPPED,
    ),
    StatusRule(
        "paid",
        lambda o: o.get("status") in ("AWAITING_SHIPMENT", "PARTIALLY_SHIPPING", "AWAITING_COLLECTION"),
        OrderStatus.PROCESSING,
    ),
]

# Internal carrier codes -> names as TikTok lists them in shipping providers
TIKTOK_CARRIERS = {
    "usps": "USPS",
    "ups": "UPS",
    "fedex": "FedEx",
    "dhl": "DHL eCommerce",
    "dhl-ecommerce": "DHL eCommerce",
    "dhl_express": "DHL Express",
    "dhl-express": "DHL Express",
    "ontrac": "OnTrac",
    "lasership": "LaserShip",
    "amazon": "Amazon Logistics",
}

# Webhook "type" codes
TIKTOK_TOPICS = {
    "1": TopicRoute.ORDER_UPSERT,  # order status change
    "2": TopicRoute.ORDER_UPSERT,  # reverse (cancel/return) status change
    "6": TopicRoute.UNINSTALL,  # seller deauthorization
}

# district_info address levels
_ADDRESS_LEVELS = {"L0": "country", "L1": "state", "L2": "county", "L3": "city"}


def sign_request(path: str, params: Mapping[str, Any], body: Optional[str], app_secret: str) -> str:
    """Hex HMAC-SHA256 of secret + path + sorted key/value pairs + body + secret, keyed by the secret."""
    pairs = "".join(f"{key}{params[key]}" for key in sorted(params) if key not in UNSIGNED_PARAMS)
    payload = f"{app_secret}{path}{pairs}{body or ''}{app_secret}"
    return hmac.new(app_secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def _expiry(value: Any, now: float) -> Optional[int]:
    """TikTok reports expiry as epoch seconds; small values are treated as a duration."""
    seconds = to_int(value, 0)
    if seconds <= 0:
        return None
    return seconds if seconds > now else int(now) + seconds


class TikTokConnector:
    provider = ChannelProvider.TIKTOK
    pagination = Pagination.CURSOR
    uses_pkce = False
    signed_callback = False
    signature_header = "authorization"
    # Not sent by TikTok; topic and shop come from the body envelope
    topic_header = "x-tts-topic"
    shop_header = "x-tts-shop-id"
    delivery_header = "x-tts-notification-id"
    topic_routes = TIKTOK_TOPICS
    status_rules = TIKTOK_STATUS_RULES
    carrier_map = TIKTOK_CARRIERS

    def __init__(
        self,
        config: ProviderConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        page_delay: float = 0.5,
        timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.transport = transport
        self.page_delay = page_delay
        self.timeout = timeout
        self.clock = clock

    @property
    def name(self) -> str:
        return "tiktok"

    def _shop_cipher(self, account: ChannelAccount) -> str:
        cipher = (account.shop_metadata or {}).get("shop_cipher")
        if not cipher:
            raise AuthError(
                f"TikTok shop {account.external_shop_id} has no shop cipher; reconnect the shop",
                provider=self.name,
                account_id=account.id,
            )
        return cipher

    async def _call(
        self,
        method: str,
        path: str,
        *,
        token: str,
        shop_cipher: Optional[str] = None,
        params: Optional[dict] = None,
        body: Optional[dict] = None,
        retry: bool = False,
    ) -> httpx.Response:
        query: dict[str, Any] = {"app_key": self.config.client_id, "timestamp": str(int(self.clock()))}
        if shop_cipher:
            query["shop_cipher"] = shop_cipher
        query.update(params or {})
        # The signed body must be byte-identical to the one sent
        content = json.dumps(body, separators=(",", ":")) if body is not None else None
        query["sign"] = sign_request(path, query, content, self.config.client_secret)
        return await provider_request(
            method,
            f"{BASE_URL}{path}",
            provider=self.name,
            timeout=self.timeout,
            retry=retry,
            transport=self.transport,
            params=query,
            headers={"x-tts-access-token": token, "Content-Type": "application/json"},
            content=content,
        )

    def _data(self, resp: httpx.Response, operation: str) -> dict:
        """Unwrap the {code, message, data} envelope; a non-zero code is a provider error even on HTTP 200."""
        raise_for_provider_status(resp, provider=self.name, operation=operation)
        body = parse_json(resp, provider=self.name, operation=operation) or {}
        code = to_int(body.get("code"), -1)
        if code != 0:
            raise ProviderError(
                f"TikTok {operation} failed: code {body.get('code')} - {body.get('message') or 'unknown error'}",
                status_code=resp.status_code,
                retryable=False,
                provider=self.name,
            )
        return body.get("data") or {}

    # --- OAuth ---

    def authorize_url(
        self,
        *,
        state: str,
        redirect_uri: str,
        scopes: list[str],
        code_challenge: Optional[str] = None,
        shop: Optional[str] = None,
    ) -> str:
        # Redirect URI and scopes are fixed on the app in the TikTok partner center
        params = {"service_id": self.config.service_id, "state": state}
        return f"{AUTHORIZE_URL}?{urlencode(params)}"

    def normalize_shop(self, shop: Optional[str]) -> Optional[str]:
        return clean_str(shop)

    def verify_callback(self, query_params: dict[str, Any]) -> bool:
        # Unsigned callback; the one-time state binds it to our handshake
        return True

    async def _token_request(self, url: str, params: dict, operation: str) -> TokenGrant:
        resp = await provider_request(
            "GET",
            url,
            provider=self.name,
            timeout=self.timeout,
            transport=self.transport,
            params={"app_key": self.config.client_id, "app_secret": self.config.client_secret, **params},
        )
        data = self._data(resp, operation)
        if not data.get("access_token"):
            raise AuthError(f"TikTok {operation} returned no access token", provider=self.name)
        return TokenGrant(
            access_token=str(data["access_token"]),
            refresh_token=data.get("refresh_token") or None,
            expires_at=_expiry(data.get("access_token_expire_in"), self.clock()),
            scope=",".join(data.get("granted_scopes") or []) or None,
        )

    async def exchange_code(
        self,
        code: str,
        *,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
        shop: Optional[str] = None,
    ) -> TokenGrant:
        try:
            grant = await self._token_request(
                TOKEN_URL, {"auth_code": code, "grant_type": "authorized_code"}, "token exchange"
            )
        except ProviderError as e:
            raise AuthError(e.message, provider=self.name) from e
        logger.info("Exchanged TikTok authorization code for tokens")
        return grant

    async def refresh_token(self, account: ChannelAccount, refresh_token: str) -> TokenGrant:
        return await self._token_request(
            REFRESH_URL, {"refresh_token": refresh_token, "grant_type": "refresh_token"}, "token refresh"
        )

    async def fetch_shop_identity(self, token: str, *, shop: Optional[str] = None) -> ShopIdentity:
        resp = await self._call("GET", f"/authorization/{API_VERSION}/shops", token=token, retry=True)
        shops = self._data(resp, "get authorized shops").get("shops") or []
        if not shops:
            raise AuthError("TikTok token has no authorized shops", provider=self.name)
        first = shops[0]
        if len(shops) > 1:
            logger.warning("TikTok token authorizes %s shops; connecting %s", len(shops), first.get("id"))
        if not first.get("id") or not first.get("cipher"):
            raise AuthError("TikTok shop is missing its id or cipher", provider=self.name)
        return ShopIdentity(
            external_shop_id=str(first["id"]),
            shop_name=clean_str(first.get("name")),
            metadata={"shop_cipher": first["cipher"], "region": first.get("region")},
        )

    # --- Orders ---

    async def fetch_orders(
        self,
        account: ChannelAccount,
        token: str,
        order_filter: OrderFilter,
        cursor: Optional[Any],
        limit: int = MAX_PAGE_SIZE,
    ) -> OrderPage:
        body: dict[str, Any] = {"page_size": max(1, min(limit, MAX_PAGE_SIZE))}
        if cursor:
            body["page_token"] = str(cursor)
        if order_filter.unfulfilled_only:
            body["order_status"] = "AWAITING_SHIPMENT"
        if order_filter.modified_since is not None:
            body["update_time_ge"] = int(order_filter.modified_since.timestamp())

        # Search is a read; retrying the POST is safe
        resp = await self._call(
            "POST",
            f"/order/{API_VERSION}/orders/search",
            token=token,
            shop_cipher=self._shop_cipher(account),
            body=body,
            retry=True,
        )
        data = self._data(resp, "search orders")
        orders = data.get("orders") or []
        if order_filter.paid_only:
            # Search has no paid filter once the status filter is off
            orders = [o for o in orders if o.get("status") != "UNPAID"]
        return OrderPage(
            orders=orders,
            next_cursor=clean_str(data.get("next_page_token")),
            total_count=to_int(data.get("total_count"), 0) or None,
        )

    async def fetch_order(self, account: ChannelAccount, token: str, native_id: str) -> Optional[dict]:
        resp = await self._call(
            "GET",
            f"/order/{API_VERSION}/orders",
            token=token,
            shop_cipher=self._shop_cipher(account),
            params={"ids": native_id},
            retry=True,
        )
        if resp.status_code == 404:
            return None
        orders = self._data(resp, "get order").get("orders") or []
        return orders[0] if orders else None

    def external_order_id(self, native_id: Any) -> str:
        return f"TIKTOK-{native_id}"

    def map_to_canonical(self, provider_order: Any) -> CanonicalOrderDraft:
        if not isinstance(provider_order, dict):
            raise MappingError("TikTok order is not an object", provider=self.name)
        order_id = clean_str(provider_order.get("id"))
        if not order_id:
            raise MappingError("TikTok order has no id", provider=self.name)

        payment = provider_order.get("payment") or {}
        address = provider_order.get("recipient_address") or {}
        district = {
            _ADDRESS_LEVELS[d.get("address_level")]: d.get("address_name")
            for d in address.get("district_info") or []
            if isinstance(d, dict) and d.get("address_level") in _ADDRESS_LEVELS
        }

        items = []
        tracking_number = clean_str(provider_order.get("tracking_number"))
        carrier = clean_str(provider_order.get("shipping_provider"))
        for line in provider_order.get("line_items") or []:
            if not isinstance(line, dict):
                continue
            tracking_number = tracking_number or clean_str(line.get("tracking_number"))
            carrier = carrier or clean_str(line.get("shipping_provider_name"))
            items.append(CanonicalLineItemDraft(
                listing_ref=clean_str(line.get("product_id")),
                sku=clean_str(line.get("seller_sku")) or clean_str(line.get("sku_id")),
                title=clean_str(line.get("product_name")),
                quantity=max(to_int(line.get("quantity"), 1), 1),
                unit_price=to_decimal(line.get("sale_price")),
                variation_descriptors=variation_descriptors([(None, line.get("sku_name"))]),
                image_url=clean_str((line.get("sku_image") or {}).get("url")),
            ))

        return CanonicalOrderDraft(
            external_order_id=self.external_order_id(order_id),
            source_channel=self.provider,
            status=resolve_status(self.status_rules, provider_order),
            customer_name=clean_str(address.get("name")),
            customer_email=clean_str(provider_order.get("buyer_email")),
            shipping_address=build_address(
                name=address.get("name"),
                street1=address.get("address_line1") or address.get("address_detail"),
                street2=address.get("address_line2"),
                city=district.get("city"),
                state=district.get("state"),
                postal_code=address.get("postal_code"),
                country=address.get("region_code") or district.get("country"),
                phone=address.get("phone_number"),
            ),
            total_amount=to_decimal(payment.get("total_amount")),
            shipping_amount=to_decimal(payment.get("shipping_fee")),
            tax_amount=to_decimal(payment.get("tax")),
            currency=clean_str(payment.get("currency"), 3),
            tracking_number=tracking_number,
            carrier=carrier,
            channel_data={
                "order_id": order_id,
                "delivery_option_id": clean_str(provider_order.get("delivery_option_id")),
                "buyer_message": provider_order.get("buyer_message"),
                "fulfillment_type": provider_order.get("fulfillment_type"),
            },
            items=items,
        )

    # --- Fulfillment ---

    async def _shipping_provider_id(
        self, account: ChannelAccount, token: str, delivery_option_id: str, carrier_name: str
    ) -> Optional[str]:
        resp = await self._call(
            "GET",
            f"/logistics/{API_VERSION}/delivery_options/{delivery_option_id}/shipping_providers",
            token=token,
            shop_cipher=self._shop_cipher(account),
            retry=True,
        )
        providers = [
            p for p in self._data(resp, "list shipping providers").get("shipping_providers") or []
            if isinstance(p, dict) and p.get("id") and p.get("name")
        ]
        wanted = carrier_name.casefold()
        for p in providers:
            if p["name"].casefold() == wanted:
                return p["id"]
        for p in providers:
            name = p["name"].casefold()
            if name.startswith(wanted) or wanted.startswith(name):
                return p["id"]
        for p in providers:
            if p["name"].casefold() == "other":
                return p["id"]
        return None

    async def push_tracking(
        self,
        account: ChannelAccount,
        token: str,
        order: Order,
        *,
        tracking_number: str,
        carrier: str,
        tracking_url: Optional[str] = None,
    ) -> FulfillmentReceipt:
        channel_data = order.channel_data or {}
        order_id = channel_data.get("order_id") or order.external_order_id.replace("TIKTOK-", "", 1)
        delivery_option_id = channel_data.get("delivery_option_id")
        if not delivery_option_id:
            raise FulfillmentError(
                f"TikTok order {order_id} has no delivery option",
                user_errors=[{"field": ["deliveryOptionId"], "message": "Delivery option missing on order"}],
                retryable=False,
                provider=self.name,
                account_id=account.id,
            )
        carrier_name = normalize_carrier(carrier, self.carrier_map, fallback=(carrier or "").strip() or "Other")

        try:
            provider_id = await self._shipping_provider_id(account, token, delivery_option_id, carrier_name)
        except ProviderError as e:
            raise FulfillmentError(e.message, status_code=e.status_code, retryable=e.retryable,
                                   provider=self.name, account_id=account.id) from e
        if provider_id is None:
            raise FulfillmentError(
                f"TikTok does not offer carrier {carrier_name} for order {order_id}",
                user_errors=[{"field": ["carrier"], "message": f"Carrier not available: {carrier_name}"}],
                retryable=False,
                provider=self.name,
                account_id=account.id,
            )

        resp = await self._call(
            "POST",
            f"/fulfillment/{API_VERSION}/orders/{order_id}/shipping_info/update",
            token=token,
            shop_cipher=self._shop_cipher(account),
            body={"tracking_number": tracking_number, "shipping_provider_id": provider_id},
        )
        if resp.status_code >= 400:
            raise FulfillmentError(
                f"TikTok shipping update failed for order {order_id}: {error_message(resp)}",
                status_code=resp.status_code,
                provider=self.name,
                account_id=account.id,
            )
        body = parse_json(resp, provider=self.name, operation="update shipping info") or {}
        if to_int(body.get("code"), -1) != 0:
            message = str(body.get("message") or "unknown error")
            raise FulfillmentError(
                f"TikTok rejected tracking for order {order_id}: {message}",
                user_errors=[{"field": ["trackingNumber"], "message": message}],
                retryable=False,
                provider=self.name,
                account_id=account.id,
            )
        logger.info("Pushed tracking to TikTok order %s (%s)", order_id, carrier_name)
        return FulfillmentReceipt(
            fulfillment_id=None,
            tracking_number=tracking_number,
            carrier=carrier_name,
            tracking_url=tracking_url,
        )

    # --- Webhooks ---

    def verify_webhook(
        self, raw_body: bytes, signature_header: Optional[str], headers: Optional[Mapping[str, str]] = None
    ) -> bool:
        """Hex HMAC-SHA256 of app_key + raw body, keyed by the app secret, in the Authorization header."""
        if not signature_header or not self.config.client_secret:
            return False
        message = self.config.client_id.encode("utf-8") + (raw_body or b"")
        expected = hmac.new(self.config.client_secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected.encode("utf-8"), signature_header.strip().encode("utf-8", "surrogateescape"))

    def webhook_envelope(self, payload: dict) -> tuple[Optional[str], Optional[str]]:
        return clean_str(payload.get("type")), clean_str(payload.get("shop_id"))

    def order_ref_from_webhook(self, topic: str, payload: dict) -> WebhookOrderRef:
        data = payload.get("data") or {}
        order_id = clean_str(data.get("order_id")) if isinstance(data, dict) else None
        return WebhookOrderRef(
            external_order_id=self.external_order_id(order_id) if order_id else None,
            native_id=order_id,
        )

    async def register_webhooks(self, account: ChannelAccount, token: str, base_url: str) -> dict:
        # Webhook URLs are configured per app in the TikTok partner center
        return {"registered": [], "managed_externally": True}
