"""
Etsy Open API v3 connector.
OAuth 2.0 with PKCE, one-hour access tokens with rotating refresh tokens, offset pagination
over shop receipts. Every call carries the app key in `x-api-key`.
"""
import base64
import hashlib
import hmac
import logging
import re
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
from channelsync.errors import AuthError, FulfillmentError, MappingError
from channelsync.models import ChannelAccount, ChannelProvider, Order, OrderStatus
from channelsync.services.http_client import error_message, parse_json, provider_request, raise_for_provider_status
from channelsync.services.mapping import (
    build_address,
    clean_str,
    currency_of,
    normalize_carrier,
    to_decimal,
    to_int,
    variation_descriptors,
)

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://www.etsy.com/oauth/connect"
TOKEN_URL = "https://api.etsy.com/v3/public/oauth/token"
BASE_URL = "https://openapi.etsy.com/v3"
MAX_PAGE_SIZE = 100
WEBHOOK_TOLERANCE_SECONDS = 300

ETSY_STATUS_RULES = [
    StatusRule("shipped", lambda r: bool(r.get("is_shipped")), OrderStatus.SHIPPED),
    StatusRule(
        "canceled",
        lambda r: str(r.get("status") or "").lower() in ("canceled", "cancelled", "fully refunded"),
        OrderStatus.CANCELLED,
    ),
    StatusRule("paid", lambda r: bool(r.get("is_paid")), OrderStatus.PROCESSING),
]

# Etsy only accepts its own carrier tokens; anything else goes through as "other"
ETSY_CARRIERS = {
    "usps": "usps",
    "ups": "ups",
    "fedex": "fedex",
    "dhl": "dhl",
    "dhl-express": "dhl",
    "dhl_express": "dhl",
    "canadapost": "canada-post",
    "canada-post": "canada-post",
    "canada_post": "canada-post",
    "royalmail": "royal-mail",
    "royal-mail": "royal-mail",
    "royal_mail": "royal-mail",
    "auspost": "australia-post",
    "australia-post": "australia-post",
    "dpd": "dpd",
    "gls": "gls",
    "hermes": "hermes-uk",
    "parcelforce": "parcelforce",
    "tnt": "tnt",
}

ETSY_TOPICS = {
    "order.paid": TopicRoute.ORDER_UPSERT,
    "order.updated": TopicRoute.ORDER_UPSERT,
    "order.shipped": TopicRoute.FULFILLMENT,
    "order.canceled": TopicRoute.CANCELLATION,
}

_RECEIPT_IN_URL = re.compile(r"/receipts/(\d+)")


class EtsyConnector:
    provider = ChannelProvider.ETSY
    pagination = Pagination.OFFSET
    uses_pkce = True
    signed_callback = False
    # Etsy delivers webhooks in the Standard Webhooks format
    signature_header = "webhook-signature"
    topic_header = "webhook-event-type"
    shop_header = "webhook-shop-id"
    delivery_header = "webhook-id"
    topic_routes = ETSY_TOPICS
    status_rules = ETSY_STATUS_RULES
    carrier_map = ETSY_CARRIERS

    def __init__(
        self,
        config: ProviderConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        page_delay: float = 0.2,
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
        return "etsy"

    def _headers(self, token: Optional[str] = None) -> dict:
        headers = {"x-api-key": self.config.client_id, "Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _call(self, method: str, path: str, *, token: Optional[str] = None, retry: bool = False, **kwargs) -> httpx.Response:
        url = path if path.startswith("http") else f"{BASE_URL}{path}"
        return await provider_request(
            method,
            url,
            provider=self.name,
            timeout=self.timeout,
            retry=retry,
            transport=self.transport,
            headers=self._headers(token),
            **kwargs,
        )

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
        params = {
            "response_type": "code",
            "client_id": self.config.client_id,
            "redirect_uri": redirect_uri,
            "scope": " ".join(scopes),
            "state": state,
            "code_challenge": code_challenge or "",
            "code_challenge_method": "S256",
        }
        return f"{AUTHORIZE_URL}?{urlencode(params)}"

    def normalize_shop(self, shop: Optional[str]) -> Optional[str]:
        return clean_str(shop)

    def verify_callback(self, query_params: dict[str, Any]) -> bool:
        # PKCE callbacks are unsigned; the verifier binds the code to our handshake
        return True

    async def exchange_code(
        self,
        code: str,
        *,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
        shop: Optional[str] = None,
    ) -> TokenGrant:
        if not code_verifier:
            raise AuthError("Etsy code exchange requires a PKCE code_verifier", provider=self.name)
        resp = await self._call(
            "POST",
            TOKEN_URL,
            data={
                "grant_type": "authorization_code",
                "client_id": self.config.client_id,
                "redirect_uri": redirect_uri,
                "code": code,
                "code_verifier": code_verifier,
            },
        )
        if resp.status_code >= 400:
            raise AuthError(f"Etsy token exchange failed: HTTP {resp.status_code} - {error_message(resp)}", provider=self.name)
        data = parse_json(resp, provider=self.name, operation="token exchange")
        logger.info("Exchanged Etsy authorization code for tokens")
        return TokenGrant.from_response(data)

    async def refresh_token(self, account: ChannelAccount, refresh_token: str) -> TokenGrant:
        resp = await self._call(
            "POST",
            TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "client_id": self.config.client_id,
                "refresh_token": refresh_token,
            },
        )
        raise_for_provider_status(resp, provider=self.name, operation="token refresh")
        data = parse_json(resp, provider=self.name, operation="token refresh")
        return TokenGrant.from_response(data)

    async def fetch_shop_identity(self, token: str, *, shop: Optional[str] = None) -> ShopIdentity:
        resp = await self._call("GET", "/application/users/me", token=token, retry=True)
        raise_for_provider_status(resp, provider=self.name, operation="get user")
        me = parse_json(resp, provider=self.name, operation="get user") or {}
        user_id = me.get("user_id")
        if not user_id:
            raise AuthError("Etsy did not return a user id for this token", provider=self.name)

        resp = await self._call("GET", f"/application/users/{user_id}/shops", token=token, retry=True)
        raise_for_provider_status(resp, provider=self.name, operation="get shops")
        shop_data = parse_json(resp, provider=self.name, operation="get shops") or {}
        # Endpoint returns the shop object directly, or {count, results} for multi-shop users
        if isinstance(shop_data.get("results"), list):
            shop_data = shop_data["results"][0] if shop_data["results"] else {}
        shop_id = shop_data.get("shop_id") or me.get("shop_id")
        if not shop_id:
            raise AuthError("Etsy user has no shop", provider=self.name)
        return ShopIdentity(external_shop_id=str(shop_id), shop_name=clean_str(shop_data.get("shop_name")))

    # --- Orders ---

    async def fetch_orders(
        self,
        account: ChannelAccount,
        token: str,
        order_filter: OrderFilter,
        cursor: Optional[Any],
        limit: int = MAX_PAGE_SIZE,
    ) -> OrderPage:
        params: dict[str, Any] = {
            "limit": max(1, min(limit, MAX_PAGE_SIZE)),
            "offset": int(cursor or 0),
        }
        if order_filter.paid_only:
            params["was_paid"] = "true"
        if order_filter.unfulfilled_only:
            params["was_shipped"] = "false"
        if order_filter.modified_since is not None:
            params["min_last_modified"] = int(order_filter.modified_since.timestamp())

        resp = await self._call(
            "GET", f"/application/shops/{account.external_shop_id}/receipts", token=token, retry=True, params=params
        )
        raise_for_provider_status(resp, provider=self.name, operation="list receipts")
        data = parse_json(resp, provider=self.name, operation="list receipts") or {}
        results = data.get("results") or []
        return OrderPage(orders=list(results), total_count=to_int(data.get("count"), len(results)))

    async def fetch_order(self, account: ChannelAccount, token: str, native_id: str) -> Optional[dict]:
        resp = await self._call(
            "GET", f"/application/shops/{account.external_shop_id}/receipts/{native_id}", token=token, retry=True
        )
        if resp.status_code == 404:
            return None
        raise_for_provider_status(resp, provider=self.name, operation="get receipt")
        return parse_json(resp, provider=self.name, operation="get receipt")

    def external_order_id(self, native_id: Any) -> str:
        return f"ETSY-{native_id}"

    def map_to_canonical(self, provider_order: Any) -> CanonicalOrderDraft:
        if not isinstance(provider_order, dict):
            raise MappingError("Etsy receipt is not an object", provider=self.name)
        receipt_id = clean_str(provider_order.get("receipt_id"))
        if not receipt_id:
            raise MappingError("Etsy receipt has no receipt_id", provider=self.name)

        total = provider_order.get("grandtotal") or provider_order.get("total_price")
        shipments = provider_order.get("shipments") or []
        last_shipment = shipments[-1] if shipments and isinstance(shipments[-1], dict) else {}

        items = []
        for tx in provider_order.get("transactions") or []:
            if not isinstance(tx, dict):
                continue
            product = tx.get("product_data") or {}
            items.append(CanonicalLineItemDraft(
                listing_ref=clean_str(tx.get("listing_id")),
                sku=clean_str(tx.get("sku")) or clean_str(product.get("sku")),
                title=clean_str(tx.get("title")),
                quantity=max(to_int(tx.get("quantity"), 1), 1),
                unit_price=to_decimal(tx.get("price")),
                variation_descriptors=variation_descriptors(
                    (v.get("formatted_name"), v.get("formatted_value"))
                    for v in tx.get("variations") or []
                    if isinstance(v, dict)
                ),
            ))

        return CanonicalOrderDraft(
            external_order_id=self.external_order_id(receipt_id),
            source_channel=self.provider,
            status=resolve_status(self.status_rules, provider_order),
            customer_name=clean_str(provider_order.get("name")),
            customer_email=clean_str(provider_order.get("buyer_email")),
            shipping_address=build_address(
                name=provider_order.get("name"),
                street1=provider_order.get("first_line"),
                street2=provider_order.get("second_line"),
                city=provider_order.get("city"),
                state=provider_order.get("state"),
                postal_code=provider_order.get("zip"),
                country=provider_order.get("country_iso"),
            ),
            total_amount=to_decimal(total),
            shipping_amount=to_decimal(provider_order.get("total_shipping_cost")),
            tax_amount=to_decimal(provider_order.get("total_tax_cost")),
            currency=currency_of(total),
            tracking_number=clean_str(last_shipment.get("tracking_code")),
            carrier=clean_str(last_shipment.get("carrier_name")),
            channel_data={
                "receipt_id": receipt_id,
                "buyer_user_id": provider_order.get("buyer_user_id"),
                "payment_method": provider_order.get("payment_method"),
                "message_from_buyer": provider_order.get("message_from_buyer"),
            },
            is_gift=bool(provider_order.get("is_gift")),
            gift_message=clean_str(provider_order.get("gift_message")),
            items=items,
        )

    # --- Fulfillment ---

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
        receipt_id = (order.channel_data or {}).get("receipt_id") or order.external_order_id.replace("ETSY-", "", 1)
        carrier_token = normalize_carrier(carrier, self.carrier_map)
        resp = await self._call(
            "POST",
            f"/application/shops/{account.external_shop_id}/receipts/{receipt_id}/tracking",
            token=token,
            json={"tracking_code": tracking_number, "carrier_name": carrier_token, "send_bcc": False},
        )
        if resp.status_code >= 400:
            message = error_message(resp)
            raise FulfillmentError(
                f"Etsy rejected tracking for receipt {receipt_id}: {message}",
                status_code=resp.status_code,
                user_errors=[{"field": None, "message": message}] if resp.status_code < 500 and resp.status_code != 429 else [],
                provider=self.name,
                account_id=account.id,
            )
        logger.info("Pushed tracking to Etsy receipt %s (%s)", receipt_id, carrier_token)
        return FulfillmentReceipt(
            fulfillment_id=None,
            tracking_number=tracking_number,
            carrier=carrier_token,
            tracking_url=tracking_url,
        )

    # --- Webhooks ---

    def _secret_bytes(self) -> bytes:
        secret = self.config.signing_secret or ""
        if secret.startswith("whsec_"):
            return base64.b64decode(secret[len("whsec_"):])
        return secret.encode("utf-8")

    def verify_webhook(
        self, raw_body: bytes, signature_header: Optional[str], headers: Optional[Mapping[str, str]] = None
    ) -> bool:
        """Standard Webhooks: base64 HMAC-SHA256 over "{id}.{timestamp}.{body}", header holds "v1,<sig>" entries."""
        if not signature_header or not self.config.signing_secret:
            return False
        headers = headers or {}
        msg_id = headers.get("webhook-id") or ""
        timestamp = headers.get("webhook-timestamp") or ""
        try:
            age = abs(self.clock() - int(timestamp))
        except ValueError:
            return False
        if age > WEBHOOK_TOLERANCE_SECONDS:
            logger.warning("Etsy webhook %s outside the %ss tolerance window", msg_id, WEBHOOK_TOLERANCE_SECONDS)
            return False
        signed = f"{msg_id}.{timestamp}.".encode("utf-8") + (raw_body or b"")
        expected = base64.b64encode(hmac.new(self._secret_bytes(), signed, hashlib.sha256).digest()).decode()
        for entry in signature_header.split():
            _, _, candidate = entry.partition(",")
            if hmac.compare_digest(expected.encode("utf-8"), (candidate or entry).encode("utf-8", "surrogateescape")):
                return True
        return False

    def webhook_envelope(self, payload: dict) -> tuple[Optional[str], Optional[str]]:
        return clean_str(payload.get("event_type")), clean_str(payload.get("shop_id"))

    def order_ref_from_webhook(self, topic: str, payload: dict) -> WebhookOrderRef:
        receipt_id = clean_str(payload.get("receipt_id"))
        if not receipt_id:
            match = _RECEIPT_IN_URL.search(str(payload.get("resource_url") or ""))
            receipt_id = match.group(1) if match else None
        return WebhookOrderRef(
            external_order_id=self.external_order_id(receipt_id) if receipt_id else None,
            native_id=receipt_id,
            tracking_number=clean_str(payload.get("tracking_code")),
            carrier=clean_str(payload.get("carrier_name")),
        )

    async def register_webhooks(self, account: ChannelAccount, token: str, base_url: str) -> dict:
        # Etsy subscriptions are managed in the developer portal, not through the API
        return {"registered": [], "managed_externally": True}
