"""
Shopify Admin API connector.
Uses API version 2024-01 (stable). Signed-callback OAuth issuing non-expiring offline tokens;
orders are read through GraphQL with cursor pagination, fulfillments pushed with fulfillmentCreateV2.
Never expose access_token to frontend.
"""
import base64
import hashlib
import hmac
import logging
from typing import Any, Mapping, Optional
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
from channelsync.errors import AuthError, FulfillmentError, MappingError, ProviderError, TokenError
from channelsync.models import ChannelAccount, ChannelProvider, Order, OrderStatus
from channelsync.services.http_client import error_message, parse_json, provider_request, raise_for_provider_status
from channelsync.services.mapping import (
    build_address,
    clean_str,
    find_links,
    normalize_carrier,
    numeric_id,
    to_decimal,
    to_int,
    variation_descriptors,
)

SHOPIFY_API_VERSION = "2024-01"
MAX_ORDERS_PER_PAGE = 100
logger = logging.getLogger(__name__)

ORDER_FIELDS = """
    id
    name
    email
    createdAt
    cancelledAt
    displayFinancialStatus
    displayFulfillmentStatus
    currencyCode
    note
    fulfillmentOrders(first: 1) {
      edges { node { id status } }
    }
    customer { id email firstName lastName }
    shippingAddress {
      name company address1 address2 city province provinceCode zip country countryCodeV2 phone
    }
    totalPriceSet { shopMoney { amount currencyCode } }
    totalTaxSet { shopMoney { amount currencyCode } }
    currentShippingPriceSet { shopMoney { amount currencyCode } }
    lineItems(first: 100) {
      edges {
        node {
          id
          title
          quantity
          sku
          variant { id title selectedOptions { name value } }
          product { id title }
          originalUnitPriceSet { shopMoney { amount currencyCode } }
          image { src }
        }
      }
    }
    metafields(first: 100) {
      nodes { namespace key jsonValue }
    }
"""

ORDERS_QUERY = f"""
query getOrders($cursor: String, $filterQuery: String) {{
  orders(first: {MAX_ORDERS_PER_PAGE}, after: $cursor, query: $filterQuery) {{
    edges {{ cursor node {{ {ORDER_FIELDS} }} }}
    pageInfo {{ hasNextPage endCursor }}
  }}
}}
"""

ORDER_QUERY = f"""
query getOrder($id: ID!) {{
  order(id: $id) {{ {ORDER_FIELDS} }}
}}
"""

SHOP_QUERY = "query { shop { name myshopifyDomain } }"

FULFILLMENT_MUTATION = """
mutation fulfillmentCreate($fulfillment: FulfillmentV2Input!) {
  fulfillmentCreateV2(fulfillment: $fulfillment) {
    fulfillment { id status }
    userErrors { field message }
  }
}
"""

SHOPIFY_STATUS_RULES = [
    StatusRule("cancelled", lambda o: bool(o.get("cancelledAt")), OrderStatus.CANCELLED),
    StatusRule("fulfilled", lambda o: o.get("displayFulfillmentStatus") == "FULFILLED", OrderStatus.SHIPPED),
    StatusRule(
        "paid",
        lambda o: o.get("displayFinancialStatus") in ("PAID", "PARTIALLY_PAID", "PARTIALLY_REFUNDED"),
        OrderStatus.PROCESSING,
    ),
]

# trackingInfo.company expects Shopify's display names; unknown companies are sent as "Other"
SHOPIFY_CARRIERS = {
    "usps": "USPS",
    "ups": "UPS",
    "fedex": "FedEx",
    "dhl": "DHL Express",
    "dhl-express": "DHL Express",
    "dhl_express": "DHL Express",
    "canadapost": "Canada Post",
    "canada-post": "Canada Post",
    "royalmail": "Royal Mail",
    "royal-mail": "Royal Mail",
    "auspost": "Australia Post",
    "australia-post": "Australia Post",
    "dpd": "DPD",
    "gls": "GLS",
    "hermes": "Evri",
    "parcelforce": "Parcelforce",
    "tnt": "TNT",
}

SHOPIFY_TOPICS = {
    "orders/create": TopicRoute.ORDER_UPSERT,
    "orders/updated": TopicRoute.ORDER_UPSERT,
    "orders/paid": TopicRoute.ORDER_UPSERT,
    "orders/fulfilled": TopicRoute.FULFILLMENT,
    "orders/cancelled": TopicRoute.CANCELLATION,
    "customers/data_request": TopicRoute.COMPLIANCE,
    "customers/redact": TopicRoute.COMPLIANCE,
    "shop/redact": TopicRoute.COMPLIANCE,
    "app/uninstalled": TopicRoute.UNINSTALL,
}

# Compliance topics are configured in the Partner dashboard, not via the Admin API
REGISTERED_TOPICS = ["orders/create", "orders/updated", "orders/fulfilled", "orders/cancelled", "app/uninstalled"]


def _money(price_set: Optional[dict]) -> Optional[dict]:
    return ((price_set or {}).get("shopMoney")) or None


class ShopifyConnector:
    provider = ChannelProvider.SHOPIFY
    pagination = Pagination.CURSOR
    uses_pkce = False
    signed_callback = True
    signature_header = "X-Shopify-Hmac-Sha256"
    topic_header = "X-Shopify-Topic"
    shop_header = "X-Shopify-Shop-Domain"
    delivery_header = "X-Shopify-Webhook-Id"
    topic_routes = SHOPIFY_TOPICS
    status_rules = SHOPIFY_STATUS_RULES
    carrier_map = SHOPIFY_CARRIERS

    def __init__(
        self,
        config: ProviderConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        page_delay: float = 0.5,
        timeout: float = 30.0,
    ):
        self.config = config
        self.transport = transport
        self.page_delay = page_delay
        self.timeout = timeout

    @property
    def name(self) -> str:
        return "shopify"

    def normalize_shop(self, shop: Optional[str]) -> Optional[str]:
        """'store' / 'https://store.myshopify.com/' -> 'store.myshopify.com'"""
        if not shop:
            return None
        s = shop.lower().strip().replace("https://", "").replace("http://", "").rstrip("/")
        if not s.endswith(".myshopify.com"):
            if "." in s:
                return None
            s = f"{s}.myshopify.com"
        return s

    def _api_url(self, shop: str) -> str:
        return f"https://{self.normalize_shop(shop) or shop}/admin/api/{SHOPIFY_API_VERSION}"

    def _headers(self, token: str) -> dict:
        return {"X-Shopify-Access-Token": token, "Content-Type": "application/json"}

    async def _graphql(self, shop: str, token: str, query: str, variables: Optional[dict] = None, *, operation: str) -> dict:
        resp = await provider_request(
            "POST",
            f"{self._api_url(shop)}/graphql.json",
            provider=self.name,
            timeout=self.timeout,
            transport=self.transport,
            headers=self._headers(token),
            json={"query": query, "variables": variables or {}},
        )
        raise_for_provider_status(resp, provider=self.name, operation=operation)
        body = parse_json(resp, provider=self.name, operation=operation) or {}
        errors = body.get("errors")
        if errors:
            throttled = any(
                ((e or {}).get("extensions") or {}).get("code") == "THROTTLED" for e in errors if isinstance(e, dict)
            )
            message = "; ".join(str((e or {}).get("message", e)) for e in errors) if isinstance(errors, list) else str(errors)
            raise ProviderError(
                f"Shopify {operation} GraphQL error: {message[:200]}",
                status_code=resp.status_code,
                retryable=throttled,
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
        shop_domain = self.normalize_shop(shop)
        if not shop_domain:
            raise AuthError(f"Invalid shop domain: {shop!r}. Must be 'shopname' or 'shopname.myshopify.com'", provider=self.name)
        params = {
            "client_id": self.config.client_id,
            "scope": ",".join(scopes),
            "redirect_uri": redirect_uri,
            "state": state,
        }
        return f"https://{shop_domain}/admin/oauth/authorize?{urlencode(params)}"

    def verify_callback(self, query_params: dict[str, Any]) -> bool:
        """Hex HMAC-SHA256 over the sorted query string without hmac/signature, keyed by the app secret."""
        received = query_params.get("hmac")
        if not received or not self.config.client_secret:
            logger.warning("Shopify callback HMAC verification failed: missing hmac or api secret")
            return False
        message = "&".join(
            f"{key}={value}"
            for key, value in sorted((k, str(v)) for k, v in query_params.items() if k not in ("hmac", "signature"))
        )
        calculated = hmac.new(self.config.client_secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()
        is_valid = hmac.compare_digest(calculated.encode("utf-8"), str(received).encode("utf-8", "surrogateescape"))
        if not is_valid:
            logger.warning("Shopify callback HMAC mismatch for shop %s", query_params.get("shop"))
        return is_valid

    async def exchange_code(
        self,
        code: str,
        *,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
        shop: Optional[str] = None,
    ) -> TokenGrant:
        shop_domain = self.normalize_shop(shop)
        if not shop_domain:
            raise AuthError("Shopify code exchange requires the shop domain", provider=self.name)
        resp = await provider_request(
            "POST",
            f"https://{shop_domain}/admin/oauth/access_token",
            provider=self.name,
            timeout=self.timeout,
            transport=self.transport,
            json={"client_id": self.config.client_id, "client_secret": self.config.client_secret, "code": code},
        )
        if resp.status_code >= 400:
            raise AuthError(f"Shopify token exchange failed: HTTP {resp.status_code} - {error_message(resp)}", provider=self.name)
        data = parse_json(resp, provider=self.name, operation="token exchange")
        logger.info("Successfully exchanged code for token for shop: %s", shop_domain)
        # Offline tokens carry no expires_in
        return TokenGrant.from_response(data)

    async def refresh_token(self, account: ChannelAccount, refresh_token: str) -> TokenGrant:
        raise TokenError(
            "Shopify offline tokens cannot be refreshed; reconnect the store",
            provider=self.name,
            account_id=account.id,
        )

    async def fetch_shop_identity(self, token: str, *, shop: Optional[str] = None) -> ShopIdentity:
        shop_domain = self.normalize_shop(shop)
        if not shop_domain:
            raise AuthError("Shopify shop domain missing", provider=self.name)
        data = await self._graphql(shop_domain, token, SHOP_QUERY, operation="get shop")
        shop_data = data.get("shop") or {}
        return ShopIdentity(
            external_shop_id=clean_str(shop_data.get("myshopifyDomain")) or shop_domain,
            shop_name=clean_str(shop_data.get("name")),
        )

    # --- Orders ---

    def filter_query(self, order_filter: OrderFilter) -> Optional[str]:
        parts = []
        if order_filter.paid_only:
            parts.append("financial_status:paid")
        if order_filter.unfulfilled_only:
            parts.append("fulfillment_status:unfulfilled")
        if order_filter.modified_since is not None:
            parts.append(f"updated_at:>='{order_filter.modified_since.strftime('%Y-%m-%dT%H:%M:%SZ')}'")
        return " AND ".join(parts) or None

    async def fetch_orders(
        self,
        account: ChannelAccount,
        token: str,
        order_filter: OrderFilter,
        cursor: Optional[Any],
        limit: int = MAX_ORDERS_PER_PAGE,
    ) -> OrderPage:
        variables = {"filterQuery": self.filter_query(order_filter)}
        if cursor:
            variables["cursor"] = cursor
        data = await self._graphql(account.external_shop_id, token, ORDERS_QUERY, variables, operation="list orders")
        orders = data.get("orders") or {}
        nodes = [edge.get("node") for edge in orders.get("edges") or [] if isinstance(edge, dict)]
        page_info = orders.get("pageInfo") or {}
        next_cursor = page_info.get("endCursor") if page_info.get("hasNextPage") else None
        return OrderPage(orders=[n for n in nodes if n is not None], next_cursor=next_cursor)

    async def fetch_order(self, account: ChannelAccount, token: str, native_id: str) -> Optional[dict]:
        gid = native_id if str(native_id).startswith("gid://") else f"gid://shopify/Order/{native_id}"
        data = await self._graphql(account.external_shop_id, token, ORDER_QUERY, {"id": gid}, operation="get order")
        return data.get("order")

    def external_order_id(self, native_id: Any) -> str:
        return f"SHOPIFY-{numeric_id(native_id)}"

    def map_to_canonical(self, provider_order: Any) -> CanonicalOrderDraft:
        if not isinstance(provider_order, dict):
            raise MappingError("Shopify order is not an object", provider=self.name)
        order_id = numeric_id(provider_order.get("id"))
        if not order_id:
            raise MappingError("Shopify order has no id", provider=self.name)

        ship = provider_order.get("shippingAddress") or {}
        customer = provider_order.get("customer") or {}
        total = _money(provider_order.get("totalPriceSet"))

        fulfillment_order_id = None
        for edge in ((provider_order.get("fulfillmentOrders") or {}).get("edges") or []):
            fulfillment_order_id = ((edge or {}).get("node") or {}).get("id")
            if fulfillment_order_id:
                break

        items = []
        for edge in ((provider_order.get("lineItems") or {}).get("edges") or []):
            node = (edge or {}).get("node")
            if not isinstance(node, dict):
                continue
            variant = node.get("variant") or {}
            product = node.get("product") or {}
            items.append(CanonicalLineItemDraft(
                listing_ref=numeric_id(product.get("id")) or numeric_id(node.get("id")),
                sku=clean_str(node.get("sku")),
                title=clean_str(node.get("title")),
                quantity=max(to_int(node.get("quantity"), 1), 1),
                unit_price=to_decimal(_money(node.get("originalUnitPriceSet"))),
                variation_descriptors=variation_descriptors(
                    (opt.get("name"), opt.get("value"))
                    for opt in variant.get("selectedOptions") or []
                    if isinstance(opt, dict) and opt.get("name") != "Title"
                ),
                image_url=clean_str((node.get("image") or {}).get("src")),
            ))

        metafields = (provider_order.get("metafields") or {}).get("nodes") or []
        design_links = find_links([m.get("jsonValue") for m in metafields if isinstance(m, dict)])
        # Order-level design links apply to every line item
        for item in items:
            item.design_links = list(design_links)

        customer_name = clean_str(ship.get("name")) or clean_str(
            f"{customer.get('firstName') or ''} {customer.get('lastName') or ''}"
        )
        return CanonicalOrderDraft(
            external_order_id=self.external_order_id(order_id),
            source_channel=self.provider,
            status=resolve_status(self.status_rules, provider_order),
            customer_name=customer_name,
            customer_email=clean_str(customer.get("email")) or clean_str(provider_order.get("email")),
            shipping_address=build_address(
                name=ship.get("name"),
                company=ship.get("company"),
                street1=ship.get("address1"),
                street2=ship.get("address2"),
                city=ship.get("city"),
                state=ship.get("provinceCode") or ship.get("province"),
                postal_code=ship.get("zip"),
                country=ship.get("countryCodeV2") or ship.get("country"),
                phone=ship.get("phone"),
            ) if ship else None,
            total_amount=to_decimal(total),
            shipping_amount=to_decimal(_money(provider_order.get("currentShippingPriceSet"))),
            tax_amount=to_decimal(_money(provider_order.get("totalTaxSet"))),
            currency=clean_str(provider_order.get("currencyCode"), 3) or clean_str((total or {}).get("currencyCode"), 3),
            channel_data={
                "order_gid": provider_order.get("id"),
                "order_name": provider_order.get("name"),
                "fulfillment_order_id": fulfillment_order_id,
                "note": provider_order.get("note"),
            },
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
        company = normalize_carrier(carrier, self.carrier_map, fallback="Other")
        fulfillment_order_id = (order.channel_data or {}).get("fulfillment_order_id")
        if not fulfillment_order_id:
            # Order synced before the fulfillment order existed; look it up now
            native = self.external_order_id_to_native(order.external_order_id)
            fresh = await self.fetch_order(account, token, native) if native else None
            if fresh:
                fulfillment_order_id = self.map_to_canonical(fresh).channel_data.get("fulfillment_order_id")
        if not fulfillment_order_id:
            raise FulfillmentError(
                f"Shopify order {order.external_order_id} has no open fulfillment order",
                user_errors=[{"field": ["fulfillmentOrderId"], "message": "No fulfillment order found"}],
                retryable=False,
                provider=self.name,
                account_id=account.id,
            )

        tracking_info = {"number": tracking_number, "company": company}
        if tracking_url:
            tracking_info["url"] = tracking_url
        variables = {
            "fulfillment": {
                "lineItemsByFulfillmentOrder": [{"fulfillmentOrderId": fulfillment_order_id}],
                "trackingInfo": tracking_info,
                "notifyCustomer": True,
            }
        }
        try:
            data = await self._graphql(
                account.external_shop_id, token, FULFILLMENT_MUTATION, variables, operation="create fulfillment"
            )
        except ProviderError as e:
            raise FulfillmentError(e.message, status_code=e.status_code, retryable=e.retryable,
                                   provider=self.name, account_id=account.id) from e

        result = data.get("fulfillmentCreateV2") or {}
        user_errors = [
            {"field": err.get("field"), "message": err.get("message")}
            for err in result.get("userErrors") or []
            if isinstance(err, dict)
        ]
        if user_errors:
            raise FulfillmentError(
                "Shopify rejected fulfillment: " + "; ".join(str(e["message"]) for e in user_errors),
                user_errors=user_errors,
                retryable=False,
                provider=self.name,
                account_id=account.id,
            )
        fulfillment = result.get("fulfillment") or {}
        logger.info("Created Shopify fulfillment %s for order %s", fulfillment.get("id"), order.external_order_id)
        return FulfillmentReceipt(
            fulfillment_id=clean_str(fulfillment.get("id")),
            tracking_number=tracking_number,
            carrier=company,
            tracking_url=tracking_url,
        )

    def external_order_id_to_native(self, external_order_id: Optional[str]) -> Optional[str]:
        if not external_order_id or not external_order_id.startswith("SHOPIFY-"):
            return None
        return external_order_id[len("SHOPIFY-"):]

    # --- Webhooks ---

    def verify_webhook(
        self, raw_body: bytes, signature_header: Optional[str], headers: Optional[Mapping[str, str]] = None
    ) -> bool:
        """Base64 HMAC-SHA256 of the raw body, keyed by the app secret."""
        secret = self.config.signing_secret
        if not signature_header or not secret:
            return False
        digest = hmac.new(secret.encode("utf-8"), raw_body or b"", hashlib.sha256).digest()
        expected = base64.b64encode(digest).decode("utf-8")
        return hmac.compare_digest(expected.encode("utf-8"), signature_header.strip().encode("utf-8", "surrogateescape"))

    def webhook_envelope(self, payload: dict) -> tuple[Optional[str], Optional[str]]:
        # Shopify always sends topic and shop as headers
        return None, clean_str(payload.get("myshopify_domain"))

    def order_ref_from_webhook(self, topic: str, payload: dict) -> WebhookOrderRef:
        """Webhook bodies are REST order JSON (numeric id, fulfillments with tracking_* fields)."""
        native = numeric_id(payload.get("admin_graphql_api_id")) or clean_str(payload.get("id"))
        ref = WebhookOrderRef(
            external_order_id=self.external_order_id(native) if native else None,
            native_id=native,
        )
        for fulfillment in reversed(payload.get("fulfillments") or []):
            if not isinstance(fulfillment, dict):
                continue
            number = clean_str(fulfillment.get("tracking_number")) or next(
                iter(fulfillment.get("tracking_numbers") or []), None
            )
            if number:
                ref.tracking_number = number
                ref.tracking_url = clean_str(fulfillment.get("tracking_url"))
                ref.carrier = clean_str(fulfillment.get("tracking_company"))
                break
        return ref

    async def register_webhooks(self, account: ChannelAccount, token: str, base_url: str) -> dict:
        """Ensure every order/uninstall topic points at our webhook endpoint."""
        api = self._api_url(account.external_shop_id)
        address = f"{base_url.rstrip('/')}/api/shopify/webhook"
        headers = self._headers(token)

        resp = await provider_request(
            "GET", f"{api}/webhooks.json", provider=self.name, timeout=self.timeout,
            transport=self.transport, headers=headers, retry=True,
        )
        raise_for_provider_status(resp, provider=self.name, operation="list webhooks")
        existing = (parse_json(resp, provider=self.name, operation="list webhooks") or {}).get("webhooks", [])
        existing_by_topic = {w.get("topic"): w for w in existing}

        registered = []
        errors = []
        for topic in REGISTERED_TOPICS:
            current = existing_by_topic.get(topic)
            if current and current.get("address") == address:
                registered.append({"topic": topic, "status": "exists"})
                continue
            if current:
                # Stale subscription pointing elsewhere
                delete_resp = await provider_request(
                    "DELETE", f"{api}/webhooks/{current['id']}.json", provider=self.name,
                    timeout=self.timeout, transport=self.transport, headers=headers,
                )
                if delete_resp.status_code >= 400:
                    logger.warning("Could not delete stale Shopify webhook %s (%s)", current.get("id"), topic)
            create_resp = await provider_request(
                "POST", f"{api}/webhooks.json", provider=self.name, timeout=self.timeout,
                transport=self.transport, headers=headers,
                json={"webhook": {"topic": topic, "address": address, "format": "json"}},
            )
            if create_resp.status_code >= 400:
                errors.append({"topic": topic, "error": error_message(create_resp)})
            else:
                registered.append({"topic": topic, "status": "registered"})

        return {"registered": registered, "errors": errors, "total": len(REGISTERED_TOPICS)}
