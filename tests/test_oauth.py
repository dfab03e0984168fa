"""
OAuth handshake tests: PKCE round trip, one-time state, signed callbacks.
"""
import hashlib
import hmac
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from channelsync.errors import AuthError, InvalidState
from channelsync.models import ChannelAccount, ChannelProvider
from channelsync.services.credentials import CredentialStore
from channelsync.services.handshake_store import DatabaseHandshakeStore, HandshakeState, MemoryHandshakeStore
from channelsync.services.oauth import OAuthHandshakeService, code_challenge_for, generate_code_verifier

from conftest import ETSY_SHOP_ID, SHOPIFY_CONFIG, SHOPIFY_SHOP, TENANT_ID


def etsy_provider(expected_challenge_holder):
    """Token endpoint that enforces the PKCE verifier, plus user and shop lookups."""

    def handler(request):
        path = request.url.path
        if path == "/v3/public/oauth/token":
            form = parse_qs(request.content.decode())
            verifier = form["code_verifier"][0]
            if code_challenge_for(verifier) != expected_challenge_holder["challenge"]:
                return httpx.Response(400, json={"error": "invalid_grant", "error_description": "code_verifier mismatch"})
            return httpx.Response(200, json={
                "access_token": "12345678.etsy-access",
                "refresh_token": "12345678.etsy-refresh",
                "expires_in": 3600,
                "token_type": "Bearer",
            })
        if path == "/v3/application/users/me":
            return httpx.Response(200, json={"user_id": 12345678, "shop_id": int(ETSY_SHOP_ID)})
        if path == "/v3/application/users/12345678/shops":
            return httpx.Response(200, json={"shop_id": int(ETSY_SHOP_ID), "shop_name": "Crafty Corner"})
        return httpx.Response(404, json={"error": "not found"})

    return handler


def signed_shopify_params(**params) -> dict:
    message = "&".join(f"{k}={v}" for k, v in sorted(params.items()))
    params["hmac"] = hmac.new(SHOPIFY_CONFIG.client_secret.encode(), message.encode(), hashlib.sha256).hexdigest()
    return params


def shopify_provider(request):
    if request.url.path == "/admin/oauth/access_token":
        return httpx.Response(200, json={"access_token": "shpat_new", "scope": "read_orders,write_fulfillments"})
    if request.url.path.endswith("/graphql.json"):
        return httpx.Response(200, json={"data": {"shop": {"name": "Demo Store", "myshopifyDomain": SHOPIFY_SHOP}}})
    return httpx.Response(404)


class TestPkce:
    def test_verifier_and_challenge_shape(self):
        verifier = generate_code_verifier()
        assert 43 <= len(verifier) <= 128
        assert "=" not in verifier
        # RFC 7636 appendix B example
        assert code_challenge_for("dBjftJeZ4CVP-mJ0kXd4ImiIlqyH8O0HyuaiKSfAJZM") == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


class TestEtsyHandshake:
    @pytest.mark.asyncio
    async def test_round_trip_creates_account(self, db_session, registry, provider):
        store = MemoryHandshakeStore()
        service = OAuthHandshakeService(db_session, registry, store)

        url = service.generate_auth_url("etsy", TENANT_ID)
        query = parse_qs(urlparse(url).query)
        provider.handler = etsy_provider({"challenge": query["code_challenge"][0]})

        result = await service.complete_handshake("etsy", "auth-code", query["state"][0])

        assert result.ok, result.error
        account = result.value
        assert account.tenant_id == TENANT_ID
        assert account.provider == ChannelProvider.ETSY
        assert account.external_shop_id == ETSY_SHOP_ID
        assert account.shop_name == "Crafty Corner"
        assert account.token_expires_at is not None
        # Tokens are stored encrypted
        assert account.access_token != "12345678.etsy-access"
        assert CredentialStore(db_session).access_token(account) == "12345678.etsy-access"
        form = parse_qs(provider.requests[0].content.decode())
        assert form["grant_type"] == ["authorization_code"]
        assert form["redirect_uri"] == ["https://api.example.com/api/etsy/callback"]

    @pytest.mark.asyncio
    async def test_state_is_single_use(self, db_session, registry, provider):
        service = OAuthHandshakeService(db_session, registry, MemoryHandshakeStore())
        query = parse_qs(urlparse(service.generate_auth_url("etsy", TENANT_ID)).query)
        provider.handler = etsy_provider({"challenge": query["code_challenge"][0]})
        state = query["state"][0]

        first = await service.complete_handshake("etsy", "auth-code", state)
        calls_after_first = len(provider.requests)
        second = await service.complete_handshake("etsy", "auth-code", state)

        assert first.ok
        assert isinstance(second.error, InvalidState)
        assert len(provider.requests) == calls_after_first
        assert db_session.query(ChannelAccount).count() == 1

    @pytest.mark.asyncio
    async def test_unknown_state_rejected(self, db_session, registry, provider):
        service = OAuthHandshakeService(db_session, registry, MemoryHandshakeStore())
        result = await service.complete_handshake("etsy", "auth-code", "never-issued")
        assert isinstance(result.error, InvalidState)
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_state_from_other_provider_rejected(self, db_session, registry, provider):
        service = OAuthHandshakeService(db_session, registry, MemoryHandshakeStore())
        query = parse_qs(urlparse(service.generate_auth_url("etsy", TENANT_ID)).query)

        result = await service.complete_handshake(
            "shopify", "code", query["state"][0],
            signed_shopify_params(code="code", shop=SHOPIFY_SHOP, state=query["state"][0], timestamp="1"),
        )
        assert isinstance(result.error, InvalidState)

    @pytest.mark.asyncio
    async def test_rejected_exchange_is_auth_error(self, db_session, registry, provider):
        service = OAuthHandshakeService(db_session, registry, MemoryHandshakeStore())
        query = parse_qs(urlparse(service.generate_auth_url("etsy", TENANT_ID)).query)
        provider.handler = etsy_provider({"challenge": "something-else"})

        result = await service.complete_handshake("etsy", "auth-code", query["state"][0])

        assert isinstance(result.error, AuthError)
        assert db_session.query(ChannelAccount).count() == 0


class TestShopifyHandshake:
    def test_connect_requires_shop(self, db_session, registry):
        service = OAuthHandshakeService(db_session, registry, MemoryHandshakeStore())
        with pytest.raises(AuthError):
            service.generate_auth_url("shopify", TENANT_ID)

    def test_authorize_url_points_at_shop(self, db_session, registry):
        service = OAuthHandshakeService(db_session, registry, MemoryHandshakeStore())
        url = service.generate_auth_url("shopify", TENANT_ID, shop="demo-store")
        parsed = urlparse(url)
        assert parsed.netloc == SHOPIFY_SHOP
        assert parsed.path == "/admin/oauth/authorize"
        assert "code_challenge" not in parse_qs(parsed.query)

    @pytest.mark.asyncio
    async def test_signed_callback_connects(self, db_session, registry, provider):
        provider.handler = shopify_provider
        service = OAuthHandshakeService(db_session, registry, MemoryHandshakeStore())
        state = parse_qs(urlparse(service.generate_auth_url("shopify", TENANT_ID, shop=SHOPIFY_SHOP)).query)["state"][0]
        params = signed_shopify_params(code="c0de", shop=SHOPIFY_SHOP, state=state, timestamp="1700000000")

        result = await service.complete_handshake("shopify", "c0de", state, params)

        assert result.ok, result.error
        assert result.value.external_shop_id == SHOPIFY_SHOP
        assert result.value.token_expires_at is None
        assert result.value.refresh_token is None

    @pytest.mark.asyncio
    async def test_bad_hmac_rejected_before_exchange(self, db_session, registry, provider):
        provider.handler = shopify_provider
        store = MemoryHandshakeStore()
        service = OAuthHandshakeService(db_session, registry, store)
        state = parse_qs(urlparse(service.generate_auth_url("shopify", TENANT_ID, shop=SHOPIFY_SHOP)).query)["state"][0]
        params = signed_shopify_params(code="c0de", shop=SHOPIFY_SHOP, state=state, timestamp="1700000000")
        params["code"] = "swapped-code"

        result = await service.complete_handshake("shopify", "swapped-code", state, params)

        assert isinstance(result.error, AuthError)
        assert not isinstance(result.error, InvalidState)
        assert provider.requests == []
        assert db_session.query(ChannelAccount).count() == 0
        # The forged callback did not burn the real handshake
        assert store.get_and_delete(state) is not None

    @pytest.mark.asyncio
    async def test_callback_for_different_shop_rejected(self, db_session, registry, provider):
        provider.handler = shopify_provider
        service = OAuthHandshakeService(db_session, registry, MemoryHandshakeStore())
        state = parse_qs(urlparse(service.generate_auth_url("shopify", TENANT_ID, shop=SHOPIFY_SHOP)).query)["state"][0]
        params = signed_shopify_params(code="c0de", shop="other-store.myshopify.com", state=state, timestamp="1")

        result = await service.complete_handshake("shopify", "c0de", state, params)

        assert isinstance(result.error, AuthError)
        assert provider.requests == []


class TestHandshakeStores:
    def test_memory_store_expires(self):
        now = [1000.0]
        store = MemoryHandshakeStore(clock=lambda: now[0])
        store.put("s1", HandshakeState(tenant_id="t", provider="ETSY", redirect_uri="r"), ttl=60)
        store.put("s2", HandshakeState(tenant_id="t", provider="ETSY", redirect_uri="r"), ttl=60)

        assert store.get_and_delete("s1").tenant_id == "t"
        assert store.get_and_delete("s1") is None
        now[0] += 61
        assert store.get_and_delete("s2") is None

    def test_database_store_reads_once(self, session_factory):
        store = DatabaseHandshakeStore(session_factory)
        store.put("s1", HandshakeState(tenant_id="t", provider="ETSY", redirect_uri="r", code_verifier="v"), ttl=60)

        value = store.get_and_delete("s1")
        assert value.code_verifier == "v"
        assert store.get_and_delete("s1") is None

    def test_database_store_drops_expired(self, session_factory):
        store = DatabaseHandshakeStore(session_factory)
        store.put("s1", HandshakeState(tenant_id="t", provider="ETSY", redirect_uri="r"), ttl=0)
        assert store.get_and_delete("s1") is None


class TestDisconnect:
    def test_disconnect_deactivates_only_own_tenant(self, db_session, registry, etsy_account):
        service = OAuthHandshakeService(db_session, registry, MemoryHandshakeStore())

        assert not service.disconnect(etsy_account.id, tenant_id="someone-else").ok
        assert etsy_account.is_active is True

        assert service.disconnect(etsy_account.id, tenant_id=etsy_account.tenant_id).ok
        assert etsy_account.is_active is False
