"""
OAuth handshake service - connect a tenant's marketplace shop.

PKCE providers get a verifier/challenge pair bound to a one-time state; signed-callback
providers have their callback HMAC checked before anything else happens.
"""
import base64
import hashlib
import logging
import secrets
from typing import Optional

from sqlalchemy.orm import Session

from channelsync.config import settings
from channelsync.connectors import ConnectorRegistry
from channelsync.errors import AuthError, ChannelSyncError, InvalidState
from channelsync.models import ChannelAccount
from channelsync.result import Result
from channelsync.services.credentials import CredentialStore
from channelsync.services.handshake_store import HandshakeState, HandshakeStore

logger = logging.getLogger(__name__)

VERIFIER_BYTES = 32
STATE_BYTES = 16


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def generate_code_verifier() -> str:
    return _b64url(secrets.token_bytes(VERIFIER_BYTES))


def code_challenge_for(verifier: str) -> str:
    """S256: base64url(sha256(verifier)) without padding."""
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_state() -> str:
    return _b64url(secrets.token_bytes(STATE_BYTES))


class OAuthHandshakeService:
    def __init__(
        self,
        db: Session,
        registry: ConnectorRegistry,
        store: HandshakeStore,
        *,
        ttl_seconds: Optional[int] = None,
    ):
        self.db = db
        self.registry = registry
        self.store = store
        self.credentials = CredentialStore(db)
        self.ttl_seconds = settings.HANDSHAKE_TTL_SECONDS if ttl_seconds is None else ttl_seconds

    def _connector(self, provider: str):
        connector = self.registry.get(provider)
        if connector is None:
            raise AuthError(f"Unknown or unconfigured provider: {provider}", provider=provider)
        return connector

    def generate_auth_url(
        self,
        provider: str,
        tenant_id: str,
        redirect_uri: Optional[str] = None,
        scopes: Optional[list[str]] = None,
        shop: Optional[str] = None,
        pending_account_ref: Optional[str] = None,
    ) -> str:
        """Build the provider consent URL and remember the handshake under a fresh state."""
        connector = self._connector(provider)
        redirect_uri = redirect_uri or connector.config.redirect_uri
        if not redirect_uri:
            raise AuthError(f"{connector.name} redirect URI is not configured", provider=connector.name)
        scopes = scopes or connector.config.scopes

        shop_domain = None
        if connector.signed_callback:
            shop_domain = connector.normalize_shop(shop)
            if not shop_domain:
                raise AuthError(f"A valid shop domain is required for {connector.name}", provider=connector.name)

        state = generate_state()
        verifier = generate_code_verifier() if connector.uses_pkce else None
        self.store.put(
            state,
            HandshakeState(
                tenant_id=tenant_id,
                provider=connector.provider.value,
                redirect_uri=redirect_uri,
                code_verifier=verifier,
                shop_domain=shop_domain,
                pending_account_ref=pending_account_ref,
            ),
            self.ttl_seconds,
        )
        url = connector.authorize_url(
            state=state,
            redirect_uri=redirect_uri,
            scopes=scopes,
            code_challenge=code_challenge_for(verifier) if verifier else None,
            shop=shop_domain,
        )
        logger.info("Generated %s authorization URL for tenant %s", connector.name, tenant_id)
        return url

    async def complete_handshake(
        self,
        provider: str,
        code: Optional[str],
        state: Optional[str],
        query_params: Optional[dict] = None,
    ) -> Result[ChannelAccount]:
        try:
            account = await self._complete(provider, code, state, query_params or {})
        except ChannelSyncError as e:
            logger.warning("OAuth handshake for %s failed: %s", provider, e.message)
            return Result.failure(e)
        return Result.success(account)

    async def _complete(self, provider: str, code: Optional[str], state: Optional[str], query_params: dict) -> ChannelAccount:
        connector = self._connector(provider)

        # Signed callbacks are authenticated before the state is touched or the code spent
        if connector.signed_callback and not connector.verify_callback(query_params):
            raise AuthError("Callback signature verification failed", provider=connector.name)

        if not state:
            raise InvalidState("Missing OAuth state", provider=connector.name)
        handshake = self.store.get_and_delete(state)
        if handshake is None:
            raise InvalidState("OAuth state is unknown, expired or already used", provider=connector.name)
        if handshake.provider != connector.provider.value:
            raise InvalidState("OAuth state was issued for a different provider", provider=connector.name)
        if not code:
            raise AuthError("Missing authorization code", provider=connector.name)

        shop = handshake.shop_domain
        if connector.signed_callback:
            callback_shop = connector.normalize_shop(query_params.get("shop"))
            if shop and callback_shop and callback_shop != shop:
                raise AuthError("Callback shop does not match the shop that started the handshake", provider=connector.name)
            shop = shop or callback_shop

        grant = await connector.exchange_code(
            code,
            redirect_uri=handshake.redirect_uri,
            code_verifier=handshake.code_verifier,
            shop=shop,
        )
        identity = await connector.fetch_shop_identity(grant.access_token, shop=shop)

        account = self.credentials.upsert(
            tenant_id=handshake.tenant_id,
            provider=connector.provider,
            external_shop_id=identity.external_shop_id,
            shop_name=identity.shop_name,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            token_expires_at=grant.expires_at,
            scope=grant.scope,
            shop_metadata=identity.metadata or None,
        )
        logger.info(
            "Connected %s shop %s for tenant %s (account %s)",
            connector.name, identity.external_shop_id, handshake.tenant_id, account.id,
        )

        if settings.WEBHOOK_BASE_URL:
            try:
                result = await connector.register_webhooks(account, grant.access_token, settings.WEBHOOK_BASE_URL)
                logger.info("Webhook registration for account %s: %s", account.id, result)
            except ChannelSyncError as e:
                # Connecting still succeeded; scheduled sync covers missing webhooks
                logger.warning("Webhook registration failed for account %s: %s", account.id, e.message)
        return account

    def disconnect(self, account_id: str, tenant_id: Optional[str] = None) -> Result[ChannelAccount]:
        account = self.credentials.get(account_id)
        if account is None or (tenant_id is not None and account.tenant_id != tenant_id):
            return Result.failure(AuthError("Channel account not found", account_id=account_id))
        self.credentials.deactivate(account)
        return Result.success(account)
