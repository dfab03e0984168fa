"""
Credential encryption/decryption and channel account persistence.

The token columns of ChannelAccount are written only through this module, and only the
token manager and the OAuth handshake service call the token-writing methods.
"""
import base64
import logging
from datetime import datetime, timezone
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from channelsync.config import settings
from channelsync.models import ChannelAccount, ChannelProvider

logger = logging.getLogger(__name__)


def get_encryption_key() -> bytes:
    """Get or generate encryption key"""
    key_str = settings.ENCRYPTION_KEY
    # Ensure key is 32 bytes for Fernet
    key_bytes = key_str.encode()[:32].ljust(32, b'0')
    return base64.urlsafe_b64encode(key_bytes)

def encrypt_token(token: str) -> str:
    """Encrypt a token"""
    key = get_encryption_key()
    f = Fernet(key)
    encrypted = f.encrypt(token.encode())
    return encrypted.decode()

def decrypt_token(encrypted: str) -> str:
    """Decrypt a token"""
    key = get_encryption_key()
    f = Fernet(key)
    decrypted = f.decrypt(encrypted.encode())
    return decrypted.decode()


class CredentialStore:
    """One record per connected channel account. Pure storage, no provider calls."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, account_id: str) -> Optional[ChannelAccount]:
        return self.db.query(ChannelAccount).filter(ChannelAccount.id == account_id).first()

    def find(self, tenant_id: str, provider: ChannelProvider, external_shop_id: str) -> Optional[ChannelAccount]:
        return (
            self.db.query(ChannelAccount)
            .filter(
                ChannelAccount.tenant_id == tenant_id,
                ChannelAccount.provider == provider,
                ChannelAccount.external_shop_id == external_shop_id,
            )
            .first()
        )

    def find_by_shop(self, provider: ChannelProvider, external_shop_id: str, active_only: bool = True) -> list[ChannelAccount]:
        """All accounts (any tenant) connected to a shop. Webhooks arrive keyed by shop only."""
        query = self.db.query(ChannelAccount).filter(
            ChannelAccount.provider == provider,
            ChannelAccount.external_shop_id == external_shop_id,
        )
        if active_only:
            query = query.filter(ChannelAccount.is_active.is_(True))
        return query.all()

    def find_active_for_tenant(self, tenant_id: str, provider: Optional[ChannelProvider] = None) -> list[ChannelAccount]:
        query = self.db.query(ChannelAccount).filter(
            ChannelAccount.tenant_id == tenant_id,
            ChannelAccount.is_active.is_(True),
        )
        if provider is not None:
            query = query.filter(ChannelAccount.provider == provider)
        return query.order_by(ChannelAccount.created_at).all()

    def list_active(self) -> list[ChannelAccount]:
        return self.db.query(ChannelAccount).filter(ChannelAccount.is_active.is_(True)).all()

    def list_for_tenant(self, tenant_id: str) -> list[ChannelAccount]:
        return (
            self.db.query(ChannelAccount)
            .filter(ChannelAccount.tenant_id == tenant_id)
            .order_by(ChannelAccount.created_at)
            .all()
        )

    def access_token(self, account: ChannelAccount) -> Optional[str]:
        return self._decrypt(account.access_token)

    def refresh_token(self, account: ChannelAccount) -> Optional[str]:
        return self._decrypt(account.refresh_token)

    def upsert(
        self,
        *,
        tenant_id: str,
        provider: ChannelProvider,
        external_shop_id: str,
        shop_name: Optional[str],
        access_token: str,
        refresh_token: Optional[str],
        token_expires_at: Optional[int],
        scope: Optional[str],
        shop_metadata: Optional[dict] = None,
    ) -> ChannelAccount:
        """Create the account or rotate tokens in place on the existing (tenant, provider, shop) row."""
        account = self.find(tenant_id, provider, external_shop_id)
        if account is None:
            account = ChannelAccount(
                tenant_id=tenant_id,
                provider=provider,
                external_shop_id=external_shop_id,
            )
            self.db.add(account)
            try:
                self.db.flush()
            except IntegrityError:
                # Concurrent callback for the same shop created the row first
                self.db.rollback()
                account = self.find(tenant_id, provider, external_shop_id)
                if account is None:
                    raise
            else:
                logger.info("Created channel account %s for tenant %s (%s %s)", account.id, tenant_id, provider.value, external_shop_id)

        account.shop_name = shop_name or account.shop_name
        account.access_token = encrypt_token(access_token)
        account.refresh_token = encrypt_token(refresh_token) if refresh_token else None
        account.token_expires_at = token_expires_at
        account.scope = scope
        if shop_metadata:
            account.shop_metadata = dict(shop_metadata)
        account.is_active = True
        account.needs_reauth = False
        self.db.commit()
        self.db.refresh(account)
        return account

    def update_tokens(
        self,
        account: ChannelAccount,
        *,
        access_token: str,
        refresh_token: Optional[str],
        token_expires_at: Optional[int],
    ) -> ChannelAccount:
        account.access_token = encrypt_token(access_token)
        if refresh_token:
            # Providers that do not rotate omit the refresh token; keep the old one
            account.refresh_token = encrypt_token(refresh_token)
        account.token_expires_at = token_expires_at
        account.needs_reauth = False
        self.db.commit()
        self.db.refresh(account)
        return account

    def mark_needs_reauth(self, account: ChannelAccount) -> None:
        account.needs_reauth = True
        self.db.commit()

    def update_last_sync_at(self, account: ChannelAccount, when: Optional[datetime] = None) -> None:
        account.last_sync_at = when or datetime.now(timezone.utc)
        self.db.commit()

    def deactivate(self, account: ChannelAccount) -> None:
        account.is_active = False
        self.db.commit()
        logger.info("Deactivated channel account %s", account.id)

    def _decrypt(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        try:
            return decrypt_token(value)
        except InvalidToken:
            logger.error("Stored token could not be decrypted (ENCRYPTION_KEY changed?)")
            return None
