"""
Token lifecycle: hand out a usable access token for a channel account, refreshing it shortly
before expiry. Refresh failures flag the account for re-authorization instead of retrying
a spent refresh token.
"""
import asyncio
import enum
import logging
import time
from typing import Callable, Optional

from sqlalchemy.orm import Session

from channelsync.config import settings
from channelsync.connectors import ConnectorRegistry
from channelsync.errors import ChannelSyncError, TokenError
from channelsync.models import ChannelAccount
from channelsync.result import Result
from channelsync.services.credentials import CredentialStore

logger = logging.getLogger(__name__)


class TokenState(str, enum.Enum):
    VALID = "VALID"
    EXPIRING = "EXPIRING"
    REFRESHING = "REFRESHING"
    FAILED = "FAILED"


def token_state(account: ChannelAccount, now: float, buffer_seconds: int) -> TokenState:
    """VALID or EXPIRING from stored data alone; FAILED once the account needs re-auth."""
    if account.needs_reauth:
        return TokenState.FAILED
    if account.token_expires_at is None:
        return TokenState.VALID
    if now >= account.token_expires_at - buffer_seconds:
        return TokenState.EXPIRING
    return TokenState.VALID


class TokenLifecycleManager:
    def __init__(
        self,
        db: Session,
        registry: ConnectorRegistry,
        *,
        buffer_seconds: Optional[int] = None,
        refresh_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.registry = registry
        self.credentials = CredentialStore(db)
        self.buffer_seconds = settings.TOKEN_REFRESH_BUFFER_SECONDS if buffer_seconds is None else buffer_seconds
        self.refresh_timeout = settings.TOKEN_REFRESH_TIMEOUT if refresh_timeout is None else refresh_timeout
        self.clock = clock

    async def ensure_valid_token(self, account: ChannelAccount) -> Result[str]:
        state = token_state(account, self.clock(), self.buffer_seconds)
        if state == TokenState.FAILED:
            return Result.failure(TokenError(
                "Channel account needs re-authorization",
                provider=account.provider.value,
                account_id=account.id,
            ))
        if state == TokenState.VALID:
            token = self.credentials.access_token(account)
            if token:
                return Result.success(token)
            return Result.failure(TokenError(
                "No usable access token stored for channel account",
                provider=account.provider.value,
                account_id=account.id,
            ))
        return await self._refresh(account)

    async def _refresh(self, account: ChannelAccount) -> Result[str]:
        # Another run may have rotated the token since this row was loaded
        self.db.refresh(account)
        state = token_state(account, self.clock(), self.buffer_seconds)
        if state == TokenState.VALID:
            token = self.credentials.access_token(account)
            if token:
                logger.debug("Token for account %s already refreshed by a concurrent run", account.id)
                return Result.success(token)
        if state == TokenState.FAILED:
            return Result.failure(TokenError(
                "Channel account needs re-authorization",
                provider=account.provider.value,
                account_id=account.id,
            ))

        connector = self.registry.get(account.provider)
        refresh_token = self.credentials.refresh_token(account)
        if connector is None or not refresh_token:
            return self._fail(account, "No refresh token or connector available")

        logger.info("Token state %s -> %s for account %s", state.value, TokenState.REFRESHING.value, account.id)
        try:
            grant = await asyncio.wait_for(
                connector.refresh_token(account, refresh_token),
                timeout=self.refresh_timeout,
            )
        except asyncio.TimeoutError:
            return self._fail(account, f"Token refresh timed out after {self.refresh_timeout}s")
        except ChannelSyncError as e:
            return self._fail(account, e.message)

        self.credentials.update_tokens(
            account,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            token_expires_at=grant.expires_at,
        )
        logger.info("Refreshed access token for account %s (expires_at=%s)", account.id, grant.expires_at)
        return Result.success(grant.access_token)

    def _fail(self, account: ChannelAccount, reason: str) -> Result[str]:
        logger.warning("Token state %s for account %s: %s", TokenState.FAILED.value, account.id, reason)
        self.credentials.mark_needs_reauth(account)
        return Result.failure(TokenError(
            f"Token refresh failed: {reason}",
            provider=account.provider.value,
            account_id=account.id,
        ))
