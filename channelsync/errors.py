"""
Error taxonomy for channel sync.

Connectors raise these; public service operations return them inside a Result.
"""
from typing import Any, Optional


class ChannelSyncError(Exception):
    """Base error. `kind` is the taxonomy name surfaced in API responses and SyncResult errors."""

    kind = "ChannelSyncError"

    def __init__(self, message: str, *, provider: Optional[str] = None, account_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.account_id = account_id

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.provider:
            data["provider"] = self.provider
        if self.account_id:
            data["accountId"] = self.account_id
        return data


class AuthError(ChannelSyncError):
    """Handshake invalid, callback signature mismatch or code exchange failed."""

    kind = "AuthError"


class InvalidState(AuthError):
    """OAuth state absent, expired or already consumed."""

    kind = "InvalidState"


class TokenError(ChannelSyncError):
    """Refresh failed; the account needs to be re-authorized."""

    kind = "TokenError"


class TransportError(ChannelSyncError):
    """Network/HTTP failure talking to the provider. Always safe to retry later."""

    kind = "TransportError"
    retryable = True


class ProviderError(ChannelSyncError):
    """Well-formed provider response that rejects the request."""

    kind = "ProviderError"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
        provider: Optional[str] = None,
        account_id: Optional[str] = None,
    ):
        super().__init__(message, provider=provider, account_id=account_id)
        self.status_code = status_code
        if retryable is None:
            retryable = status_code is not None and (status_code == 429 or status_code >= 500)
        self.retryable = retryable

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["statusCode"] = self.status_code
        data["retryable"] = self.retryable
        return data


class FulfillmentError(ProviderError):
    """Fulfillment push rejected. `user_errors` lists the fields the provider refused."""

    kind = "FulfillmentError"

    def __init__(self, message: str, *, user_errors: Optional[list[dict]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.user_errors = user_errors or []

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["userErrors"] = self.user_errors
        return data


class MappingError(ChannelSyncError):
    """A single provider order could not be converted to canonical form."""

    kind = "MappingError"

    def __init__(self, message: str, *, external_ref: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.external_ref = external_ref
