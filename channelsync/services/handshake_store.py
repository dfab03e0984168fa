"""
Short-lived OAuth handshake state keyed by the `state` parameter.

Stores expose put/get_and_delete only: a state can be read exactly once, and expired
entries are never returned.
"""
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from sqlalchemy.orm import Session

from channelsync.models import OAuthHandshake

logger = logging.getLogger(__name__)


@dataclass
class HandshakeState:
    tenant_id: str
    provider: str
    redirect_uri: str
    code_verifier: Optional[str] = None
    shop_domain: Optional[str] = None
    pending_account_ref: Optional[str] = None


class HandshakeStore(Protocol):
    def put(self, key: str, value: HandshakeState, ttl: int) -> None: ...

    def get_and_delete(self, key: str) -> Optional[HandshakeState]: ...


class MemoryHandshakeStore:
    """In-process expiring map. Only correct for a single API instance."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, tuple[float, HandshakeState]] = {}
        self._lock = threading.Lock()

    def put(self, key: str, value: HandshakeState, ttl: int) -> None:
        with self._lock:
            self._purge()
            self._entries[key] = (self._clock() + ttl, value)

    def get_and_delete(self, key: str) -> Optional[HandshakeState]:
        with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            return None
        return value

    def _purge(self) -> None:
        now = self._clock()
        for key in [k for k, (exp, _) in self._entries.items() if now >= exp]:
            del self._entries[key]


class DatabaseHandshakeStore:
    """Handshake rows in `oauth_handshakes`; shared by every instance behind the load balancer."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def put(self, key: str, value: HandshakeState, ttl: int) -> None:
        now = datetime.now(timezone.utc)
        db = self.session_factory()
        try:
            # Opportunistic cleanup of abandoned handshakes
            db.query(OAuthHandshake).filter(OAuthHandshake.expires_at < now).delete(synchronize_session=False)
            db.add(OAuthHandshake(
                state=key,
                tenant_id=value.tenant_id,
                provider=value.provider,
                redirect_uri=value.redirect_uri,
                code_verifier=value.code_verifier,
                shop_domain=value.shop_domain,
                pending_account_ref=value.pending_account_ref,
                created_at=now,
                expires_at=now + timedelta(seconds=ttl),
            ))
            db.commit()
        finally:
            db.close()

    def get_and_delete(self, key: str) -> Optional[HandshakeState]:
        db = self.session_factory()
        try:
            row = db.query(OAuthHandshake).filter(OAuthHandshake.state == key).first()
            if row is None:
                return None
            value = HandshakeState(
                tenant_id=row.tenant_id,
                provider=row.provider,
                redirect_uri=row.redirect_uri,
                code_verifier=row.code_verifier,
                shop_domain=row.shop_domain,
                pending_account_ref=row.pending_account_ref,
            )
            expires_at = row.expires_at
            # Only the caller whose DELETE hits the row gets to use the state
            deleted = (
                db.query(OAuthHandshake)
                .filter(OAuthHandshake.state == key)
                .delete(synchronize_session=False)
            )
            db.commit()
            if deleted != 1:
                logger.warning("OAuth state already consumed by a concurrent callback")
                return None
            if expires_at.tzinfo is None:
                # SQLite drops tzinfo
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            if datetime.now(timezone.utc) >= expires_at:
                return None
            return value
        finally:
            db.close()
