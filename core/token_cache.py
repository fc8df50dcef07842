"""Per-connection access token cache with explicit expiry."""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedToken:
    access_token: str
    token_type: str
    expires_at: datetime
    refresh_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class TokenCache:
    """
    Holds one token per connection key.

    Refresh is explicit: callers ask ``needs_refresh`` / ``due_for_refresh``
    and fetch under the key's lock, so two threads never authenticate the
    same connection at once.
    """

    def __init__(self, refresh_margin_seconds: int = 600, clock: Callable[[], datetime] = datetime.now):
        self.refresh_margin = timedelta(seconds=refresh_margin_seconds)
        self._clock = clock
        self._tokens: Dict[str, CachedToken] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())

    def get(self, key: str) -> Optional[CachedToken]:
        token = self._tokens.get(key)
        if token is None or token.is_expired(self._clock()):
            return None
        return token

    def store(self, key: str, access_token: str, expires_in: int, token_type: str = "Bearer") -> CachedToken:
        # Short-lived tokens refresh at half their lifetime instead of the full margin.
        lifetime = timedelta(seconds=expires_in)
        expires_at = self._clock() + lifetime
        token = CachedToken(
            access_token=access_token,
            token_type=token_type,
            expires_at=expires_at,
            refresh_at=expires_at - min(self.refresh_margin, lifetime / 2),
        )
        self._tokens[key] = token
        logger.debug(f"Stored token for {key}, expires at {token.expires_at.isoformat()}")
        return token

    def invalidate(self, key: str) -> None:
        self._tokens.pop(key, None)

    def needs_refresh(self, key: str) -> bool:
        token = self._tokens.get(key)
        if token is None:
            return True
        return self._clock() >= token.refresh_at

    def due_for_refresh(self) -> List[str]:
        return [key for key in list(self._tokens) if self.needs_refresh(key)]

    def get_or_fetch(self, key: str, fetch: Callable[[], Tuple[str, int]]) -> str:
        """Return a valid token, calling ``fetch`` for (token, expires_in) when needed."""
        with self.lock_for(key):
            if not self.needs_refresh(key):
                return self._tokens[key].access_token
            access_token, expires_in = fetch()
            return self.store(key, access_token, expires_in).access_token

    def refresh(self, key: str, fetch: Callable[[], Tuple[str, int]]) -> str:
        """Force a new token regardless of the cached one."""
        with self.lock_for(key):
            access_token, expires_in = fetch()
            return self.store(key, access_token, expires_in).access_token
