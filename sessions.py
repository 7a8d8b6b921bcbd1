"""
Server-side session store

Sessions live in process memory, keyed by an opaque token the client holds in
a cookie. Each record keeps a snapshot of the user row taken at login; it is
never re-read from the database, so role changes apply on the next login.

Lifetime is fixed from creation and is not extended on activity.
"""

import secrets
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

DEFAULT_TTL_SECONDS = 3600


@dataclass
class SessionRecord:
    user: dict
    expires_at: float

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


class SessionStore:
    """In-memory token -> SessionRecord map with lazy expiry."""

    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._records: Dict[str, SessionRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def create(self, user: dict) -> str:
        self.sweep()
        now = self._clock()
        token = secrets.token_urlsafe(32)
        self.store(token, SessionRecord(user=dict(user), expires_at=now + self.ttl_seconds))
        return token

    def store(self, token: str, record: SessionRecord) -> None:
        self._records[token] = record

    def lookup(self, token: Optional[str]) -> Optional[SessionRecord]:
        if not token:
            return None
        record = self._records.get(token)
        if record is None:
            return None
        if record.expired(self._clock()):
            self._records.pop(token, None)
            return None
        return record

    def delete(self, token: Optional[str]) -> None:
        # unknown or missing tokens are fine
        if token:
            self._records.pop(token, None)

    def sweep(self) -> int:
        """Drop every expired record and return how many were removed."""
        now = self._clock()
        stale = [token for token, record in self._records.items() if record.expired(now)]
        for token in stale:
            del self._records[token]
        return len(stale)
