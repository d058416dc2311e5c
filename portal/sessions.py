"""In-memory session handling for authenticated portal staff."""

from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional


@dataclass(frozen=True)
class SessionIdentity:
    """What a session remembers about its caller.

    No role is kept here; it is re-read from the database for every
    authorization decision.
    """

    id: int
    name: str


@dataclass
class _SessionRecord:
    identity: SessionIdentity
    expires_at: datetime


class SessionManager:
    """Generate, validate, and revoke portal sessions."""

    def __init__(self, *, ttl: timedelta = timedelta(hours=8)) -> None:
        self._ttl = ttl
        self._sessions: Dict[str, _SessionRecord] = {}
        self._lock = threading.Lock()

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    @property
    def cookie_max_age(self) -> int:
        return int(self._ttl.total_seconds())

    def create(self, identity: SessionIdentity, *, previous_token: Optional[str] = None) -> str:
        """Issue a fresh token, discarding ``previous_token`` if one was presented."""

        now = self._now()
        token = secrets.token_urlsafe(32)
        record = _SessionRecord(identity=identity, expires_at=now + self._ttl)
        with self._lock:
            self._purge_expired(now)
            if previous_token:
                self._sessions.pop(previous_token, None)
            self._sessions[token] = record
        return token

    def resolve(self, token: str) -> Optional[SessionIdentity]:
        now = self._now()
        with self._lock:
            record = self._sessions.get(token)
            if record is None:
                return None
            if record.expires_at <= now:
                self._sessions.pop(token, None)
                return None
            record.expires_at = now + self._ttl
            return record.identity

    def destroy(self, token: str) -> None:
        with self._lock:
            self._sessions.pop(token, None)

    def revoke_user(self, user_id: int) -> int:
        """Destroy every session belonging to ``user_id``; returns how many."""

        with self._lock:
            tokens = [
                token
                for token, record in self._sessions.items()
                if record.identity.id == user_id
            ]
            for token in tokens:
                del self._sessions[token]
        return len(tokens)

    def _purge_expired(self, now: datetime) -> None:
        # Caller holds the lock.
        expired = [token for token, record in self._sessions.items() if record.expires_at <= now]
        for token in expired:
            del self._sessions[token]

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)


__all__ = ["SessionIdentity", "SessionManager"]
