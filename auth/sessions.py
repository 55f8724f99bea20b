"""
auth/sessions.py -- Refresh-token lifecycle for a single user.

Each user document carries an ordered list (oldest first) of refresh-token
records: fingerprint, creation time, expiry, origin IP and user-agent. The
list is bounded at write time, which both caps storage and limits a user to
max_tokens concurrent devices.

Every mutating method takes a User value, builds the updated value, performs
exactly one write through the repository, and returns the updated value.
Nothing here mutates the caller's object in place.

Concurrency: add/revoke are read-modify-write on one user document and are
not serialized. Two logins racing for the same user can briefly leave one
record over the cap; the next add prunes it back.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from auth.credentials import fingerprint_token
from auth.errors import NotFoundError
from auth.models import RefreshTokenRecord, User
from auth.store import UserRepository

logger = logging.getLogger("hattbooks.auth.sessions")

DEFAULT_MAX_TOKENS = 5
DEFAULT_TTL = timedelta(days=7)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionManager:
    """Owns the bounded refresh-token list of each user.

    Usage:
        sessions = SessionManager(store)
        user = sessions.add_refresh_token(user, refresh_token, "10.0.0.1", "Mozilla/5.0")
        sessions.is_valid(user, refresh_token)   # True
        user = sessions.revoke(user, refresh_token)
    """

    def __init__(
        self,
        store: UserRepository,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        ttl: timedelta = DEFAULT_TTL,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if max_tokens < 1:
            raise ValueError("max_tokens must be at least 1")
        self._store = store
        self._max_tokens = max_tokens
        self._ttl = ttl
        self._clock = clock

    def add_refresh_token(
        self,
        user: User,
        token: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> User:
        """Record a newly issued refresh token for user.

        Expired records are pruned first. If the list is still at capacity,
        the single oldest record (front of the list) is evicted -- FIFO by
        creation, not least-recently-used.
        """
        now = self._clock()
        records = [r for r in user.refresh_tokens if r.expires_at > now]
        if len(records) >= self._max_tokens:
            evicted = records[: len(records) - self._max_tokens + 1]
            records = records[len(evicted) :]
            logger.info("Evicted %d oldest refresh token(s) for user_id=%s", len(evicted), user.id)
        records.append(
            RefreshTokenRecord(
                token_hash=fingerprint_token(token),
                created_at=now,
                expires_at=now + self._ttl,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )
        return self._persist(replace(user, refresh_tokens=records))

    def is_valid(self, user: User, token: str) -> bool:
        """Return True iff an unexpired record with the token's fingerprint exists."""
        token_hash = fingerprint_token(token)
        now = self._clock()
        return any(r.token_hash == token_hash and r.expires_at > now for r in user.refresh_tokens)

    def revoke(self, user: User, token: str) -> User:
        """Remove the record matching token's fingerprint. Unknown tokens are a no-op write."""
        token_hash = fingerprint_token(token)
        records = [r for r in user.refresh_tokens if r.token_hash != token_hash]
        return self._persist(replace(user, refresh_tokens=records))

    def revoke_all(self, user: User) -> User:
        """Clear every refresh-token record for user (log out of all devices)."""
        return self._persist(replace(user, refresh_tokens=[]))

    def active_sessions(self, user: User) -> list[RefreshTokenRecord]:
        """Return the unexpired records, oldest first."""
        now = self._clock()
        return [r for r in user.refresh_tokens if r.expires_at > now]

    def _persist(self, user: User) -> User:
        if not self._store.save_user(user):
            raise NotFoundError("User not found")
        return user
