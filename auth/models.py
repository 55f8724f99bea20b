"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores, the session
manager, and the service do the work; these only own domain shape.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

AUTH_PROVIDERS = ("local", "auth0", "google", "facebook")


def default_preferences() -> dict:
    return {
        "is_private": False,
        "show_reading_goals": True,
        "email_notifications": True,
        "theme": "auto",
        "language": "es",
    }


@dataclass
class RefreshTokenRecord:
    """One device session. Only the SHA-256 fingerprint of the token is kept.

    The plaintext refresh token is returned to the client once and is then
    unrecoverable; lookup re-hashes the incoming token and compares.
    """

    token_hash: str
    created_at: datetime
    expires_at: datetime
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass
class User:
    """The account aggregate shared by local and external identities.

    hashed_password is None for external-only accounts (they have no local
    password). external_id is the identity provider's stable subject ("sub")
    and is None for local-only accounts. Both may be set after linking.

    refresh_tokens is ordered oldest first; the session manager evicts from
    the front when the per-user cap is reached.
    """

    email: str
    username: str
    display_name: str
    id: int | None = None
    external_id: str | None = None
    hashed_password: str | None = None  # None = external-only user
    auth_provider: str = "local"  # "local" | "auth0" | "google" | "facebook"
    avatar: str | None = None
    bio: str = ""
    preferences: dict = field(default_factory=default_preferences)
    followers: list[int] = field(default_factory=list)
    following: list[int] = field(default_factory=list)
    is_active: bool = True
    last_login: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    refresh_tokens: list[RefreshTokenRecord] = field(default_factory=list)
