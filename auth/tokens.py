"""
auth/tokens.py -- Local JWT issuance and verification.

Security design decisions:
  JWT: python-jose with HS256. Access tokens (15 min) and refresh tokens
       (7 days) are signed with DIFFERENT secrets, so a refresh token can
       never verify as an access token even if a caller forgets to check the
       purpose. The "type" claim is still checked explicitly on every verify.

  Claims: {sub: str(user_id), type: "access" | "refresh", iat, exp, jti}.
       jti is a random nonce; without it two tokens minted for the same user
       in the same second would be byte-identical, and so would their
       refresh-token fingerprints.

  Errors: jose raises several error types (bad signature, expired, malformed,
       wrong algorithm). verify_local() collapses all of them into a single
       InvalidTokenError. The reason attribute ("expired" / "invalid") is for
       logs only; callers must not surface it to clients.

  Secrets: injected at construction (TokenIssuer.from_settings() for the app,
       explicit strings in tests). No module-level secret lookups.

Layer rule: no imports from api/. Import from core/ only in from_settings().
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from jose import ExpiredSignatureError, JWTError, jwt

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("hattbooks.auth.tokens")

ACCESS = "access"
REFRESH = "refresh"

_ALGORITHM = "HS256"


class InvalidTokenError(Exception):
    """A local token failed verification. reason is "expired" or "invalid"."""

    def __init__(self, reason: str = "invalid") -> None:
        self.reason = reason
        super().__init__(f"Invalid token ({reason})")


@dataclass(frozen=True)
class TokenClaims:
    """Verified claims of a locally issued token."""

    user_id: int
    purpose: str  # "access" | "refresh"
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


class TokenIssuer:
    """Mints and verifies the two kinds of local session tokens.

    Usage:
        issuer = TokenIssuer(access_secret="...", refresh_secret="...")
        pair = issuer.issue_pair(user_id=7)
        claims = issuer.verify_local(pair.access_token)   # TokenClaims(7, "access", ...)
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        algorithm: str = _ALGORITHM,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("Both access and refresh signing secrets are required.")
        if access_secret == refresh_secret:
            raise ValueError("Access and refresh tokens must use different signing secrets.")
        self._secrets = {ACCESS: access_secret, REFRESH: refresh_secret}
        self._ttls = {ACCESS: access_ttl, REFRESH: refresh_ttl}
        self._algorithm = algorithm

    @classmethod
    def from_settings(cls, settings: Settings) -> TokenIssuer:
        return cls(
            access_secret=settings.secret_key,
            refresh_secret=settings.refresh_secret_key,
            access_ttl=timedelta(minutes=settings.access_token_expire_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_expire_days),
        )

    @property
    def refresh_ttl(self) -> timedelta:
        return self._ttls[REFRESH]

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue_access(self, user_id: int) -> str:
        return self._issue(user_id, ACCESS)

    def issue_refresh(self, user_id: int) -> str:
        return self._issue(user_id, REFRESH)

    def issue_pair(self, user_id: int) -> TokenPair:
        return TokenPair(access_token=self.issue_access(user_id), refresh_token=self.issue_refresh(user_id))

    def _issue(self, user_id: int, purpose: str, now: datetime | None = None) -> str:
        issued = now or datetime.now(timezone.utc)
        payload = {
            "sub": str(user_id),
            "type": purpose,
            "iat": issued,
            "exp": issued + self._ttls[purpose],
            "jti": secrets.token_hex(16),
        }
        return jwt.encode(payload, self._secrets[purpose], algorithm=self._algorithm)

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify_local(self, token: str) -> TokenClaims:
        """Verify a token against both local secrets and return its claims.

        The access secret is tried first, then the refresh secret. A token
        whose signature checks out but has expired stops the search: it was
        ours, it is just too old. A token whose "type" claim disagrees with
        the secret that verified it is rejected.

        Raises InvalidTokenError on any failure.
        """
        for purpose in (ACCESS, REFRESH):
            try:
                payload = jwt.decode(token, self._secrets[purpose], algorithms=[self._algorithm])
            except ExpiredSignatureError as exc:
                raise InvalidTokenError("expired") from exc
            except JWTError:
                continue
            return self._claims_from_payload(payload, purpose)
        raise InvalidTokenError("invalid")

    def verify_refresh(self, token: str) -> TokenClaims:
        """Verify a token and require it to be a refresh token."""
        claims = self.verify_local(token)
        if claims.purpose != REFRESH:
            raise InvalidTokenError("invalid")
        return claims

    @staticmethod
    def _claims_from_payload(payload: dict, purpose: str) -> TokenClaims:
        if payload.get("type") != purpose:
            raise InvalidTokenError("invalid")
        try:
            user_id = int(payload["sub"])
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidTokenError("invalid") from exc
        return TokenClaims(user_id=user_id, purpose=purpose, expires_at=expires_at)
