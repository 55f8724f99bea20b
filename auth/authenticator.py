"""
auth/authenticator.py -- Dual-scheme bearer-token authenticator.

A protected request carries exactly one bearer token, which is either:
  - a local access token (HS256, minted by auth.tokens.TokenIssuer), or
  - an external identity token (RS256, minted by Auth0 and verified against
    the issuer's published JWKS).

The authenticator is an explicit two-state machine:

    LOCAL_ATTEMPT --(signature ok, type=access)----> resolve user by id
         |         --(signature ok, type=refresh)---> REJECTED 401 (no fallthrough)
         |
         +--(expired / bad signature / malformed)--> EXTERNAL_ATTEMPT
                                      (only if issuer+audience configured, else 401)
                                      --(verified)--> resolve user by external id
                                      --(anything else)--> REJECTED 401

User resolution in either branch:
  - no matching user  -> 404 (the token is genuine; the client should register)
  - user deactivated  -> 403
  - otherwise         -> AUTHENTICATED, with auth mode "local" or "external"

authenticate_optional() runs the same machine but returns None instead of
raising, for routes that personalize output without requiring login.

Blocking store calls are pushed to the threadpool so the event loop stays
free while the JWKS fetch and other requests proceed.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field

from jose import JWTError, jwt
from starlette.concurrency import run_in_threadpool

from auth.errors import ApiError, ForbiddenError, NotFoundError, UnauthorizedError
from auth.jwks import KeyProvider, SigningKeyNotFound
from auth.models import User
from auth.store import UserRepository
from auth.tokens import ACCESS, InvalidTokenError, TokenIssuer

logger = logging.getLogger("hattbooks.auth.authenticator")

MODE_LOCAL = "local"
MODE_EXTERNAL = "external"

_EXTERNAL_ALGORITHMS = ["RS256"]
# python-jose skips the aud/exp checks when the claim is absent; require them.
_REQUIRED_CLAIMS = {"require_aud": True, "require_exp": True, "require_iss": True, "require_sub": True}


class LocalOutcome(enum.Enum):
    ACCESS = "access"  # verified local access token
    REFRESH = "refresh"  # verified local token of the wrong purpose
    EXPIRED = "expired"  # local signature, past expiry
    NOT_LOCAL = "not_local"  # not signed by either local secret


@dataclass(frozen=True)
class AuthContext:
    """The result of a successful authentication, attached to request.state."""

    user: User
    mode: str  # "local" | "external"
    claims: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ExternalIdentityConfig:
    issuer: str
    audience: str


def extract_bearer_token(authorization: str | None) -> str | None:
    """Return the token from an 'Authorization: Bearer <token>' header, or None.

    Exactly two space-separated parts are accepted; anything else (missing
    header, other scheme, empty token, extra parts) is malformed.
    """
    if not authorization:
        return None
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        return None
    return parts[1]


class DualSchemeAuthenticator:
    """Resolve a bearer token to an active user via the local or external scheme.

    Usage:
        authenticator = DualSchemeAuthenticator(store, issuer, key_provider, external)
        ctx = await authenticator.authenticate(request.headers.get("Authorization"))
        ctx.user, ctx.mode
    """

    def __init__(
        self,
        store: UserRepository,
        issuer: TokenIssuer,
        key_provider: KeyProvider | None = None,
        external: ExternalIdentityConfig | None = None,
    ) -> None:
        self._store = store
        self._issuer = issuer
        self._key_provider = key_provider
        self._external = external if key_provider is not None else None

    @property
    def external_enabled(self) -> bool:
        return self._external is not None

    async def authenticate(self, authorization: str | None) -> AuthContext:
        """Run the state machine. Raises UnauthorizedError, NotFoundError or ForbiddenError."""
        token = extract_bearer_token(authorization)
        if token is None:
            raise UnauthorizedError("No token provided")

        # LOCAL_ATTEMPT
        outcome, claims = self._attempt_local(token)
        if outcome is LocalOutcome.ACCESS:
            user = await run_in_threadpool(self._store.get_by_id, claims["user_id"])
            return self._accept(user, MODE_LOCAL, claims, missing="User not found")
        if outcome is LocalOutcome.REFRESH:
            raise UnauthorizedError(
                "Refresh tokens cannot be used for authentication. Use the /auth/refresh endpoint."
            )
        if outcome is LocalOutcome.EXPIRED:
            logger.debug("Local access token expired; trying external scheme")

        # EXTERNAL_ATTEMPT
        if self._external is None:
            raise UnauthorizedError("Invalid or expired token")
        external_claims = await self._attempt_external(token)
        if external_claims is None:
            raise UnauthorizedError("Invalid or expired token")
        user = await run_in_threadpool(self._store.get_by_external_id, external_claims["sub"])
        return self._accept(
            user,
            MODE_EXTERNAL,
            external_claims,
            missing="User not found in database. Please register first.",
        )

    async def authenticate_optional(self, authorization: str | None) -> AuthContext | None:
        """Same as authenticate(), but any failure yields None (anonymous)."""
        if extract_bearer_token(authorization) is None:
            return None
        try:
            return await self.authenticate(authorization)
        except ApiError as exc:
            logger.debug("Optional authentication fell back to anonymous: %s", exc.message)
            return None

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def _attempt_local(self, token: str) -> tuple[LocalOutcome, dict]:
        try:
            claims = self._issuer.verify_local(token)
        except InvalidTokenError as exc:
            if exc.reason == "expired":
                return LocalOutcome.EXPIRED, {}
            return LocalOutcome.NOT_LOCAL, {}
        if claims.purpose != ACCESS:
            return LocalOutcome.REFRESH, {}
        return LocalOutcome.ACCESS, {"user_id": claims.user_id, "type": claims.purpose}

    async def _attempt_external(self, token: str) -> dict | None:
        """Verify an RS256 token from the external issuer. Returns claims or None."""
        try:
            header = jwt.get_unverified_header(token)
        except JWTError:
            return None
        kid = header.get("kid")
        if not kid or header.get("alg") not in _EXTERNAL_ALGORITHMS:
            return None
        try:
            key = await self._key_provider.get_signing_key(kid)
        except SigningKeyNotFound as exc:
            logger.info("External token rejected: %s", exc)
            return None
        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=_EXTERNAL_ALGORITHMS,
                audience=self._external.audience,
                issuer=self._external.issuer,
                options=_REQUIRED_CLAIMS,
            )
        except JWTError as exc:
            logger.info("External token rejected: %s", exc)
            return None
        if not claims.get("sub"):
            return None
        return claims

    @staticmethod
    def _accept(user: User | None, mode: str, claims: dict, missing: str) -> AuthContext:
        if user is None:
            raise NotFoundError(missing)
        if not user.is_active:
            raise ForbiddenError("Account is deactivated")
        return AuthContext(user=user, mode=mode, claims=claims)
