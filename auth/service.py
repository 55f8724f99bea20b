"""
auth/service.py -- Account and session orchestration.

AuthService composes the user store, credential codec, token issuer and
session manager into the operations the HTTP layer exposes. It holds no
per-request state; every operation is one linear flow with early exits.

Error policy:
  - Every rule violation raises an auth.errors.ApiError subclass. Nothing is
    swallowed here; api/main.py renders them.
  - Unknown email and wrong password produce the same 401 message, and both
    cost one bcrypt verification [C1].
  - Every local-token failure on refresh (bad signature, expired, wrong
    purpose, revoked, evicted) collapses to one 401 message.
  - Revocation always targets the authenticated caller's own user id.

Layer rule: no imports from api/. Framework-free; the request context (IP,
user-agent) arrives as a plain RequestContext value.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError

from auth.credentials import DEFAULT_ROUNDS, equalize_timing, hash_password, verify_password
from auth.errors import BadRequestError, ConflictError, ForbiddenError, NotFoundError, UnauthorizedError
from auth.models import AUTH_PROVIDERS, User
from auth.sessions import SessionManager
from auth.store import UserRepository
from auth.tokens import InvalidTokenError, TokenIssuer

logger = logging.getLogger("hattbooks.auth")

MIN_PASSWORD_LENGTH = 8

WELCOME_MESSAGE = "Welcome to HattBooks! Your account has been created successfully."
INVALID_CREDENTIALS = "Invalid email or password"
INVALID_REFRESH = "Invalid or expired refresh token"


@dataclass(frozen=True)
class RequestContext:
    """Where a login came from. Stored on the refresh-token record for auditing."""

    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class AuthResult:
    user: User
    access_token: str
    refresh_token: str
    message: str


@dataclass(frozen=True)
class ProfileResult:
    user: User
    message: str


@dataclass(frozen=True)
class RefreshResult:
    access_token: str
    message: str


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _missing(**fields) -> list[str]:
    return [name for name, value in fields.items() if value is None or (isinstance(value, str) and not value.strip())]


class AuthService:
    """Register, log in, refresh and revoke for local and external identities.

    Usage:
        service = AuthService(store, TokenIssuer.from_settings(cfg), SessionManager(store))
        result = service.register_local("a@x.com", "alice", "Alice", "Password1!")
        service.refresh_access_token(result.refresh_token)
    """

    def __init__(
        self,
        store: UserRepository,
        issuer: TokenIssuer,
        sessions: SessionManager,
        bcrypt_rounds: int = DEFAULT_ROUNDS,
    ) -> None:
        self._store = store
        self._issuer = issuer
        self._sessions = sessions
        self._bcrypt_rounds = bcrypt_rounds

    # ------------------------------------------------------------------
    # Local credentials
    # ------------------------------------------------------------------

    def register_local(
        self,
        email: str | None,
        username: str | None,
        display_name: str | None,
        password: str | None,
        avatar: str | None = None,
        context: RequestContext | None = None,
    ) -> AuthResult:
        """Create a password account, issue a token pair and record the session."""
        missing = _missing(email=email, username=username, displayName=display_name, password=password)
        if missing:
            raise BadRequestError(
                "Missing required fields",
                {"required": ["email", "username", "displayName", "password"], "missing": missing},
            )
        if len(password) < MIN_PASSWORD_LENGTH:
            raise BadRequestError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")

        email = email.strip().lower()
        username = username.strip().lower()
        self._ensure_available(email=email, username=username)

        user = self._create(
            User(
                email=email,
                username=username,
                display_name=display_name.strip(),
                hashed_password=hash_password(password, rounds=self._bcrypt_rounds),
                auth_provider="local",
                avatar=avatar or None,
                last_login=_now_iso(),
            )
        )
        logger.info("Registered local user_id=%s", user.id)
        user, tokens = self._start_session(user, context)
        return AuthResult(
            user=user,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            message=WELCOME_MESSAGE,
        )

    def login_local(
        self,
        email: str | None,
        password: str | None,
        context: RequestContext | None = None,
    ) -> AuthResult:
        """Verify email/password, stamp last_login, issue a token pair."""
        if not email or not password:
            raise BadRequestError("Email and password are required")

        user = self._store.get_by_email(email)
        if user is None:
            equalize_timing(password, rounds=self._bcrypt_rounds)
            logger.warning("Failed local login: unknown email")
            raise UnauthorizedError(INVALID_CREDENTIALS)

        if user.auth_provider != "local":
            raise BadRequestError(
                f'This account uses {user.auth_provider} login. Please use the "{user.auth_provider}" '
                "button to sign in."
            )

        if not verify_password(password, user.hashed_password):
            logger.warning("Failed local login for user_id=%s: bad password", user.id)
            raise UnauthorizedError(INVALID_CREDENTIALS)

        if not user.is_active:
            raise ForbiddenError("Account is deactivated")

        user, tokens = self._start_session(replace(user, last_login=_now_iso()), context)
        logger.info("Local login user_id=%s", user.id)
        return AuthResult(
            user=user,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            message=f"Welcome back, {user.display_name}!",
        )

    def change_password(self, user_id: int, current_password: str | None, new_password: str | None) -> str:
        """Replace a local account's password and sign out every device.

        This is the only path besides registration that computes a password
        hash.
        """
        if not current_password or not new_password:
            raise BadRequestError("Current and new password are required")
        if len(new_password) < MIN_PASSWORD_LENGTH:
            raise BadRequestError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")

        user = self._require_user(user_id)
        if user.auth_provider != "local" or user.hashed_password is None:
            raise BadRequestError(f"This account uses {user.auth_provider} login and has no password to change.")
        if not verify_password(current_password, user.hashed_password):
            raise UnauthorizedError("Current password is incorrect")

        updated = replace(
            user,
            hashed_password=hash_password(new_password, rounds=self._bcrypt_rounds),
            refresh_tokens=[],
        )
        if not self._store.save_user(updated):
            raise NotFoundError("User not found")
        logger.info("Password changed for user_id=%s; all refresh tokens revoked", user_id)
        return "Password changed successfully. Please log in again on your other devices."

    # ------------------------------------------------------------------
    # External identity
    # ------------------------------------------------------------------

    def register_social(
        self,
        external_id: str | None,
        email: str | None,
        username: str | None,
        display_name: str | None,
        avatar: str | None = None,
        provider: str | None = None,
    ) -> ProfileResult:
        """Create an account for an externally authenticated identity.

        No local tokens are issued: the caller already holds the provider's token.
        """
        missing = _missing(externalId=external_id, email=email, username=username, displayName=display_name)
        if missing:
            raise BadRequestError(
                "Missing required fields",
                {"required": ["externalId", "email", "username", "displayName"], "missing": missing},
            )
        provider = provider or "auth0"
        if provider not in AUTH_PROVIDERS or provider == "local":
            raise BadRequestError(f"Unsupported identity provider: {provider}")

        email = email.strip().lower()
        username = username.strip().lower()
        self._ensure_available(external_id=external_id, email=email, username=username)

        user = self._create(
            User(
                email=email,
                username=username,
                display_name=display_name.strip(),
                external_id=external_id,
                auth_provider=provider,
                avatar=avatar or None,
                last_login=_now_iso(),
            )
        )
        logger.info("Registered %s user_id=%s", provider, user.id)
        return ProfileResult(user=user, message=WELCOME_MESSAGE)

    def login_social(self, external_id: str | None) -> ProfileResult:
        """Resolve an external identity to its account and stamp last_login."""
        if not external_id:
            raise BadRequestError("External ID is required")

        user = self._store.get_by_external_id(external_id)
        if user is None:
            raise NotFoundError("User not found. Please register first.")
        if not user.is_active:
            raise ForbiddenError("Account is deactivated")

        user = replace(user, last_login=self._store.update_last_login(user.id))
        logger.info("External login user_id=%s", user.id)
        return ProfileResult(user=user, message=f"Welcome back, {user.display_name}!")

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    def get_profile(self, user_id: int) -> User:
        return self._require_user(user_id)

    def update_profile(
        self,
        user_id: int,
        display_name: str | None = None,
        bio: str | None = None,
        avatar: str | None = None,
        preferences: dict | None = None,
        fields_set: frozenset[str] | set[str] | None = None,
    ) -> ProfileResult:
        """Partially update the profile. Only provided fields change.

        display_name is ignored when empty. bio and avatar may be cleared by
        passing them explicitly: fields_set names the fields the client sent,
        so an explicit null is told apart from an omitted field. preferences
        is merged shallowly over the stored preferences.
        """
        user = self._require_user(user_id)
        if fields_set is None:
            fields_set = {name for name, value in (("bio", bio), ("avatar", avatar)) if value is not None}

        changes: dict = {}
        if display_name:
            changes["display_name"] = display_name.strip()
        if "bio" in fields_set:
            changes["bio"] = bio or ""
        if "avatar" in fields_set:
            changes["avatar"] = avatar or None
        if preferences:
            changes["preferences"] = {**user.preferences, **preferences}

        updated = replace(user, **changes)
        if not self._store.save_user(updated):
            raise NotFoundError("User not found")
        return ProfileResult(user=updated, message="Profile updated successfully")

    # ------------------------------------------------------------------
    # Session tokens
    # ------------------------------------------------------------------

    def refresh_access_token(self, refresh_token: str | None) -> RefreshResult:
        """Mint a new access token from a stored, unexpired refresh token.

        The refresh token itself is not rotated.
        """
        if not refresh_token:
            raise BadRequestError("Refresh token is required")
        try:
            claims = self._issuer.verify_refresh(refresh_token)
        except InvalidTokenError as exc:
            logger.info("Refresh rejected: token %s", exc.reason)
            raise UnauthorizedError(INVALID_REFRESH) from exc

        user = self._require_user(claims.user_id)
        if not user.is_active:
            raise ForbiddenError("Account is deactivated")
        if not self._sessions.is_valid(user, refresh_token):
            logger.info("Refresh rejected for user_id=%s: token revoked or evicted", user.id)
            raise UnauthorizedError(INVALID_REFRESH)

        return RefreshResult(
            access_token=self._issuer.issue_access(user.id),
            message="Access token refreshed successfully",
        )

    def revoke_refresh_token(self, user_id: int, refresh_token: str | None) -> str:
        if not refresh_token:
            raise BadRequestError("Refresh token is required")
        user = self._require_user(user_id)
        self._sessions.revoke(user, refresh_token)
        logger.info("Revoked one refresh token for user_id=%s", user_id)
        return "Refresh token revoked successfully"

    def revoke_all_refresh_tokens(self, user_id: int) -> str:
        user = self._require_user(user_id)
        self._sessions.revoke_all(user)
        logger.info("Revoked all refresh tokens for user_id=%s", user_id)
        return "All refresh tokens revoked successfully. You have been logged out from all devices."

    def logout(self) -> str:
        """Stateless logout: the client discards its tokens. Use revoke to end a session server-side."""
        return "Logged out successfully"

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_user(self, user_id: int) -> User:
        user = self._store.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def _ensure_available(
        self,
        email: str,
        username: str,
        external_id: str | None = None,
    ) -> None:
        """Raise ConflictError for the first taken identifier: external id, then email, then username."""
        if external_id is not None and self._store.get_by_external_id(external_id) is not None:
            raise ConflictError("User already registered", {"field": "externalId"})
        if self._store.get_by_email(email) is not None:
            raise ConflictError("Email already in use", {"field": "email"})
        if self._store.get_by_username(username) is not None:
            raise ConflictError("Username already taken", {"field": "username"})

    def _create(self, user: User) -> User:
        try:
            return self._store.create_user(user)
        except IntegrityError as exc:
            # Two registrations raced past _ensure_available().
            raise ConflictError("Email or username already in use") from exc

    def _start_session(self, user: User, context: RequestContext | None):
        ctx = context or RequestContext()
        tokens = self._issuer.issue_pair(user.id)
        user = self._sessions.add_refresh_token(user, tokens.refresh_token, ctx.ip_address, ctx.user_agent)
        return user, tokens
