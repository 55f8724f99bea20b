"""
API request and response models for the HattBooks accounts REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire format is camelCase (displayName, accessToken, ...). Field names stay
snake_case in Python; the alias generator handles the translation in both
directions.

The public profile models are the ONLY way a User leaves the API. They have
no password or refresh-token fields, so neither can be serialized outward.
"""

from enum import Enum
from typing import Any, Generic, Optional, TypeVar
from urllib.parse import urlparse

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

from auth.models import User

T = TypeVar("T")

USERNAME_PATTERN = r"^[a-zA-Z0-9_]+$"


def _check_avatar_url(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return None
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError("Avatar must be a valid URL")
    return value


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class SocialProviderEnum(str, Enum):
    auth0 = "auth0"
    google = "google"
    facebook = "facebook"


class ThemeEnum(str, Enum):
    light = "light"
    dark = "dark"
    auto = "auto"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterLocalRequest(_CamelModel):
    """Request body for POST /api/v1/auth/register-local."""

    email: EmailStr
    username: str = Field(min_length=3, max_length=30, pattern=USERNAME_PATTERN)
    display_name: str = Field(min_length=1, max_length=100)
    password: str = Field(min_length=8, max_length=255)
    avatar: Optional[str] = None

    @field_validator("password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        """Require at least one lowercase letter, one uppercase letter and one digit."""
        if not (
            any(c.islower() for c in value) and any(c.isupper() for c in value) and any(c.isdigit() for c in value)
        ):
            raise ValueError("Password must contain at least one uppercase letter, one lowercase letter, and one number")
        return value

    @field_validator("avatar")
    @classmethod
    def avatar_is_url(cls, value: Optional[str]) -> Optional[str]:
        return _check_avatar_url(value)


class LoginLocalRequest(_CamelModel):
    """Request body for POST /api/v1/auth/login-local."""

    email: EmailStr
    password: str = Field(min_length=1, max_length=255)


class RegisterSocialRequest(_CamelModel):
    """Request body for POST /api/v1/auth/register.

    externalId is the identity provider's subject ("sub"). auth0Id is accepted
    as an alias for clients written against the Auth0-only API.
    """

    external_id: str = Field(
        min_length=1,
        max_length=255,
        validation_alias=AliasChoices("externalId", "auth0Id", "external_id"),
    )
    email: EmailStr
    username: str = Field(min_length=3, max_length=30, pattern=USERNAME_PATTERN)
    display_name: str = Field(min_length=1, max_length=100)
    avatar: Optional[str] = None
    provider: Optional[SocialProviderEnum] = None

    @field_validator("avatar")
    @classmethod
    def avatar_is_url(cls, value: Optional[str]) -> Optional[str]:
        return _check_avatar_url(value)


class LoginSocialRequest(_CamelModel):
    """Request body for POST /api/v1/auth/login."""

    external_id: str = Field(
        min_length=1,
        max_length=255,
        validation_alias=AliasChoices("externalId", "auth0Id", "external_id"),
    )


class PreferencesPatch(_CamelModel):
    """Partial preferences; only the keys the client sends are merged."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    is_private: Optional[bool] = None
    show_reading_goals: Optional[bool] = None
    email_notifications: Optional[bool] = None
    theme: Optional[ThemeEnum] = None
    language: Optional[str] = Field(default=None, min_length=2, max_length=10)


class UpdateProfileRequest(_CamelModel):
    """Request body for PUT /api/v1/auth/me. Every field is optional."""

    display_name: Optional[str] = Field(default=None, max_length=100)
    bio: Optional[str] = Field(default=None, max_length=500)
    avatar: Optional[str] = None
    preferences: Optional[PreferencesPatch] = None

    @field_validator("avatar")
    @classmethod
    def avatar_is_url(cls, value: Optional[str]) -> Optional[str]:
        return _check_avatar_url(value)


class RefreshTokenRequest(_CamelModel):
    """Request body for POST /refresh and POST /revoke."""

    refresh_token: str = Field(min_length=1)


class ChangePasswordRequest(_CamelModel):
    """Request body for POST /api/v1/auth/change-password."""

    current_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=8, max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserProfile(_CamelModel):
    """Public-safe projection of a User."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: int
    username: str
    display_name: str
    avatar: Optional[str]
    bio: str
    auth_provider: str
    followers_count: int
    following_count: int
    created_at: Optional[str]

    @classmethod
    def from_user(cls, user: User) -> "UserProfile":
        """Build the public profile from a domain User.

        Factory Method: the mapping lives here, colocated with the output
        model, rather than scattered across route handlers.
        """
        return cls(
            id=user.id,
            username=user.username,
            display_name=user.display_name,
            avatar=user.avatar,
            bio=user.bio,
            auth_provider=user.auth_provider,
            followers_count=len(user.followers),
            following_count=len(user.following),
            created_at=user.created_at,
        )


class CurrentUserProfile(UserProfile):
    """Profile of the authenticated caller: the public view plus private settings."""

    email: str
    preferences: dict
    is_active: bool
    last_login: Optional[str]

    @classmethod
    def from_user(cls, user: User) -> "CurrentUserProfile":
        public = UserProfile.from_user(user)
        return cls(
            **public.model_dump(),
            email=user.email,
            preferences=dict(user.preferences),
            is_active=user.is_active,
            last_login=user.last_login,
        )


class AuthPayload(_CamelModel):
    """Data for register-local and login-local: profile plus both tokens."""

    user: UserProfile
    access_token: str
    refresh_token: str
    message: str


class ProfilePayload(_CamelModel):
    user: UserProfile
    message: str


class CurrentUserPayload(_CamelModel):
    user: CurrentUserProfile


class AccessTokenPayload(_CamelModel):
    access_token: str
    message: str


class MessagePayload(_CamelModel):
    message: str


class SuccessResponse(BaseModel, Generic[T]):
    """Top-level success envelope: {"success": true, "data": {...}}."""

    success: bool = True
    data: T


class ErrorDetail(BaseModel):
    """Machine-readable error payload. code is the HTTP status."""

    model_config = ConfigDict(frozen=True)

    message: str
    code: int
    details: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    success: bool = False
    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
