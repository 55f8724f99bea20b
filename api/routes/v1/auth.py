"""
api/routes/v1/auth.py -- Account and session REST endpoints.

Routes:
  POST /api/v1/auth/register-local     -- email/password signup; returns token pair
  POST /api/v1/auth/login-local        -- email/password login; returns token pair
  POST /api/v1/auth/register           -- signup for an external identity (Auth0 / social)
  POST /api/v1/auth/login              -- login for an external identity
  POST /api/v1/auth/logout             -- stateless logout (requires auth)
  GET  /api/v1/auth/me                 -- current user profile (requires auth)
  PUT  /api/v1/auth/me                 -- partial profile update (requires auth)
  POST /api/v1/auth/refresh            -- new access token from a refresh token
  POST /api/v1/auth/revoke             -- revoke one refresh token (requires auth)
  POST /api/v1/auth/revoke-all         -- revoke every refresh token (requires auth)
  POST /api/v1/auth/change-password    -- rotate password, revoke all sessions (requires auth)

Security:
  [H2] register/login/refresh failures are rate-limited per IP with
       AUTH_RATE_LIMIT; successful calls do not count.
  [C1] AuthService.login_local() equalizes timing for unknown emails; never
       inline store lookups + verify_password() here.
  [M5] Cache-Control: no-store on every response that carries a token.
  Revocation always targets the authenticated caller's own user id, so a
  client can never revoke another user's sessions.

Handlers are plain `def` so FastAPI runs them in its threadpool: the service
does blocking bcrypt and database work.
"""

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import auth_attempts
from api.models import (
    AccessTokenPayload,
    AuthPayload,
    ChangePasswordRequest,
    CurrentUserPayload,
    CurrentUserProfile,
    LoginLocalRequest,
    LoginSocialRequest,
    MessagePayload,
    ProfilePayload,
    RefreshTokenRequest,
    RegisterLocalRequest,
    RegisterSocialRequest,
    SuccessResponse,
    UpdateProfileRequest,
    UserProfile,
)
from auth.dependencies import get_current_user, get_request_context
from auth.models import User
from auth.service import AuthResult, AuthService, ProfileResult

# Auth policy:
# - POST /auth/register-local, /auth/login-local:  public, rate-limited
# - POST /auth/register, /auth/login:              public, rate-limited
# - POST /auth/refresh:                            public (the refresh token is the credential)
# - everything else:                               requires auth (get_current_user)
router = APIRouter()


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _auth_payload(result: AuthResult) -> SuccessResponse[AuthPayload]:
    return SuccessResponse[AuthPayload](
        data=AuthPayload(
            user=UserProfile.from_user(result.user),
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            message=result.message,
        )
    )


def _profile_payload(result: ProfileResult) -> SuccessResponse[ProfilePayload]:
    return SuccessResponse[ProfilePayload](
        data=ProfilePayload(user=UserProfile.from_user(result.user), message=result.message)
    )


def _message(text: str) -> SuccessResponse[MessagePayload]:
    return SuccessResponse[MessagePayload](data=MessagePayload(message=text))


# ---------------------------------------------------------------------------
# Local credentials
# ---------------------------------------------------------------------------


@router.post("/auth/register-local", response_model=SuccessResponse[AuthPayload], status_code=201)
@auth_attempts.guard  # [H2]
def register_local(request: Request, response: Response, body: RegisterLocalRequest) -> SuccessResponse[AuthPayload]:
    """Create a local account and start its first session."""
    result = _service(request).register_local(
        email=body.email,
        username=body.username,
        display_name=body.display_name,
        password=body.password,
        avatar=body.avatar,
        context=get_request_context(request),
    )
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return _auth_payload(result)


@router.post("/auth/login-local", response_model=SuccessResponse[AuthPayload])
@auth_attempts.guard  # [H2]
def login_local(request: Request, response: Response, body: LoginLocalRequest) -> SuccessResponse[AuthPayload]:
    """Authenticate with email and password; returns a fresh token pair.

    Wrong email and wrong password return the same 401 message so the
    response never reveals whether an email is registered.
    """
    result = _service(request).login_local(
        email=body.email,
        password=body.password,
        context=get_request_context(request),
    )
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return _auth_payload(result)


@router.post("/auth/change-password", response_model=SuccessResponse[MessagePayload])
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
) -> SuccessResponse[MessagePayload]:
    """Replace the caller's password. Every refresh token is revoked."""
    message = _service(request).change_password(current_user.id, body.current_password, body.new_password)
    return _message(message)


# ---------------------------------------------------------------------------
# External identity
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=SuccessResponse[ProfilePayload], status_code=201)
@auth_attempts.guard  # [H2]
def register_social(request: Request, body: RegisterSocialRequest) -> SuccessResponse[ProfilePayload]:
    """Create an account for an identity already authenticated by the provider."""
    result = _service(request).register_social(
        external_id=body.external_id,
        email=body.email,
        username=body.username,
        display_name=body.display_name,
        avatar=body.avatar,
        provider=body.provider.value if body.provider else None,
    )
    return _profile_payload(result)


@router.post("/auth/login", response_model=SuccessResponse[ProfilePayload])
@auth_attempts.guard  # [H2]
def login_social(request: Request, body: LoginSocialRequest) -> SuccessResponse[ProfilePayload]:
    """Resolve an external identity to its account. 404 means "register first"."""
    return _profile_payload(_service(request).login_social(body.external_id))


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=SuccessResponse[MessagePayload])
def logout(request: Request, current_user: User = Depends(get_current_user)) -> SuccessResponse[MessagePayload]:
    """Acknowledge logout. Tokens are discarded client-side; use /revoke to end a session."""
    return _message(_service(request).logout())


@router.post("/auth/refresh", response_model=SuccessResponse[AccessTokenPayload])
@auth_attempts.guard  # [H2]
def refresh(request: Request, response: Response, body: RefreshTokenRequest) -> SuccessResponse[AccessTokenPayload]:
    """Exchange a stored refresh token for a new access token. The refresh token is not rotated."""
    result = _service(request).refresh_access_token(body.refresh_token)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return SuccessResponse[AccessTokenPayload](
        data=AccessTokenPayload(access_token=result.access_token, message=result.message)
    )


@router.post("/auth/revoke", response_model=SuccessResponse[MessagePayload])
def revoke(
    request: Request,
    body: RefreshTokenRequest,
    current_user: User = Depends(get_current_user),
) -> SuccessResponse[MessagePayload]:
    """Revoke one of the caller's refresh tokens (log out one device)."""
    return _message(_service(request).revoke_refresh_token(current_user.id, body.refresh_token))


@router.post("/auth/revoke-all", response_model=SuccessResponse[MessagePayload])
def revoke_all(request: Request, current_user: User = Depends(get_current_user)) -> SuccessResponse[MessagePayload]:
    """Revoke every refresh token of the caller (log out all devices)."""
    return _message(_service(request).revoke_all_refresh_tokens(current_user.id))


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=SuccessResponse[CurrentUserPayload])
def me(request: Request, current_user: User = Depends(get_current_user)) -> SuccessResponse[CurrentUserPayload]:
    """Return the caller's profile, re-read from the store."""
    user = _service(request).get_profile(current_user.id)
    return SuccessResponse[CurrentUserPayload](data=CurrentUserPayload(user=CurrentUserProfile.from_user(user)))


@router.put("/auth/me", response_model=SuccessResponse[ProfilePayload])
def update_me(
    request: Request,
    body: UpdateProfileRequest,
    current_user: User = Depends(get_current_user),
) -> SuccessResponse[ProfilePayload]:
    """Partially update the caller's profile. Omitted fields are left unchanged."""
    preferences = None
    if body.preferences is not None:
        preferences = body.preferences.model_dump(mode="json", exclude_unset=True, exclude_none=True)
    result = _service(request).update_profile(
        current_user.id,
        display_name=body.display_name,
        bio=body.bio,
        avatar=body.avatar,
        preferences=preferences,
        fields_set=body.model_fields_set,
    )
    return _profile_payload(result)
