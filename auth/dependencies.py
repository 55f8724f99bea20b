"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Every protected route resolves the caller through the DualSchemeAuthenticator
stored on app.state. The token comes from the Authorization: Bearer header
only -- either a local access token or an external identity token.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() raises the authenticator's typed error (401/403/404),
which api/main.py renders into the error envelope.

On success the AuthContext is also stored on request.state.auth so routes
can see which scheme authenticated the request (request.state.auth.mode).

Layer rule: auth/dependencies.py may import from fastapi (for Request)
because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Request

from auth.authenticator import AuthContext, DualSchemeAuthenticator
from auth.models import User
from auth.service import RequestContext


async def try_get_current_user(request: Request) -> User | None:
    """Attempt to authenticate the request. Never raises.

    Use for routes that personalize output but do not require login.
    """
    authenticator: DualSchemeAuthenticator = request.app.state.authenticator
    ctx = await authenticator.authenticate_optional(request.headers.get("Authorization"))
    if ctx is None:
        return None
    request.state.auth = ctx
    return ctx.user


async def get_current_user(request: Request) -> User:
    """Require authentication.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    authenticator: DualSchemeAuthenticator = request.app.state.authenticator
    ctx: AuthContext = await authenticator.authenticate(request.headers.get("Authorization"))
    request.state.auth = ctx
    return ctx.user


def get_client_ip(request: Request) -> str:
    """Client IP of the request.

    X-Forwarded-For is never read here. ProxyHeadersMiddleware rewrites
    request.client from it when the peer is one of TRUSTED_PROXIES.
    """
    return request.client.host if request.client else "unknown"


def get_request_context(request: Request) -> RequestContext:
    """IP and user-agent recorded on the refresh-token record of a new session."""
    return RequestContext(
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("User-Agent", "unknown"),
    )
