"""
api/main.py -- FastAPI application entry point for the HattBooks accounts API.

Exposes the auth core (auth/) over HTTP: local and external registration and
login, refresh-token sessions and the current-user profile.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces the default rate limit from api.limiter

limit_failed_auth_attempts (an http middleware) counts failed credential
attempts per IP; see api.limiter.FailedAttemptLimit.

Lifespan builds the object graph (store -> issuer -> sessions -> service,
plus the JWKS cache and authenticator) on startup and closes the store and
HTTP client on shutdown.

Every error leaves the API in one envelope:
    {"success": false, "error": {"message": ..., "code": <status>, "details": ...}}
"""

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from api.limiter import auth_attempts, limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.authenticator import DualSchemeAuthenticator, ExternalIdentityConfig
from auth.errors import ApiError, redact
from auth.jwks import JWKSKeyCache
from auth.service import AuthService
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.tokens import TokenIssuer
from core.config import get_settings

API_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("hattbooks.api")

settings = get_settings()


# ---------------------------------------------------------------------------
# Lifespan -- startup / shutdown
# ---------------------------------------------------------------------------


def build_services(app: FastAPI, store: UserStore) -> None:
    """Wire the auth object graph onto app.state around an existing store.

    Shared by the real lifespan and the test lifespan so both run the same
    composition.
    """
    cfg = get_settings()
    issuer = TokenIssuer.from_settings(cfg)
    sessions = SessionManager(store, max_tokens=cfg.max_refresh_tokens, ttl=issuer.refresh_ttl)

    key_cache = None
    external = None
    if cfg.external_auth_enabled:
        key_cache = JWKSKeyCache(
            cfg.jwks_uri,
            cache_ttl=cfg.jwks_cache_seconds,
            requests_per_minute=cfg.jwks_requests_per_minute,
        )
        external = ExternalIdentityConfig(issuer=cfg.auth0_issuer, audience=cfg.auth0_audience)

    app.state.user_store = store
    app.state.token_issuer = issuer
    app.state.key_cache = key_cache
    app.state.auth_service = AuthService(store, issuer, sessions, bcrypt_rounds=cfg.bcrypt_rounds)
    app.state.authenticator = DualSchemeAuthenticator(store, issuer, key_provider=key_cache, external=external)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown.
    """
    logger.info("HattBooks accounts API starting up (environment=%s)", settings.environment)
    build_services(app, UserStore(db_url=settings.database_url))
    logger.info(
        "Auth initialized (external identity %s)",
        "enabled" if settings.external_auth_enabled else "disabled",
    )

    yield

    if app.state.key_cache is not None:
        await app.state.key_cache.aclose()
    app.state.user_store.close()
    logger.info("HattBooks accounts API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="HattBooks Accounts API",
    description="User accounts and session authentication for HattBooks.",
    version=API_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Captures wall-clock time around call_next so every response is logged with
# its latency. Never logs headers or bodies: both may carry tokens.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Failed-attempt limiting for credential routes
#
# Blocked clients get the 429 envelope before the route runs. A response with
# status >= 400 from a guarded route counts one attempt.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def limit_failed_auth_attempts(request: Request, call_next):
    if not auth_attempts.applies(request):
        return await call_next(request)
    if auth_attempts.is_blocked(request):
        logger.warning("Auth attempt limit exceeded on %s %s", request.method, request.url.path)
        response = _error_response(429, "Too many authentication attempts, please try again later.")
        response.headers["Retry-After"] = str(auth_attempts.retry_after(request))
        return response
    response = await call_next(request)
    if response.status_code >= 400:
        auth_attempts.record_failure(request)
    return response


# Rewrites request.client from X-Forwarded-For only when the direct peer is a
# configured proxy. Added last so it wraps everything above, including the
# rate limits, which key on the client address.
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=settings.trusted_proxies)


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, message: str, details=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(message=message, code=status_code, details=details)).model_dump(
            mode="json"
        ),
    )


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    """Render a domain error raised anywhere in auth/ into the envelope."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    return _error_response(exc.status_code, exc.message, exc.details)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After is the length of the exceeded window in seconds.
    """
    retry_after = exc.limit.limit.get_expiry() if getattr(exc, "limit", None) else 60
    logger.warning("Rate limit exceeded on %s %s", request.method, request.url.path)
    response = _error_response(429, "Too many requests, please try again later.", {"limit": str(exc.detail)})
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with per-field details when the body fails validation.

    Submitted values are dropped from the details, and any sensitive field
    that slips through is redacted, so passwords are never echoed back.
    """
    details = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
            "message": err.get("msg", ""),
        }
        for err in exc.errors()
    ]
    return _error_response(400, "Validation failed", redact(details))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions."""
    return _error_response(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "Internal Server Error")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. Exempt from rate limiting so
# load-balancer probes are never throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"], response_model=HealthResponse)
@limiter.exempt
async def health(request: Request) -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=API_VERSION)
