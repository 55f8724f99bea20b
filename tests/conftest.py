"""
tests/conftest.py -- Shared test fixtures for the HattBooks accounts tests.

This module provides:
  - make_store(): isolated in-memory UserStore per test or module
  - store / issuer / sessions / service: the auth core wired for unit tests
  - identity_provider: an RSA keypair standing in for Auth0 (signs external
    tokens, serves the public key through a fixed KeyProvider)
  - api_client: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Environment variables must be set before any auth/core/api import so
get_settings() sees the test configuration on first call.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: configure settings before any auth/core/api import.
os.environ["DEBUG"] = "true"
os.environ["SECRET_KEY"] = "test-access-secret-0123456789abcdef0123456789"
os.environ["REFRESH_SECRET_KEY"] = "test-refresh-secret-0123456789abcdef012345678"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["AUTH0_DOMAIN"] = ""
os.environ["AUTH0_ISSUER"] = ""
os.environ["AUTH0_AUDIENCE"] = ""

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from jose import jwk, jwt

from api.limiter import limiter
from api.main import app, build_services
from auth.jwks import SigningKeyNotFound
from auth.service import AuthService
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.tokens import TokenIssuer
from core.config import get_settings

TEST_ISSUER = "https://hattbooks-test.auth0.com/"
TEST_AUDIENCE = "https://api.hattbooks.test"
TEST_KID = "test-signing-key"

# Rate limits are exercised separately; keep them out of the functional tests.
limiter.enabled = False


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_store(db_suffix: str | None = None) -> UserStore:
    """Create an isolated named shared-memory SQLite store.

    Args:
        db_suffix: Unique string appended to the DB name so tests don't share
                   state. A random one is used when omitted.
    """
    name = db_suffix or uuid.uuid4().hex
    return UserStore(db_url=f"sqlite:///file:test_accounts_{name}?mode=memory&cache=shared&uri=true")


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    user_store = make_store()
    yield user_store
    user_store.close()


@pytest.fixture
def issuer() -> TokenIssuer:
    return TokenIssuer.from_settings(get_settings())


@pytest.fixture
def sessions(store: UserStore) -> SessionManager:
    return SessionManager(store, max_tokens=5)


@pytest.fixture
def service(store: UserStore, issuer: TokenIssuer, sessions: SessionManager) -> AuthService:
    return AuthService(store, issuer, sessions, bcrypt_rounds=4)


# ---------------------------------------------------------------------------
# External identity provider stand-in
# ---------------------------------------------------------------------------


class FixedKeyProvider:
    """KeyProvider serving a fixed set of JWKs; counts lookups."""

    def __init__(self, keys: dict[str, dict]) -> None:
        self.keys = keys
        self.calls = 0

    async def get_signing_key(self, kid: str) -> dict:
        self.calls += 1
        if kid not in self.keys:
            raise SigningKeyNotFound(f"No signing key with kid={kid!r}")
        return self.keys[kid]


class FakeIdentityProvider:
    """Signs RS256 tokens the way Auth0 would, with a locally generated key."""

    def __init__(self, issuer: str = TEST_ISSUER, audience: str = TEST_AUDIENCE) -> None:
        self.issuer = issuer
        self.audience = audience
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self.private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode()
        public_pem = (
            private_key.public_key()
            .public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo,
            )
            .decode()
        )
        self.public_jwk = {**jwk.construct(public_pem, "RS256").to_dict(), "kid": TEST_KID, "use": "sig"}
        self.provider = FixedKeyProvider({TEST_KID: self.public_jwk})

    def sign(
        self,
        sub: str,
        audience: str | None = None,
        issuer: str | None = None,
        expires_in: timedelta = timedelta(hours=1),
        kid: str = TEST_KID,
        omit: tuple[str, ...] = (),
    ) -> str:
        now = datetime.now(timezone.utc)
        claims = {
            "sub": sub,
            "aud": audience or self.audience,
            "iss": issuer or self.issuer,
            "iat": now,
            "exp": now + expires_in,
        }
        for claim in omit:
            claims.pop(claim)
        return jwt.encode(claims, self.private_pem, algorithm="RS256", headers={"kid": kid})


@pytest.fixture(scope="session")
def identity_provider() -> FakeIdentityProvider:
    return FakeIdentityProvider()


# ---------------------------------------------------------------------------
# App client
# ---------------------------------------------------------------------------


def _patch_lifespan(user_store: UserStore):
    """Return an async context manager that replaces the real lifespan.

    Runs the same composition as production around a pre-created test store,
    so TestClient routes see an isolated in-memory DB.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_services(app, user_store)
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[TestClient, None, None]:
    """Yield a TestClient over the real FastAPI app.

    One client (and one store) per test module for speed; tests register
    users with unique names so they do not collide.
    """
    user_store = make_store()
    app.router.lifespan_context = _patch_lifespan(user_store)

    with TestClient(app, raise_server_exceptions=False) as client:
        yield client

    user_store.close()
