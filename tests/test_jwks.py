"""Unit tests for auth/jwks.py (JWKSKeyCache) against httpx.MockTransport.

Covers:
- a key is fetched once and then served from cache
- concurrent misses coalesce into a single remote fetch
- unknown kids raise SigningKeyNotFound
- the per-minute fetch ceiling fails fast without a network call
- expired cache entries trigger a refetch
- HTTP failures and non-signing keys are handled
- known keys are served stale when a refresh is refused or fails
"""

import asyncio

import httpx
import pytest

from auth.jwks import JWKSKeyCache, SigningKeyNotFound

JWKS_URI = "https://hattbooks-test.auth0.com/.well-known/jwks.json"

SIGNING_KEY = {"kid": "k1", "kty": "RSA", "use": "sig", "alg": "RS256", "n": "abc", "e": "AQAB"}
ENCRYPTION_KEY = {"kid": "k2", "kty": "RSA", "use": "enc", "n": "def", "e": "AQAB"}


class CountingHandler:
    def __init__(self, status_code: int = 200, keys: list[dict] | None = None) -> None:
        self.status_code = status_code
        self.keys = keys if keys is not None else [SIGNING_KEY, ENCRYPTION_KEY]
        self.requests = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests += 1
        assert str(request.url) == JWKS_URI
        return httpx.Response(self.status_code, json={"keys": self.keys})


def _cache(handler: CountingHandler, **kwargs) -> JWKSKeyCache:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return JWKSKeyCache(JWKS_URI, client=client, **kwargs)


async def test_key_fetched_once_then_cached():
    handler = CountingHandler()
    cache = _cache(handler)
    assert (await cache.get_signing_key("k1"))["n"] == "abc"
    assert (await cache.get_signing_key("k1"))["n"] == "abc"
    assert handler.requests == 1


async def test_concurrent_misses_coalesce():
    handler = CountingHandler()
    cache = _cache(handler)
    keys = await asyncio.gather(*(cache.get_signing_key("k1") for _ in range(10)))
    assert all(k["kid"] == "k1" for k in keys)
    assert handler.requests == 1


async def test_unknown_kid_raises():
    cache = _cache(CountingHandler())
    with pytest.raises(SigningKeyNotFound):
        await cache.get_signing_key("missing")


async def test_encryption_keys_are_not_signing_keys():
    cache = _cache(CountingHandler())
    with pytest.raises(SigningKeyNotFound):
        await cache.get_signing_key("k2")


async def test_fetch_ceiling_fails_fast():
    handler = CountingHandler()
    cache = _cache(handler, requests_per_minute=2)
    for kid in ("x1", "x2", "x3"):
        with pytest.raises(SigningKeyNotFound):
            await cache.get_signing_key(kid)
    assert handler.requests == 2


async def test_expired_cache_refetches():
    handler = CountingHandler()
    cache = _cache(handler, cache_ttl=-1)
    await cache.get_signing_key("k1")
    await cache.get_signing_key("k1")
    assert handler.requests == 2


async def test_http_error_raises_not_found():
    cache = _cache(CountingHandler(status_code=503))
    with pytest.raises(SigningKeyNotFound):
        await cache.get_signing_key("k1")


async def test_known_key_served_stale_under_fetch_ceiling():
    handler = CountingHandler()
    cache = _cache(handler, cache_ttl=-1, requests_per_minute=3)
    await cache.get_signing_key("k1")
    for kid in ("random-1", "random-2"):
        with pytest.raises(SigningKeyNotFound):
            await cache.get_signing_key(kid)
    assert (await cache.get_signing_key("k1"))["n"] == "abc"
    assert handler.requests == 3


async def test_known_key_served_stale_when_fetch_fails():
    handler = CountingHandler()
    cache = _cache(handler, cache_ttl=-1)
    await cache.get_signing_key("k1")
    handler.status_code = 503
    assert (await cache.get_signing_key("k1"))["kid"] == "k1"
    with pytest.raises(SigningKeyNotFound):
        await cache.get_signing_key("never-seen")


async def test_aclose_leaves_injected_client_open():
    handler = CountingHandler()
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    cache = JWKSKeyCache(JWKS_URI, client=client)
    await cache.aclose()
    assert not client.is_closed
    await client.aclose()
