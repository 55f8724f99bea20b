"""
auth/jwks.py -- Cached lookup of the external issuer's public signing keys.

The external identity provider (Auth0) publishes its RS256 public keys as a
JSON Web Key Set at <issuer>/.well-known/jwks.json. Tokens name the key they
were signed with in the "kid" header.

JWKSKeyCache behaviour:
  - Keys are cached by kid for cache_ttl seconds.
  - A miss refreshes the whole key set (the provider may have rotated keys).
  - Concurrent misses coalesce behind one asyncio.Lock: the first waiter
    fetches, the rest find the key already cached when they get the lock.
  - Remote fetches are capped at requests_per_minute in a rolling 60s window.
    Beyond the cap a miss fails fast without touching the network, so a
    flood of tokens with random kids cannot turn into a fetch storm.
  - When a refresh is refused by the cap or fails, a kid seen in the last
    successful fetch is still served from the stale set.

KeyProvider is the capability the authenticator depends on. Tests pass a
fixed provider instead of a JWKSKeyCache, so no network access is needed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Protocol

import httpx

logger = logging.getLogger("hattbooks.auth.jwks")


class SigningKeyNotFound(Exception):
    """No usable public key for the requested kid."""


class KeyProvider(Protocol):
    async def get_signing_key(self, kid: str) -> dict: ...


class JWKSKeyCache:
    """get-or-fetch cache of JWKs keyed by kid.

    Usage:
        cache = JWKSKeyCache("https://tenant.auth0.com/.well-known/jwks.json")
        jwk = await cache.get_signing_key(header["kid"])
        await cache.aclose()
    """

    def __init__(
        self,
        jwks_uri: str,
        client: httpx.AsyncClient | None = None,
        cache_ttl: float = 600.0,
        requests_per_minute: int = 5,
        timeout: float = 10.0,
    ) -> None:
        self._jwks_uri = jwks_uri
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._cache_ttl = cache_ttl
        self._requests_per_minute = requests_per_minute
        self._keys: dict[str, dict] = {}
        self._fetched_at: float | None = None
        self._fetch_times: deque[float] = deque()
        self._lock = asyncio.Lock()

    async def get_signing_key(self, kid: str) -> dict:
        key = self._cached(kid)
        if key is not None:
            return key
        async with self._lock:
            # Another waiter may have refreshed the set while we queued.
            key = self._cached(kid)
            if key is not None:
                return key
            try:
                await self._refresh()
            except SigningKeyNotFound:
                # Known keys outlive the TTL while a refresh is refused or failing.
                stale = self._keys.get(kid)
                if stale is None:
                    raise
                logger.info("Serving stale JWKS entry for kid=%s", kid)
                return stale
            key = self._keys.get(kid)
        if key is None:
            raise SigningKeyNotFound(f"No signing key with kid={kid!r}")
        return key

    def _cached(self, kid: str) -> dict | None:
        if self._fetched_at is None or time.monotonic() - self._fetched_at > self._cache_ttl:
            return None
        return self._keys.get(kid)

    def _take_fetch_slot(self) -> bool:
        now = time.monotonic()
        while self._fetch_times and now - self._fetch_times[0] >= 60.0:
            self._fetch_times.popleft()
        if len(self._fetch_times) >= self._requests_per_minute:
            return False
        self._fetch_times.append(now)
        return True

    async def _refresh(self) -> None:
        if not self._take_fetch_slot():
            logger.warning("JWKS fetch rate ceiling reached (%d/min); not fetching", self._requests_per_minute)
            raise SigningKeyNotFound("JWKS fetch rate limit exceeded")
        try:
            resp = await self._client.get(self._jwks_uri)
            resp.raise_for_status()
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("JWKS fetch failed from %s: %s", self._jwks_uri, exc)
            raise SigningKeyNotFound("Unable to fetch signing keys") from exc

        keys = {
            k["kid"]: k
            for k in payload.get("keys", [])
            if k.get("kid") and k.get("kty") == "RSA" and k.get("use", "sig") == "sig"
        }
        self._keys = keys
        self._fetched_at = time.monotonic()
        logger.info("JWKS refreshed from %s (%d signing keys)", self._jwks_uri, len(keys))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
