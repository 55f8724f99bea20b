"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for HattBooks happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, auth0_audience -> AUTH0_AUDIENCE).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Dev mode generates missing signing secrets with a warning;
      production mode refuses to start without them.

Security notes:
  [M6] Signing secrets shorter than 32 chars are rejected outright.

  [M7] In production mode (DEBUG not set or false), missing SECRET_KEY or
       REFRESH_SECRET_KEY is a hard startup failure.

  [M8] Access and refresh tokens are signed with different secrets, so a
       refresh token can never verify as an access token. Identical values
       are rejected at startup.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("hattbooks.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    environment: str = "development"
    database_url: str = "sqlite:///hattbooks_accounts.db"

    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev secret or raises, so callers never see "".
    secret_key: str = ""
    refresh_secret_key: str = ""

    # ------------------------------------------------------------------
    # Local tokens and credentials
    # ------------------------------------------------------------------

    access_token_expire_minutes: int = 15
    refresh_token_expire_days: int = 7
    # Per-user cap on stored refresh tokens (one per device).
    max_refresh_tokens: int = 5
    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # External identity (Auth0). Empty strings disable the external branch.
    # ------------------------------------------------------------------

    auth0_domain: str = ""
    auth0_audience: str = ""
    auth0_issuer: str = ""
    jwks_cache_seconds: int = 600
    jwks_requests_per_minute: int = 5

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    auth_rate_limit: str = "5 per 15 minutes"
    default_rate_limit: str = "100 per 15 minutes"
    cors_origins: list[str] = ["http://localhost:5173"]
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    # Peers allowed to set X-Forwarded-For (IPs, CIDRs or "*"), as JSON in env.
    trusted_proxies: list[str] = []

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def external_auth_enabled(self) -> bool:
        """True when both issuer and audience are configured for Auth0 tokens."""
        return bool(self.auth0_issuer and self.auth0_audience)

    @property
    def jwks_uri(self) -> str:
        """JWKS endpoint published by the issuer ('' when external auth is off)."""
        if not self.auth0_issuer:
            return ""
        return f"{self.auth0_issuer.rstrip('/')}/.well-known/jwks.json"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the signing-secret policy [M6] [M7] [M8].

        Dev mode (DEBUG=true): auto-generate random secrets with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if either secret is missing.
        """
        for name in ("secret_key", "refresh_secret_key"):
            if not getattr(self, name):
                if self.debug:
                    setattr(self, name, secrets.token_hex(32))
                    logger.warning(
                        "WARNING: Using auto-generated %s. Sessions will not persist across restarts.",
                        name.upper(),
                    )
                else:
                    raise ValueError(
                        f"{name.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
            if len(getattr(self, name)) < 32:
                raise ValueError(f"{name.upper()} must be at least 32 characters.")
        if self.secret_key == self.refresh_secret_key:
            raise ValueError("SECRET_KEY and REFRESH_SECRET_KEY must be different.")

        if self.auth0_domain and not self.auth0_issuer:
            self.auth0_issuer = f"https://{self.auth0_domain}/"
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
