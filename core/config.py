"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for chatgate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. DEBUG decides both the SECRET_KEY policy
      and the cookie policy (Secure + SameSite=None outside debug).

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Both access and
       refresh credentials are HS256 JWTs signed with this one key.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random key would invalidate every refresh token
       on restart and silently log every user out.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or presence/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("chatgate.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
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
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""

    # ------------------------------------------------------------------
    # Session store
    # ------------------------------------------------------------------

    database_url: str = "sqlite:///chatgate_sessions.db"
    # SQLite busy timeout. Bounds how long a store call waits on a lock held
    # by a concurrent rotation before failing with PersistenceUnavailable.
    store_timeout_seconds: float = 5.0
    # Expired refresh tokens are swept on this interval. 0 disables the sweep.
    session_purge_interval_seconds: int = 6 * 60 * 60

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    access_token_ttl_seconds: int = 15 * 60
    refresh_token_ttl_seconds: int = 7 * 24 * 60 * 60

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    frontend_url: str = "http://localhost:5173"
    # JSON list in the environment, e.g. ALLOWED_HOSTS='["chat.example.com"]'
    allowed_hosts: list[str] = ["*"]
    # Resolve the client address from X-Forwarded-For. The address is half of
    # every session fingerprint and the /refresh rate-limit key.
    trust_proxy: bool = False
    # Peers whose X-Forwarded-For entries are believed: comma-separated IPs or
    # CIDRs. The resolved address is the rightmost hop not in this list, so a
    # client cannot choose it by prepending entries. Never "*".
    trusted_proxies: str = "127.0.0.1"
    refresh_rate_limit: str = "30/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Refresh tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_token_ttls(self) -> "Settings":
        """Both lifetimes must be positive and the refresh token must outlive the access token."""
        if self.access_token_ttl_seconds <= 0 or self.refresh_token_ttl_seconds <= 0:
            raise ValueError("Token TTLs must be positive.")
        if self.refresh_token_ttl_seconds <= self.access_token_ttl_seconds:
            raise ValueError("REFRESH_TOKEN_TTL_SECONDS must be greater than ACCESS_TOKEN_TTL_SECONDS.")
        return self

    @model_validator(mode="after")
    def validate_trusted_proxies(self) -> "Settings":
        """A wildcard would make the leftmost, client-written hop the fingerprint address."""
        hosts = [h.strip() for h in self.trusted_proxies.split(",") if h.strip()]
        if self.trust_proxy and (not hosts or "*" in hosts):
            raise ValueError("TRUSTED_PROXIES must list the proxy addresses when TRUST_PROXY is enabled.")
        return self

    @property
    def production(self) -> bool:
        """Cross-site cookie policy applies whenever DEBUG is off."""
        return not self.debug


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings() directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
