"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for ProjectPulse Auth happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
instead, or better, accept a Settings instance from the caller.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. api/main.py
      reads it once at import for middleware wiring; the lifespan and the CLI
      hand the same instance to AuthService.from_settings().

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. ldap_url -> LDAP_URL). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Used for the DEBUG-conditional SECRET_KEY
      logic and for defaulting SECURE_COOKIES from DEBUG.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. It keys the
       HMAC applied to session ids before storage and signs bearer JWTs.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random key would orphan every stored session
       on restart, because stored session ids are HMACs under that key.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("projectpulse.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have safe local-development defaults so Settings() can be
    instantiated in test environments without a real .env file (provided
    DEBUG=true). The model_validator enforces production-safety rules.
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
    database_url: str = "sqlite:///./projectpulse_auth.db"

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    # None means "derive from DEBUG": secure cookies everywhere except dev.
    secure_cookies: Optional[bool] = None
    session_cookie_name: str = "pmo_session"
    session_ttl_seconds: int = 24 * 60 * 60
    session_max_lifetime_seconds: int = 7 * 24 * 60 * 60
    session_purge_interval_seconds: int = 60 * 60

    # Bearer JWTs for API clients (POST /api/token)
    token_expire_seconds: int = 24 * 60 * 60

    # ------------------------------------------------------------------
    # Directory (LDAP)
    # ------------------------------------------------------------------

    ldap_enabled: bool = True
    ldap_url: str = "ldap://localhost:389"
    ldap_bind_dn: str = "cn=admin,dc=example,dc=com"
    ldap_bind_password: str = "admin"
    ldap_search_base: str = "ou=users,dc=example,dc=com"
    ldap_search_filter: str = "(uid={{username}})"
    ldap_search_attributes: list[str] = ["uid", "cn", "mail"]
    ldap_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Login flow
    # ------------------------------------------------------------------

    login_deadline_seconds: float = 15.0
    login_rate_limit: str = "10/minute"
    hold_department_name: str = "Hold"
    provisioned_language: str = "ar"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["*"]
    cors_origins: list[str] = ["http://localhost:5000"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7] and default SECURE_COOKIES.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.secure_cookies is None:
            self.secure_cookies = not self.debug
        if self.session_max_lifetime_seconds < self.session_ttl_seconds:
            raise ValueError("SESSION_MAX_LIFETIME_SECONDS must not be shorter than SESSION_TTL_SECONDS.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables, or build Settings(...) directly
    and hand it to AuthService.from_settings().
    """
    return Settings()
