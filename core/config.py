"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for ClinicConnect auth happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Used for the DEBUG-conditional secret
      policy (dev mode generates a secret with a warning, production refuses
      to start without one) and for mode-dependent rate-limit defaults.

Security notes:
  [M6] SECRET_KEY / SESSION_SECRET shorter than 32 chars are rejected outright.
       Token signing and session cookie signing both rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY or
       SESSION_SECRET is a hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or ratelimit/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("clinicconnect.config")

_THIRTY_DAYS = 30 * 24 * 60 * 60


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
    # below either generates a dev secret or raises, so callers never see "".
    secret_key: str = ""
    session_secret: str = ""

    database_url: str = "sqlite:///./clinicconnect_auth.db"
    # Empty means "same as database_url".
    session_database_url: str = ""

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]

    # ------------------------------------------------------------------
    # Tokens and sessions
    # ------------------------------------------------------------------

    token_expire_seconds: int = _THIRTY_DAYS
    session_cookie_name: str = "clinic.session.id"
    # Sliding expiry: measured from last activity, not from issuance.
    session_max_age_seconds: int = _THIRTY_DAYS
    session_purge_seconds: int = 15 * 60

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    auth_rate_limit_window_seconds: int = 15 * 60
    # None -> 10 in production, 50 in development (resolved below).
    auth_rate_limit_max: int | None = None
    api_rate_limit_window_seconds: int = 15 * 60
    api_rate_limit_max: int = 500
    sensitive_rate_limit_window_seconds: int = 60 * 60
    sensitive_rate_limit_max: int = 20

    rate_limit_idle_seconds: int = 60 * 60
    rate_limit_sweep_seconds: int = 60
    # Empty -> in-process store. Otherwise a `limits` storage URI
    # (memory://, redis://host:6379, ...) shared by every worker.
    rate_limit_storage_uri: str = ""

    # ------------------------------------------------------------------
    # MFA
    # ------------------------------------------------------------------

    mfa_issuer: str = "ClinicConnect"
    mfa_backup_code_count: int = 10
    mfa_max_attempts: int = 5
    mfa_attempt_window_seconds: int = 300
    mfa_lockout_seconds: int = 300
    # How long a session's MFA verification satisfies the sensitive-op checkpoint.
    mfa_checkpoint_ttl_seconds: int = 900

    # ------------------------------------------------------------------
    # Derived
    # ------------------------------------------------------------------

    @property
    def production(self) -> bool:
        return not self.debug

    @property
    def secure_cookies(self) -> bool:
        return self.production

    @property
    def cookie_samesite(self) -> str:
        return "strict" if self.production else "lax"

    @property
    def effective_session_database_url(self) -> str:
        return self.session_database_url or self.database_url

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the SECRET_KEY / SESSION_SECRET policy [M7].

        Dev mode (DEBUG=true): auto-generate random secrets with a warning.
            Tokens and sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if either
            secret is missing.

        Both modes: reject secrets shorter than 32 characters [M6].
        """
        for field_name in ("secret_key", "session_secret"):
            value = getattr(self, field_name)
            env_name = field_name.upper()
            if not value:
                if self.debug:
                    value = secrets.token_hex(32)
                    setattr(self, field_name, value)
                    logger.warning(
                        "WARNING: Using auto-generated %s. Credentials will not persist across restarts.",
                        env_name,
                    )
                else:
                    raise ValueError(
                        f"{env_name} is required in production mode. "
                        f"Set {env_name} in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
            if len(value) < 32:
                raise ValueError(f"{env_name} must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def resolve_rate_limit_defaults(self) -> "Settings":
        """Login throttling is tighter in production than during local setup."""
        if self.auth_rate_limit_max is None:
            self.auth_rate_limit_max = 10 if self.production else 50
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
