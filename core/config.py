"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for authkeep happen here. No module should
call os.getenv() or os.environ.get() directly. The edges of the system (the
API lifespan and the CLI) call get_settings(); everything below them receives
a Settings instance explicitly so tests can build services with their own
configuration.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file. Field names map to env var names
      (e.g. access_token_secret -> ACCESS_TOKEN_SECRET). Strings such as
      "true" or "15" are coerced here, at the boundary, never deeper inside.

  @model_validator(mode="after"): Cross-field checks once every field is
      resolved -- signing secret policy and pool bounds.

Security notes:
  Both signing secrets must be at least 32 characters. The access-token
  secret signs JWTs; the refresh-token secret keys the HMAC that protects
  stored refresh secrets. They must differ so a leak of one does not give
  an attacker the other.

  In production mode (DEBUG not set or false), a missing secret is a hard
  startup failure. Dev mode generates random secrets with a warning.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/ or db/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from functools import lru_cache

from limits import parse
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authkeep.config")

_MIN_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (with DEBUG=true for the secrets).
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
    log_level: str = "INFO"
    database_url: str = "sqlite:///authkeep.db"

    # ------------------------------------------------------------------
    # Signing secrets
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev secret or raises, so callers never see "".
    access_token_secret: str = ""
    refresh_token_secret: str = ""

    # ------------------------------------------------------------------
    # Tokens and passwords
    # ------------------------------------------------------------------

    access_token_minutes: int = Field(default=15, ge=1)
    refresh_token_days: int = Field(default=7, ge=1)
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)
    password_min_length: int = Field(default=8, ge=8, le=72)

    # ------------------------------------------------------------------
    # Lockout and rate limiting
    # ------------------------------------------------------------------

    lockout_threshold: int = Field(default=5, ge=1)
    lockout_minutes: int = Field(default=15, ge=1)
    register_rate_limit: str = "5 per 15 minutes"
    login_rate_limit: str = "3 per 15 minutes"
    # Coarse per-IP ceiling applied by slowapi to every HTTP route.
    api_rate_limit: str = "120/minute"

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    # JSON lists in the environment, e.g. ALLOWED_HOSTS='["auth.example.com"]'
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Connection pool
    # ------------------------------------------------------------------

    db_pool_min: int = Field(default=2, ge=0)
    db_pool_max: int = Field(default=20, ge=1)
    db_idle_timeout: float = Field(default=30.0, gt=0)
    db_max_uses: int = Field(default=7500, ge=1)
    db_connect_timeout: float = Field(default=5.0, gt=0)
    db_statement_timeout: float = Field(default=30.0, gt=0)

    # ------------------------------------------------------------------
    # Retry / backoff
    # ------------------------------------------------------------------

    db_query_retries: int = Field(default=3, ge=0)
    db_query_backoff_base: float = Field(default=1.0, ge=0)
    db_query_backoff_max: float = Field(default=5.0, ge=0)
    db_tx_retries: int = Field(default=2, ge=0)
    db_tx_backoff_base: float = Field(default=0.5, ge=0)
    db_tx_backoff_max: float = Field(default=2.0, ge=0)

    # ------------------------------------------------------------------
    # Retention sweep
    # ------------------------------------------------------------------

    sweep_interval_seconds: int = Field(default=3600, ge=1)
    token_retention_hours: int = Field(default=24, ge=0)
    event_retention_days: int = Field(default=30, ge=1)

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("register_rate_limit", "login_rate_limit", "api_rate_limit")
    @classmethod
    def validate_rate_limit(cls, value: str) -> str:
        """Reject rate-limit strings the limits library cannot parse."""
        try:
            parse(value)
        except ValueError as exc:
            raise ValueError(f"Invalid rate limit {value!r}: {exc}") from exc
        return value

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level {value!r}")
        return level

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the signing secret policy.

        Dev mode (DEBUG=true): auto-generate any missing secret with a warning.
            Tokens will not survive a restart -- acceptable for local dev.

        Production mode: refuse to start if either secret is missing.

        Both modes: reject secrets shorter than 32 characters and reject a
            configuration where both secrets are equal.
        """
        for name in ("access_token_secret", "refresh_token_secret"):
            if getattr(self, name):
                continue
            if not self.debug:
                raise ValueError(
                    f"{name.upper()} is required in production mode. "
                    "Set it in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
            setattr(self, name, secrets.token_hex(32))
            logger.warning("Using auto-generated %s. Tokens will not persist across restarts.", name.upper())

        for name in ("access_token_secret", "refresh_token_secret"):
            if len(getattr(self, name)) < _MIN_SECRET_LENGTH:
                raise ValueError(f"{name.upper()} must be at least {_MIN_SECRET_LENGTH} characters.")
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must be different.")
        return self

    @model_validator(mode="after")
    def validate_pool_bounds(self) -> "Settings":
        if self.db_pool_min > self.db_pool_max:
            raise ValueError("DB_POOL_MIN must not exceed DB_POOL_MAX.")
        return self

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def access_token_ttl(self) -> timedelta:
        return timedelta(minutes=self.access_token_minutes)

    @property
    def refresh_token_ttl(self) -> timedelta:
        return timedelta(days=self.refresh_token_days)

    @property
    def lockout_duration(self) -> timedelta:
        return timedelta(minutes=self.lockout_minutes)


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    Only the API lifespan and the CLI call this; services take Settings as a
    constructor argument.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
