"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for sanctum happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Dev mode generates missing signing keys with a warning,
      production mode refuses to start without them.

Security notes:
  Signing keys shorter than 32 chars are rejected outright. The access and
  refresh keys must differ so that a refresh token can never verify as an
  access token (and vice versa), independent of the "type" claim check.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("sanctum.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'sanctum_auth.db'}"


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
    refresh_secret_key: str = ""

    # "memory://" selects the in-memory store and audit log backends.
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Token lifetimes
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = Field(default=15 * 60, gt=0)
    refresh_token_expire_seconds: int = Field(default=24 * 60 * 60, gt=0)
    remember_me_expire_seconds: int = Field(default=30 * 24 * 60 * 60, gt=0)

    # ------------------------------------------------------------------
    # Lockout policy
    # ------------------------------------------------------------------

    max_login_attempts: int = Field(default=5, ge=1)
    lockout_seconds: int = Field(default=15 * 60, gt=0)

    # ------------------------------------------------------------------
    # Credential shape and hashing
    # ------------------------------------------------------------------

    username_min_length: int = 3
    password_min_length: int = 4
    new_password_min_length: int = 8
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    # ------------------------------------------------------------------
    # Audit log and maintenance
    # ------------------------------------------------------------------

    audit_retention: int = Field(default=1000, ge=1)
    maintenance_interval_seconds: int = Field(default=60 * 60, gt=0)

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    # None means "secure whenever not in debug mode"; resolved by the validator.
    secure_cookies: Optional[bool] = None
    login_rate_limit: str = "10/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1:3000"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_signing_keys(self) -> "Settings":
        """Enforce signing key policy.

        Dev mode (DEBUG=true): auto-generate missing keys with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if either key is missing. Both modes
            reject keys shorter than 32 characters and identical keys.
        """
        for field in ("secret_key", "refresh_secret_key"):
            value = getattr(self, field)
            if not value:
                if not self.debug:
                    raise ValueError(
                        f"{field.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
                setattr(self, field, secrets.token_hex(32))
                logger.warning("Using auto-generated %s. Tokens will not persist across restarts.", field.upper())
            if len(getattr(self, field)) < 32:
                raise ValueError(f"{field.upper()} must be at least 32 characters.")
        if self.secret_key == self.refresh_secret_key:
            raise ValueError("SECRET_KEY and REFRESH_SECRET_KEY must differ.")
        if self.secure_cookies is None:
            self.secure_cookies = not self.debug
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
