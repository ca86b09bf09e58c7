"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for AdminGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. Values are
      read once at process start; there is no hot reload.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Implements the DEBUG-conditional SECRET_KEY logic: dev mode
      generates a key with a warning, production mode refuses to start.

Security notes:
  - SECRET_KEY shorter than 32 chars is rejected outright. JWT signing
    relies on key entropy; a short key weakens every issued token.

  - In production mode (DEBUG not set or false), a missing SECRET_KEY is a
    hard startup failure. It is never a per-request error.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or audit/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("admingate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'admingate.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields except SECRET_KEY have defaults so Settings() can be
    instantiated in test environments (with DEBUG=true) without a real .env
    file.
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
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Tokens and passwords
    # ------------------------------------------------------------------

    # 7 days. Tokens are single-shot: no refresh, revocation by blacklist only.
    token_expire_seconds: int = Field(default=7 * 24 * 3600, gt=0)
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    # ------------------------------------------------------------------
    # Lockout guard
    # ------------------------------------------------------------------

    lockout_max_attempts: int = Field(default=5, ge=1)
    lockout_seconds: int = Field(default=2 * 3600, gt=0)

    # ------------------------------------------------------------------
    # Audit trail and housekeeping
    # ------------------------------------------------------------------

    audit_retention_days: int = Field(default=90, ge=1)
    purge_interval_seconds: int = Field(default=3600, gt=0)

    # ------------------------------------------------------------------
    # Registration and rate limiting
    # ------------------------------------------------------------------

    default_role: str = "user"
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # HTTP edge
    # ------------------------------------------------------------------

    # JSON lists in the environment, e.g. ALLOWED_HOSTS='["api.example.com"]'
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    All modules should call get_settings() rather than constructing Settings()
    directly. In tests: call get_settings.cache_clear() if you need to inject
    different environment variables.
    """
    return Settings()
