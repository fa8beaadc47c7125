"""
core/config.py -- Centralized configuration via pydantic-settings.

All environment variable reads happen here. No module should call os.getenv()
directly -- import get_settings() and pass the Settings value into the
component constructors that need it.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the FastAPI dependency injection pattern for config.

  Explicit value, not ambient state: components (TokenIssuer, TempTokenCodec,
      LockoutPolicy, ...) receive the Settings object in __init__. Tests build
      their own Settings(...) and never touch the cached singleton.

  @model_validator(mode="after"): cross-field validation after all fields are
      resolved. Dev mode (DEBUG=true) generates a SECRET_KEY with a warning;
      production refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing and
       the temp-token encryption key are both derived from it.

  [M7] Outside debug mode a missing SECRET_KEY is a hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("portfolio_auth.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'portfolio_auth.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    Environment variable name mapping: field names are uppercased automatically.
    E.g. `secret_key` reads from SECRET_KEY, `lockout_threshold` from
    LOCKOUT_THRESHOLD.
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
    # Access / refresh tokens
    # ------------------------------------------------------------------

    jwt_issuer: str = "portfolio-api"
    jwt_audience: str = "portfolio-clients"
    access_token_expire_minutes: int = Field(default=60, ge=1)
    refresh_token_expire_days: int = Field(default=7, ge=1)

    # ------------------------------------------------------------------
    # Two-factor
    # ------------------------------------------------------------------

    temp_token_expire_minutes: int = Field(default=5, ge=1)
    # False keeps a temp token usable for every second-factor attempt inside
    # its window. True burns the token on the first successful verification.
    temp_token_single_use: bool = False
    totp_issuer: str = "Portfolio"
    totp_step_seconds: int = Field(default=30, ge=1)
    recovery_code_count: int = Field(default=10, ge=1, le=50)

    # ------------------------------------------------------------------
    # Brute-force protection
    # ------------------------------------------------------------------

    lockout_threshold: int = Field(default=5, ge=1)
    lockout_minutes: int = Field(default=15, ge=1)
    login_rate_limit: str = "10/minute"
    # bcrypt cost factor. Tests drop this to 4; production keeps 12.
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    # ------------------------------------------------------------------
    # Links sent by email
    # ------------------------------------------------------------------

    app_base_url: str = "http://localhost:8000"
    frontend_url: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive a restart -- acceptable for local dev.

        Production mode: refuse to start if SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Issued tokens will not survive a restart.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @property
    def access_token_expire_seconds(self) -> int:
        return self.access_token_expire_minutes * 60

    @property
    def temp_token_expire_seconds(self) -> int:
        return self.temp_token_expire_minutes * 60


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
