"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for accountd happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. session_duration_seconds -> SESSION_DURATION_SECONDS).

  AccountConfig: the engines never see Settings. Settings.account_config()
      freezes the subset they need into a plain dataclass that is passed into
      their constructors, so business logic has no ambient config lookup.

Layer rule: core/ is the kernel. This module may not import from api/ or
account/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("accountd.config")

_DEFAULT_DB_URL = "sqlite:///accountd.db"


@dataclass(frozen=True)
class AccountConfig:
    """Immutable knobs consumed by the authentication and password-reset engines."""

    session_duration: timedelta
    refresh_session_duration: timedelta
    otp_validity_duration: timedelta
    otp_length: int = 6
    lockout_threshold: int = 3
    admin_email: str = ""
    bcrypt_rounds: int = 12


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

    # debug=true exposes debugDescription on error responses.
    debug: bool = False
    log_level: str = "INFO"
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_duration_seconds: int = Field(default=15 * 60, gt=0)
    refresh_session_duration_seconds: int = Field(default=24 * 60 * 60, gt=0)

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    lockout_threshold: int = Field(default=3, ge=1)
    # Exempt from the password-strength policy at registration (not from
    # the email format check). Empty string disables the bypass.
    admin_email: str = ""
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    # ------------------------------------------------------------------
    # Forgot password
    # ------------------------------------------------------------------

    otp_validity_seconds: int = Field(default=10 * 60, gt=0)
    # OTPs are a prefix of a shuffled 0-9, so at most 10 digits.
    otp_length: int = Field(default=6, ge=1, le=10)

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    otp_rate_limit: str = "5/minute"

    # ------------------------------------------------------------------
    # HTTP (JSON lists in the environment, e.g. ALLOWED_HOSTS='["api.example.com"]')
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "testserver"]
    cors_origins: list[str] = []

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_durations(self) -> "Settings":
        """The renewable window must strictly contain the live window."""
        if self.refresh_session_duration_seconds <= self.session_duration_seconds:
            raise ValueError(
                "REFRESH_SESSION_DURATION_SECONDS must be greater than SESSION_DURATION_SECONDS."
            )
        if not self.admin_email:
            logger.debug("ADMIN_EMAIL not set -- password policy bypass disabled")
        return self

    def account_config(self) -> AccountConfig:
        return AccountConfig(
            session_duration=timedelta(seconds=self.session_duration_seconds),
            refresh_session_duration=timedelta(seconds=self.refresh_session_duration_seconds),
            otp_validity_duration=timedelta(seconds=self.otp_validity_seconds),
            otp_length=self.otp_length,
            lockout_threshold=self.lockout_threshold,
            admin_email=self.admin_email,
            bcrypt_rounds=self.bcrypt_rounds,
        )


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
