"""
core/config.py -- Process configuration for authcore (pydantic-settings).

Every environment variable authcore understands is a field on Settings;
nothing else reads os.environ. Values come from the environment first, then
an optional .env file, and field names map to upper-case variable names
(access_token_expire_seconds -> ACCESS_TOKEN_EXPIRE_SECONDS).

get_settings() builds Settings on first call and caches it, so configuration
is fixed for the lifetime of the process.

Validation happens at startup, not at first use:
  - SECRET_KEY: generated with a warning when DEBUG=true, otherwise required.
    Under 32 characters is rejected in both modes.
  - Lifetimes and lockout numbers must be positive; the reset token lifetime
    must stay between 15 and 60 minutes.

The auth core never imports this module. Startup code (api/main.py, main.py)
turns Settings into the frozen config objects the components take in their
constructors, so the signing key is an explicit value, not a hidden global.

Layer rule: core/ may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authcore.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'authcore.db'}"


class Settings(BaseSettings):
    """authcore settings. Every field has a default except the signing key,
    which DEBUG mode generates, so tests can build Settings() without a .env."""

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
    # Tokens
    # ------------------------------------------------------------------

    jwt_algorithm: str = "HS256"
    access_token_expire_seconds: int = 900
    refresh_token_expire_days: int = 14
    reset_token_expire_seconds: int = 1800
    reset_url_base: str = "http://localhost:3000/reset-password"

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------

    lockout_threshold: int = 5
    lockout_window_seconds: int = 900

    # ------------------------------------------------------------------
    # HTTP adapter
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]
    purge_interval_seconds: int = 6 * 60 * 60

    # ------------------------------------------------------------------
    # Outbound email (empty smtp_host = log instead of sending)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    mail_from: str = ""

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Generate a throwaway key in DEBUG mode, otherwise require one of at least 32 characters.

        A generated key signs tokens that die with the process. The length floor
        applies to both the JWT signature and the token fingerprints.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Tokens will not persist across restarts.")
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
    def validate_lifetimes(self) -> "Settings":
        """Reject lifetimes and thresholds that would disable a defense."""
        if self.access_token_expire_seconds <= 0:
            raise ValueError("ACCESS_TOKEN_EXPIRE_SECONDS must be positive.")
        if self.refresh_token_expire_days <= 0:
            raise ValueError("REFRESH_TOKEN_EXPIRE_DAYS must be positive.")
        if not 15 * 60 <= self.reset_token_expire_seconds <= 60 * 60:
            raise ValueError("RESET_TOKEN_EXPIRE_SECONDS must be between 900 and 3600.")
        if self.lockout_threshold < 1 or self.lockout_window_seconds < 1:
            raise ValueError("LOCKOUT_THRESHOLD and LOCKOUT_WINDOW_SECONDS must be at least 1.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide Settings, built on first call.

    Tests that change the environment call get_settings.cache_clear() first.
    """
    return Settings()
