"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for authcore happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

The auth/ components never call get_settings() themselves: they receive the
values they need as constructor arguments. Only the wiring points
(auth.facade.build_auth_facade, api/, main.py) read the singleton, which keeps
the components testable with explicit values and an injected clock.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. The OTP code hash
       and the session token hash are both HMAC-SHA256 keyed with it.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random key in production would orphan every
       live session and OTP on restart.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authcore.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'authcore.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (DEBUG=true still required for the
    secret key). Field names map to upper-cased env vars, e.g. `otp_ttl_seconds`
    reads from OTP_TTL_SECONDS.
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
    # Storage
    # ------------------------------------------------------------------

    database_url: str = _DEFAULT_DB_URL
    # Upper bound on a single storage round-trip (busy wait / pool checkout).
    storage_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_ttl_seconds: int = 24 * 60 * 60
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # One-time passcodes
    # ------------------------------------------------------------------

    otp_ttl_seconds: int = 15 * 60
    otp_length: int = 6
    otp_alphabet: str = "0123456789"
    otp_retention_seconds: int = 7 * 24 * 60 * 60
    otp_login_roles: list[str] = ["admin", "operator"]

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    password_min_length: int = 6
    temp_password_ttl_seconds: int = 72 * 60 * 60

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    otp_rate_limit: str = "5/minute"

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    audit_page_size: int = 50
    audit_max_page_size: int = 500

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    purge_interval_seconds: int = 6 * 60 * 60

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("otp_length")
    @classmethod
    def validate_otp_length(cls, value: int) -> int:
        if not 4 <= value <= 12:
            raise ValueError("OTP_LENGTH must be between 4 and 12.")
        return value

    @field_validator("otp_alphabet")
    @classmethod
    def validate_otp_alphabet(cls, value: str) -> str:
        if len(set(value)) < 2:
            raise ValueError("OTP_ALPHABET must contain at least two distinct characters.")
        return value

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions and pending OTPs will not survive restart.

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


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
