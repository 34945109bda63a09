"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Gatehouse happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. Services
      never read it themselves -- auth/factory.py passes the values they need
      into their constructors, so tests can build any configuration directly.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Enforces the SECRET_KEY policy and the bcrypt cost floor.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Verification and
       session tokens are stored as HMAC-SHA256(SECRET_KEY, token) -- a short
       key weakens every stored token.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random key would silently invalidate every
       outstanding session and reset link on restart.

  [M8] BCRYPT_ROUNDS below 12 is rejected. The cost factor is a tunable
       trade-off between brute-force resistance and login latency, but never
       below the floor.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("gatehouse.config")

MIN_BCRYPT_ROUNDS = 12


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (DEBUG=true supplies the key).
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
    app_url: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # Backends -- selected once at startup by auth/factory.py
    # ------------------------------------------------------------------

    auth_backend: Literal["database", "memory"] = "database"
    database_url: str = "sqlite:///gatehouse_auth.db"
    email_backend: Literal["resend", "console", "memory"] = "console"

    # ------------------------------------------------------------------
    # Password hashing and policy
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12
    password_min_length: int = 8
    password_require_uppercase: bool = True
    password_require_lowercase: bool = True
    password_require_numbers: bool = True
    password_require_special: bool = True
    password_forbid_common: bool = True
    password_forbid_user_info: bool = True
    password_history_limit: int = 5
    # 0 disables expiry. Passwords older than this many days are reported
    # expired at login; the warning window starts warning_days earlier.
    password_max_age_days: int = 0
    password_expiry_warning_days: int = 7

    # ------------------------------------------------------------------
    # One-time tokens
    # ------------------------------------------------------------------

    email_verification_ttl_minutes: int = 24 * 60
    password_reset_ttl_minutes: int = 60

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_max_age_seconds: int = 24 * 60 * 60
    session_inactivity_seconds: int = 60 * 60
    session_max_concurrent: int = 3
    session_bind_origin: bool = True
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    rate_limit_max_attempts: int = 5
    rate_limit_window_seconds: int = 15 * 60
    rate_limit_lockout_seconds: int = 15 * 60
    rate_limit_extend_on_blocked: bool = False
    # Composing email and IP defeats both IP rotation against one account and
    # one IP stuffing many accounts, but needs both signals on every request.
    rate_limit_key: Literal["email", "ip", "email_ip"] = "email_ip"
    # Outer per-IP throttle applied by slowapi on the HTTP login route.
    login_rate_limit: str = "20/minute"

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    # Implicitly link a provider identity to an existing password account with
    # the same provider-verified email. Account takeover risk if a provider's
    # verification is weaker than assumed -- disable to require explicit linking.
    oauth_link_by_email: bool = True

    github_client_id: str = ""
    github_client_secret: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""

    # Generic OIDC (Okta, Azure AD, Keycloak, Authentik, etc.)
    oidc_client_id: str = ""
    oidc_client_secret: str = ""
    oidc_discovery_url: str = ""
    oidc_display_name: str = "SSO"

    # ------------------------------------------------------------------
    # Email (Resend HTTP API)
    # ------------------------------------------------------------------

    resend_api_key: str = ""
    email_from: str = "no-reply@localhost"
    email_from_name: str = "Gatehouse"

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    maintenance_interval_seconds: int = 60 * 60

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_security_settings(self) -> "Settings":
        """Enforce SECRET_KEY policy [M6][M7] and the bcrypt cost floor [M8].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
        Production mode: refuse to start if SECRET_KEY is missing.
        Both modes: reject short keys and BCRYPT_ROUNDS below 12.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. "
                    "Sessions and reset links will not survive a restart."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.bcrypt_rounds < MIN_BCRYPT_ROUNDS:
            raise ValueError(f"BCRYPT_ROUNDS must be at least {MIN_BCRYPT_ROUNDS}.")
        if self.email_backend == "resend" and not self.resend_api_key:
            raise ValueError("RESEND_API_KEY is required when EMAIL_BACKEND=resend.")
        if self.rate_limit_max_attempts < 1:
            raise ValueError("RATE_LIMIT_MAX_ATTEMPTS must be at least 1.")
        if self.password_max_age_days < 0 or self.password_expiry_warning_days < 0:
            raise ValueError("PASSWORD_MAX_AGE_DAYS and PASSWORD_EXPIRY_WARNING_DAYS must not be negative.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
