"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Latchkey happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. The
      instance is handed to components at construction (AuthService,
      TokenCodec, MailQueue, ...) and is never mutated after startup.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a signing key with a
      warning, production mode refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing,
       opaque-token HMACs and subnet fingerprints all rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. Rotating the key invalidates every outstanding
       access token, refresh session and email token at once.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or mailer/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("latchkey.config")


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
    database_url: str = "sqlite:///latchkey.db"
    # Retries for transient storage failures (OperationalError) at the store seam.
    storage_retries: int = 3
    # Host headers TrustedHostMiddleware accepts. JSON list in the environment,
    # e.g. ALLOWED_HOSTS='["auth.example.com"]'.
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    access_token_ttl_seconds: int = 900
    # Hard ceiling: no access token is ever minted with exp > iat + this value.
    access_token_max_ttl_seconds: int = 3600
    mfa_token_ttl_seconds: int = 600

    verify_email_token_ttl_seconds: int = 7 * 24 * 3600
    reset_password_token_ttl_seconds: int = 24 * 3600
    login_link_token_ttl_seconds: int = 30 * 60
    approve_subnet_token_ttl_seconds: int = 24 * 3600
    merge_accounts_token_ttl_seconds: int = 24 * 3600

    # ------------------------------------------------------------------
    # MFA and subnet guard
    # ------------------------------------------------------------------

    # Number of 30s TOTP steps tolerated on either side of "now".
    totp_valid_window: int = 1
    subnet_ipv4_prefix: int = 24
    subnet_ipv6_prefix: int = 48

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    min_password_length: int = 8
    # HaveIBeenPwned k-anonymity lookup. Off by default so tests and air-gapped
    # deployments never reach the network.
    pwned_check_enabled: bool = False

    # ------------------------------------------------------------------
    # Mail
    # ------------------------------------------------------------------

    frontend_url: str = "http://localhost:3000"
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    mail_from: str = "no-reply@localhost"
    mail_from_name: str = "Latchkey"
    mail_retries: int = 3
    # Consumer tasks draining the queue. 1 means at most one delivery in flight.
    mail_concurrency: int = 1
    mail_queue_size: int = 1000

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    refresh_rate_limit: str = "5/minute"

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    github_client_id: str = ""
    github_client_secret: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
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
        if self.mail_concurrency < 1:
            raise ValueError("MAIL_CONCURRENCY must be at least 1.")
        return self

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_host)


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    In tests: construct Settings(...) directly and pass it to the component
    under test, or call get_settings.cache_clear() between test cases.
    """
    return Settings()
