"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the portal backend happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Dev mode generates a SECRET_KEY with a warning, production
      mode refuses to start without one.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. JWT signing relies on
  key entropy -- a short key weakens every issued session.

  BCRYPT_ROUNDS below 10 is rejected. The cost factor is the only thing that
  makes offline guessing of a leaked digest expensive.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or submissions/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("ccm.config")


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

    # Empty means "use the SQLite file next to the store module".
    auth_db_url: str = ""
    submissions_db_url: str = ""

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    # Unified login (admins and managers).
    session_ttl_seconds: int = 24 * 3600
    # Narrow admin-only login kept for older clients.
    admin_session_ttl_seconds: int = 3600

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12
    # Re-hash a legacy plaintext credential after it is resupplied at login.
    rehash_legacy_passwords: bool = True
    min_password_length: int = 8

    # ------------------------------------------------------------------
    # One-time codes and invitations
    # ------------------------------------------------------------------

    otp_expire_seconds: int = 300
    password_reset_expire_seconds: int = 600
    invite_expire_seconds: int = 300
    purge_interval_seconds: int = 3600

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    otp_rate_limit: str = "5/minute"
    contact_rate_limit: str = "5/minute"

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    frontend_url: str = "http://localhost:3000"
    # Front-end route of the invitation acceptance page. The SPA uses hash
    # routing, so the default keeps the "#".
    invite_accept_path: str = "/#/accept-invite"
    cors_origins: list[str] = ["http://localhost:3000"]
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]

    # ------------------------------------------------------------------
    # Mail (Microsoft Graph, client-credentials flow).
    # Empty client id means mail is disabled and messages are only logged.
    # ------------------------------------------------------------------

    aad_tenant_id: str = ""
    aad_client_id: str = ""
    aad_client_secret: str = ""
    mail_sender_id: str = ""
    mail_timeout_seconds: int = 10
    # Recipient of new contact-form notifications.
    notify_email: str = ""

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY and bcrypt cost policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters and bcrypt cost
            factors below 10.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.bcrypt_rounds < 10:
            raise ValueError("BCRYPT_ROUNDS must be at least 10.")
        return self

    @property
    def mail_enabled(self) -> bool:
        return bool(self.aad_client_id and self.aad_client_secret and self.aad_tenant_id and self.mail_sender_id)


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
