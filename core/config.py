"""
core/config.py -- Portal settings, read once from the environment and .env.

get_settings() is the only way the rest of the code sees configuration; no
other module touches os.environ.

Environment variables:
  DEBUG                       dev mode; allows an auto-generated SECRET_KEY
  SECRET_KEY                  JWT signing key, >= 32 chars, required unless DEBUG
  AUTH_DB_URL / PORTAL_DB_URL SQLAlchemy URLs; empty = SQLite beside the store
  SECURE_COOKIES              mark the access_token cookie Secure (HTTPS only)
  TOKEN_EXPIRE_SECONDS        JWT lifetime
  ALLOWED_HOSTS, CORS_ORIGINS JSON lists for TrustedHostMiddleware / CORS
  LOGIN_RATE_LIMIT            slowapi limit string for POST /auth/login
  SIGNUP_RATE_LIMIT           limit for staff and organization signup
  SELF_REGISTRATION_ENABLED   deployment-wide switch for staff signup; the
                              Super-admin toggle in app_settings must also be on
  DEADLINE_WARNING_DAYS       window for "approaching" deadlines

Layer rule: core/ imports nothing from api/, auth/ or portal/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("vaptportal.config")


class Settings(BaseSettings):
    """Every field has a default, so tests run without a .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # "" means unset; validate_secret_key replaces or rejects it.
    secret_key: str = ""

    # ------------------------------------------------------------------
    # Databases (empty string = SQLite file next to the store module)
    # ------------------------------------------------------------------

    auth_db_url: str = ""
    portal_db_url: str = ""

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    token_expire_seconds: int = 3600

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    # JSON list in the environment, e.g. ALLOWED_HOSTS='["portal.example.com"]'
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    signup_rate_limit: str = "5/minute"

    # ------------------------------------------------------------------
    # Workflow
    # ------------------------------------------------------------------

    self_registration_enabled: bool = True
    # Deadlines within this many days are reported as "approaching".
    deadline_warning_days: int = 7

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Fill in or reject SECRET_KEY.

        DEBUG=true with no key gets a random one for this process only.
        Without DEBUG a missing key stops startup. Keys under 32 characters
        are refused in both modes.
        """
        if not self.secret_key:
            if not self.debug:
                raise ValueError(
                    "SECRET_KEY is not set. Export a key of at least 32 characters, "
                    "or set DEBUG=true to run with a temporary one."
                )
            self.secret_key = secrets.token_hex(32)
            logger.warning("SECRET_KEY not set; generated a temporary key. Issued tokens die with this process.")
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide Settings. Tests call get_settings.cache_clear() to re-read the environment."""
    return Settings()
