"""
core/config.py -- Settings for the accounts service, read once from the
environment (and .env) via pydantic-settings.

Nothing else in the repo reads os.environ; call get_settings(). The result is
cached with lru_cache, so every module sees the same Settings object.

Structured values arrive as JSON in a single variable:
    SSO_PROVIDERS='[{"name": "google", "client_id": "...", "client_secret": "...",
                     "redirect_uri": "https://store.example/login/callback",
                     "discover_uri": "https://accounts.google.com/.well-known/openid-configuration"}]'

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Session keys are
       stored as HMAC-SHA256(SECRET_KEY, key) -- a short key weakens that.

  [M7] With DEBUG unset or false, a missing SECRET_KEY is a hard startup
       failure. A random key would orphan every stored session on restart.
       With DEBUG=true a throwaway key is generated and a warning logged.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("appstore.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'appstore_accounts.db'}"


class SsoProviderConfig(BaseModel):
    """One OpenID Connect identity provider.

    token_endpoint / jwks_uri may be given explicitly. When either is missing,
    the discovery document at discover_uri is fetched once at startup.
    """

    name: str
    client_id: str
    client_secret: str
    redirect_uri: str
    discover_uri: str = ""
    token_endpoint: str = ""
    jwks_uri: str = ""
    issuer: str = ""


class Settings(BaseSettings):
    """Every field has a default; only SECRET_KEY is enforced (see validate_secret_key)."""

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
    # Deployment mode
    # ------------------------------------------------------------------

    # "sso": accounts come from OpenID Connect providers only.
    # "local": username/password accounts with brute-force protection.
    auth_mode: Literal["sso", "local"] = "sso"

    # ------------------------------------------------------------------
    # SSO providers (JSON list in SSO_PROVIDERS)
    # ------------------------------------------------------------------

    sso_providers: list[SsoProviderConfig] = []

    # ------------------------------------------------------------------
    # Timeouts -- every blocking call in a login request is bounded
    # ------------------------------------------------------------------

    upstream_timeout_seconds: float = 10.0
    storage_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    max_sessions_per_account: int = 5
    session_touch_on_resolve: bool = False

    # ------------------------------------------------------------------
    # Brute-force guard
    # ------------------------------------------------------------------

    rate_limit_window_seconds: int = 3600
    rate_limit_threshold: int = 10

    captcha_secret: str = ""
    captcha_verify_url: str = "https://www.google.com/recaptcha/api/siteverify"

    # Coarse per-IP throttle on the login routes (slowapi). Independent of
    # the CAPTCHA escalation above.
    http_rate_limit: str = "60/minute"
    http_rate_limit_enabled: bool = True

    # ------------------------------------------------------------------
    # Profile bounds
    # ------------------------------------------------------------------

    username_max_length: int = 64
    display_name_max_length: int = 100

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Stored sessions will not survive restart -- acceptable for local dev.

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
    """Cached Settings. Tests that change the environment call get_settings.cache_clear()."""
    return Settings()
