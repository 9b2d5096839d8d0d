"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for StagePass happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() or
get_client_settings() instead.

Two settings classes:
  Settings        -- server side: database, token secrets and lifetimes,
                     bcrypt cost, rotation policy, rate limits.
  ClientSettings  -- client side: API base URL, request timeout, proactive
                     refresh margin, encrypted session storage location.

They are split so the CLI client can start on a machine that holds no
signing secrets. Both are lru_cache singletons.

Security notes:
  [M6] Token secrets shorter than 32 chars are rejected outright. HS256
       signing relies on key entropy -- a short key weakens every token.

  [M7] In production mode (DEBUG not set or false), missing token secrets are
       a hard startup failure.

  [M8] ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must differ, so a refresh
       token can never verify as an access token (or the reverse) even if the
       type claim check were bypassed.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/ or client/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("stagepass.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'stagepass_auth.db'}"


class Settings(BaseSettings):
    """Server settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.

    Environment variable name mapping: field names are uppercased automatically.
    E.g. `access_token_secret` reads from ACCESS_TOKEN_SECRET.
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
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev secret or raises, so callers never see "".
    access_token_secret: str = ""
    refresh_token_secret: str = ""
    access_token_expire_seconds: int = 15 * 60
    refresh_token_expire_seconds: int = 7 * 24 * 60 * 60
    # Off by default: refresh returns a new access token only and the refresh
    # token stays valid until it expires or a newer login replaces it.
    rotate_refresh_tokens: bool = False
    # With rotation on, the previous refresh token keeps working for this many
    # seconds so two racing refreshes from one client do not lock it out.
    refresh_grace_seconds: int = 30

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # Rate limiting / registration
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    self_registration_enabled: bool = True

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    # List values are read from the environment as JSON, e.g.
    # ALLOWED_HOSTS='["api.example.com"]'
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_token_secrets(self) -> "Settings":
        """Enforce the token secret policy [M6] [M7] [M8].

        Dev mode (DEBUG=true): auto-generate missing secrets with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if either secret is missing.

        Both modes: reject secrets shorter than 32 characters and reject
            identical access/refresh secrets.
        """
        for name in ("access_token_secret", "refresh_token_secret"):
            if not getattr(self, name):
                if self.debug:
                    setattr(self, name, secrets.token_hex(32))
                    logger.warning(
                        "WARNING: Using auto-generated %s. Sessions will not persist across restarts.",
                        name.upper(),
                    )
                else:
                    raise ValueError(
                        f"{name.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
            if len(getattr(self, name)) < 32:
                raise ValueError(f"{name.upper()} must be at least 32 characters.")
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must be different.")
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        return self


class ClientSettings(BaseSettings):
    """Client settings for the session manager and CLI.

    session_encryption_key is a Fernet key (urlsafe base64, 32 bytes). When it
    is empty the file storage generates one into session_dir/session.key with
    0600 permissions on first use.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_base_url: str = "http://localhost:8000/api/v1"
    request_timeout_seconds: float = 10.0
    # Refresh proactively once the access token has less than this left.
    refresh_margin_seconds: int = 5 * 60
    session_dir: Path = Path.home() / ".stagepass"
    session_encryption_key: str = ""


@lru_cache
def get_settings() -> Settings:
    """Return the server Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()


@lru_cache
def get_client_settings() -> ClientSettings:
    """Return the client ClientSettings singleton."""
    return ClientSettings()
