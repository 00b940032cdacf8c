"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for AuthGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Settings are read once: get_settings() is wrapped in lru_cache, and the
FastAPI lifespan passes the resulting object to everything it builds. Field
names map onto environment variables (redis_url -> REDIS_URL), and a .env
file in the working directory is honoured.

The after-validator applies the key policy. Dev mode (DEBUG=true) generates
an ephemeral signing keypair with a warning; production mode refuses to
start without one.

Security notes:
  Tokens are signed with an asymmetric keypair. Only the private key can issue
  tokens; the public key is enough to verify them. In production both PEM
  values must be supplied -- a generated pair would invalidate every token on
  restart.

  SESSION_SECRET_KEY signs the Starlette session cookie used by the OAuth
  state round-trip. Short values (<32 chars) are rejected.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
cache/, or mail/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authgate.config")


class Settings(BaseSettings):
    """Environment-backed settings. Every field has a default; only the
    signing keys and session secret are mandatory outside debug mode."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    app_name: str = "AuthGate"
    app_url: str = "http://localhost:3000"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]
    # Empty string is the sentinel for "not configured"; see the validator.
    session_secret_key: str = ""

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    database_url: str = "sqlite:///./authgate.db"
    # Empty = single-process mode: in-memory session cache and rate limiter.
    redis_url: str = ""
    redis_socket_timeout: float = 5.0

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    auth_private_key: str = ""
    auth_public_key: str = ""
    token_algorithm: str = "ES256"
    access_token_ttl_seconds: int = 15 * 60
    refresh_token_ttl_seconds: int = 7 * 24 * 3600
    verification_token_ttl_seconds: int = 24 * 3600
    password_reset_token_ttl_seconds: int = 3600

    # ------------------------------------------------------------------
    # Lockout and security events
    # ------------------------------------------------------------------

    max_login_attempts: int = 5
    account_lock_duration_seconds: int = 30 * 60
    lockout_window_seconds: int = 3600
    enable_login_notifications: bool = True
    enable_suspicious_activity_detection: bool = True

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    enable_rate_limiting: bool = True
    global_rate_limit: int = 100
    global_rate_window_seconds: int = 60
    auth_rate_limit: int = 5
    auth_rate_window_seconds: int = 15 * 60
    # slowapi limit string for endpoints that trigger outbound email.
    email_rate_limit: str = "3/minute"

    # ------------------------------------------------------------------
    # Email (SMTP). Empty smtp_host = log-only dev mode.
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    email_from_address: str = "noreply@example.com"
    email_from_name: str = "AuthGate"

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
    def validate_secrets(self) -> "Settings":
        """Enforce the signing-key and session-secret policy.

        Dev mode (DEBUG=true): generate whatever is missing, with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if either PEM key or the session
            secret is missing.

        Both modes: reject session secrets shorter than 32 characters.
        """
        if not self.auth_private_key or not self.auth_public_key:
            if self.debug:
                # Imported lazily: the kernel must not depend on auth/ at import time.
                from cryptography.hazmat.primitives import serialization
                from cryptography.hazmat.primitives.asymmetric import ec

                key = ec.generate_private_key(ec.SECP256R1())
                self.auth_private_key = key.private_bytes(
                    serialization.Encoding.PEM,
                    serialization.PrivateFormat.PKCS8,
                    serialization.NoEncryption(),
                ).decode("utf-8")
                self.auth_public_key = (
                    key.public_key()
                    .public_bytes(serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo)
                    .decode("utf-8")
                )
                logger.warning("WARNING: Using an auto-generated signing keypair. Tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "AUTH_PRIVATE_KEY and AUTH_PUBLIC_KEY are required in production mode. "
                    "Set both PEM values in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if not self.session_secret_key:
            if self.debug:
                self.session_secret_key = secrets.token_hex(32)
            else:
                raise ValueError("SESSION_SECRET_KEY is required in production mode.")
        if len(self.session_secret_key) < 32:
            raise ValueError("SESSION_SECRET_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Tests that need other values build Settings(...) directly instead of
    touching the environment.
    """
    return Settings()
