"""
RSL Platform — Configuration settings.

Loads from environment variables with sensible defaults.

A Settings instance is built once per application by core.app.create_app()
and handed to the services that need it; the module-level ``settings`` is
only the default used when no explicit instance is supplied.
"""

from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Database
    database_url: str = "sqlite:///./rsl_platform.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    # Development mode: error responses include exception text
    debug: bool = False

    # Encryption key for stored secrets (webhook secrets, signing keys)
    # Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
    encryption_key: Optional[str] = None

    # OAuth
    token_issuer: str = "rsl-platform"
    signing_key_lifetime_days: int = 90
    # Optional bootstrap client, created on startup when both are set
    default_client_id: Optional[str] = None
    default_client_secret: Optional[str] = None

    # Frontend - comma-separated list in .env, e.g. CORS_ORIGINS=http://localhost:3000,http://example.com
    cors_origins: str = ""

    # Rate limiting (slowapi limit string applied to every route)
    rate_limit: str = "30/minute"
    rate_limit_enabled: bool = True

    # Policy: what to do for a country with no geographic rule on the license
    geo_default_allow: bool = True

    # Webhook delivery
    webhook_timeout_seconds: float = 10.0
    webhook_max_workers: int = 4
    # 1 = single attempt, no retry. Values > 1 retry failed deliveries with
    # exponential backoff starting at webhook_retry_backoff_seconds.
    webhook_max_attempts: int = 1
    webhook_retry_backoff_seconds: float = 2.0
    # Allow targets on loopback / private networks (local development only)
    webhook_allow_private_targets: bool = False

    # How often the lifespan task looks for licenses past their expiry
    expiry_sweep_interval_seconds: int = 3600

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
