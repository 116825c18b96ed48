"""Settings for the API and the worker.

Values come from the environment, with ``.env`` files as a fallback: the
repository root first, then whatever python-dotenv finds from the working
directory.  Variables already set in the environment always win.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from dotenv import load_dotenv, find_dotenv

_ROOT_ENV = Path(__file__).resolve().parents[3] / ".env"

ENV_FILES: list[str] = [str(_ROOT_ENV)] if _ROOT_ENV.exists() else []
_found = find_dotenv(usecwd=True)
if _found and _found not in ENV_FILES:
    ENV_FILES.append(_found)

for _env_path in ENV_FILES:
    load_dotenv(dotenv_path=_env_path, override=False)


class Settings(BaseSettings):
    """Process-wide configuration; every field maps to an env var of the same name."""

    model_config = SettingsConfigDict(
        env_file=tuple(ENV_FILES) or (".env",),
        case_sensitive=True,
        extra="allow",
    )

    # API Settings
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "ReceiptSync"
    ENVIRONMENT: str = Field(default="development")
    # Public base URL of the API, used to build OAuth redirect URIs
    APP_BASE_URL: str = Field(default="http://localhost:8000")
    FRONTEND_BASE_URL: str = Field(default="http://localhost:3000")

    # Database
    DATABASE_URL: Optional[str] = Field(default=None)
    # Local SQLite is used when no DATABASE_URL is configured
    DB_DEV_FALLBACK_SQLITE: bool = Field(default=True)

    # Redis
    REDIS_URL: str = Field(default="redis://localhost:6379/0")

    # Dramatiq: "redis" in deployments, "stub" for tests and local scripts
    DRAMATIQ_BROKER: str = Field(default="redis")
    DRAMATIQ_BROKER_URL: Optional[str] = Field(default=None)

    # Credential encryption.  Must be overridden outside development.
    ENCRYPTION_SECRET_KEY: str = Field(default="changeme-receiptsync-dev-key")

    # OAuth providers
    GOOGLE_CLIENT_ID: Optional[str] = Field(default=None)
    GOOGLE_CLIENT_SECRET: Optional[str] = Field(default=None)
    NOTION_CLIENT_ID: Optional[str] = Field(default=None)
    NOTION_CLIENT_SECRET: Optional[str] = Field(default=None)
    # "memory" keeps access tokens per process; "redis" shares them
    TOKEN_CACHE_BACKEND: str = Field(default="memory")

    # OpenAI
    OPENAI_API_KEY: Optional[str] = Field(default=None)
    EXTRACTION_MODEL: str = Field(default="gpt-4o-mini")

    # Storage
    MINIO_ENDPOINT: str = Field(default="localhost:9000")
    MINIO_ACCESS_KEY: str = Field(default="minioadmin")
    MINIO_SECRET_KEY: str = Field(default="minioadmin")
    MINIO_BUCKET_NAME: str = Field(default="receipts")
    MINIO_USE_SSL: bool = Field(default=False)

    # File Upload
    MAX_UPLOAD_SIZE: int = 10 * 1024 * 1024  # 10MB
    ALLOWED_CONTENT_TYPES: set[str] = {"image/jpeg", "image/png", "image/webp", "application/pdf"}
    UPLOAD_URL_EXPIRY_SECONDS: int = Field(default=300)
    DOWNLOAD_URL_EXPIRY_SECONDS: int = Field(default=3600)

    # Exports: receipt counts above this run as background jobs
    SYNC_EXPORT_THRESHOLD: int = Field(default=500)

    # CORS
    BACKEND_CORS_ORIGINS: list[str] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:3000"],
    )

    # Sentry
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_PROFILES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_RELEASE: Optional[str] = Field(default=None)

    # Stripe
    STRIPE_WEBHOOK_SECRET: Optional[str] = Field(default=None)
    STRIPE_WEBHOOK_SECRETS: Optional[str] = Field(default=None)
    STRIPE_PRICE_PRO_MONTHLY: Optional[str] = Field(default=None)
    STRIPE_PRICE_BUSINESS_MONTHLY: Optional[str] = Field(default=None)


# Instantiate global settings
settings = Settings()


def get_webhook_secret_list() -> list[str]:
    """Return list of webhook secrets for signature verification.

    Precedence:
    1. STRIPE_WEBHOOK_SECRETS (comma separated, ordered)
    2. Fallback to singular STRIPE_WEBHOOK_SECRET if set
    """
    secrets: list[str] = []
    if settings.STRIPE_WEBHOOK_SECRETS:
        secrets.extend([s.strip() for s in settings.STRIPE_WEBHOOK_SECRETS.split(",") if s.strip()])
    elif settings.STRIPE_WEBHOOK_SECRET:
        secrets.append(settings.STRIPE_WEBHOOK_SECRET.strip())
    return secrets
