"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
No secrets are hardcoded here; the defaults are safe for local development.
"""

from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "creditflow"
    VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./creditflow.db"
    DATABASE_ECHO: bool = False

    # Redis / Celery
    REDIS_URL: str = "redis://localhost:6379/0"
    CELERY_BROKER_URL: str = ""
    CELERY_RESULT_BACKEND: str = ""

    # Logging and tracing
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    OTLP_ENDPOINT: Optional[str] = None

    # Credits granted on first identity sync, keyed by subscription tier
    SIGNUP_CREDITS: dict[str, int] = {"starter": 5, "growth": 50, "pro": 200}
    DEFAULT_SIGNUP_CREDITS: int = 5

    # Monthly top-up per tier (0 disables the grant for that tier)
    MONTHLY_CREDIT_GRANTS: dict[str, int] = {"starter": 5, "growth": 50, "pro": 200}

    # Generation jobs
    JOB_MAX_ATTEMPTS: int = 3
    JOB_LEASE_SECONDS: int = 300
    JOB_SWEEP_INTERVAL_SECONDS: int = 60
    JOB_SWEEP_BATCH_SIZE: int = 100
    JOB_AUTO_REQUEUE: bool = True
    JOB_POLL_INTERVAL_SECONDS: int = 2
    # Backoff before a failed job is offered to workers again
    JOB_RETRY_INITIAL_DELAY_SECONDS: float = 5.0
    JOB_RETRY_MAX_DELAY_SECONDS: float = 300.0
    JOB_RETRY_BACKOFF_MULTIPLIER: float = 2.0

    # Circuit breakers: failure threshold / cooldown seconds / call timeout seconds
    IDENTITY_BREAKER_THRESHOLD: int = 2
    IDENTITY_BREAKER_COOLDOWN_SECONDS: float = 60.0
    IDENTITY_BREAKER_TIMEOUT_SECONDS: float = 10.0
    DATASTORE_BREAKER_THRESHOLD: int = 3
    DATASTORE_BREAKER_COOLDOWN_SECONDS: float = 30.0
    DATASTORE_BREAKER_TIMEOUT_SECONDS: float = 5.0
    SUBSCRIPTION_BREAKER_THRESHOLD: int = 2
    SUBSCRIPTION_BREAKER_COOLDOWN_SECONDS: float = 60.0
    SUBSCRIPTION_BREAKER_TIMEOUT_SECONDS: float = 10.0

    # Identity provider
    IDENTITY_API_BASE_URL: str = "https://api.whop.com/api/v5"
    IDENTITY_API_KEY: str = ""
    IDENTITY_CACHE_TTL_SECONDS: int = 300
    IDENTITY_CACHE_MAX_ENTRIES: int = 10000
    # Provider product id -> subscription tier; unmapped products count as starter
    IDENTITY_PRODUCT_TIERS: dict[str, str] = {}

    # Payment webhooks
    PAYMENT_WEBHOOK_SECRET: str = ""
    WEBHOOK_SIGNATURE_REQUIRED: bool = True
    WEBHOOK_SIGNATURE_HEADER: str = "whop-signature"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

    @property
    def celery_broker(self) -> str:
        return self.CELERY_BROKER_URL or self.REDIS_URL

    @property
    def celery_backend(self) -> str:
        return self.CELERY_RESULT_BACKEND or self.REDIS_URL


settings = Settings()
