"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the API, the worker and
the in-process commit scheduler.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation."""

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # Database Configuration
    # DATABASE_URL wins over the POSTGRES_* parts when set (tests use sqlite).
    DATABASE_URL: Optional[str] = Field(default=None)
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="commitpulse")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=10)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # Redis Configuration
    REDIS_URL: str = Field(default="redis://redis:6379/0")

    # Token Encryption (GitHub personal tokens are stored encrypted)
    TOKEN_ENCRYPTION_KEY: Optional[str] = Field(default=None)

    # JWT Authentication - REQUIRED for token signing
    SECRET_KEY: str = Field(
        default=...,  # Required - no default
        description="JWT signing key. Must be cryptographically secure (32+ chars). "
                    "Generate with: python -c \"import secrets; print(secrets.token_urlsafe(32))\""
    )

    # API Configuration
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=8000)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # External API Configuration
    EXTERNAL_API_TIMEOUT: int = Field(default=30)

    # GitHub
    GITHUB_API_BASE: str = Field(default="https://api.github.com")
    GITHUB_USER_AGENT: str = Field(default="commitpulse-engine")
    # Rate-limited calls are retried only when the advertised wait is short.
    GITHUB_RATE_LIMIT_RETRIES: int = Field(default=2, ge=0, le=5)
    GITHUB_RATE_LIMIT_MAX_WAIT_S: int = Field(default=60)

    # Commit Scheduler
    SCHEDULER_ENABLED: bool = Field(default=True)
    SCHEDULER_TIMEZONE: str = Field(default="Asia/Kolkata")
    SCHEDULER_DAILY_BATCH_TIME: str = Field(default="10:00")
    SCHEDULER_CLEANUP_TIME: str = Field(default="00:00")
    # Intervals become crontabs: a divisor of 60, or whole hours dividing a day
    SCHEDULER_WINDOW_CHECK_INTERVAL_MINUTES: int = Field(default=60, ge=1)
    SCHEDULER_WINDOW_TOLERANCE_MINUTES: int = Field(default=5, ge=0, le=30)
    SCHEDULER_RETRY_INTERVAL_MINUTES: int = Field(default=60, ge=1)
    # pending/retrying records older than this are treated as failed by the retry sweep
    STALE_RECORD_MINUTES: int = Field(default=30)
    COMMIT_RETENTION_DAYS: int = Field(default=30)
    DEFAULT_MAX_RETRIES: int = Field(default=1, ge=0)

    # Plans
    TRIAL_LENGTH_DAYS: int = Field(default=15)
    STREAK_MAINTENANCE_MAX_DAYS_BACK: int = Field(default=15)
    BACKFILL_MAX_DAYS: int = Field(default=365)

    # Bulk generation
    BULK_COMMIT_DELAY_S: float = Field(default=1.0)
    PATTERN_COMMIT_DELAY_S: float = Field(default=0.2)
    PATTERN_FAILURE_THRESHOLD: float = Field(default=0.2, ge=0.0, le=1.0)
    # Enqueue bulk runs on Celery instead of running them inside the request.
    BULK_JOBS_ASYNC: bool = Field(default=False)
    BULK_JOB_LOCK_TTL_S: int = Field(default=3600)

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")

    # Email Configuration
    EMAIL_ENABLED: bool = Field(default=False)
    SMTP_SERVER: str = Field(default="localhost")
    SMTP_PORT: int = Field(default=587)
    SMTP_USERNAME: Optional[str] = Field(default=None)
    SMTP_PASSWORD: Optional[str] = Field(default=None)
    FROM_EMAIL: str = Field(default="noreply@commitpulse.dev")
    FROM_NAME: str = Field(default="CommitPulse")

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # CORS - comma-separated list of allowed origins for production
    CORS_ORIGINS: Optional[str] = Field(default=None)


# Global settings instance
settings = Settings()
