"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the application.
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
    # DATABASE_URL wins when set (e.g. sqlite:///:memory: for tests).
    DATABASE_URL: Optional[str] = Field(default=None)
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="lesson_billing")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # Redis Configuration (empty string disables Redis-backed state)
    REDIS_URL: str = Field(default="redis://redis:6379/0")

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Cache Configuration
    CACHE_TTL_DEFAULT: int = Field(default=300)  # 5 minutes
    CACHE_TTL_SUBSCRIPTION: int = Field(default=60)

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # CORS - comma-separated list of allowed origins for production
    CORS_ORIGINS: Optional[str] = Field(default=None)

    # Web app base URL (default checkout redirect targets).
    WEB_APP_BASE_URL: str = Field(default="http://localhost:3000")

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = Field(default=None)
    STRIPE_WEBHOOK_SECRET: Optional[str] = Field(default=None)
    # Max age (seconds) of a signed webhook timestamp.
    STRIPE_WEBHOOK_TOLERANCE_S: int = Field(default=300)
    STRIPE_PRICE_MONTHLY_ID: Optional[str] = Field(default=None)
    STRIPE_PRICE_ANNUAL_ID: Optional[str] = Field(default=None)
    STRIPE_API_TIMEOUT_S: int = Field(default=10, ge=1, le=80)
    STRIPE_MAX_NETWORK_RETRIES: int = Field(default=2, ge=0, le=5)

    # Subscription reconciliation policy
    # Off by default: last write wins regardless of event age.
    BILLING_REJECT_STALE_EVENTS: bool = Field(default=False)
    BILLING_TRIAL_DATES_TAKE_PRECEDENCE: bool = Field(default=True)
    BILLING_ZERO_AMOUNT_PROMO_IS_PROMO: bool = Field(default=True)

    # Promo codes
    PROMO_DAYS_PER_FREE_MONTH: int = Field(default=30, ge=28, le=31)

    # Upstream circuit breaker
    CIRCUIT_BREAKER_FAILURE_THRESHOLD: int = Field(default=3, ge=1)
    CIRCUIT_BREAKER_RESET_S: int = Field(default=300, ge=1)  # 5 minutes

    # Sentry Error Tracking
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.1)  # 10% of transactions


# Global settings instance
settings = Settings()
