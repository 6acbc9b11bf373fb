from functools import lru_cache
from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global application settings."""

    # Application
    ENVIRONMENT: Literal["local", "development", "production"] = "local"
    LOG_LEVEL: str = "INFO"
    API_BASE_URL: str = "http://localhost:8000"
    APP_BASE_URL: str = "https://experts-coaching-hub.com"
    CHECKOUT_TITLE: str = "Experts Coaching Hub"

    # Database
    DATABASE_URL: str
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800

    # Auth
    # Placeholder keeps local/test runs working; real deployments override via env.
    SUPABASE_JWT_SECRET: str = "test-jwt-secret"

    # PayChangu
    PAYCHANGU_SECRET_KEY: Optional[str] = None
    PAYCHANGU_API_BASE_URL: str = "https://api.paychangu.com"
    PAYCHANGU_DEFAULT_CURRENCY: str = "MWK"
    PAYCHANGU_CALLBACK_URL: Optional[str] = None
    PAYCHANGU_TIMEOUT_SECONDS: float = 30.0

    # Renewals
    GRACE_PERIOD_DAYS: int = 3
    RENEWAL_MAX_ATTEMPTS: int = 3
    RENEWAL_BATCH_SIZE: int = 25
    RENEWAL_CRON_SECRET: Optional[str] = None
    RENEWAL_CRON_MINUTES: set[int] = {0}
    SUBSCRIPTION_ALERT_WEBHOOK: Optional[str] = None
    ALERT_TIMEOUT_SECONDS: float = 10.0

    # Worker
    REDIS_URL: str = "redis://localhost:6379/0"

    # Wallet / withdrawals
    CREDIT_CONVERSION_RATE: int = 100  # MWK per credit
    WITHDRAWAL_MIN_CREDITS: int = 10
    WITHDRAWAL_MAX_CREDITS: int = 10000
    WITHDRAWAL_DAILY_LIMIT_CREDITS: int = 50000
    WITHDRAWAL_AUTO_PAYOUT: bool = True
    WITHDRAWAL_RECONCILE_MIN_AGE_MINUTES: int = 5
    WITHDRAWAL_RECONCILE_BATCH_SIZE: int = 50
    WITHDRAWAL_RECONCILE_CRON_MINUTES: set[int] = {0, 10, 20, 30, 40, 50}

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("DATABASE_URL")
    @classmethod
    def assemble_db_connection(cls, v: Optional[str]) -> str:
        if isinstance(v, str):
            if v.startswith("postgresql://"):
                return v.replace("postgresql://", "postgresql+psycopg://", 1)
        return v

    @property
    def paychangu_callback_url(self) -> str:
        if self.PAYCHANGU_CALLBACK_URL:
            return self.PAYCHANGU_CALLBACK_URL
        return f"{self.API_BASE_URL.rstrip('/')}/payments/webhooks/paychangu"


@lru_cache
def get_settings() -> Settings:
    """
    Return the global settings instance, cached.
    """
    return Settings()
