from decimal import Decimal
from functools import lru_cache
from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global application settings."""

    # Application
    ENVIRONMENT: Literal["local", "test", "development", "production"] = "local"
    LOG_LEVEL: str = "INFO"
    TIMEZONE: str = "America/Toronto"
    CORS_ORIGINS: str = "*"  # comma-separated

    # Database
    DATABASE_URL: str
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800

    # Supabase auth (JWT verification only)
    SUPABASE_URL: str = "http://localhost"
    SUPABASE_JWT_SECRET: str = "test-jwt-secret"

    # Redis (rate limiting, realtime fan-out, arq). "memory://" keeps
    # everything in-process for local runs and tests.
    REDIS_URL: str = "memory://"

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = True
    CHECKOUT_RATE_LIMIT: str = "10/minute"

    # Payment gateway (Stripe)
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_API_BASE: str = "https://api.stripe.com/v1"
    GATEWAY_TIMEOUT_SECONDS: float = 15.0

    # Courier network (Uber Direct)
    UBER_CLIENT_ID: str = ""
    UBER_CLIENT_SECRET: str = ""
    UBER_CUSTOMER_ID: str = ""
    UBER_API_BASE: str = "https://api.uber.com/v1/customers"
    UBER_AUTH_URL: str = "https://auth.uber.com/oauth/v2/token"
    UBER_WEBHOOK_SECRET: str = ""
    COURIER_TIMEOUT_SECONDS: float = 15.0

    # Pricing & scheduling defaults (used when an organization has none)
    DEFAULT_TAX_RATE_PERCENT: Decimal = Decimal("14.975")
    DEFAULT_PREP_BUFFER_MINUTES: int = 30
    DELIVERY_FEE_CENTS: int = 599
    SERVICE_FEE_CENTS: int = 0
    DEFAULT_CURRENCY: str = "cad"

    # Dispatch / housekeeping
    DISPATCH_PENDING_WAIT_SECONDS: float = 10.0
    ABANDONED_ORDER_TTL_MINUTES: int = 120

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


@lru_cache
def get_settings() -> Settings:
    """
    Return the global settings instance, cached.
    """
    return Settings()
