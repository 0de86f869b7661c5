from functools import lru_cache
from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global application settings."""

    # Application
    ENVIRONMENT: Literal["local", "test", "development", "production"] = "local"
    LOG_LEVEL: str = "INFO"
    SERVICE_NAME: str = "checkout"

    # Database
    DATABASE_URL: str = "postgresql+psycopg://localhost:5432/checkout"
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800

    # Auth (tokens are issued elsewhere; we only verify them)
    SUPABASE_JWT_SECRET: str = "test-jwt-secret"

    # Redis (arq worker)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Payment gateway
    GATEWAY_API_BASE_URL: str = "https://api.stripe.com/v1"
    GATEWAY_SECRET_KEY: str = ""
    GATEWAY_WEBHOOK_SECRET: str = ""
    GATEWAY_WEBHOOK_TOLERANCE_SECONDS: int = 300
    FRONTEND_URL: str = "http://localhost:3000"

    # Carrier
    CARRIER_BASE_URL: str = "https://api-sandbox.dhl.com"
    CARRIER_API_KEY: str = ""
    CARRIER_ACCOUNT_NUMBER: str = ""

    # Default sender (warehouse) used for outbound shipments
    SENDER_COMPANY_NAME: str = "Clothes Shipping Store"
    SENDER_CONTACT_NAME: str = "Shipping Manager"
    SENDER_EMAIL: str = "shipping@example.com"
    SENDER_PHONE: str = "+86-000-0000-0000"
    SENDER_ADDRESS_LINE1: str = "Warehouse Address"
    SENDER_CITY: str = "Shenzhen"
    SENDER_POSTAL_CODE: str = "518000"
    SENDER_COUNTRY_CODE: str = "CN"

    # Exchange rates
    EXCHANGE_RATE_API_URL: str = "https://api.exchangerate-api.com/v4/latest"
    EXCHANGE_RATE_API_KEY: Optional[str] = None
    RATE_MEMORY_TTL_SECONDS: int = 60 * 60
    RATE_STORE_TTL_SECONDS: int = 24 * 60 * 60
    RATE_REFRESH_ENABLED: bool = True
    RATE_REFRESH_INTERVAL_SECONDS: int = 4 * 60 * 60
    RATE_REFRESH_INITIAL_DELAY_SECONDS: int = 5

    # Timeout applied to every outbound provider call (seconds)
    EXTERNAL_TIMEOUT_SECONDS: float = 10.0

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
    def carrier_enabled(self) -> bool:
        return bool(self.CARRIER_API_KEY)


@lru_cache
def get_settings() -> Settings:
    """
    Return the global settings instance, cached.
    """
    return Settings()
