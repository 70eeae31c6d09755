"""
Application configuration using pydantic-settings.
All environment variables are loaded from .env file with sensible defaults.
"""

from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # Application
    APP_NAME: str = "CampusMarket Escrow Ledger"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    API_PREFIX: str = "/api/v1"
    SEED_DEMO_DATA: bool = True

    # Database (SQLite for local dev, PostgreSQL in production)
    DATABASE_URL: str = "sqlite:///./campusmarket.db"

    # Redis
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_ENABLED: bool = False  # Disable by default for easy local dev
    REDIS_KEY_PREFIX: str = "campusmarket"

    # CORS
    CORS_ORIGINS: list[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
        "http://127.0.0.1:3000",
    ]

    # API Security
    API_KEY: str = "campusmarket-dev-key"

    # M-Pesa Daraja
    MPESA_ENV: str = "sandbox"
    MPESA_CONSUMER_KEY: str = ""
    MPESA_CONSUMER_SECRET: str = ""
    MPESA_SHORTCODE: str = ""
    MPESA_PASSKEY: str = ""
    MPESA_CALLBACK_URL: str = ""
    # Secret path segment appended to MPESA_CALLBACK_URL; callbacks without it are never applied
    MPESA_CALLBACK_TOKEN: str = ""
    # Safaricom source addresses; empty disables the check
    MPESA_CALLBACK_ALLOWED_IPS: list[str] = []
    # A new STK push is refused while the previous prompt may still be answered
    MPESA_CHARGE_RETRY_SECONDS: int = 120
    MPESA_TRANSACTION_DESC: str = "CampusMarket Payment"
    MPESA_REFERENCE_MAX_LENGTH: int = 12
    MPESA_COUNTRY_CODE: str = "254"
    MPESA_TOKEN_TTL_SECONDS: int = 3300  # Daraja tokens live for an hour
    MPESA_TIMEOUT_SECONDS: float = 30.0

    # Commission rates (percent of gross) per seller tier
    COMMISSION_RATE_FREE: Decimal = Decimal("10")
    COMMISSION_RATE_PREMIUM: Decimal = Decimal("6")
    COMMISSION_RATE_TRUSTED: Decimal = Decimal("5")

    # Wallet & escrow
    REFERRAL_CREDIT_AMOUNT: Decimal = Decimal("50")
    AUTO_RELEASE_DAYS: int = 7
    MIN_WITHDRAWAL_AMOUNT: Decimal = Decimal("100")
    PENDING_PAYMENT_EXPIRY_HOURS: int = 24

    # Background jobs
    SCHEDULER_ENABLED: bool = True
    AUTO_RELEASE_SWEEP_MINUTES: int = 15

    # Client-side payment confirmation polling (3s x 40 = two minutes)
    PAYMENT_POLL_INTERVAL_SECONDS: float = 3.0
    PAYMENT_POLL_MAX_ATTEMPTS: int = 40

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
    }


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance to avoid re-reading .env on every call."""
    return Settings()
