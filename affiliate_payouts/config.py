from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional
from decimal import Decimal
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./affiliate_payouts.db"

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # App Settings
    APP_NAME: str = "Affiliate Payouts Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Currency normalization
    # Units of local currency per 1 USD. USD itself is implicit.
    CURRENCY_RATES: dict[str, Decimal] = {
        "GHS": Decimal("14"),
        "NGN": Decimal("1600"),
        "XOF": Decimal("600"),
        "XAF": Decimal("600"),
        "EUR": Decimal("0.92"),
        "GBP": Decimal("0.79"),
        "KES": Decimal("129.44"),
        "ZAR": Decimal("17.22"),
    }
    UNKNOWN_CURRENCY_POLICY: str = "reject"  # Options: reject, pass_through

    # Withdrawals
    MINIMUM_WITHDRAWAL_USD: Decimal = Decimal("8.00")
    DEFAULT_PAYOUT_CURRENCY: str = "GHS"
    WITHDRAWAL_WEEKDAY: Optional[int] = None  # 0=Monday .. 6=Sunday, None = any day

    # Payout providers
    PAYOUT_PROVIDERS: list[str] = ["PAYSTACK", "KORA"]
    PROVIDER_TIMEOUT_SECONDS: float = 30.0  # Per-transfer timeout
    MAX_PAYOUT_ATTEMPTS: int = 3  # Provider attempts per withdrawal (first try + reprocess passes)

    @field_validator('CORS_ORIGINS', 'PAYOUT_PROVIDERS', mode='before')
    @classmethod
    def parse_string_list(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [item.strip() for item in v.split(',') if item.strip()]
        return v

    @field_validator('PAYOUT_PROVIDERS')
    @classmethod
    def uppercase_providers(cls, v):
        return [p.upper() for p in v]

    @field_validator('CURRENCY_RATES', mode='before')
    @classmethod
    def parse_currency_rates(cls, v):
        if isinstance(v, str):
            v = json.loads(v)
        return {str(code).strip().upper(): Decimal(str(rate)) for code, rate in v.items()}

    @field_validator('UNKNOWN_CURRENCY_POLICY')
    @classmethod
    def validate_unknown_currency_policy(cls, v):
        policy = v.strip().lower()
        if policy not in ("reject", "pass_through"):
            raise ValueError("UNKNOWN_CURRENCY_POLICY must be 'reject' or 'pass_through'")
        return policy

    @field_validator('WITHDRAWAL_WEEKDAY')
    @classmethod
    def validate_weekday(cls, v):
        if v is not None and not 0 <= v <= 6:
            raise ValueError("WITHDRAWAL_WEEKDAY must be between 0 (Monday) and 6 (Sunday)")
        return v

    @property
    def cors_origins_list(self) -> list[str]:
        return self.CORS_ORIGINS

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
