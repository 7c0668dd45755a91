# File: src/subscription_ledger/config.py

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class PostgresConfig(BaseModel):
    user: str = "postgres"
    password: str = "postgres"
    host: str = "localhost"
    port: int = 5432
    db: str = "billing"

    pool_size: int = 5
    max_overflow: int = 5
    pool_timeout: int = 30
    pool_recycle: int = 1800
    pool_pre_ping: bool = True
    application_name: str = "subscription_ledger"

    def get_pg_dsn(self) -> str:
        """Builds the SQLAlchemy DSN from the fields of this object."""
        return f"postgresql+asyncpg://{self.user}:{self.password}@{self.host}:{self.port}/{self.db}"


class StripeConfig(BaseModel):
    api_key: str | None = None
    webhook_secret: str | None = None
    signature_tolerance: int = Field(300, description="Max age of a signed webhook, seconds")
    request_timeout: float = 10.0
    max_network_retries: int = 2
    success_url: str = "http://localhost:3000/billing/success"
    cancel_url: str = "http://localhost:3000/billing/cancel"


class BillingConfig(BaseModel):
    # Replaces the old process-wide PLANS_DISABLED switch: limits are not enforced.
    plans_disabled: bool = False
    max_payment_retries: int = 3
    monthly_period_days: int = 30
    yearly_period_days: int = 365
    default_currency: str = "USD"
    default_plan_name: str = "free"
    webhook_verify_timeout: float = 5.0


class LedgerConfig(BaseModel):
    """Single object passed explicitly to `create_ledger_client`."""
    postgres: PostgresConfig = Field(default_factory=PostgresConfig)
    stripe: StripeConfig = Field(default_factory=StripeConfig)
    billing: BillingConfig = Field(default_factory=BillingConfig)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter='__',
        extra='ignore'
    )

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    postgres: PostgresConfig = Field(default_factory=PostgresConfig)
    stripe: StripeConfig = Field(default_factory=StripeConfig)
    billing: BillingConfig = Field(default_factory=BillingConfig)

    def to_ledger_config(self) -> LedgerConfig:
        return LedgerConfig(postgres=self.postgres, stripe=self.stripe, billing=self.billing)


_cached_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Returns the settings singleton, creating it on first call.
    Keeps validation errors out of import time.
    """
    global _cached_settings
    if _cached_settings is None:
        _cached_settings = Settings()
    return _cached_settings
