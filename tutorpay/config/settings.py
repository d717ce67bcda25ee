"""Application settings using Pydantic for environment-based configuration."""
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Paystack Configuration
    paystack_secret_key: str = Field(..., description="Paystack secret API key (sk_test_...)")
    paystack_webhook_secret: Optional[str] = Field(
        default=None, description="Secret used to sign Paystack webhook payloads"
    )
    paystack_base_url: str = Field(
        default="https://api.paystack.co", description="Paystack API base URL"
    )
    paystack_timeout_seconds: float = Field(
        default=30.0, description="Timeout for a single Paystack API call (seconds)"
    )
    paystack_currency: str = Field(default="KES", description="Settlement currency")
    paystack_channels: str = Field(
        default="mobile_money,card",
        description="Checkout channels offered on initialize (comma-separated)",
    )
    webhook_signature_header: str = Field(
        default="x-paystack-signature", description="Header carrying the webhook HMAC"
    )

    # Database Configuration
    database_url: str = Field(..., description="Async SQLAlchemy connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: Optional[str] = Field(
        default=None, description="Redis URL for cross-process reference locks"
    )
    redis_lock_timeout: int = Field(default=30, description="Reference lock timeout (seconds)")

    # Application Configuration
    app_name: str = Field(default="tutorpay", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode (exposes error detail)")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    # Security
    api_secret: Optional[str] = Field(
        default=None, description="Shared API key for client routes (disabled when unset)"
    )
    api_key_header: str = Field(default="X-API-Key", description="API key header name")

    # Rate limiting (per client address, fixed windows)
    rate_limit_enabled: bool = Field(default=True, description="Enforce rate limits")
    rate_limit_api_requests: int = Field(
        default=100, description="Client route requests allowed per API window"
    )
    rate_limit_api_window_seconds: int = Field(
        default=900, description="API rate limit window (seconds)"
    )
    rate_limit_payments_per_minute: int = Field(
        default=10, description="Payment route requests allowed per minute"
    )
    rate_limit_webhooks_per_minute: int = Field(
        default=1000, description="Webhook deliveries accepted per minute"
    )

    # Payment rules
    min_amount: Decimal = Field(default=Decimal("1"), description="Smallest accepted amount")
    max_amount: Decimal = Field(default=Decimal("1000000"), description="Largest accepted amount")

    # Pending sweeper
    pending_sweep_interval_seconds: int = Field(
        default=300, description="Seconds between sweeps of stale pending payments"
    )
    pending_sweep_min_age_seconds: int = Field(
        default=600, description="Only pending payments older than this are re-verified"
    )
    pending_sweep_batch_size: int = Field(default=100, description="Max payments per sweep")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("paystack_secret_key")
    @classmethod
    def validate_paystack_key(cls, v: str) -> str:
        """Validate that the Paystack secret key has a known prefix."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Paystack secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @model_validator(mode="after")
    def validate_key_matches_environment(self) -> "Settings":
        """Refuse live keys outside production and test keys inside it."""
        if self.is_production and self.is_test_mode:
            raise ValueError("Production environment configured with a Paystack test key")
        if not self.is_production and self.paystack_secret_key.startswith("sk_live_"):
            raise ValueError(f"{self.app_env} environment configured with a Paystack live key")
        if self.min_amount <= 0 or self.max_amount < self.min_amount:
            raise ValueError("Amount bounds must satisfy 0 < min_amount <= max_amount")
        limits = (
            self.rate_limit_api_requests,
            self.rate_limit_api_window_seconds,
            self.rate_limit_payments_per_minute,
            self.rate_limit_webhooks_per_minute,
        )
        if min(limits) <= 0:
            raise ValueError("Rate limits and windows must be positive")
        return self

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    def get_channels_list(self) -> List[str]:
        """Parse checkout channels from comma-separated string."""
        return [channel.strip() for channel in self.paystack_channels.split(",") if channel.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Paystack test mode."""
        return self.paystack_secret_key.startswith("sk_test_")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
