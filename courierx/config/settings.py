"""Application settings using Pydantic for environment-based configuration."""
from decimal import Decimal
from functools import lru_cache
from typing import Dict, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(..., description="Database URL (postgresql+asyncpg or sqlite+aiosqlite)")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=40, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    rate_limit_backend: str = Field(
        default="memory", description="Rate limiter backend (memory/redis)"
    )

    # Authentication
    jwt_secret: str = Field(..., description="Secret used to verify identity provider tokens")
    jwt_algorithm: str = Field(default="HS256", description="Token signing algorithm")
    jwt_audience: str | None = Field(default=None, description="Expected token audience")
    cron_secret: str | None = Field(
        default=None, description="Shared secret for scheduler-triggered jobs"
    )

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")

    # Domestic carrier
    carrier_api_url: str = Field(
        default="https://api.domestic-carrier.example", description="Domestic carrier tracking API"
    )
    carrier_api_key: str | None = Field(default=None, description="Domestic carrier API key")
    carrier_timeout_seconds: float = Field(default=10.0, description="Carrier HTTP timeout")
    international_carrier_name: str = Field(
        default="CourierX International", description="Carrier recorded on dispatch"
    )

    # Storage
    storage_url: str = Field(
        default="http://localhost:54321/storage/v1", description="Object storage endpoint"
    )
    storage_api_key: str | None = Field(default=None, description="Object storage API key")
    storage_bucket: str = Field(default="shipment-documents", description="Upload bucket")

    # Application Configuration
    app_name: str = Field(default="courierx", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    # Rate Limiting
    rate_limit_window_seconds: int = Field(default=60, description="Sliding window length")
    rate_limits: Dict[str, int] = Field(
        default_factory=lambda: {
            "booking": 5,
            "quality_check": 3,
            "package": 3,
            "approve_dispatch": 3,
            "default": 5,
        },
        description="Requests allowed per window, keyed by action",
    )

    # Wallet
    wallet_min_recharge: Decimal = Field(default=Decimal("500"), description="Minimum top-up (INR)")
    wallet_min_balance: Decimal = Field(
        default=Decimal("1000"), description="Available balance required to confirm a booking"
    )
    gst_rate: Decimal = Field(default=Decimal("0.18"), description="GST rate applied to receipts")

    # Workers
    simulation_enabled: bool = Field(default=True, description="Allow the simulation worker to run")
    worker_batch_size: int = Field(default=50, description="Shipments processed per worker run")
    worker_interval_seconds: float = Field(default=300.0, description="Scheduler interval")
    stuck_threshold_hours: int = Field(default=48, description="Hours before a shipment is flagged")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate that the Stripe key is a secret key."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
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

    @field_validator("rate_limit_backend")
    @classmethod
    def validate_rate_limit_backend(cls, v: str) -> str:
        if v not in ("memory", "redis"):
            raise ValueError("rate_limit_backend must be 'memory' or 'redis'")
        return v

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    def rate_limit_for(self, action: str) -> int:
        return self.rate_limits.get(action, self.rate_limits.get("default", 5))

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
