"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Razorpay Configuration
    razorpay_key_id: str = Field(..., description="Razorpay key id (rzp_test_...)")
    razorpay_key_secret: str = Field(..., description="Razorpay key secret, signs payment callbacks")
    razorpay_webhook_secret: str = Field(..., description="Razorpay webhook signing secret")
    razorpay_api_base: str = Field(
        default="https://api.razorpay.com/v1", description="Razorpay REST API base URL"
    )
    gateway_timeout_seconds: float = Field(default=10.0, description="Gateway HTTP timeout")
    gateway_retry_max_attempts: int = Field(default=3, description="Max gateway call attempts")
    gateway_retry_base_delay: float = Field(
        default=0.5, description="Base delay for gateway retry backoff (seconds)"
    )
    currency: str = Field(default="INR", description="Settlement currency")

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL (async driver)")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: str = Field(..., description="Redis connection URL")

    # Payment lifecycle
    payment_timeout_minutes: int = Field(
        default=30, description="Minutes before an unpaid transaction expires"
    )
    max_guests_per_registration: int = Field(
        default=10, description="Upper bound on guests in one registration intent"
    )

    # QR credentials
    qr_signing_key: str = Field(..., description="HMAC key for QR check-in tokens")
    qr_token_ttl_hours: int = Field(
        default=24,
        description="Token lifetime after event start (0 keeps tokens valid until revoked)",
    )

    # Check-in
    checkin_window_enforced: bool = Field(default=True, description="Reject scans outside the window")
    checkin_window_before_minutes: int = Field(
        default=120, description="Minutes before event start when check-in opens"
    )
    checkin_window_after_minutes: int = Field(
        default=360, description="Minutes after event start when check-in closes"
    )
    stats_cache_ttl_seconds: int = Field(default=300, description="Check-in stats cache TTL")

    # Workers
    outbox_batch_size: int = Field(default=100, description="Outbox events per publish batch")
    outbox_poll_interval_seconds: float = Field(default=1.0, description="Outbox polling interval")
    reconciliation_interval_seconds: int = Field(
        default=300, description="Interval between stale transaction sweeps"
    )
    notification_webhook_url: Optional[str] = Field(
        default=None, description="Notification service endpoint for outbox events"
    )

    # Application Configuration
    app_name: str = Field(default="event-settlement", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="CORS allowed origins (comma-separated)"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("razorpay_key_id")
    @classmethod
    def validate_razorpay_key(cls, v: str) -> str:
        """Validate that the Razorpay key id carries a mode prefix."""
        if not v.startswith("rzp_test_") and not v.startswith("rzp_live_"):
            raise ValueError(
                "Invalid Razorpay key id format. Must start with 'rzp_test_' or 'rzp_live_'"
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

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate currency format."""
        if len(v) != 3:
            raise ValueError("Currency must be 3-letter code")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Razorpay test mode."""
        return self.razorpay_key_id.startswith("rzp_test_")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
