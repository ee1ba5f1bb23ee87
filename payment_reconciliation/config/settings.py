"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIDTRANS_SANDBOX_BASE = "https://api.sandbox.midtrans.com"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Midtrans Configuration
    midtrans_server_key: str = Field(..., description="Midtrans server key (Basic auth user)")
    midtrans_base_url: str = Field(
        default=MIDTRANS_SANDBOX_BASE, description="Midtrans API base URL"
    )
    gateway_timeout_seconds: float = Field(
        default=10.0, description="Timeout for a single gateway status request"
    )
    gateway_retry_max_attempts: int = Field(
        default=3, description="Max attempts for transient gateway failures"
    )

    # Database Configuration
    database_url: str = Field(..., description="Async SQLAlchemy database URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    webhook_dedup_ttl_seconds: int = Field(
        default=86400 * 7, description="How long processed webhook keys are remembered"
    )

    # Reconciliation
    payment_timeout_minutes: int = Field(
        default=1440, description="Fallback payment timeout when no setting is stored"
    )
    poll_interval_seconds: float = Field(default=2.0, description="PollLoop tick interval")
    presentation_grace_seconds: float = Field(
        default=1.0, description="Delay between 'confirmed' and 'show_confirmation'"
    )
    presentation_progress_seconds: float = Field(
        default=1.0, description="Duration of the confirmation progress indicator"
    )
    expiry_sweep_interval_seconds: float = Field(
        default=60.0, description="Interval of the server-side expiry sweep"
    )

    # Application Configuration
    app_name: str = Field(default="payment-reconciliation", description="Application name")
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
    storefront_base_url: str = Field(
        default="http://localhost:8000", description="Base URL used by the storefront client"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("midtrans_server_key")
    @classmethod
    def validate_server_key(cls, v: str) -> str:
        """Strip whitespace copied along with the key and reject empty keys."""
        v = v.strip()
        if not v:
            raise ValueError("MIDTRANS_SERVER_KEY must not be empty")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("payment_timeout_minutes")
    @classmethod
    def validate_payment_timeout(cls, v: int) -> int:
        """Timeouts below one minute are meaningless; fall back to a day."""
        return v if v >= 1 else 1440

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_sandbox(self) -> bool:
        """Check if the gateway base URL points at the sandbox."""
        return "sandbox" in self.midtrans_base_url


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
