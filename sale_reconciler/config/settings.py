"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(..., description="SQLAlchemy async connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")
    storage_timeout_seconds: float = Field(
        default=5.0, description="Upper bound for one ledger storage transaction"
    )

    # Redis Configuration (optional: enables cross-instance event broadcast)
    redis_url: Optional[str] = Field(default=None, description="Redis connection URL")
    event_channel_prefix: str = Field(default="event:", description="Redis pub/sub channel prefix")
    redis_timeout_seconds: float = Field(
        default=1.0, description="Upper bound for one Redis publish, ping or connect"
    )

    # Payment Gateway Webhooks
    webhook_secret: str = Field(..., description="Pre-shared HMAC secret for payment webhooks")
    webhook_max_age_seconds: int = Field(
        default=300, description="Maximum accepted age of a signed notification"
    )
    webhook_relaxed_topics: str = Field(
        default="merchant_order",
        description="Topics that skip signature checks outside production (comma-separated)",
    )
    gateway_api_url: str = Field(
        default="https://api.mercadopago.com", description="Payment gateway API base URL"
    )
    gateway_access_token: str = Field(default="", description="Payment gateway access token")
    gateway_timeout_seconds: float = Field(default=10.0, description="Gateway request timeout")
    gateway_retry_max_attempts: int = Field(default=3, description="Gateway lookup attempts")

    # Carrier (pre-shipment)
    carrier_api_url: str = Field(default="", description="Carrier API base URL")
    carrier_api_key: str = Field(default="", description="Carrier API key")
    carrier_timeout_seconds: float = Field(default=10.0, description="Carrier request timeout")

    # Notifications (transactional mail)
    mail_api_url: str = Field(default="", description="Mail provider API base URL")
    mail_api_key: str = Field(default="", description="Mail provider API key")
    mail_sender: str = Field(default="ventas@example.com", description="Sender address")
    mail_timeout_seconds: float = Field(default=10.0, description="Mail request timeout")

    # Sale Expiration
    sale_expiration_days: int = Field(
        default=3, ge=0, description="Days a pending sale may wait for payment"
    )
    expiration_payment_methods: str = Field(
        default="efectivo,transferencia",
        description="Payment methods eligible for expiration (comma-separated, empty = all)",
    )
    expiration_hour: int = Field(default=2, ge=0, le=23, description="Daily run hour")
    expiration_minute: int = Field(default=0, ge=0, le=59, description="Daily run minute")
    expiration_timezone: str = Field(
        default="America/Argentina/Buenos_Aires", description="Timezone of the daily run"
    )
    expiration_scheduler_enabled: bool = Field(
        default=True, description="Run the expiration scheduler inside the API process"
    )

    # Application Configuration
    app_name: str = Field(default="sale-reconciler", description="Application name")
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

    # Security
    admin_api_key: str = Field(default="", description="API key required by admin routes")
    api_key_header: str = Field(default="X-API-Key", description="API key header name")
    actor_header: str = Field(default="X-Actor", description="Header naming the acting admin")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("app_env")
    @classmethod
    def validate_app_env(cls, v: str) -> str:
        """Normalize environment name."""
        return v.strip().lower()

    @staticmethod
    def _split(value: str) -> List[str]:
        return [item.strip() for item in value.split(",") if item.strip()]

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return self._split(self.allowed_origins)

    def embedded_scheduler_active(self) -> bool:
        """
        Whether the API process should run the expiration scheduler.

        Every uvicorn worker runs its own lifespan, so with several workers
        the schedule belongs to the standalone ``sale-reconciler-expiration``
        process instead.
        """
        if not self.expiration_scheduler_enabled:
            return False
        return self.debug or self.api_workers <= 1

    def get_relaxed_topics(self) -> List[str]:
        """Topics allowed through without signature outside production."""
        return self._split(self.webhook_relaxed_topics)

    def get_expiration_payment_methods(self) -> List[str]:
        """Payment methods whose pending sales may expire."""
        return self._split(self.expiration_payment_methods)

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
