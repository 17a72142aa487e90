"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MPESA_BASE_URLS = {
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # M-Pesa (Daraja) Configuration
    mpesa_consumer_key: str = Field(..., description="Daraja app consumer key")
    mpesa_consumer_secret: str = Field(..., description="Daraja app consumer secret")
    mpesa_shortcode: str = Field(..., description="Business short code (paybill/till)")
    mpesa_passkey: str = Field(..., description="Lipa Na M-Pesa online passkey")
    mpesa_callback_url: str = Field(..., description="Public URL receiving STK callbacks")
    mpesa_environment: str = Field(default="sandbox", description="sandbox or production")
    mpesa_transaction_type: str = Field(
        default="CustomerPayBillOnline", description="STK push transaction type"
    )
    mpesa_timeout_seconds: float = Field(
        default=15.0, gt=0, description="Timeout for outbound provider calls (seconds)"
    )
    mpesa_token_expiry_margin_seconds: int = Field(
        default=60, ge=0, description="Refresh the access token this long before it expires"
    )
    mpesa_timezone: str = Field(
        default="Africa/Nairobi", description="Timezone used for the request timestamp"
    )
    mpesa_embed_payment_id_in_callback: bool = Field(
        default=True, description="Append the payment id to the callback URL"
    )

    # Database Configuration
    database_url: str = Field(..., description="Async SQLAlchemy connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: Optional[str] = Field(
        default=None, description="Redis URL for the shared access token cache"
    )

    # Application Configuration
    app_name: str = Field(default="hotspot-billing", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:3001",
        description="CORS allowed origins (comma-separated)"
    )

    # Pending payment sweep
    pending_query_after_seconds: int = Field(
        default=120, ge=0, description="Age before a pending payment is queried at the provider"
    )
    pending_max_query_attempts: int = Field(
        default=3, ge=0, description="Max provider status queries per pending payment"
    )
    pending_sweep_interval_seconds: float = Field(
        default=60.0, gt=0, description="Delay between pending sweeps"
    )
    pending_sweep_batch_size: int = Field(
        default=50, gt=0, description="Pending payments examined per sweep"
    )

    # Reporting
    recent_transactions_limit: int = Field(
        default=5, gt=0, description="Recent transactions shown on the dashboard"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("mpesa_environment")
    @classmethod
    def validate_mpesa_environment(cls, v: str) -> str:
        """Validate the Daraja environment name."""
        v = v.lower()
        if v not in MPESA_BASE_URLS:
            raise ValueError(
                f"Invalid M-Pesa environment. Must be one of: {sorted(MPESA_BASE_URLS)}"
            )
        return v

    @field_validator("mpesa_shortcode")
    @classmethod
    def validate_shortcode(cls, v: str) -> str:
        """Short codes are numeric."""
        v = v.strip()
        if not v.isdigit():
            raise ValueError("M-Pesa short code must contain digits only")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def mpesa_base_url(self) -> str:
        """Daraja base URL for the configured environment."""
        return MPESA_BASE_URLS[self.mpesa_environment]

    @property
    def uses_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
