"""
Configuration management using pydantic-settings.
All settings loaded from environment variables (12-factor app).
"""

from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # QuickBooks OAuth2
    intuit_client_id: str = Field(default="", description="Intuit OAuth2 client ID")
    intuit_client_secret: str = Field(default="", description="Intuit OAuth2 client secret")
    intuit_redirect_uri: str = Field(
        default="http://localhost:8000/api/v1/quickbooks/callback",
        description="OAuth2 redirect URI",
    )
    intuit_env: str = Field(default="sandbox", description="Intuit environment (sandbox|production)")
    intuit_scopes: str = Field(
        default="com.intuit.quickbooks.accounting",
        description="Space-separated OAuth2 scopes",
    )
    intuit_minor_version: int = Field(default=65, description="QuickBooks API minor version")
    token_refresh_margin_seconds: int = Field(
        default=300, ge=0, description="Refresh access tokens this close to expiry"
    )

    # Stripe
    stripe_webhook_secret: str = Field(default="", description="Stripe webhook signing secret")
    stripe_webhook_tolerance_seconds: int = Field(
        default=300, ge=0, description="Maximum accepted webhook timestamp age"
    )

    # Database
    db_path: str = Field(default="./data/steadybooks.duckdb", description="DuckDB file path")

    # API
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_reload: bool = Field(default=True, description="Enable hot reload")
    cors_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="CORS allowed origins (comma-separated)",
    )

    # Logging
    log_level: str = Field(default="info", description="Log level")
    log_format: str = Field(default="json", description="Log format (json|console)")

    # Resilience: retry
    retry_max_attempts: int = Field(default=3, ge=1, description="Total attempts per call")
    retry_initial_delay_ms: int = Field(default=100, ge=0, description="First backoff delay")
    retry_max_delay_ms: int = Field(default=5000, ge=0, description="Backoff delay cap")

    # Resilience: circuit breaker (outbound API only)
    breaker_failure_ratio: float = Field(
        default=0.5, gt=0.0, le=1.0, description="Failure ratio that opens the breaker"
    )
    breaker_sampling_duration_seconds: int = Field(
        default=30, ge=1, description="Rolling window for failure ratio"
    )
    breaker_minimum_throughput: int = Field(
        default=10, ge=1, description="Minimum samples before the breaker can open"
    )
    breaker_break_duration_seconds: int = Field(
        default=30, ge=1, description="How long the breaker stays open"
    )

    # Resilience: per-attempt timeouts
    http_timeout_seconds: float = Field(default=10.0, gt=0.0, description="Outbound API attempt timeout")
    database_timeout_seconds: float = Field(default=30.0, gt=0.0, description="Storage attempt timeout")

    # Development
    dev_mode: bool = Field(default=True, description="Development mode")
    testing: bool = Field(default=False, description="Testing mode")

    @field_validator("cors_origins")
    @classmethod
    def parse_cors_origins(cls, v: str) -> List[str]:
        """Parse comma-separated CORS origins."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @property
    def intuit_auth_url(self) -> str:
        """Intuit authorization endpoint (same host for sandbox and production)."""
        return "https://appcenter.intuit.com/connect/oauth2"

    @property
    def intuit_token_url(self) -> str:
        """Construct Intuit token URL."""
        return "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"

    @property
    def intuit_api_base_url(self) -> str:
        """Construct QuickBooks API base URL."""
        if self.intuit_env == "production":
            return "https://quickbooks.api.intuit.com"
        return "https://sandbox-quickbooks.api.intuit.com"


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to ensure singleton behavior.
    """
    return Settings()
