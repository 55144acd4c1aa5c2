"""
Application Configuration
=========================

Centralized configuration using Pydantic Settings.
Loads from environment variables with validation.
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

    # Environment
    ENVIRONMENT: str = Field(default="development")

    # Server
    PORT: int = Field(default=8000, description="Port to bind to")

    # Development Settings
    DEV_AUTH_DISABLED: bool = Field(
        default=False,
        description="Disable authentication for local development/testing"
    )

    # Database
    DATABASE_URL: str = Field(default="")

    # Redis
    REDIS_URL: str = Field(default="redis://localhost:6379/0")

    # JWT Authentication (client-facing endpoints)
    JWT_SECRET: str = Field(default="change-this-secret-in-production")
    JWT_ALGORITHM: str = Field(default="HS256")
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(default=1440)  # 24 hours

    # Store webhooks
    STORE_A_WEBHOOK_SECRET: str = Field(default="")
    STORE_B_WEBHOOK_SECRET: str = Field(default="")

    # Product catalog
    MONTHLY_PLAN_ID: str = Field(default="monthly_subscription")
    YEARLY_PLAN_ID: str = Field(default="yearly_subscription")
    LIFETIME_PLAN_ID: str = Field(default="lifetime_subscription")
    TRIAL_PERIOD_DAYS: int = Field(default=7)

    # Reconciliation
    PERSISTENCE_MAX_RETRIES: int = Field(default=3)
    PERSISTENCE_RETRY_BASE_DELAY: float = Field(default=0.1)
    PERSISTENCE_TIMEOUT_SECONDS: float = Field(default=5.0)

    # Webhook queue (Redis Stream)
    WEBHOOK_QUEUE_ENABLED: bool = Field(default=False)
    WEBHOOK_QUEUE_MAX_RETRIES: int = Field(default=5)

    # Cache
    SUBSCRIPTION_CACHE_ENABLED: bool = Field(default=True)

    # App Configuration
    ALLOWED_ORIGINS: str = Field(default="http://localhost:3000,http://localhost:8000")

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse ALLOWED_ORIGINS into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",")]

    @property
    def database_url_async(self) -> str:
        """Convert database URL to async format for asyncpg."""
        if self.DATABASE_URL.startswith("postgresql://"):
            return self.DATABASE_URL.replace(
                "postgresql://", "postgresql+asyncpg://", 1
            )
        return self.DATABASE_URL

    @property
    def webhook_secrets(self) -> dict:
        """Webhook signing secrets keyed by store provider."""
        from app.models.subscription import Provider

        return {
            Provider.STORE_A: self.STORE_A_WEBHOOK_SECRET,
            Provider.STORE_B: self.STORE_B_WEBHOOK_SECRET,
        }

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.ENVIRONMENT.lower() == "development"

    @property
    def auth_disabled(self) -> bool:
        """Check if auth is disabled (only allowed in development)."""
        return self.is_development and self.DEV_AUTH_DISABLED

    @field_validator("JWT_SECRET")
    @classmethod
    def validate_jwt_secret(cls, v: str) -> str:
        """Ensure JWT secret is sufficiently long."""
        if len(v) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters long")
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()


# Export a default settings instance
settings = get_settings()
