"""
Configuration management for the Submission Engine.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="Submission Engine")
    environment: str = Field(default="development")

    # Database
    database_url: str = Field(default="sqlite:///./submission_engine.db")

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json", description="json or console")

    # Retry policy
    retry_base_delay_ms: int = Field(default=5000, gt=0)
    retry_max_delay_ms: int = Field(default=300000, gt=0)
    retry_backoff_multiplier: int = Field(default=2, ge=1)
    retry_max_attempts: int = Field(default=3, ge=1)

    # Worker leases
    lease_duration_ms: int = Field(default=30000, gt=0)
    lease_grace_period_ms: int = Field(default=5000, ge=0)

    # Sweeper
    sweep_batch_size: int = Field(default=100, gt=0)


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get application settings."""
    return settings
