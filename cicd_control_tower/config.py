"""
Configuration management for the CI/CD control tower.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Application
    app_name: str = Field(default="CI/CD Control Tower")
    debug: bool = Field(default=False)
    environment: str = Field(default="development")

    # Database
    database_url: str = Field(default="sqlite:///./cicd_control_tower.db")

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json", description="'json' or 'console'")

    # CI auto trigger
    ci_auto_trigger_batch_size: int = Field(
        default=1,
        description="Artifacts triggered concurrently per batch. Values <= 0 behave as 1.",
    )
    system_user_id: int = Field(
        default=1,
        description="Acting user id that marks a trigger as automatic rather than manual.",
    )

    # Notifications
    notifier_url: Optional[str] = Field(default=None)
    notification_timeout_seconds: float = Field(default=10.0)

    # Charts
    default_chart_template_name: str = Field(default="Rollout Deployment")


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get application settings."""
    return settings
