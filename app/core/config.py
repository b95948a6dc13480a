"""
Core configuration module using Pydantic Settings.
Loads configuration from environment variables with validation.
"""
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Presence Configuration
    grace_period_seconds: float = 5.0
    avatar_url_template: str = "https://ui-avatars.com/api/?name={name}&background=random"

    # CORS Configuration
    cors_origins: List[str] = ["http://localhost:3000"]

    # Application Configuration
    service_name: str = "presence-relay"
    api_host: str = "0.0.0.0"
    api_port: int = 5000
    log_level: str = "INFO"
    log_json: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )


# Global settings instance
settings = Settings()
