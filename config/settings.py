"""Configuration management using pydantic-settings."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # GitHub API configuration
    github_api_base_url: str = "https://api.github.com"
    github_owner: str = "tanm-sys"
    github_repo: str = "forge-ec"
    request_timeout_seconds: float = 30.0
    user_agent: str = "repopulse"

    # Cache settings
    cache_ttl_seconds: float = 300.0

    # Quota handling
    quota_low_watermark: int = 5
    quota_backoff_seconds: float = 60.0

    # Smooth bursts: minimum gap between two upstream calls (any resource)
    min_spacing_seconds: float = 1.0

    # Background refresh
    scheduler_enabled: bool = True
    schedule_interval_seconds: float = 600.0
    visibility_cooldown_seconds: float = 300.0

    # Logging
    log_level: Optional[str] = None

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
