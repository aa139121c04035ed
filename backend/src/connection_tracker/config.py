"""Configuration management."""
import os
import json
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(env_prefix="CONNECTION_TRACKER_", env_file=".env")

    # Storage
    data_dir: Path = Field(
        default=Path("./data"),
        description="Root directory for per-account snapshot and first-seen files"
    )
    database_url: str = Field(
        default="sqlite:///./connection_tracker.db",
        description="SQLAlchemy database URL for run and snapshot summaries"
    )

    # Twitter API
    twitter_api_key: str = Field(
        default="",
        description="TwitterAPI.io API Key"
    )

    # Crawl settings
    page_delay_seconds: float = Field(default=1.5)
    request_timeout_seconds: float = Field(default=30.0)

    # Signal detection
    notable_follower_threshold: int = Field(default=10_000)

    # Config versioning
    config_version: str = Field(default="1.0.0")


def get_settings() -> Settings:
    """Get settings - environment variables take priority."""
    env_key = os.environ.get("CONNECTION_TRACKER_TWITTER_API_KEY", "")

    if env_key:
        return Settings(twitter_api_key=env_key)

    # Fallback to secrets file
    secrets_path = Path.home() / ".connection_tracker" / "secrets" / "twitter.json"
    if secrets_path.exists():
        with open(secrets_path) as f:
            data = json.load(f)
            key = data.get("api_key", "")
            if key:
                return Settings(twitter_api_key=key)

    return Settings()


settings = get_settings()
