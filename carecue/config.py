"""Configuration management for the application."""

from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Offline cache store
    database_url: str = Field(default="sqlite:///./carecue.db")

    # Remote reminder service
    remote_base_url: str = Field(default="http://localhost:8000/api")
    api_token: str | None = Field(default=None)
    request_timeout_seconds: float = Field(default=8.0)

    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")

    # Cadence times-of-day are wall-clock times in this zone unless a reminder says otherwise
    default_timezone: str = Field(default="UTC")

    # Subscription flag, gates history length and export
    premium: bool = Field(default=False)


class AppConfig:
    """Application configuration loaded from config.yaml."""

    def __init__(self, config_path: Path | None = None) -> None:
        if config_path is None:
            config_path = Path("config.yaml")

        self._config: dict[str, Any] = {}
        if config_path.exists():
            with open(config_path) as f:
                self._config = yaml.safe_load(f) or {}

    @property
    def policy(self) -> dict[str, Any]:
        """Scheduling policy configuration."""
        defaults = {
            "grace_minutes": 10,
            "sweep_interval_minutes": 5,
            "dedup_window_hours": 2,
            "missed_lookback_hours": 24,
            "adaptive_threshold": 3,
            "adaptive_interval_factor": 0.8,
            "adaptive_min_interval": 5,
            "adaptive_shift_minutes": 30,
        }
        return {**defaults, **self._config.get("policy", {})}

    @property
    def history(self) -> dict[str, Any]:
        """History retention configuration (days kept per subscription tier)."""
        defaults = {
            "free_days": 7,
            "premium_days": 365,
        }
        return {**defaults, **self._config.get("history", {})}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


@lru_cache
def get_app_config() -> AppConfig:
    """Get cached app config instance."""
    return AppConfig()
