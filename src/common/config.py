"""Centralized configuration management using pydantic-settings."""

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Base settings shared by every service in this repository."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Infrastructure
    redis_url: str = "redis://localhost:6379/0"

    # Application
    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"
    environment: str = "development"
