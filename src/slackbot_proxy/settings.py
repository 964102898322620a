"""Environment-backed settings for the slackbot proxy."""
from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    """Application configuration sourced from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_brand: str = "Slackbot Proxy"

    relation_db: str = "runtime/relations.db"
    request_timeout_for_ptog: float = 10.0
    commands_ttl_hours: int = 48
    commands_refresh_window_hours: int = 24

    server_host: str = "127.0.0.1"
    server_port: int = 8080
    admin_token: str | None = None
    auth_required: bool = True

    slack_signing_secret: str | None = None


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Return a cached instance of application settings."""

    return AppSettings()
