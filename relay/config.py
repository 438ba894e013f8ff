"""Application configuration."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from relay.providers.reconnect import ReconnectPolicy


class Settings(BaseSettings):
    """Environment-driven settings validated at startup."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_version: str = Field(default="1.0.0", alias="APP_VERSION")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    database_path: Path = Field(default=Path("relay.db"), alias="DATABASE_PATH")

    whatsapp_session_path: Path = Field(default=Path("sessions/whatsapp"), alias="WHATSAPP_SESSION_PATH")
    telegram_api_id: int | None = Field(default=None, alias="TELEGRAM_API_ID")
    telegram_api_hash: str | None = Field(default=None, alias="TELEGRAM_API_HASH")
    mattermost_server_url: str | None = Field(default=None, alias="MATTERMOST_SERVER_URL")
    mattermost_access_token: str | None = Field(default=None, alias="MATTERMOST_ACCESS_TOKEN")
    mattermost_timeout_seconds: float = Field(default=30.0, alias="MATTERMOST_TIMEOUT_SECONDS")

    # Rapid-failure detector and backoff for QR-paired sessions.
    reconnect_window_seconds: float = Field(default=30.0, alias="RECONNECT_WINDOW_SECONDS")
    reconnect_max_attempts: int = Field(default=3, alias="RECONNECT_MAX_ATTEMPTS")
    reconnect_base_delay_seconds: float = Field(default=5.0, alias="RECONNECT_BASE_DELAY_SECONDS")
    reconnect_max_delay_seconds: float = Field(default=30.0, alias="RECONNECT_MAX_DELAY_SECONDS")

    message_retention_days: int = Field(default=90, alias="MESSAGE_RETENTION_DAYS")
    retention_sweep_interval_seconds: float = Field(default=3600.0, alias="RETENTION_SWEEP_INTERVAL_SECONDS")
    rate_limit_window_seconds: float = Field(default=900.0, alias="RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_max_requests: int = Field(default=100, alias="RATE_LIMIT_MAX_REQUESTS")


def load_settings() -> Settings:
    """Load and validate settings."""

    return Settings()


def reconnect_policy(settings: Settings) -> ReconnectPolicy:
    """Build the reconnect policy from the RECONNECT_* settings."""
    return ReconnectPolicy(
        window_seconds=settings.reconnect_window_seconds,
        max_attempts=settings.reconnect_max_attempts,
        base_delay_seconds=settings.reconnect_base_delay_seconds,
        max_delay_seconds=settings.reconnect_max_delay_seconds,
    )
