"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings for the heartbeat service."""

    app_name: str = "Heartbeat Info"
    app_version: str = "0.1.0"
    environment: str = "development"
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8000
    storage_backend: str = "auto"
    redis_url: str | None = None
    storage_prefix: str = "heartbeat"
    heartbeat_count_limit: int = 30
    worker_idle_timeout_seconds: float = 30.0
    heartbeat_consumers: list[str] = ["header"]
    user_agent_libraries: list[str] = ["heartbeat-info/0.1.0"]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("heartbeat_count_limit")
    @classmethod
    def validate_heartbeat_count_limit(cls, value: int) -> int:
        if value < 2:
            raise ValueError("heartbeat_count_limit must be >= 2")
        return value


@lru_cache
def get_settings() -> Settings:
    """Return cached settings so env parsing only happens once."""

    return Settings()
