"""Engine settings parsed from environment variables and defaults."""

import json
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_QUEUE_NAMES = ["default", "notifications"]


def _split_list(value: str | list[str] | None) -> list[str]:
    """Normalize list settings from JSON, CSV, or list inputs."""
    if isinstance(value, list):
        return [item.strip() for item in value if isinstance(item, str) and item.strip()]
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return []
        try:
            parsed = json.loads(stripped)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            return [str(item).strip() for item in parsed if str(item).strip()]
        return [item.strip() for item in stripped.split(",") if item.strip()]
    return []


class Settings(BaseSettings):
    """Trigger engine configuration loaded from environment variables."""

    environment: str = "development"
    log_level: str = "INFO"

    database_url: str = "sqlite+aiosqlite:///./ticket_triggers.db"
    test_database_url: Optional[str] = None
    redis_url: str = "redis://redis:6379/0"
    worker_queue_names: list[str] | str = Field(default_factory=lambda: DEFAULT_QUEUE_NAMES.copy())

    lookup_timeout_seconds: float = 5.0
    delivery_timeout_seconds: int = 30
    recipient_dedup_casefold: bool = True
    system_addresses: list[str] | str = Field(default_factory=list)
    security_backends: list[str] | str = Field(default_factory=list)
    template_missing_value: str = "-"

    mail_transport: str = "log"
    smtp_host: str = "localhost"
    smtp_port: int = 25
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_use_tls: bool = False

    @field_validator("worker_queue_names", mode="before")
    @classmethod
    def _split_worker_queue_names(cls, value: str | list[str] | None) -> list[str]:
        """Fall back to the default queues when the list is empty."""
        return _split_list(value) or DEFAULT_QUEUE_NAMES.copy()

    @field_validator("system_addresses", mode="before")
    @classmethod
    def _split_system_addresses(cls, value: str | list[str] | None) -> list[str]:
        """System addresses are compared case-insensitively."""
        return [address.lower() for address in _split_list(value)]

    @field_validator("security_backends", mode="before")
    @classmethod
    def _split_security_backends(cls, value: str | list[str] | None) -> list[str]:
        return [name.lower() for name in _split_list(value)]

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    """Return cached settings to avoid re-parsing environment variables."""
    return Settings()


settings = get_settings()
