"""Application configuration objects."""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Pydantic settings used to configure the ledger."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    app_name: str = Field(
        default="Retail Ledger",
        description="Human friendly name used in log output.",
    )
    environment: Literal["development", "staging", "production", "test"] = Field(
        default="development",
        description="Deployment environment flag used for logging.",
    )
    storage_url: str = Field(
        default="sqlite+aiosqlite:///./ledger.db",
        description="Key-value backend: memory://, json:///path or a SQLAlchemy async URL.",
    )
    echo_sql: bool = Field(
        default=False,
        description="Enable SQL echo logging for debugging.",
    )
    default_timezone: str = Field(
        default="UTC",
        description="Timezone used to evaluate business and quiet hours.",
    )
    alert_interval_seconds: float = Field(
        default=30 * 60,
        gt=0,
        description="Seconds between two periodic alert evaluations.",
    )
    alert_startup_delay_seconds: float = Field(
        default=5,
        ge=0,
        description="Delay before the first alert evaluation after start.",
    )
    alert_recheck_delay_seconds: float = Field(
        default=1,
        ge=0,
        description="Debounce delay for re-checks requested by transactions.",
    )
    log_level: str = Field(default="INFO", description="Root logging level.")

    @field_validator("storage_url")
    @classmethod
    def _validate_storage_url(cls, value: str) -> str:
        if value.startswith("sqlite") and ":memory:" not in value and "///" not in value:
            raise ValueError(
                "SQLite storage URLs should be in the form sqlite+aiosqlite:///path/to/db"
            )
        if value.startswith("json:") and not value.startswith("json:///"):
            raise ValueError("JSON storage URLs should be in the form json:///path/to/file.json")
        return value

    @field_validator("default_timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone '{value}'") from exc
        return value

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log level '{value}'")
        return level

    @property
    def timezone(self) -> ZoneInfo:
        return ZoneInfo(self.default_timezone)


@lru_cache
def get_settings() -> Settings:
    """Return a cached instance of :class:`Settings`."""

    return Settings()


def configure_logging(settings: Settings | None = None) -> None:
    """Apply the configured log level to the root logger."""

    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


__all__ = ["Settings", "get_settings", "configure_logging"]
