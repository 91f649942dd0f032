"""Application configuration objects."""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_LOG_LEVELS = frozenset({"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"})


class Settings(BaseSettings):
    """Pydantic settings used to configure the reconciliation service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    app_name: str = Field(
        default="Stock Reconciliation Service",
        description="Human friendly name for the API.",
    )
    environment: Literal["development", "staging", "production", "test"] = Field(
        default="development",
        description="Deployment environment flag used for logging.",
    )
    database_url: str = Field(
        default="sqlite+aiosqlite:///./stock.db",
        description="SQLAlchemy compatible database URL.",
    )
    echo_sql: bool = Field(
        default=False,
        description="Enable SQL echo logging for debugging.",
    )
    log_level: str = Field(default="INFO", description="Root logging level.")
    api_host: str = Field(default="0.0.0.0", description="Interface uvicorn binds to.")
    api_port: int = Field(default=8000, gt=0, lt=65536)

    technical_deposit_code: str = Field(
        default="PV-STOCK",
        description="Code of the per-location deposit holding the materialized ledger.",
    )
    technical_deposit_name: str = Field(default="Giacenze PV")

    ledger_chunk_size: int = Field(
        default=1000,
        gt=0,
        description="Maximum number of ledger rows written per upsert statement.",
    )
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(
        default=0.25,
        ge=0,
        description="Backoff base in seconds; attempt n sleeps base * 2**n.",
    )

    history_page_size: int = Field(default=1000, gt=0)
    rebuild_max_items: int = Field(default=20000, gt=0)
    rebuild_max_rows_scanned: int = Field(default=200000, gt=0)
    backfill_max_missing: int = Field(default=5000, gt=0)
    max_submission_rows: int = Field(
        default=3000,
        gt=0,
        description="Upper bound on rows accepted in one count submission.",
    )

    @field_validator("database_url")
    @classmethod
    def _validate_sqlite_path(cls, value: str) -> str:
        if value.startswith("sqlite") and ":memory:" not in value and "///" not in value:
            raise ValueError(
                "SQLite database URLs should be in the form sqlite+aiosqlite:///path/to/db"
            )
        return value

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"Unknown log level: {value}")
        return level


@lru_cache
def get_settings() -> Settings:
    """Return a cached instance of :class:`Settings`."""

    return Settings()


def configure_logging(settings: Settings | None = None) -> None:
    """Install the root logging format once per process."""

    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


__all__ = ["Settings", "configure_logging", "get_settings"]
