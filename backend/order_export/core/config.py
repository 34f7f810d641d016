from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal
from functools import lru_cache

from order_export.core.constants import XLSX_MAX_CELL_LENGTH, XLSX_MAX_DATA_ROWS


class Settings(BaseSettings):
    """
    Application wide settings loaded from environment variables or .env file.
    Provides strict validation on startup to prevent silent failures.
    """

    APP_NAME: str = "Order Export Engine"
    ENVIRONMENT: Literal["development", "production", "testing"] = "development"
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: Literal["text", "json"] = "text"

    # Oracle Specifics
    ORACLE_USER: str
    ORACLE_PASSWORD: str
    ORACLE_DSN: str
    ORACLE_MIN_POOL: int = Field(2, ge=1)
    ORACLE_MAX_POOL: int = Field(10, ge=1)
    ORDERS_TABLE: str = "ORDERS"

    # Export pipeline
    EXPORT_CHUNK_SIZE: int = Field(1000, ge=1)
    EXPORT_MAX_ROWS_PER_SHEET: int = Field(1_000_000, ge=1, le=XLSX_MAX_DATA_ROWS)
    EXPORT_SYNC_THRESHOLD: int = Field(100_000, ge=0)
    EXPORT_DIRECTORY: str = "./exports"
    EXPORT_MEMORY_ROWS_IN_WINDOW: int = Field(100, ge=1)
    EXPORT_MAX_CELL_LENGTH: int = Field(XLSX_MAX_CELL_LENGTH, ge=4, le=XLSX_MAX_CELL_LENGTH)
    EXPORT_SHEET_NAME: str = Field("Orders", min_length=1, max_length=24)

    # Worker pool: each slot runs one full export, keep it small
    EXPORT_WORKER_COUNT: int = Field(2, ge=1)
    EXPORT_QUEUE_MAX: int = Field(10, ge=0)

    # Throttling
    EXPORT_RATE_LIMIT: str = "5/minute"
    RATE_LIMIT_ENABLED: bool = True
    TRUSTED_PROXY: bool = False

    ALLOWED_ORIGINS: list[str] = ["https://mycompany.com", "https://reports.internal"]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # Ignore extra env vars passed by system that aren't defined here
    )


@lru_cache()
def get_settings() -> Settings:
    """Cached singleton of application settings."""
    return Settings()
