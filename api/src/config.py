"""
FastAPI application configuration using Pydantic Settings.

Settings of the worker's status/control API. Everything the API reports
comes from the running engine; these only shape the HTTP surface.
"""

from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    API settings loaded from environment variables.

    All settings can be overridden via environment variables with the
    prefix "CRON_API_" (e.g., CRON_API_HISTORY_LIMIT).
    """

    app_name: str = Field(
        default="Cron Worker Status API",
        description="Application name"
    )
    app_version: str = Field(
        default="1.0.0",
        description="API version"
    )
    debug: bool = Field(
        default=False,
        description="Debug mode"
    )

    cors_enabled: bool = Field(
        default=False,
        description="Enable CORS middleware"
    )
    cors_origins: List[str] = Field(
        default=["http://localhost:3000"],
        description="Allowed CORS origins"
    )

    history_limit: int = Field(
        default=20,
        description="Ledger records returned per job",
        gt=0,
        le=1000
    )
    dlq_max_limit: int = Field(
        default=500,
        description="Upper bound for ?limit= on /dlq",
        gt=0
    )

    model_config = SettingsConfigDict(
        env_prefix="CRON_API_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()
