"""Application configuration using Pydantic Settings."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from BITESPEED_* environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="BITESPEED_",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_path: str = Field(default="contacts.db")
    database_timeout: float = Field(default=5.0)

    # Reconciliation
    max_merge_attempts: int = Field(default=3, ge=1)

    # App
    app_title: str = Field(default="Bitespeed Contact Reconciliation API")
    app_version: str = Field(default="1.0.0")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)
    log_level: str = Field(default="INFO")


@lru_cache
def get_settings() -> Settings:
    return Settings()
