# gearflow/settings.py
"""
Gearflow settings - PostgreSQL-backed booking & allocation engine.
"""
from __future__ import annotations
from pathlib import Path
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, AliasChoices

class Settings(BaseSettings):
    # =========================================================================
    # File Storage (logs)
    # =========================================================================
    GEARFLOW_DATA_ROOT: Path = Field(
        default=(Path(__file__).resolve().parents[2] / "gearflow-data"),
        validation_alias=AliasChoices("GEARFLOW_DATA_ROOT", "gf_data_root"),
    )
    LOG_LEVEL: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    # =========================================================================
    # PostgreSQL Database
    # =========================================================================
    # Full async URL; when set it wins over the DB_* parts below
    DATABASE_URL: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("DATABASE_URL", "GEARFLOW_DATABASE_URL"),
    )
    DB_HOST: str = Field(default="localhost", validation_alias="DB_HOST")
    DB_PORT: int = Field(default=5432, validation_alias="DB_PORT")
    DB_NAME: str = Field(default="gearflow", validation_alias="DB_NAME")
    DB_USER: str = Field(default="postgres", validation_alias="DB_USER")
    DB_PASSWORD: str = Field(default="postgres", validation_alias="DB_PASSWORD")

    # Connection pool settings
    DB_POOL_SIZE: int = Field(default=5, validation_alias="DB_POOL_SIZE")
    DB_MAX_OVERFLOW: int = Field(default=10, validation_alias="DB_MAX_OVERFLOW")
    DB_ECHO: bool = Field(default=False, validation_alias="DB_ECHO")

    CREATE_SCHEMA_ON_STARTUP: bool = Field(
        default=True,
        validation_alias="CREATE_SCHEMA_ON_STARTUP",
        description="Create tables and allocation guards on startup (idempotent)",
    )

    # =========================================================================
    # API
    # =========================================================================
    CORS_ORIGINS: List[str] = Field(
        default=["http://localhost:5173", "http://127.0.0.1:5173"],
        validation_alias="CORS_ORIGINS",
    )
    APP_TIMEZONE: str = Field(default="UTC", validation_alias="APP_TIMEZONE")
    PAGINATION_DEFAULT_LIMIT: int = Field(default=50, validation_alias="PAGINATION_DEFAULT_LIMIT")
    PAGINATION_MAX_LIMIT: int = Field(default=200, validation_alias="PAGINATION_MAX_LIMIT")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="",
        case_sensitive=False,
        extra="ignore",
    )

settings = Settings()
