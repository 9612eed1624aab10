"""
Process settings every entrypoint needs before it can log or reach the orders database.
The API server and the rate_used audit script both call get_settings() at startup.
Shipping policy and carrier credentials have their own loaders in src.shipping and src.skydropx.
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Final

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

REQUIRED_ENV_VARS: Final[tuple[str, ...]] = (
    "PROJECT_NAME",
    "ENV",
    "LOG_LEVEL",
    "DATABASE_URL",
    "API_HOST",
    "API_PORT",
)

LOG_LEVEL_ALIASES: Final[dict[str, str]] = {"WARN": "WARNING", "FATAL": "CRITICAL"}


class Settings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    PROJECT_NAME: str
    ENV: str
    LOG_LEVEL: str
    LOG_FILE: str | None = None
    DATABASE_URL: str
    API_HOST: str
    API_PORT: int

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        name = value.strip().upper()
        name = LOG_LEVEL_ALIASES.get(name, name)
        if not isinstance(logging.getLevelName(name), int):
            raise ValueError(f"Unknown log level: {value!r}")
        return name

    @field_validator("API_PORT")
    @classmethod
    def validate_port(cls, value: int) -> int:
        if not 0 < value < 65536:
            raise ValueError("API_PORT must be between 1 and 65535.")
        return value

    @field_validator("DATABASE_URL")
    @classmethod
    def validate_database_url(cls, value: str) -> str:
        if "://" not in value:
            raise ValueError("DATABASE_URL must be a SQLAlchemy URL such as postgresql+psycopg2://...")
        return value


def load_settings(*, load_env: bool = True) -> Settings:
    """Read and validate startup settings.

    Every missing key is reported at once so a half-filled `.env` fails with one message.
    Type errors are wrapped in RuntimeError like missing keys, so entrypoints handle one exception.
    """

    if load_env:
        load_dotenv()

    missing = sorted(key for key in REQUIRED_ENV_VARS if not os.getenv(key))
    if missing:
        raise RuntimeError(
            f"Missing required environment variables: {', '.join(missing)}. "
            "Set them in `.env` or the process environment before starting the shipping service."
        )

    try:
        return Settings.model_validate(dict(os.environ))
    except ValidationError as exc:
        raise RuntimeError(f"Invalid environment configuration: {exc}") from exc


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
