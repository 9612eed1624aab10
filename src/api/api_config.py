# This file holds the HTTP runtime settings for the shipping API.
# Table names reach raw SQL in the order store and request log, so they are validated as identifiers
# and checked against an allowlist before use.
# Report windows are capped here so finance exports cannot scan the whole orders table by accident.

from __future__ import annotations

import re
from functools import lru_cache

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from src.common.env import env_bool, env_int, env_list, env_optional_str, env_str

_SQL_IDENTIFIER = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
_BUILTIN_TABLES = frozenset({"orders", "api_request_log"})


def _check_identifier(table_name: str) -> str:
    if not _SQL_IDENTIFIER.match(table_name):
        raise ValueError(f"Unsafe SQL identifier: {table_name!r}")
    return table_name


class ApiConfig(BaseModel):
    """Runtime settings for the shipping API process."""

    model_config = ConfigDict(extra="ignore")

    api_name: str = "Dental Supply Shipping API"
    api_version_path: str = "/api/v1"
    schema_version: str = "1.0.0"
    host: str = "0.0.0.0"
    port: int = 8000
    environment: str = "local"
    database_url: str
    request_timeout_seconds: int = 30
    enable_request_logging: bool = False
    allowed_origins: list[str] = Field(default_factory=list)
    orders_table_name: str = "orders"
    request_log_table_name: str = "api_request_log"
    report_max_window_days: int = 366
    app_version: str = "0.1.0"
    git_sha: str | None = None
    allowed_table_names: set[str] = Field(default_factory=set)

    @field_validator("api_version_path")
    @classmethod
    def validate_api_version_path(cls, value: str) -> str:
        trimmed = value.rstrip("/")
        segments = [segment for segment in trimmed.split("/") if segment]
        if not trimmed.startswith("/") or len(segments) < 2 or not segments[-1].startswith("v"):
            raise ValueError("api_version_path must look like '/api/v1'.")
        return trimmed

    @field_validator("orders_table_name", "request_log_table_name")
    @classmethod
    def validate_identifier(cls, value: str) -> str:
        return _check_identifier(value)

    @field_validator("request_timeout_seconds", "report_max_window_days")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Value must be greater than 0.")
        return value

    @model_validator(mode="after")
    def include_configured_tables(self) -> ApiConfig:
        for table_name in self.allowed_table_names:
            _check_identifier(table_name)
        self.allowed_table_names |= {self.orders_table_name, self.request_log_table_name}
        return self

    def api_version_label(self) -> str:
        return self.api_version_path.split("/")[-1]

    def validate_table_name(self, table_name: str) -> str:
        _check_identifier(table_name)
        if table_name not in self.allowed_table_names:
            raise ValueError(f"Table name is not in allowlist: {table_name!r}")
        return table_name


def load_api_config(*, load_env: bool = True) -> ApiConfig:
    """Build the API config from `.env` and the process environment.

    DATABASE_URL has no default: the order store cannot work without it.
    """

    if load_env:
        load_dotenv()

    database_url = env_str("DATABASE_URL")
    if not database_url:
        raise RuntimeError("DATABASE_URL is required for API startup.")

    return ApiConfig(
        api_name=env_str("API_NAME", "Dental Supply Shipping API"),
        api_version_path=env_str("API_VERSION_PATH", "/api/v1"),
        schema_version=env_str("API_SCHEMA_VERSION", "1.0.0"),
        host=env_str("API_HOST", "0.0.0.0"),
        port=env_int("API_PORT", 8000),
        environment=env_str("ENV", "local"),
        database_url=database_url,
        request_timeout_seconds=env_int("API_REQUEST_TIMEOUT_SECONDS", 30),
        enable_request_logging=env_bool("API_ENABLE_REQUEST_LOGGING", False),
        allowed_origins=env_list("API_ALLOWED_ORIGINS"),
        orders_table_name=env_str("API_ORDERS_TABLE_NAME", "orders"),
        request_log_table_name=env_str("API_REQUEST_LOG_TABLE_NAME", "api_request_log"),
        report_max_window_days=env_int("API_REPORT_MAX_WINDOW_DAYS", 366),
        app_version=env_str("APP_VERSION", "0.1.0"),
        git_sha=env_optional_str("GIT_SHA"),
        allowed_table_names=set(_BUILTIN_TABLES) | set(env_list("API_ALLOWED_TABLE_NAMES")),
    )


@lru_cache(maxsize=1)
def get_api_config() -> ApiConfig:
    return load_api_config()
