# This file builds the object envelope every versioned shipping route returns.
# Clients read api_version and schema_version to detect contract changes, and request_id to quote in support tickets.
# Warnings such as the flat-rate fallback travel beside the data block, never inside it.

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from fastapi import Request

from src.api.api_config import ApiConfig


def version_fields(config: ApiConfig) -> dict[str, str]:
    return {"api_version": config.api_version_label(), "schema_version": config.schema_version}


def build_object_envelope(
    request: Request,
    config: ApiConfig,
    *,
    data: dict[str, Any] | None,
    warnings: list[str] | None = None,
) -> dict[str, Any]:
    return {
        **version_fields(config),
        "request_id": request.state.request_id,
        "generated_at": datetime.now(tz=UTC),
        "data": data,
        "warnings": warnings or None,
    }
