# This file defines the unversioned liveness, readiness, and version probes of the shipping API.
# Readiness requires the orders table because every admin action reads and writes it.
# Carrier configuration is reported but does not gate readiness: checkout falls back to flat zone rates.

from __future__ import annotations

import subprocess
from datetime import UTC, datetime
from functools import lru_cache
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request

from src.api.api_config import ApiConfig
from src.api.dependencies import get_config, get_database_client, get_skydropx_client
from src.api.response_envelope import version_fields
from src.api.schemas.health_schemas import HealthResponse, ReadinessResponse, VersionResponse
from src.common.db import DatabaseClient
from src.skydropx.client import SkydropxClient

router = APIRouter(tags=["health"])
ConfigDep = Annotated[ApiConfig, Depends(get_config)]
DBDep = Annotated[DatabaseClient, Depends(get_database_client)]
CarrierDep = Annotated[SkydropxClient | None, Depends(get_skydropx_client)]


@lru_cache(maxsize=1)
def _checkout_commit() -> str | None:
    try:
        completed = subprocess.run(
            ["git", "rev-parse", "--short", "HEAD"],
            check=True,
            capture_output=True,
            text=True,
        )
    except (OSError, subprocess.CalledProcessError):
        return None
    return completed.stdout.strip() or None


def _probe_fields(request: Request, config: ApiConfig) -> dict[str, Any]:
    return {
        **version_fields(config),
        "request_id": request.state.request_id,
        "timestamp": datetime.now(tz=UTC),
    }


@router.get("/health", response_model=HealthResponse)
def health(request: Request, config: ConfigDep) -> dict[str, object]:
    return {
        **_probe_fields(request, config),
        "status": "ok",
        "environment": config.environment,
        "service_name": config.api_name,
    }


@router.get("/ready", response_model=ReadinessResponse)
def ready(request: Request, config: ConfigDep, db: DBDep, carrier: CarrierDep) -> dict[str, object]:
    db_connected = db.can_connect()
    orders_source_ready = db_connected and db.table_exists(config.orders_table_name)
    return {
        **_probe_fields(request, config),
        "db_connected": db_connected,
        "orders_source_ready": orders_source_ready,
        "ready": orders_source_ready,
        "database": "reachable" if db_connected else "unreachable",
        "carrier_quotes": "skydropx" if carrier is not None else "flat_rate",
    }


@router.get("/version", response_model=VersionResponse)
def version(request: Request, config: ConfigDep) -> dict[str, object]:
    return {
        **_probe_fields(request, config),
        "api_version_path": config.api_version_path,
        "app_version": config.app_version,
        "git_commit": config.git_sha or _checkout_commit(),
        "project": config.api_name,
        "version": config.app_version,
    }
