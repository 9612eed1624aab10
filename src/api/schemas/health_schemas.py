# This file defines the response models of the health, readiness, and version probes.
# Uptime checks parse these bodies, so fields are only ever added, never renamed.

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel


class ProbeResponse(BaseModel):
    api_version: str
    schema_version: str
    request_id: str
    timestamp: datetime


class HealthResponse(ProbeResponse):
    status: str
    environment: str
    service_name: str


class ReadinessResponse(ProbeResponse):
    db_connected: bool
    orders_source_ready: bool
    ready: bool
    database: Literal["reachable", "unreachable"]
    carrier_quotes: Literal["skydropx", "flat_rate"]


class VersionResponse(ProbeResponse):
    api_version_path: str
    app_version: str
    git_commit: str | None = None
    project: str
    version: str
