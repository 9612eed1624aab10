# This file defines the envelope and error models shared by every versioned shipping route.
# Response models extend EnvelopeFields with a typed data block; routers document ErrorResponse for 4xx and 5xx codes.

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel


class EnvelopeFields(BaseModel):
    api_version: str
    schema_version: str
    request_id: str
    generated_at: datetime
    warnings: list[str] | None = None


class ErrorResponse(BaseModel):
    error_code: str
    message: str
    details: Any | None = None
    request_id: str
    timestamp: datetime
