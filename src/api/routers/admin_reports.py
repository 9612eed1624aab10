# This file defines the admin shipping report endpoint.
# It exists so finance can compare carrier charges per provider and service for a date window.
# The window is half-open on created_at; inverted or overlong windows are rejected with 400.

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Annotated

from fastapi import APIRouter, Depends, Request

from src.api.api_config import ApiConfig
from src.api.dependencies import get_config, get_report_service
from src.api.error_handlers import APIError
from src.api.response_envelope import build_object_envelope
from src.api.schemas.admin_order_schemas import ShippingReportResponseV1
from src.api.schemas.common import ErrorResponse
from src.api.services.shipping_report_service import ShippingReportService

router = APIRouter(
    prefix="/admin/reports",
    tags=["admin-reports"],
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
ReportServiceDep = Annotated[ShippingReportService, Depends(get_report_service)]
ConfigDep = Annotated[ApiConfig, Depends(get_config)]


@router.get("/shipping", response_model=ShippingReportResponseV1)
def shipping_report(
    request: Request,
    service: ReportServiceDep,
    config: ConfigDep,
    start_ts: datetime,
    end_ts: datetime,
) -> dict[str, object]:
    if start_ts >= end_ts:
        raise APIError(
            status_code=400,
            error_code="INVALID_TIME_WINDOW",
            message="start_ts must be earlier than end_ts.",
        )
    if end_ts - start_ts > timedelta(days=config.report_max_window_days):
        raise APIError(
            status_code=400,
            error_code="INVALID_TIME_WINDOW",
            message=f"The report window cannot exceed {config.report_max_window_days} days.",
            details={"report_max_window_days": config.report_max_window_days},
        )

    result = service.get_report(start_ts=start_ts, end_ts=end_ts)
    return build_object_envelope(
        request,
        config,
        data={
            "start_ts": start_ts,
            "end_ts": end_ts,
            "orders_count": result["orders_count"],
            "total_shipping_price_cents": result["total_shipping_price_cents"],
            "rows": result["rows"],
        },
        warnings=result.get("warnings"),
    )
