# This file defines admin endpoints that change an order's shipping state.
# It exists so operations staff can manage packages, rates, quotes, and labels from one place.
# Every write goes through the metadata guard via the service layer, so pricing cents are never lost.
# Responses include the persisted metadata and the audit diff for the write.

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request

from src.api.api_config import ApiConfig
from src.api.dependencies import get_config, get_order_shipping_service
from src.api.response_envelope import build_object_envelope
from src.api.schemas.admin_order_schemas import (
    ApplyRateRequest,
    CreateLabelResponseV1,
    MetadataWriteResponseV1,
    RequoteResponseV1,
    ResetQuoteRequest,
    ShippingPackageFinalRequest,
    ShippingPackageSelectionRequest,
)
from src.api.schemas.common import ErrorResponse
from src.api.services.order_shipping_service import OrderShippingService

router = APIRouter(
    prefix="/admin/orders",
    tags=["admin-orders"],
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
OrderShippingServiceDep = Annotated[OrderShippingService, Depends(get_order_shipping_service)]
ConfigDep = Annotated[ApiConfig, Depends(get_config)]


@router.post("/{order_id}/shipping-package", response_model=MetadataWriteResponseV1)
def set_shipping_package(
    order_id: str,
    payload: ShippingPackageSelectionRequest,
    request: Request,
    service: OrderShippingServiceDep,
    config: ConfigDep,
) -> dict[str, object]:
    result = service.set_shipping_package(
        order_id=order_id,
        profile=payload.profile,
        length_cm=payload.length_cm,
        width_cm=payload.width_cm,
        height_cm=payload.height_cm,
        weight_g=payload.weight_g,
    )
    return build_object_envelope(request, config, data=result)


@router.post("/{order_id}/shipping-package-final", response_model=MetadataWriteResponseV1)
def set_shipping_package_final(
    order_id: str,
    payload: ShippingPackageFinalRequest,
    request: Request,
    service: OrderShippingServiceDep,
    config: ConfigDep,
) -> dict[str, object]:
    result = service.set_shipping_package_final(
        order_id=order_id,
        length_cm=payload.length_cm,
        width_cm=payload.width_cm,
        height_cm=payload.height_cm,
        weight_g=payload.weight_g,
    )
    return build_object_envelope(request, config, data=result)


@router.post("/{order_id}/apply-rate", response_model=MetadataWriteResponseV1)
def apply_rate(
    order_id: str,
    payload: ApplyRateRequest,
    request: Request,
    service: OrderShippingServiceDep,
    config: ConfigDep,
) -> dict[str, object]:
    result = service.apply_rate(
        order_id=order_id,
        external_rate_id=payload.external_rate_id,
        provider=payload.provider,
        service=payload.service,
        price_cents=payload.price_cents,
        eta_min_days=payload.eta_min_days,
        eta_max_days=payload.eta_max_days,
        customer_total_cents=payload.customer_total_cents,
    )
    return build_object_envelope(request, config, data=result)


@router.post("/{order_id}/requote", response_model=RequoteResponseV1)
def requote(
    order_id: str,
    request: Request,
    service: OrderShippingServiceDep,
    config: ConfigDep,
) -> dict[str, object]:
    result = service.requote(order_id=order_id)
    return build_object_envelope(request, config, data=result["data"], warnings=result.get("warnings"))


@router.post("/{order_id}/create-label", response_model=CreateLabelResponseV1)
def create_label(
    order_id: str,
    request: Request,
    service: OrderShippingServiceDep,
    config: ConfigDep,
) -> dict[str, object]:
    result = service.create_label(order_id=order_id)
    return build_object_envelope(request, config, data=result)


@router.post("/{order_id}/reset-quote", response_model=MetadataWriteResponseV1)
def reset_quote(
    order_id: str,
    payload: ResetQuoteRequest,
    request: Request,
    service: OrderShippingServiceDep,
    config: ConfigDep,
) -> dict[str, object]:
    result = service.reset_quote(
        order_id=order_id,
        confirm=payload.confirm,
        force=payload.force,
        reason=payload.reason,
    )
    return build_object_envelope(request, config, data=result)
