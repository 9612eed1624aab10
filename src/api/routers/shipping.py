# This file defines the public shipping endpoints under the versioned API path.
# It exists so checkout can compute package weight and fetch ranked rate options.
# The router converts request models into domain values and wraps results in the standard envelope.
# Carrier and validation failures surface as APIError payloads from the service layer.

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request

from src.api.api_config import ApiConfig
from src.api.dependencies import get_config, get_quote_service
from src.api.response_envelope import build_object_envelope
from src.api.schemas.common import ErrorResponse
from src.api.schemas.shipping_schemas import (
    OrderItemInput,
    ProductShippingInput,
    ShippingPackageRequest,
    ShippingPackageResponseV1,
    ShippingQuoteResponseV1,
    ShippingRatesRequest,
)
from src.api.services.shipping_quote_service import ShippingQuoteService
from src.shipping.address import DestinationAddress
from src.shipping.package_weight import OrderItem, ProductShippingData

router = APIRouter(
    prefix="/shipping",
    tags=["shipping"],
    responses={502: {"model": ErrorResponse}},
)
QuoteServiceDep = Annotated[ShippingQuoteService, Depends(get_quote_service)]
ConfigDep = Annotated[ApiConfig, Depends(get_config)]


def _order_items(items: list[OrderItemInput]) -> list[OrderItem]:
    return [OrderItem(product_id=item.product_id, qty=item.qty) for item in items]


def _products(products: dict[str, ProductShippingInput]) -> dict[str, ProductShippingData]:
    return {product_id: ProductShippingData(**product.model_dump()) for product_id, product in products.items()}


@router.post("/package", response_model=ShippingPackageResponseV1)
def shipping_package(
    payload: ShippingPackageRequest,
    request: Request,
    service: QuoteServiceDep,
    config: ConfigDep,
) -> dict[str, object]:
    package = service.build_package(items=_order_items(payload.items), products=_products(payload.products))
    warnings = None
    if package.missing_weight_fields_count:
        warnings = [f"{package.missing_weight_fields_count} item(s) used the default product weight."]

    return build_object_envelope(
        request,
        config,
        data=package.to_dict(),
        warnings=warnings,
    )


@router.post("/rates", response_model=ShippingQuoteResponseV1)
def shipping_rates(
    payload: ShippingRatesRequest,
    request: Request,
    service: QuoteServiceDep,
    config: ConfigDep,
) -> dict[str, object]:
    destination = DestinationAddress(**payload.destination.model_dump())
    result = service.quote_rates(
        destination=destination,
        items=_order_items(payload.items),
        products=_products(payload.products),
        parcel=payload.parcel.model_dump() if payload.parcel is not None else None,
    )

    return build_object_envelope(
        request,
        config,
        data=result["data"],
        warnings=result.get("warnings"),
    )
