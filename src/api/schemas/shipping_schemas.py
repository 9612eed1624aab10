# This file defines request and response schemas for the public shipping endpoints.
# It exists so package and rate payloads have explicit, validated contracts.
# Request models reject impossible quantities and dimensions before any service code runs.
# Response models wrap shipping data in the standard versioned envelope.

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from src.api.schemas.common import EnvelopeFields


class OrderItemInput(BaseModel):
    model_config = ConfigDict(extra="ignore", allow_inf_nan=False)

    product_id: str | None = None
    qty: int = 1


class ProductShippingInput(BaseModel):
    model_config = ConfigDict(extra="ignore", allow_inf_nan=False)

    shipping_weight_g: float | None = None
    shipping_length_cm: float | None = None
    shipping_width_cm: float | None = None
    shipping_height_cm: float | None = None
    shipping_profile: str | None = None


class ShippingPackageRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", allow_inf_nan=False)

    items: list[OrderItemInput] = Field(default_factory=list)
    products: dict[str, ProductShippingInput] = Field(default_factory=dict)


class DestinationInput(BaseModel):
    model_config = ConfigDict(extra="ignore", allow_inf_nan=False)

    postal_code: str = Field(min_length=1)
    state: str = Field(min_length=1)
    city: str = Field(min_length=1)
    country: str = "MX"
    address1: str | None = None
    name: str | None = None
    phone: str | None = None
    email: str | None = None


class ParcelInput(BaseModel):
    model_config = ConfigDict(extra="ignore", allow_inf_nan=False)

    weight_g: float = Field(gt=0)
    length_cm: float = Field(gt=0)
    width_cm: float = Field(gt=0)
    height_cm: float = Field(gt=0)


class ShippingRatesRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", allow_inf_nan=False)

    destination: DestinationInput
    items: list[OrderItemInput] = Field(default_factory=list)
    products: dict[str, ProductShippingInput] = Field(default_factory=dict)
    parcel: ParcelInput | None = None

    @model_validator(mode="after")
    def validate_package_source(self) -> ShippingRatesRequest:
        if self.parcel is None and not self.items:
            raise ValueError("Provide either items or an explicit parcel.")
        return self


class ShippingPackageV1(BaseModel):
    mass_weight_g: int
    tare_weight_g: int
    missing_weight_fields_count: int
    length_cm: float
    width_cm: float
    height_cm: float
    dims_source: str
    profile_used: str | None = None
    volumetric_weight_kg: float
    billable_weight_kg: float
    volumetric_divisor: float
    weight_g: int


class ShippingOptionV1(BaseModel):
    code: str
    option_code: str | None = None
    carrier: str
    service: str
    price_cents: int
    eta_min_days: int | None = None
    eta_max_days: int | None = None
    external_rate_id: str | None = None
    currency: str
    service_label: str
    eta_label: str
    eta_bucket: str
    packaging_cents: int
    customer_total_cents: int


class ShippingQuoteV1(BaseModel):
    source: str
    package: dict[str, Any]
    zone: str | None = None
    recommended_code: str | None = None
    cheapest_code: str | None = None
    fastest_code: str | None = None
    primary_options: list[ShippingOptionV1]
    all_options: list[ShippingOptionV1]


class ShippingPackageResponseV1(EnvelopeFields):
    data: ShippingPackageV1


class ShippingQuoteResponseV1(EnvelopeFields):
    data: ShippingQuoteV1
