# This file defines request and response schemas for admin order shipping endpoints.
# It exists so every admin order payload, label creation included, has an explicit contract.
# Field-level limits catch obviously bad input; policy limits are checked in the service layer.
# Write responses carry the persisted metadata plus the audit diff for the write.

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from src.api.schemas.common import EnvelopeFields


class ShippingPackageSelectionRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", allow_inf_nan=False)

    profile: str | None = None
    length_cm: float | None = None
    width_cm: float | None = None
    height_cm: float | None = None
    weight_g: float | None = None


class ShippingPackageFinalRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", allow_inf_nan=False)

    length_cm: float
    width_cm: float
    height_cm: float
    weight_g: float


class ApplyRateRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", allow_inf_nan=False)

    external_rate_id: str = Field(min_length=1)
    provider: str = Field(min_length=1)
    service: str = Field(min_length=1)
    price_cents: int
    eta_min_days: int | None = Field(default=None, ge=0)
    eta_max_days: int | None = Field(default=None, ge=0)
    customer_total_cents: int | None = None


class ResetQuoteRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", allow_inf_nan=False)

    confirm: str
    force: bool = False
    reason: str | None = None


class RateUsedValidationV1(BaseModel):
    is_valid: bool
    has_canonical_pricing: bool
    rate_used_has_numbers: bool
    discrepancy: dict[str, Any] | None = None


class MetadataWriteV1(BaseModel):
    model_config = ConfigDict(extra="allow")

    order_id: str
    updated_at: datetime | str | None = None
    attempts: int
    changes: list[dict[str, Any]]
    rate_used_validation: RateUsedValidationV1
    metadata: dict[str, Any]


class MetadataWriteResponseV1(EnvelopeFields):
    data: MetadataWriteV1


class RequoteResponseV1(EnvelopeFields):
    data: dict[str, Any]


class CreateLabelV1(BaseModel):
    order_id: str
    already_created: bool
    shipment_id: str | None = None
    tracking_number: str | None = None
    label_url: str | None = None
    shipping_status: str | None = None
    tracking_pending: bool


class CreateLabelResponseV1(EnvelopeFields):
    data: CreateLabelV1


class ShippingReportRowV1(BaseModel):
    provider: str
    service_name: str
    orders_count: int
    total_shipping_price_cents: int


class ShippingReportV1(BaseModel):
    start_ts: datetime
    end_ts: datetime
    orders_count: int
    total_shipping_price_cents: int
    rows: list[ShippingReportRowV1]


class ShippingReportResponseV1(EnvelopeFields):
    data: ShippingReportV1
