# This file implements the package and rate services behind the public shipping endpoints.
# It exists so routers stay transport-focused while weight math and carrier calls live in one layer.
# Carrier quotes are deduped, priced for the customer, and ranked into primary options.
# When the carrier is unavailable for configuration reasons or returns nothing, a flat zone tariff is quoted.

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from src.api.error_handlers import APIError
from src.shipping.address import DestinationAddress, postal_code_to_zone, quote_flat_rate
from src.shipping.package_weight import (
    OrderItem,
    ProductShippingData,
    ShippingPackage,
    compute_billable_weight,
    compute_shipping_package,
)
from src.shipping.rates import (
    CarrierRate,
    ShippingOption,
    build_primary_options,
    build_shipping_options,
    select_top_options,
)
from src.shipping.shipping_config import ShippingConfig
from src.skydropx.client import Parcel, SkydropxAuthError, SkydropxClient, SkydropxUnavailableError

LOGGER = logging.getLogger("api.shipping_quote")

FLAT_RATE_CARRIER = "flat_rate"


def carrier_error_to_api_error(exc: Exception) -> APIError:
    if isinstance(exc, SkydropxAuthError):
        return APIError(
            status_code=502,
            error_code="CARRIER_AUTH_ERROR",
            message="The shipping carrier rejected our credentials.",
        )
    return APIError(
        status_code=502,
        error_code="CARRIER_UNAVAILABLE",
        message="The shipping carrier is unavailable. Try again in a few minutes.",
        details=str(exc),
    )


def options_payload(options: list[ShippingOption], *, recommended_max_eta_days: int) -> dict[str, Any]:
    top = select_top_options(options, recommended_max_eta_days=recommended_max_eta_days)
    return {
        "recommended_code": top.recommended.code if top.recommended else None,
        "cheapest_code": top.cheapest.code if top.cheapest else None,
        "fastest_code": top.fastest.code if top.fastest else None,
        "primary_options": [option.to_dict() for option in build_primary_options(top)],
        "all_options": [option.to_dict() for option in options],
    }


class ShippingQuoteService:
    """Package computation and customer-facing rate quotes."""

    def __init__(self, *, shipping_config: ShippingConfig, carrier: SkydropxClient | None) -> None:
        self.shipping_config = shipping_config
        self.carrier = carrier

    def build_package(
        self,
        *,
        items: list[OrderItem],
        products: Mapping[str, ProductShippingData],
    ) -> ShippingPackage:
        return compute_shipping_package(items=items, products=products, shipping_config=self.shipping_config)

    def _explicit_package(self, parcel: Mapping[str, float]) -> dict[str, Any]:
        weight = compute_billable_weight(
            mass_g=parcel["weight_g"],
            length_cm=parcel["length_cm"],
            width_cm=parcel["width_cm"],
            height_cm=parcel["height_cm"],
            volumetric_divisor=self.shipping_config.volumetric_divisor,
        )
        return {
            "mass_weight_g": int(round(parcel["weight_g"])),
            "length_cm": float(parcel["length_cm"]),
            "width_cm": float(parcel["width_cm"]),
            "height_cm": float(parcel["height_cm"]),
            "dims_source": "explicit",
            "volumetric_weight_kg": weight.volumetric_kg,
            "billable_weight_kg": weight.billable_kg,
            "volumetric_divisor": weight.volumetric_divisor,
            "weight_g": int(round(weight.billable_kg * 1000)),
        }

    def _flat_rate_options(self, *, destination: DestinationAddress, billable_kg: float) -> tuple[str, list[ShippingOption]]:
        zone = postal_code_to_zone(destination.postal_code)
        quote = quote_flat_rate(
            zone=zone,
            billable_kg=billable_kg,
            tariffs=self.shipping_config.flat_rate_tariffs,
            express_multiplier=self.shipping_config.flat_rate_express_multiplier,
        )
        rates = [
            CarrierRate(
                carrier=FLAT_RATE_CARRIER,
                service="Standard",
                price_cents=quote.standard_cents,
                external_rate_id=f"flat_rate_{zone}_standard",
            ),
            CarrierRate(
                carrier=FLAT_RATE_CARRIER,
                service="Express",
                price_cents=quote.express_cents,
                external_rate_id=f"flat_rate_{zone}_express",
            ),
        ]
        return zone, build_shipping_options(rates, packaging_cents=self.shipping_config.packaging_cents)

    def quote_rates(
        self,
        *,
        destination: DestinationAddress,
        items: list[OrderItem],
        products: Mapping[str, ProductShippingData],
        parcel: Mapping[str, float] | None = None,
    ) -> dict[str, Any]:
        """Quote a destination and return ranked options plus any warnings."""

        if parcel is not None:
            package = self._explicit_package(parcel)
        else:
            package = self.build_package(items=items, products=products).to_dict()

        warnings: list[str] = []
        rates: list[CarrierRate] = []
        if self.carrier is None:
            warnings.append("Carrier quotes are not configured; showing flat zone rates.")
        else:
            try:
                rates = self.carrier.quote_rates(
                    destination=destination,
                    parcel=Parcel(
                        weight_kg=round(package["billable_weight_kg"], 3),
                        length_cm=package["length_cm"],
                        width_cm=package["width_cm"],
                        height_cm=package["height_cm"],
                    ),
                )
            except (SkydropxAuthError, SkydropxUnavailableError) as exc:
                LOGGER.warning("Carrier quote failed destination_zip=%s error=%s", destination.postal_code, exc)
                raise carrier_error_to_api_error(exc) from exc

        options = build_shipping_options(rates, packaging_cents=self.shipping_config.packaging_cents)
        source = "skydropx"
        zone: str | None = None
        if not options:
            if self.carrier is not None:
                warnings.append("The carrier returned no rates; showing flat zone rates.")
            try:
                zone, options = self._flat_rate_options(
                    destination=destination,
                    billable_kg=package["billable_weight_kg"],
                )
            except ValueError as exc:
                raise APIError(
                    status_code=502,
                    error_code="NO_SHIPPING_RATES",
                    message="No shipping rates are available for this destination.",
                    details=str(exc),
                ) from exc
            source = FLAT_RATE_CARRIER

        return {
            "data": {
                "source": source,
                "package": package,
                "zone": zone,
                **options_payload(
                    options,
                    recommended_max_eta_days=self.shipping_config.recommended_max_eta_days,
                ),
            },
            "warnings": warnings or None,
        }
