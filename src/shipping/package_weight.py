# This module computes the physical package for an order and its billable weight.
# It exists so checkout quotes, admin requotes, and label creation all weigh parcels the same way.
# Mass weight is tare plus item weights, dimensions come from products or profile fallbacks.
# Carriers charge for the larger of mass and volumetric weight, so both values are kept for audits.

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from src.shipping.shipping_config import Dimensions, ShippingConfig


def _usable_measure(value: float | None) -> bool:
    return value is not None and math.isfinite(value) and value > 0


@dataclass(frozen=True)
class BillableWeight:
    mass_kg: float
    volumetric_kg: float
    billable_kg: float
    volumetric_divisor: float

    @property
    def uses_volumetric(self) -> bool:
        return self.volumetric_kg > self.mass_kg


@dataclass(frozen=True)
class ProductShippingData:
    shipping_weight_g: float | None = None
    shipping_length_cm: float | None = None
    shipping_width_cm: float | None = None
    shipping_height_cm: float | None = None
    shipping_profile: str | None = None

    def has_dimensions(self) -> bool:
        values = (self.shipping_length_cm, self.shipping_width_cm, self.shipping_height_cm)
        return all(_usable_measure(value) for value in values)

    def dimensions(self) -> Dimensions:
        if not self.has_dimensions():
            raise ValueError("Product has no complete shipping dimensions.")
        return Dimensions(
            length_cm=float(self.shipping_length_cm or 0),
            width_cm=float(self.shipping_width_cm or 0),
            height_cm=float(self.shipping_height_cm or 0),
        )


@dataclass(frozen=True)
class OrderItem:
    product_id: str | None
    qty: int = 1


@dataclass(frozen=True)
class ShippingPackage:
    mass_weight_g: int
    tare_weight_g: int
    missing_weight_fields_count: int
    length_cm: float
    width_cm: float
    height_cm: float
    dims_source: str
    profile_used: str | None
    volumetric_weight_kg: float
    billable_weight_kg: float
    volumetric_divisor: float
    weight_g: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "mass_weight_g": self.mass_weight_g,
            "tare_weight_g": self.tare_weight_g,
            "missing_weight_fields_count": self.missing_weight_fields_count,
            "length_cm": self.length_cm,
            "width_cm": self.width_cm,
            "height_cm": self.height_cm,
            "dims_source": self.dims_source,
            "profile_used": self.profile_used,
            "volumetric_weight_kg": self.volumetric_weight_kg,
            "billable_weight_kg": self.billable_weight_kg,
            "volumetric_divisor": self.volumetric_divisor,
            "weight_g": self.weight_g,
        }


def compute_billable_weight(
    *,
    mass_g: float,
    length_cm: float,
    width_cm: float,
    height_cm: float,
    volumetric_divisor: float = 5000,
) -> BillableWeight:
    """Return mass, volumetric, and billable weight in kilograms.

    Billable weight is ``max(mass_kg, length * width * height / volumetric_divisor)``.
    """

    values = {
        "mass_g": mass_g,
        "length_cm": length_cm,
        "width_cm": width_cm,
        "height_cm": height_cm,
        "volumetric_divisor": volumetric_divisor,
    }
    for name, value in values.items():
        if not math.isfinite(value):
            raise ValueError(f"{name} must be a finite number, got {value}")
    if mass_g < 0:
        raise ValueError(f"mass_g must be nonnegative, got {mass_g}")
    if min(length_cm, width_cm, height_cm) <= 0:
        raise ValueError(
            f"Package dimensions must be > 0, got {length_cm}x{width_cm}x{height_cm} cm"
        )
    if volumetric_divisor <= 0:
        raise ValueError(f"volumetric_divisor must be > 0, got {volumetric_divisor}")

    mass_kg = mass_g / 1000.0
    volumetric_kg = (length_cm * width_cm * height_cm) / volumetric_divisor
    return BillableWeight(
        mass_kg=mass_kg,
        volumetric_kg=volumetric_kg,
        billable_kg=max(mass_kg, volumetric_kg),
        volumetric_divisor=float(volumetric_divisor),
    )


def _item_weight_g(
    item: OrderItem,
    products: Mapping[str, ProductShippingData],
    default_item_weight_g: int,
) -> tuple[float, bool]:
    if not item.product_id:
        return float(default_item_weight_g), True
    product = products.get(item.product_id)
    if product is None or not _usable_measure(product.shipping_weight_g):
        return float(default_item_weight_g), True
    return float(product.shipping_weight_g), False


def compute_shipping_package(
    *,
    items: Iterable[OrderItem],
    products: Mapping[str, ProductShippingData],
    shipping_config: ShippingConfig,
) -> ShippingPackage:
    """Build the shipping package for order items using product data and config fallbacks."""

    item_list = list(items)

    items_weight_g = 0.0
    missing_weight_fields = 0
    for item in item_list:
        qty = item.qty if item.qty and item.qty > 0 else 1
        weight_g, used_default = _item_weight_g(item, products, shipping_config.default_item_weight_g)
        items_weight_g += weight_g * qty
        if used_default:
            missing_weight_fields += qty

    mass_weight_g = int(round(shipping_config.tare_weight_g + items_weight_g))

    max_length = 0.0
    max_width = 0.0
    max_height = 0.0
    has_product_dims = False
    has_fallback = False
    profile_used: str | None = None

    for item in item_list:
        if not item.product_id:
            continue
        product = products.get(item.product_id)
        if product is not None and product.has_dimensions():
            dims = product.dimensions()
            has_product_dims = True
        else:
            profile_key, dims = shipping_config.fallback_dims_for_profile(
                product.shipping_profile if product is not None else None
            )
            has_fallback = True
            if profile_used is None:
                profile_used = profile_key
        max_length = max(max_length, dims.length_cm)
        max_width = max(max_width, dims.width_cm)
        max_height = max(max_height, dims.height_cm)

    if max_length > 0 and max_width > 0 and max_height > 0:
        final_dims = Dimensions(length_cm=max_length, width_cm=max_width, height_cm=max_height)
        if has_product_dims and not has_fallback:
            dims_source = "products"
        elif has_fallback and not has_product_dims:
            dims_source = "fallback"
        else:
            dims_source = "mixed"
    else:
        final_dims = shipping_config.default_dims
        dims_source = "fallback"
        profile_used = "CUSTOM"

    weight = compute_billable_weight(
        mass_g=mass_weight_g,
        length_cm=final_dims.length_cm,
        width_cm=final_dims.width_cm,
        height_cm=final_dims.height_cm,
        volumetric_divisor=shipping_config.volumetric_divisor,
    )

    return ShippingPackage(
        mass_weight_g=mass_weight_g,
        tare_weight_g=shipping_config.tare_weight_g,
        missing_weight_fields_count=missing_weight_fields,
        length_cm=final_dims.length_cm,
        width_cm=final_dims.width_cm,
        height_cm=final_dims.height_cm,
        dims_source=dims_source,
        profile_used=profile_used,
        volumetric_weight_kg=weight.volumetric_kg,
        billable_weight_kg=weight.billable_kg,
        volumetric_divisor=weight.volumetric_divisor,
        weight_g=int(round(weight.billable_kg * 1000)),
    )
