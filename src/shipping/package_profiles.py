# This module resolves admin-selected package profiles and validates custom parcels.
# It exists so the admin package endpoints reject impossible boxes before they reach the carrier.
# Limits come from the shipping policy, so ops can raise them without a code change.

from __future__ import annotations

import math

from src.shipping.shipping_config import PackageProfile, ShippingConfig


def get_package_profile(key: str, *, shipping_config: ShippingConfig) -> PackageProfile:
    normalized = (key or "").strip().upper()
    profile = shipping_config.package_profiles.get(normalized)
    if profile is None:
        valid = ", ".join(sorted(shipping_config.package_profiles))
        raise ValueError(f"Unknown package profile {key!r}. Expected one of: {valid}")
    return profile


def validate_package_dimensions(
    *,
    length_cm: float,
    width_cm: float,
    height_cm: float,
    weight_g: float,
    shipping_config: ShippingConfig,
) -> None:
    """Raise ValueError when a parcel is outside the configured carrier limits."""

    max_dim = shipping_config.max_dimension_cm
    for name, value in (("length_cm", length_cm), ("width_cm", width_cm), ("height_cm", height_cm)):
        if not math.isfinite(value):
            raise ValueError(f"{name} must be a finite number.")
        if value <= 0:
            raise ValueError(f"{name} must be greater than 0.")
        if value > max_dim:
            raise ValueError(f"{name} must be at most {max_dim:g} cm.")

    if not math.isfinite(weight_g):
        raise ValueError("weight_g must be a finite number.")
    if weight_g <= 0:
        raise ValueError("weight_g must be greater than 0.")
    if weight_g > shipping_config.max_weight_g:
        raise ValueError(f"weight_g must be at most {shipping_config.max_weight_g} g.")
