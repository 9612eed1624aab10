# This module reconciles the shipping price breakdown stored on an order.
# It exists because carrier, packaging, and margin cents were written by different flows over time.
# The normalizer enforces total == carrier + packaging + margin and records when it had to correct.

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

CORRECTION_MISMATCH = "mismatch_total_vs_components"

PRICING_CENT_FIELDS = (
    "carrier_cents",
    "packaging_cents",
    "margin_cents",
    "total_cents",
    "customer_total_cents",
)


def to_cents(value: Any) -> float | int | None:
    """Return a finite number from a number or numeric string, else None."""

    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value)
        except ValueError:
            return None
        if not math.isfinite(parsed):
            return None
        return int(parsed) if parsed.is_integer() else parsed
    return None


def _strict_number(value: Any) -> float | int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value if math.isfinite(value) else None


def has_pricing_numbers(pricing: Mapping[str, Any] | None) -> bool:
    if not isinstance(pricing, Mapping):
        return False
    return any(to_cents(pricing.get(name)) is not None for name in PRICING_CENT_FIELDS)


@dataclass(frozen=True)
class ShippingPricing:
    carrier_cents: int
    packaging_cents: int
    margin_cents: int
    total_cents: int
    customer_total_cents: int
    customer_eta_min_days: int | None = None
    customer_eta_max_days: int | None = None
    corrected: bool = False
    correction_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "carrier_cents": self.carrier_cents,
            "packaging_cents": self.packaging_cents,
            "margin_cents": self.margin_cents,
            "total_cents": self.total_cents,
            "customer_total_cents": self.customer_total_cents,
            "customer_eta_min_days": self.customer_eta_min_days,
            "customer_eta_max_days": self.customer_eta_max_days,
            "corrected": self.corrected,
        }
        if self.correction_reason is not None:
            payload["correction_reason"] = self.correction_reason
        return payload


def normalize_shipping_pricing(raw: Mapping[str, Any] | None) -> ShippingPricing | None:
    if not raw:
        return None

    packaging = max(0, _strict_number(raw.get("packaging_cents")) or 0)
    margin = max(0, _strict_number(raw.get("margin_cents")) or 0)
    total = _strict_number(raw.get("total_cents"))
    if total is None:
        total = _strict_number(raw.get("customer_total_cents"))
    carrier = _strict_number(raw.get("carrier_cents"))

    resolved_carrier = carrier if carrier is not None else 0
    resolved_total = total if total is not None else resolved_carrier + packaging + margin
    corrected = False

    if total is not None and total >= 0 and (packaging > 0 or margin > 0 or carrier is None):
        expected_carrier = max(0, total - packaging - margin)
        if carrier is None or carrier != expected_carrier:
            resolved_carrier = expected_carrier
            corrected = True
    elif carrier is not None:
        expected_total = carrier + packaging + margin
        if total is None or total != expected_total:
            resolved_total = expected_total
            corrected = True

    if resolved_total != resolved_carrier + packaging + margin:
        resolved_total = resolved_carrier + packaging + margin
        corrected = True

    eta_min = _strict_number(raw.get("customer_eta_min_days"))
    eta_max = _strict_number(raw.get("customer_eta_max_days"))
    previous_reason = raw.get("correction_reason")

    carrier_cents = int(round(resolved_carrier))
    packaging_cents = int(round(packaging))
    margin_cents = int(round(margin))
    total_cents = carrier_cents + packaging_cents + margin_cents

    return ShippingPricing(
        carrier_cents=carrier_cents,
        packaging_cents=packaging_cents,
        margin_cents=margin_cents,
        total_cents=total_cents,
        customer_total_cents=total_cents,
        customer_eta_min_days=int(eta_min) if eta_min is not None else None,
        customer_eta_max_days=int(eta_max) if eta_max is not None else None,
        corrected=corrected or bool(raw.get("corrected")),
        correction_reason=CORRECTION_MISMATCH if corrected else (str(previous_reason) if previous_reason else None),
    )
