# This module holds the rules for shipping data stored in the order metadata JSON column.
# It exists because checkout, admin routes, and carrier webhooks all write the same JSON blob.
# Canonical pricing lives in root shipping_pricing and every rate_used copy is derived from it.
# The helpers never mutate their inputs so callers can diff before and after states safely.

from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from src.shipping.pricing import ShippingPricing, normalize_shipping_pricing, to_cents
from src.shipping.rates import rate_option_code

LOGGER = logging.getLogger("shipping.metadata")

EXPLICIT_OVERWRITE_ROUTE = "apply-rate"

PROTECTED_PRICING_PATHS: tuple[tuple[str, ...], ...] = (
    ("shipping_pricing", "carrier_cents"),
    ("shipping_pricing", "packaging_cents"),
    ("shipping_pricing", "margin_cents"),
    ("shipping_pricing", "total_cents"),
    ("shipping_pricing", "customer_total_cents"),
    ("shipping", "rate_used", "price_cents"),
    ("shipping", "rate_used", "carrier_cents"),
    ("shipping", "rate_used", "customer_total_cents"),
    ("shipping", "price_cents"),
    ("shipping_cost_cents",),
)


def json_merge_patch(target: Any, patch: Any) -> Any:
    """Apply an RFC 7386 merge patch and return a new document; null values delete keys."""

    if not isinstance(patch, Mapping):
        return copy.deepcopy(patch)
    result: dict[str, Any] = copy.deepcopy(dict(target)) if isinstance(target, Mapping) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = json_merge_patch(result.get(key), value)
    return result


def get_path(document: Mapping[str, Any] | None, path: tuple[str, ...]) -> Any:
    current: Any = document
    for part in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


def _shipping(metadata: Mapping[str, Any] | None) -> dict[str, Any]:
    value = metadata.get("shipping") if isinstance(metadata, Mapping) else None
    return dict(value) if isinstance(value, Mapping) else {}


def _mapping_or_none(value: Any) -> dict[str, Any] | None:
    return dict(value) if isinstance(value, Mapping) else None


def _first_not_none(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def _positive(value: Any) -> bool:
    number = to_cents(value)
    return number is not None and number > 0


def resolve_canonical_pricing(metadata: Mapping[str, Any]) -> dict[str, Any] | None:
    """Return the pricing block every other copy must agree with, or None."""

    shipping = _shipping(metadata)
    for candidate in (metadata.get("shipping_pricing"), shipping.get("pricing")):
        if isinstance(candidate, Mapping) and (
            to_cents(candidate.get("carrier_cents")) is not None
            or to_cents(candidate.get("total_cents")) is not None
        ):
            return dict(candidate)

    total = to_cents(metadata.get("shipping_cost_cents"))
    if total is None:
        total = to_cents(shipping.get("price_cents"))
    if total is not None and total >= 0:
        return {"total_cents": total, "customer_total_cents": total}
    return None


def _canonical_cents(pricing: Mapping[str, Any] | None) -> tuple[Any, Any, Any]:
    if not pricing:
        return None, None, None
    carrier = to_cents(pricing.get("carrier_cents"))
    total = to_cents(pricing.get("total_cents"))
    customer_total = to_cents(pricing.get("customer_total_cents"))
    return carrier, total, customer_total


@dataclass(frozen=True)
class MetadataNormalization:
    metadata: dict[str, Any]
    pricing: ShippingPricing | None
    mismatch_detected: bool
    canonical_detected: bool
    rate_used_overwritten: bool
    corrected: bool
    correction_reason: str | None


def normalize_shipping_metadata(
    metadata: Mapping[str, Any] | None,
    *,
    source: str = "admin",
    order_id: str | None = None,
) -> MetadataNormalization:
    """Reconcile pricing copies and derive rate_used, rate, rate_id, and option_code."""

    working: dict[str, Any] = copy.deepcopy(dict(metadata or {}))
    shipping = _shipping(working)
    root_pricing = _mapping_or_none(working.get("shipping_pricing"))
    nested_pricing = _mapping_or_none(shipping.get("pricing"))

    mismatch_detected = bool(root_pricing and nested_pricing and root_pricing != nested_pricing)
    canonical = resolve_canonical_pricing(working) or root_pricing or nested_pricing
    pricing = normalize_shipping_pricing(canonical)

    corrected = False
    if pricing is not None and canonical is not None:
        normalized = pricing.to_dict()
        for name in ("carrier_cents", "packaging_cents", "margin_cents", "total_cents"):
            raw_value = canonical.get(name)
            if isinstance(raw_value, (int, float)) and not isinstance(raw_value, bool) and raw_value != normalized[name]:
                corrected = True
        corrected = corrected or pricing.corrected

    if pricing is not None:
        shipping["pricing"] = pricing.to_dict()
        shipping["price_cents"] = pricing.total_cents
        working["shipping_pricing"] = pricing.to_dict()
        working["shipping_cost_cents"] = pricing.total_cents

    rate_used = _mapping_or_none(shipping.get("rate_used")) or {}
    rate_meta = _mapping_or_none(shipping.get("rate")) or {}
    canon_carrier, canon_total, _ = _canonical_cents(canonical)
    has_canonical_numbers = canon_carrier is not None or canon_total is not None

    should_derive = bool(
        rate_used
        or rate_meta.get("external_rate_id")
        or rate_meta.get("rate_id")
        or rate_meta.get("external_id")
        or pricing is not None
    )
    if should_derive:
        if has_canonical_numbers and pricing is not None:
            carrier_cents = pricing.carrier_cents
            price_cents = pricing.total_cents
            customer_total_cents = pricing.customer_total_cents
        else:
            carrier_cents = to_cents(rate_used.get("carrier_cents"))
            if carrier_cents is None:
                carrier_cents = to_cents(rate_meta.get("carrier_cents"))
            price_cents = to_cents(rate_used.get("price_cents"))
            if price_cents is None:
                price_cents = to_cents(rate_meta.get("price_cents"))
            if price_cents is None:
                price_cents = carrier_cents
            customer_total_cents = price_cents

        external_rate_id = (
            rate_used.get("external_rate_id")
            or rate_used.get("rate_id")
            or rate_meta.get("external_rate_id")
            or rate_meta.get("rate_id")
            or rate_meta.get("external_id")
            or shipping.get("rate_id")
            or None
        )
        provider = rate_used.get("provider") or rate_meta.get("provider")
        service = rate_used.get("service") or rate_meta.get("service")
        eta_min = _first_not_none(rate_used.get("eta_min_days"), rate_meta.get("eta_min_days"))
        eta_max = _first_not_none(rate_used.get("eta_max_days"), rate_meta.get("eta_max_days"))

        shipping["rate_used"] = {
            **rate_used,
            "eta_min_days": eta_min,
            "eta_max_days": eta_max,
            "external_rate_id": external_rate_id,
            "selection_source": rate_used.get("selection_source")
            or ("checkout" if source == "checkout" else "admin"),
            "provider": provider,
            "service": service,
            "carrier_cents": carrier_cents,
            "price_cents": price_cents,
            "customer_total_cents": customer_total_cents,
        }
        shipping["rate"] = {
            "external_id": external_rate_id,
            "provider": provider,
            "service": service,
            "eta_min_days": eta_min,
            "eta_max_days": eta_max,
        }
        shipping["rate_id"] = external_rate_id
        shipping["option_code"] = rate_option_code(provider, service)

    if shipping or "shipping" in working:
        working["shipping"] = shipping

    if source != "checkout":
        LOGGER.info(
            "shipping metadata normalized order_id=%s source=%s canonical_detected=%s "
            "mismatch_detected=%s corrected=%s total_cents=%s",
            order_id,
            source,
            canonical is not None,
            mismatch_detected,
            corrected,
            pricing.total_cents if pricing else None,
        )

    return MetadataNormalization(
        metadata=working,
        pricing=pricing,
        mismatch_detected=mismatch_detected,
        canonical_detected=canonical is not None,
        rate_used_overwritten=has_canonical_numbers,
        corrected=corrected,
        correction_reason=pricing.correction_reason if corrected and pricing else None,
    )


def merge_rate_used_preserve_cents(
    existing: Mapping[str, Any] | None,
    incoming: Mapping[str, Any] | None,
    pricing: Mapping[str, Any] | None,
) -> dict[str, Any]:
    """Merge two rate_used blocks; cents come from incoming, then existing, then canonical pricing."""

    existing_rate = dict(existing or {})
    incoming_rate = dict(incoming or {})
    canon_carrier, canon_total, canon_customer_total = _canonical_cents(pricing)
    if canon_customer_total is None:
        canon_customer_total = canon_total

    def _pick(name: str, fallback: Any) -> Any:
        for candidate in (incoming_rate.get(name), existing_rate.get(name)):
            if candidate is not None:
                return candidate
        return fallback

    return {
        **existing_rate,
        **incoming_rate,
        "price_cents": _pick("price_cents", canon_total),
        "carrier_cents": _pick("carrier_cents", canon_carrier),
        "customer_total_cents": _pick("customer_total_cents", canon_customer_total),
    }


def _with_rate_used(metadata: Mapping[str, Any], rate_used: dict[str, Any]) -> dict[str, Any]:
    result = copy.deepcopy(dict(metadata))
    shipping = _shipping(result)
    shipping["rate_used"] = rate_used
    result["shipping"] = shipping
    return result


def _has_cents(rate_used: Mapping[str, Any] | None) -> bool:
    if not rate_used:
        return False
    return _positive(rate_used.get("price_cents")) or _positive(rate_used.get("carrier_cents"))


def _fill_cents(rate: dict[str, Any], name: str, value: Any) -> None:
    # A missing canonical number never replaces a stored one.
    if value is not None:
        rate[name] = value


def preserve_rate_used(
    fresh_metadata: Mapping[str, Any] | None,
    incoming_metadata: Mapping[str, Any],
) -> dict[str, Any]:
    """Decide which rate_used cents survive a write of incoming metadata over the fresh row.

    An explicit overwrite (apply-rate, or a writer that already saw canonical pricing)
    takes canonical cents. Otherwise incoming numbers win, then numbers already in the
    database, then canonical pricing fills whatever is still missing.
    """

    fresh_rate = _mapping_or_none(_shipping(fresh_metadata).get("rate_used"))
    incoming_shipping = _shipping(incoming_metadata)
    incoming_rate = _mapping_or_none(incoming_shipping.get("rate_used"))

    canonical = _mapping_or_none(incoming_metadata.get("shipping_pricing")) or _mapping_or_none(
        incoming_shipping.get("pricing")
    )
    canon_carrier, canon_total, canon_customer_total = _canonical_cents(canonical)
    has_canonical_numbers = canon_carrier is not None or canon_total is not None

    last_write = _mapping_or_none(incoming_shipping.get("_last_write")) or {}
    explicit_overwrite = (
        last_write.get("route") == EXPLICIT_OVERWRITE_ROUTE or last_write.get("canonical_detected") is True
    )

    incoming_has_numbers = _has_cents(incoming_rate)
    matches_canonical = (
        incoming_has_numbers
        and has_canonical_numbers
        and incoming_rate is not None
        and to_cents(incoming_rate.get("price_cents")) == canon_total
        and to_cents(incoming_rate.get("carrier_cents")) == canon_carrier
    )

    if explicit_overwrite or matches_canonical:
        rate = dict(incoming_rate or {})
        if canon_total is not None:
            rate["price_cents"] = canon_total
        if canon_carrier is not None:
            rate["carrier_cents"] = canon_carrier
        if canon_customer_total is not None:
            rate["customer_total_cents"] = canon_customer_total
        return _with_rate_used(incoming_metadata, rate)

    if incoming_has_numbers:
        rate = dict(incoming_rate or {})
        for name, fallback in (
            ("price_cents", canon_total),
            ("carrier_cents", canon_carrier),
            ("customer_total_cents", canon_customer_total),
        ):
            if rate.get(name) is None and fallback is not None:
                rate[name] = fallback
        return _with_rate_used(incoming_metadata, rate)

    if _has_cents(fresh_rate) and fresh_rate is not None:
        rate = dict(incoming_rate or {})
        for name in ("price_cents", "carrier_cents", "customer_total_cents"):
            preserved = fresh_rate.get(name)
            rate[name] = preserved if preserved is not None else rate.get(name)
        return _with_rate_used(incoming_metadata, rate)

    if has_canonical_numbers:
        rate = dict(incoming_rate or {})
        _fill_cents(rate, "price_cents", canon_total)
        _fill_cents(rate, "carrier_cents", canon_carrier)
        customer_total = canon_customer_total if canon_customer_total is not None else canon_total
        _fill_cents(rate, "customer_total_cents", customer_total)
        return _with_rate_used(incoming_metadata, rate)

    return copy.deepcopy(dict(incoming_metadata))


def ensure_rate_used(metadata: Mapping[str, Any]) -> dict[str, Any]:
    """Fill missing rate_used cents from root shipping_pricing as the last step before a write."""

    pricing = _mapping_or_none(metadata.get("shipping_pricing"))
    if not pricing or not (_positive(pricing.get("carrier_cents")) or _positive(pricing.get("total_cents"))):
        return copy.deepcopy(dict(metadata))

    canon_carrier, canon_total, canon_customer_total = _canonical_cents(pricing)
    if canon_customer_total is None:
        canon_customer_total = canon_total
    existing = _mapping_or_none(_shipping(metadata).get("rate_used"))

    if canon_total is not None and (existing is None or existing.get("price_cents") is None):
        LOGGER.error(
            "rate_used.price_cents is null while shipping_pricing.total_cents=%s; filling from canonical pricing",
            canon_total,
        )

    if not _has_cents(existing):
        rate = dict(existing or {})
        _fill_cents(rate, "price_cents", canon_total)
        _fill_cents(rate, "carrier_cents", canon_carrier)
        _fill_cents(rate, "customer_total_cents", canon_customer_total)
        return _with_rate_used(metadata, rate)

    if existing is not None and (existing.get("price_cents") is None or existing.get("carrier_cents") is None):
        rate = dict(existing)
        if rate.get("price_cents") is None:
            rate["price_cents"] = canon_total
        if rate.get("carrier_cents") is None:
            rate["carrier_cents"] = canon_carrier
        if rate.get("customer_total_cents") is None:
            rate["customer_total_cents"] = canon_customer_total
        return _with_rate_used(metadata, rate)

    return copy.deepcopy(dict(metadata))


def stamp_last_write(
    metadata: Mapping[str, Any],
    *,
    route: str,
    sha: str | None = None,
    at: datetime | None = None,
) -> dict[str, Any]:
    """Record which route wrote the metadata and whether canonical pricing drove rate_used."""

    result = copy.deepcopy(dict(metadata))
    shipping = _shipping(result)
    canonical = resolve_canonical_pricing(result)
    canon_carrier, canon_total, _ = _canonical_cents(canonical)
    shipping["_last_write"] = {
        "route": route,
        "at": (at or datetime.now(tz=UTC)).isoformat(),
        "sha": sha,
        "canonical_detected": canonical is not None,
        "rate_used_overwritten": canon_carrier is not None or canon_total is not None,
    }
    result["shipping"] = shipping
    return result


@dataclass(frozen=True)
class RateUsedValidation:
    is_valid: bool
    has_canonical_pricing: bool
    rate_used_has_numbers: bool
    discrepancy: dict[str, Any] | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "has_canonical_pricing": self.has_canonical_pricing,
            "rate_used_has_numbers": self.rate_used_has_numbers,
            "discrepancy": self.discrepancy,
        }


def validate_rate_used_persistence(
    metadata: Mapping[str, Any] | None,
    *,
    order_id: str,
    route: str,
) -> RateUsedValidation:
    """Check that a persisted row still carries rate_used cents whenever pricing has numbers."""

    metadata = metadata or {}
    pricing = _mapping_or_none(metadata.get("shipping_pricing"))
    rate_used = _mapping_or_none(_shipping(metadata).get("rate_used"))

    has_canonical = bool(pricing) and (
        to_cents(pricing.get("total_cents")) is not None or to_cents(pricing.get("carrier_cents")) is not None
    )
    rate_used_has_numbers = bool(rate_used) and (
        to_cents(rate_used.get("price_cents")) is not None or to_cents(rate_used.get("carrier_cents")) is not None
    )

    if has_canonical and not rate_used_has_numbers:
        discrepancy = {
            "shipping_pricing_total_cents": pricing.get("total_cents") if pricing else None,
            "shipping_pricing_carrier_cents": pricing.get("carrier_cents") if pricing else None,
            "rate_used_price_cents": rate_used.get("price_cents") if rate_used else None,
            "rate_used_carrier_cents": rate_used.get("carrier_cents") if rate_used else None,
        }
        LOGGER.error(
            "rate_used persistence check failed order_id=%s route=%s discrepancy=%s",
            order_id,
            route,
            discrepancy,
        )
        return RateUsedValidation(
            is_valid=False,
            has_canonical_pricing=True,
            rate_used_has_numbers=False,
            discrepancy=discrepancy,
        )

    return RateUsedValidation(
        is_valid=True,
        has_canonical_pricing=has_canonical,
        rate_used_has_numbers=rate_used_has_numbers,
        discrepancy=None,
    )


def find_nulled_pricing_fields(
    before: Mapping[str, Any] | None,
    after: Mapping[str, Any] | None,
) -> list[str]:
    """List protected pricing paths that held a number before and are null or absent after."""

    nulled: list[str] = []
    for path in PROTECTED_PRICING_PATHS:
        if to_cents(get_path(before, path)) is None:
            continue
        if to_cents(get_path(after, path)) is None:
            nulled.append(".".join(path))
    return sorted(nulled)
