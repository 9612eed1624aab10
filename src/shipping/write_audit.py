# This module records what the order metadata looked like right before and right after a write.
# It exists so a lost rate_used or shipping_pricing value can be traced back to the route that dropped it.
# Each record is logged as one JSON line and also returned to the caller for tests and responses.

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from src.shipping.pricing import to_cents

LOGGER = logging.getLogger("shipping.write_audit")


def _mapping(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, Mapping) else {}


def extract_metadata_snapshot(metadata: Mapping[str, Any] | None) -> dict[str, Any]:
    metadata = metadata or {}
    shipping = _mapping(metadata.get("shipping"))
    rate_used = shipping.get("rate_used") if isinstance(shipping.get("rate_used"), Mapping) else None
    pricing = metadata.get("shipping_pricing") if isinstance(metadata.get("shipping_pricing"), Mapping) else None
    last_write = shipping.get("_last_write") if isinstance(shipping.get("_last_write"), Mapping) else None

    return {
        "rate_used": (
            {
                "price_cents": rate_used.get("price_cents"),
                "carrier_cents": rate_used.get("carrier_cents"),
                "customer_total_cents": rate_used.get("customer_total_cents"),
            }
            if rate_used is not None
            else None
        ),
        "shipping_pricing": (
            {
                "total_cents": pricing.get("total_cents"),
                "carrier_cents": pricing.get("carrier_cents"),
                "packaging_cents": pricing.get("packaging_cents"),
                "margin_cents": pricing.get("margin_cents"),
                "customer_total_cents": pricing.get("customer_total_cents"),
            }
            if pricing is not None
            else None
        ),
        "_last_write": (
            {
                "route": last_write.get("route"),
                "at": last_write.get("at"),
                "sha": last_write.get("sha"),
                "canonical_detected": last_write.get("canonical_detected"),
                "rate_used_overwritten": last_write.get("rate_used_overwritten"),
            }
            if last_write is not None
            else None
        ),
    }


def _flatten(value: Any, prefix: str = "") -> dict[str, Any]:
    if isinstance(value, Mapping) and value:
        flat: dict[str, Any] = {}
        for key, child in value.items():
            flat.update(_flatten(child, f"{prefix}.{key}" if prefix else str(key)))
        return flat
    return {prefix: value} if prefix else {}


def diff_snapshots(before: Mapping[str, Any] | None, after: Mapping[str, Any] | None) -> list[dict[str, Any]]:
    """Return every leaf path whose value differs between two snapshots, sorted by path."""

    flat_before = _flatten(before or {})
    flat_after = _flatten(after or {})
    changes: list[dict[str, Any]] = []
    for path in sorted(set(flat_before) | set(flat_after)):
        old = flat_before.get(path)
        new = flat_after.get(path)
        if old != new:
            changes.append({"path": path, "before": old, "after": new})
    return changes


def _as_iso(value: datetime | str | None) -> str | None:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _emit(record: dict[str, Any], *, level: int = logging.INFO) -> None:
    LOGGER.log(level, "%s %s", record["stage"], json.dumps(record, default=str, sort_keys=True))


def log_pre_write(
    *,
    route: str,
    order_id: str,
    fresh_metadata: Mapping[str, Any] | None,
    fresh_updated_at: datetime | str | None,
    incoming_metadata: Mapping[str, Any] | None,
) -> dict[str, Any]:
    record = {
        "stage": "PRE-WRITE",
        "route": route,
        "order_id": order_id,
        "logged_at": datetime.now(tz=UTC).isoformat(),
        "fresh_updated_at": _as_iso(fresh_updated_at),
        "fresh": extract_metadata_snapshot(fresh_metadata),
        "incoming": extract_metadata_snapshot(incoming_metadata),
    }
    _emit(record)
    return record


def _detect_discrepancy(snapshot: Mapping[str, Any]) -> dict[str, Any] | None:
    pricing = snapshot.get("shipping_pricing") or {}
    rate_used = snapshot.get("rate_used") or {}
    pricing_has_numbers = (
        to_cents(pricing.get("total_cents")) is not None or to_cents(pricing.get("carrier_cents")) is not None
    )
    rate_used_null = rate_used.get("price_cents") is None or rate_used.get("carrier_cents") is None
    if pricing_has_numbers and rate_used_null:
        return {
            "shipping_pricing_total_cents": pricing.get("total_cents"),
            "shipping_pricing_carrier_cents": pricing.get("carrier_cents"),
            "rate_used_price_cents": rate_used.get("price_cents"),
            "rate_used_carrier_cents": rate_used.get("carrier_cents"),
        }
    return None


def log_post_write(
    *,
    route: str,
    order_id: str,
    post_metadata: Mapping[str, Any] | None,
    post_updated_at: datetime | str | None,
    pre_metadata: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    post_snapshot = extract_metadata_snapshot(post_metadata)
    record: dict[str, Any] = {
        "stage": "POST-WRITE",
        "route": route,
        "order_id": order_id,
        "logged_at": datetime.now(tz=UTC).isoformat(),
        "post_updated_at": _as_iso(post_updated_at),
        "post": post_snapshot,
    }
    if pre_metadata is not None:
        record["changes"] = diff_snapshots(extract_metadata_snapshot(pre_metadata), post_snapshot)

    discrepancy = _detect_discrepancy(post_snapshot)
    if discrepancy is not None:
        record["discrepancy"] = discrepancy
        _emit(record, level=logging.ERROR)
    else:
        _emit(record)
    return record
