# This module applies partial updates to an order's shipping metadata without losing pricing data.
# It exists because admin routes, checkout, and carrier callbacks write the same JSON column concurrently.
# Every write re-reads the row, merges the patch onto the fresh copy, and refuses to null pricing cents.
# Pre-write and post-write snapshots are audit-logged so any regression can be traced to one route.

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from prometheus_client import Counter

from src.shipping.metadata import (
    RateUsedValidation,
    ensure_rate_used,
    find_nulled_pricing_fields,
    json_merge_patch,
    normalize_shipping_metadata,
    preserve_rate_used,
    stamp_last_write,
    validate_rate_used_persistence,
)
from src.shipping.order_store import OrderRecord
from src.shipping.write_audit import log_post_write, log_pre_write

LOGGER = logging.getLogger("shipping.metadata_guard")

SHIPPING_METADATA_WRITES_TOTAL = Counter(
    "shipping_metadata_writes_total",
    "Guarded order metadata write attempts by route and outcome.",
    ["route", "outcome"],
)

SAFE_SHIPPING_SUBPATHS = frozenset(
    {
        "label_creation",
        "tracking",
        "tracking_number",
        "address",
        "address_override",
        "status",
        "shipment_id",
        "package",
        "package_final",
        "quoted_package",
    }
)


class OrderNotFoundError(LookupError):
    """Raised when the order row does not exist."""


class PricingFieldClobberError(ValueError):
    """Raised when a write would null out pricing cents that are already populated."""

    def __init__(self, *, order_id: str, fields: list[str]) -> None:
        self.order_id = order_id
        self.fields = fields
        super().__init__(
            f"Refusing to clear populated pricing fields on order {order_id}: {', '.join(fields)}"
        )


class StaleMetadataError(RuntimeError):
    """Raised when concurrent writers keep changing the row faster than we can write it."""

    def __init__(self, *, order_id: str, attempts: int) -> None:
        self.order_id = order_id
        self.attempts = attempts
        super().__init__(f"Order {order_id} changed during {attempts} write attempts; giving up.")


class UnsafeMetadataPathError(ValueError):
    """Raised when a path patch targets a field outside the allowed shipping subpaths."""


@dataclass(frozen=True)
class GuardedWriteResult:
    order: OrderRecord
    attempts: int
    changes: list[dict[str, Any]]
    validation: RateUsedValidation


class MetadataGuard:
    """Re-read-before-write helper for the orders.metadata JSON column."""

    def __init__(self, *, store: Any, max_attempts: int = 3, sha: str | None = None) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.store = store
        self.max_attempts = max_attempts
        self.sha = sha

    def _fetch(self, order_id: str) -> OrderRecord:
        order = self.store.fetch_order(order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} was not found.")
        return order

    def _prepare(
        self,
        *,
        order: OrderRecord,
        patch: Mapping[str, Any],
        route_name: str,
        allow_pricing_reset: bool,
        normalize: bool,
    ) -> dict[str, Any]:
        fresh = order.metadata or {}
        merged = json_merge_patch(fresh, patch)
        patch_shipping = patch.get("shipping")
        merged_shipping = merged.get("shipping")
        if isinstance(merged_shipping, dict) and not (
            isinstance(patch_shipping, Mapping) and "_last_write" in patch_shipping
        ):
            # Only the current writer may signal an explicit rate_used overwrite.
            merged_shipping.pop("_last_write", None)

        if normalize:
            merged = normalize_shipping_metadata(merged, source=route_name, order_id=order.id).metadata

        if not allow_pricing_reset:
            merged = preserve_rate_used(fresh, merged)
            merged = ensure_rate_used(merged)
            # Checked on the final document so the fill helpers are covered too.
            nulled = find_nulled_pricing_fields(fresh, merged)
            if nulled:
                LOGGER.warning(
                    "Blocked pricing clobber order_id=%s route=%s fields=%s",
                    order.id,
                    route_name,
                    nulled,
                )
                SHIPPING_METADATA_WRITES_TOTAL.labels(route=route_name, outcome="clobber_blocked").inc()
                raise PricingFieldClobberError(order_id=order.id, fields=nulled)

        return stamp_last_write(merged, route=route_name, sha=self.sha, at=datetime.now(tz=UTC))

    def apply_patch(
        self,
        *,
        order_id: str,
        patch: Mapping[str, Any],
        route_name: str,
        extra_columns: Mapping[str, Any] | None = None,
        allow_pricing_reset: bool = False,
        normalize: bool = False,
        precondition: Callable[[OrderRecord], None] | None = None,
    ) -> GuardedWriteResult:
        """Merge ``patch`` onto the freshest metadata and write it conditionally.

        ``patch`` follows JSON merge-patch rules: nested mappings merge and ``None``
        removes a key. ``precondition`` runs against every fresh read and may raise
        to abort. Removing pricing cents is refused unless ``allow_pricing_reset``.
        With ``normalize`` the merged document is reconciled so every pricing copy
        and the derived rate fields agree before the write.
        """

        for attempt in range(1, self.max_attempts + 1):
            order = self._fetch(order_id)
            if precondition is not None:
                precondition(order)

            next_metadata = self._prepare(
                order=order,
                patch=patch,
                route_name=route_name,
                allow_pricing_reset=allow_pricing_reset,
                normalize=normalize,
            )
            log_pre_write(
                route=route_name,
                order_id=order_id,
                fresh_metadata=order.metadata,
                fresh_updated_at=order.updated_at,
                incoming_metadata=next_metadata,
            )

            written = self.store.update_metadata(
                order_id=order_id,
                metadata=next_metadata,
                expected_updated_at=order.updated_at,
                extra_columns=extra_columns,
            )
            if not written:
                LOGGER.info(
                    "Stale metadata write order_id=%s route=%s attempt=%s; re-reading",
                    order_id,
                    route_name,
                    attempt,
                )
                SHIPPING_METADATA_WRITES_TOTAL.labels(route=route_name, outcome="stale").inc()
                continue

            SHIPPING_METADATA_WRITES_TOTAL.labels(route=route_name, outcome="written").inc()
            persisted = self._fetch(order_id)
            post_record = log_post_write(
                route=route_name,
                order_id=order_id,
                post_metadata=persisted.metadata,
                post_updated_at=persisted.updated_at,
                pre_metadata=order.metadata,
            )
            validation = validate_rate_used_persistence(
                persisted.metadata,
                order_id=order_id,
                route=route_name,
            )
            return GuardedWriteResult(
                order=persisted,
                attempts=attempt,
                changes=list(post_record.get("changes", [])),
                validation=validation,
            )

        SHIPPING_METADATA_WRITES_TOTAL.labels(route=route_name, outcome="exhausted").inc()
        raise StaleMetadataError(order_id=order_id, attempts=self.max_attempts)

    def patch_shipping_path(
        self,
        *,
        order_id: str,
        field_path: str,
        value: Any,
        route_name: str,
    ) -> GuardedWriteResult:
        """Set one whitelisted key under metadata.shipping, leaving rate_used and pricing alone."""

        parts = [part for part in (field_path or "").split(".") if part]
        if not parts:
            raise UnsafeMetadataPathError("field_path must not be empty.")
        if parts[0] == "shipping":
            parts = parts[1:]
        if not parts or parts[0] == "rate_used":
            raise UnsafeMetadataPathError(
                "Patching shipping or shipping.rate_used directly is not allowed; use apply_patch."
            )
        if parts[0] not in SAFE_SHIPPING_SUBPATHS:
            raise UnsafeMetadataPathError(
                f"shipping.{parts[0]} is not a writable subpath. Allowed: {sorted(SAFE_SHIPPING_SUBPATHS)}"
            )

        nested: Any = value
        for part in reversed(parts):
            nested = {part: nested}
        return self.apply_patch(order_id=order_id, patch={"shipping": nested}, route_name=route_name)
