# This file provides in-memory fakes for the order store and the carrier client.
# It exists so guard, service, and endpoint tests can run without Postgres or Skydropx.
# The fake store mimics the conditional updated_at write and can simulate concurrent writers.
# Keeping the fakes in one place makes the write semantics identical across test modules.

from __future__ import annotations

import copy
from datetime import datetime
from typing import Any

from src.shipping.metadata import json_merge_patch
from src.shipping.order_store import WRITABLE_SHIPPING_COLUMNS, OrderRecord
from src.shipping.rates import CarrierRate
from src.skydropx.client import ShipmentResult


class FakeOrderStore:
    """Dictionary-backed store with optimistic updated_at checks."""

    def __init__(self) -> None:
        self.orders: dict[str, dict[str, Any]] = {}
        self.concurrent_patches: list[dict[str, Any]] = []
        self.writes: list[dict[str, Any]] = []
        self.shipped_rows: list[dict[str, Any]] = []

    def add_order(self, order_id: str, metadata: dict[str, Any] | None = None, **columns: Any) -> None:
        self.orders[order_id] = {
            "metadata": copy.deepcopy(metadata or {}),
            "version": 1,
            "columns": dict(columns),
        }

    def metadata_of(self, order_id: str) -> dict[str, Any]:
        return copy.deepcopy(self.orders[order_id]["metadata"])

    def fetch_order(self, order_id: str) -> OrderRecord | None:
        row = self.orders.get(order_id)
        if row is None:
            return None
        return OrderRecord(
            id=order_id,
            metadata=copy.deepcopy(row["metadata"]),
            updated_at=f"v{row['version']}",
            **row["columns"],
        )

    def update_metadata(
        self,
        *,
        order_id: str,
        metadata: dict[str, Any],
        expected_updated_at: datetime | str | None,
        extra_columns: dict[str, Any] | None = None,
    ) -> bool:
        row = self.orders[order_id]
        if self.concurrent_patches:
            # Another writer lands between our read and our write.
            row["metadata"] = json_merge_patch(row["metadata"], self.concurrent_patches.pop(0))
            row["version"] += 1
        if expected_updated_at != f"v{row['version']}":
            return False

        unknown = set(extra_columns or {}) - WRITABLE_SHIPPING_COLUMNS
        if unknown:
            raise ValueError(f"Columns are not writable through the shipping store: {sorted(unknown)}")
        row["metadata"] = copy.deepcopy(metadata)
        row["version"] += 1
        for column, value in (extra_columns or {}).items():
            if column in OrderRecord.__dataclass_fields__:
                row["columns"][column] = value
        self.writes.append({"order_id": order_id, "metadata": copy.deepcopy(metadata), "extra_columns": extra_columns})
        return True

    def list_shipped_orders(self, *, start_ts: datetime, end_ts: datetime) -> list[dict[str, Any]]:
        return list(self.shipped_rows)


class FakeCarrier:
    """Carrier stub that records quote and shipment calls and returns canned results."""

    def __init__(
        self,
        rates: list[CarrierRate] | None = None,
        error: Exception | None = None,
        shipment: ShipmentResult | None = None,
    ) -> None:
        self.rates = rates or []
        self.error = error
        self.shipment = shipment or ShipmentResult(
            shipment_id="shp_1",
            tracking_number="TRK123",
            label_url="https://labels.example/shp_1.pdf",
        )
        self.calls: list[dict[str, Any]] = []
        self.shipment_calls: list[dict[str, Any]] = []

    def quote_rates(self, *, destination: Any, parcel: Any) -> list[CarrierRate]:
        self.calls.append({"destination": destination, "parcel": parcel})
        if self.error is not None:
            raise self.error
        return list(self.rates)

    def create_shipment(self, *, rate_id: str, destination: Any, parcel: Any) -> ShipmentResult:
        self.shipment_calls.append({"rate_id": rate_id, "destination": destination, "parcel": parcel})
        if self.error is not None:
            raise self.error
        return self.shipment
