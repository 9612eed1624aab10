# This module reads and writes the shipping-relevant columns of the orders table.
# It exists so the metadata guard can depend on a small interface instead of raw SQL.
# Metadata writes are conditional on the updated_at value the caller last read.
# A write that matches no row tells the guard another writer got there first.

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from src.common.db import DatabaseClient, safe_identifier

WRITABLE_SHIPPING_COLUMNS = {
    "shipping_status",
    "shipping_provider",
    "shipping_service_name",
    "shipping_price_cents",
    "shipping_rate_ext_id",
    "shipping_eta_min_days",
    "shipping_eta_max_days",
    "shipping_shipment_id",
    "shipping_tracking_number",
    "shipping_label_url",
}

ORDER_COLUMNS = (
    "id",
    "metadata",
    "updated_at",
    "created_at",
    "shipping_status",
    "shipping_provider",
    "shipping_service_name",
    "shipping_price_cents",
    "shipping_rate_ext_id",
    "shipping_shipment_id",
    "shipping_tracking_number",
    "shipping_label_url",
)


@dataclass(frozen=True)
class OrderRecord:
    id: str
    metadata: dict[str, Any]
    updated_at: datetime | str | None
    created_at: datetime | str | None = None
    shipping_status: str | None = None
    shipping_provider: str | None = None
    shipping_service_name: str | None = None
    shipping_price_cents: int | None = None
    shipping_rate_ext_id: str | None = None
    shipping_shipment_id: str | None = None
    shipping_tracking_number: str | None = None
    shipping_label_url: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def has_label(self) -> bool:
        return bool(self.shipping_tracking_number or self.shipping_label_url)

    def has_shipment(self) -> bool:
        return bool(self.shipping_shipment_id or self.has_label())

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> OrderRecord:
        metadata = row.get("metadata")
        if isinstance(metadata, str):
            metadata = json.loads(metadata) if metadata.strip() else {}
        if not isinstance(metadata, dict):
            metadata = {}
        price = row.get("shipping_price_cents")
        return cls(
            id=str(row["id"]),
            metadata=metadata,
            updated_at=row.get("updated_at"),
            created_at=row.get("created_at"),
            shipping_status=row.get("shipping_status"),
            shipping_provider=row.get("shipping_provider"),
            shipping_service_name=row.get("shipping_service_name"),
            shipping_price_cents=int(price) if price is not None else None,
            shipping_rate_ext_id=row.get("shipping_rate_ext_id"),
            shipping_shipment_id=row.get("shipping_shipment_id"),
            shipping_tracking_number=row.get("shipping_tracking_number"),
            shipping_label_url=row.get("shipping_label_url"),
            extra={key: value for key, value in row.items() if key not in ORDER_COLUMNS},
        )


class OrderStore:
    """Order persistence backed by the shared DatabaseClient."""

    def __init__(self, *, db: DatabaseClient, table_name: str = "orders") -> None:
        self.db = db
        self.table_name = safe_identifier(table_name)

    def fetch_order(self, order_id: str) -> OrderRecord | None:
        query = f"""
        SELECT {", ".join(ORDER_COLUMNS)}
        FROM {self.table_name}
        WHERE id = :order_id
        """
        row = self.db.fetch_one(query, {"order_id": order_id})
        return OrderRecord.from_row(row) if row is not None else None

    def update_metadata(
        self,
        *,
        order_id: str,
        metadata: dict[str, Any],
        expected_updated_at: datetime | str | None,
        extra_columns: Mapping[str, Any] | None = None,
    ) -> bool:
        columns = dict(extra_columns or {})
        unknown = sorted(set(columns) - WRITABLE_SHIPPING_COLUMNS)
        if unknown:
            raise ValueError(f"Columns are not writable through the shipping store: {unknown}")

        assignments = ["metadata = CAST(:metadata AS JSONB)", "updated_at = NOW()"]
        params: dict[str, Any] = {
            "order_id": order_id,
            "metadata": json.dumps(metadata, default=str),
            "expected_updated_at": expected_updated_at,
        }
        for column in sorted(columns):
            assignments.append(f"{safe_identifier(column)} = :{column}")
            params[column] = columns[column]

        query = f"""
        UPDATE {self.table_name}
        SET {", ".join(assignments)}
        WHERE id = :order_id
          AND updated_at IS NOT DISTINCT FROM :expected_updated_at
        RETURNING id
        """
        rows = self.db.execute_returning(query, params)
        return bool(rows)

    def list_shipped_orders(self, *, start_ts: datetime, end_ts: datetime) -> list[dict[str, Any]]:
        query = f"""
        SELECT id, created_at, shipping_provider, shipping_service_name, shipping_price_cents
        FROM {self.table_name}
        WHERE shipping_provider IS NOT NULL
          AND created_at >= :start_ts
          AND created_at < :end_ts
        ORDER BY created_at ASC
        """
        return self.db.fetch_all(query, {"start_ts": start_ts, "end_ts": end_ts})

    def list_shipped_order_records(self, *, start_ts: datetime, end_ts: datetime) -> list[OrderRecord]:
        """Load full order rows, metadata included, for the same window as ``list_shipped_orders``."""

        query = f"""
        SELECT {", ".join(ORDER_COLUMNS)}
        FROM {self.table_name}
        WHERE shipping_provider IS NOT NULL
          AND created_at >= :start_ts
          AND created_at < :end_ts
        ORDER BY created_at ASC
        """
        rows = self.db.fetch_all(query, {"start_ts": start_ts, "end_ts": end_ts})
        return [OrderRecord.from_row(row) for row in rows]
