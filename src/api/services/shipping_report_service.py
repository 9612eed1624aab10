# This file implements the admin shipping report service.
# It exists so the report router does not need to know how shipped orders are queried.
# Rows come from the order store and are aggregated by provider and service with pandas.

from __future__ import annotations

from datetime import datetime
from typing import Any

from src.shipping.order_store import OrderStore
from src.shipping.shipping_report import build_shipping_report


class ShippingReportService:
    """Carrier and service totals for a created_at window."""

    def __init__(self, *, store: OrderStore) -> None:
        self.store = store

    def get_report(self, *, start_ts: datetime, end_ts: datetime) -> dict[str, Any]:
        rows = self.store.list_shipped_orders(start_ts=start_ts, end_ts=end_ts)
        report_rows = build_shipping_report(rows)
        warnings = None if rows else ["No shipped orders in the requested window."]
        return {
            "rows": report_rows,
            "orders_count": sum(row["orders_count"] for row in report_rows),
            "total_shipping_price_cents": sum(row["total_shipping_price_cents"] for row in report_rows),
            "warnings": warnings,
        }
