# This module aggregates shipped orders into a carrier and service summary for admins.
# It exists so finance can reconcile carrier invoices against what customers were charged.
# Rows are grouped with pandas and returned as plain dictionaries for the API envelope.

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

import pandas as pd

REPORT_COLUMNS = ["provider", "service_name", "orders_count", "total_shipping_price_cents"]


def build_shipping_report(rows: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
    frame = pd.DataFrame(list(rows))
    if frame.empty:
        return []

    for column in ("shipping_provider", "shipping_service_name", "shipping_price_cents"):
        if column not in frame.columns:
            frame[column] = None

    frame["provider"] = frame["shipping_provider"].fillna("unknown").astype(str)
    frame["service_name"] = frame["shipping_service_name"].fillna("unknown").astype(str)
    frame["price_cents"] = pd.to_numeric(frame["shipping_price_cents"], errors="coerce").fillna(0).astype("int64")

    grouped = (
        frame.groupby(["provider", "service_name"], as_index=False)
        .agg(orders_count=("price_cents", "size"), total_shipping_price_cents=("price_cents", "sum"))
        .sort_values(["provider", "service_name"], kind="mergesort")
    )
    grouped["orders_count"] = grouped["orders_count"].astype(int)
    grouped["total_shipping_price_cents"] = grouped["total_shipping_price_cents"].astype(int)

    return [
        {
            "provider": str(record["provider"]),
            "service_name": str(record["service_name"]),
            "orders_count": int(record["orders_count"]),
            "total_shipping_price_cents": int(record["total_shipping_price_cents"]),
        }
        for record in grouped[REPORT_COLUMNS].to_dict(orient="records")
    ]
