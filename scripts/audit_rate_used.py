#!/usr/bin/env python3
"""
Audit orders whose shipping.rate_used lost its cents while shipping_pricing still has numbers.
It loads the window's orders, metadata included, in one query and applies the persistence check to each.
Run it directly; it prints a JSON summary and exits non-zero when any discrepancy is found.
"""

from __future__ import annotations

import argparse
import json
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from src.api.api_config import get_api_config
from src.common.db import DatabaseClient
from src.common.logging import configure_logging
from src.shipping.metadata import validate_rate_used_persistence
from src.shipping.order_store import OrderStore


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Find orders whose rate_used cents were lost")
    parser.add_argument("--days", type=int, default=30, help="How many days of orders to scan")
    parser.add_argument("--limit", type=int, default=50, help="Maximum discrepancies to print")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    configure_logging()
    config = get_api_config()
    store = OrderStore(
        db=DatabaseClient(database_url=config.database_url),
        table_name=config.validate_table_name(config.orders_table_name),
    )

    end_ts = datetime.now(tz=UTC)
    start_ts = end_ts - timedelta(days=args.days)
    orders = store.list_shipped_order_records(start_ts=start_ts, end_ts=end_ts)

    discrepancies: list[dict[str, object]] = []
    for order in orders:
        validation = validate_rate_used_persistence(order.metadata, order_id=order.id, route="audit")
        if not validation.is_valid:
            discrepancies.append({"order_id": order.id, **(validation.discrepancy or {})})

    print(
        json.dumps(
            {
                "scanned_orders": len(orders),
                "discrepancy_count": len(discrepancies),
                "discrepancies": discrepancies[: args.limit],
            },
            indent=2,
            default=str,
        )
    )

    if discrepancies:
        print("rate_used discrepancies found; see the orders listed above.", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
