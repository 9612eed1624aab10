# This test file validates which rate_used cents survive a metadata write.
# It exists because a stale writer once replaced the selected rate price with nulls.
# Each rule of preserve_rate_used gets one scenario, plus the last-step ensure and audit helpers.

from __future__ import annotations

import logging
from datetime import UTC, datetime

from src.shipping.metadata import (
    ensure_rate_used,
    find_nulled_pricing_fields,
    merge_rate_used_preserve_cents,
    preserve_rate_used,
    stamp_last_write,
    validate_rate_used_persistence,
)

PRICING = {"carrier_cents": 15000, "packaging_cents": 500, "total_cents": 15500, "customer_total_cents": 15500}


def _rate_used(metadata: dict) -> dict:
    return metadata["shipping"]["rate_used"]


def test_explicit_overwrite_takes_canonical_cents() -> None:
    incoming = {
        "shipping_pricing": PRICING,
        "shipping": {
            "_last_write": {"route": "apply-rate"},
            "rate_used": {"price_cents": 99, "carrier_cents": 99, "provider": "DHL"},
        },
    }

    result = preserve_rate_used({}, incoming)

    assert _rate_used(result) == {
        "price_cents": 15500,
        "carrier_cents": 15000,
        "customer_total_cents": 15500,
        "provider": "DHL",
    }


def test_incoming_numbers_win_and_gaps_fill_from_canonical() -> None:
    incoming = {
        "shipping_pricing": PRICING,
        "shipping": {"rate_used": {"price_cents": 12000, "carrier_cents": 11000}},
    }
    fresh = {"shipping": {"rate_used": {"price_cents": 20000, "carrier_cents": 19000}}}

    rate_used = _rate_used(preserve_rate_used(fresh, incoming))

    assert rate_used["price_cents"] == 12000
    assert rate_used["carrier_cents"] == 11000
    assert rate_used["customer_total_cents"] == 15500


def test_database_cents_survive_when_incoming_has_none() -> None:
    fresh = {"shipping": {"rate_used": {"price_cents": 16000, "carrier_cents": 15500, "customer_total_cents": 16000}}}
    incoming = {"shipping": {"rate_used": {"provider": "DHL", "price_cents": None}}}

    rate_used = _rate_used(preserve_rate_used(fresh, incoming))

    assert rate_used == {
        "provider": "DHL",
        "price_cents": 16000,
        "carrier_cents": 15500,
        "customer_total_cents": 16000,
    }


def test_canonical_pricing_fills_empty_rate_used() -> None:
    incoming = {
        "shipping_pricing": {"carrier_cents": 9000, "total_cents": 9500},
        "shipping": {"rate_used": {}},
    }

    rate_used = _rate_used(preserve_rate_used({}, incoming))

    assert rate_used == {"price_cents": 9500, "carrier_cents": 9000, "customer_total_cents": 9500}


def test_partial_canonical_pricing_keeps_stored_zero_cents() -> None:
    incoming = {
        "shipping_pricing": {"carrier_cents": 1000},
        "shipping": {"rate_used": {"price_cents": 0, "carrier_cents": 0, "customer_total_cents": 0}},
    }

    preserved = _rate_used(preserve_rate_used(incoming, incoming))
    ensured = _rate_used(ensure_rate_used({"shipping_pricing": {"carrier_cents": 1000}, "shipping": {}}))

    assert preserved == {"price_cents": 0, "carrier_cents": 1000, "customer_total_cents": 0}
    assert ensured == {"carrier_cents": 1000}


def test_nothing_to_preserve_returns_copy() -> None:
    incoming = {"shipping": {"status": "pending"}}

    result = preserve_rate_used({}, incoming)

    assert result == incoming
    assert result is not incoming


def test_ensure_rate_used_fills_and_logs(caplog) -> None:
    metadata = {"shipping_pricing": PRICING, "shipping": {}}

    with caplog.at_level(logging.ERROR, logger="shipping.metadata"):
        result = ensure_rate_used(metadata)

    assert _rate_used(result) == {"price_cents": 15500, "carrier_cents": 15000, "customer_total_cents": 15500}
    assert "rate_used.price_cents is null" in caplog.text
    assert metadata == {"shipping_pricing": PRICING, "shipping": {}}


def test_ensure_rate_used_completes_partial_block() -> None:
    metadata = {"shipping_pricing": PRICING, "shipping": {"rate_used": {"price_cents": 15500, "carrier_cents": None}}}

    rate_used = _rate_used(ensure_rate_used(metadata))

    assert rate_used["price_cents"] == 15500
    assert rate_used["carrier_cents"] == 15000


def test_ensure_rate_used_ignores_zero_pricing() -> None:
    metadata = {"shipping_pricing": {"carrier_cents": 0, "total_cents": 0}}
    assert ensure_rate_used(metadata) == metadata


def test_stamp_last_write_records_route_and_canonical_flags() -> None:
    at = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    stamped = stamp_last_write({"shipping_pricing": PRICING}, route="apply-rate", sha="abc123", at=at)
    bare = stamp_last_write({}, route="requote", at=at)

    assert stamped["shipping"]["_last_write"] == {
        "route": "apply-rate",
        "at": "2026-03-01T12:00:00+00:00",
        "sha": "abc123",
        "canonical_detected": True,
        "rate_used_overwritten": True,
    }
    assert bare["shipping"]["_last_write"]["canonical_detected"] is False
    assert bare["shipping"]["_last_write"]["rate_used_overwritten"] is False


def test_find_nulled_pricing_fields_lists_cleared_paths() -> None:
    before = {"shipping_pricing": {"total_cents": 15500, "carrier_cents": 15000}, "shipping_cost_cents": 15500}
    after = {"shipping_pricing": {"total_cents": None, "carrier_cents": 15000}}

    assert find_nulled_pricing_fields(before, after) == ["shipping_cost_cents", "shipping_pricing.total_cents"]
    assert find_nulled_pricing_fields(before, before) == []


def test_persistence_validation_flags_missing_rate_used(caplog) -> None:
    with caplog.at_level(logging.ERROR, logger="shipping.metadata"):
        result = validate_rate_used_persistence({"shipping_pricing": PRICING}, order_id="o-1", route="apply-rate")

    assert result.is_valid is False
    assert result.discrepancy is not None
    assert result.discrepancy["shipping_pricing_total_cents"] == 15500
    assert result.discrepancy["rate_used_price_cents"] is None
    assert "order_id=o-1" in caplog.text


def test_persistence_validation_passes_with_numbers() -> None:
    metadata = {"shipping_pricing": PRICING, "shipping": {"rate_used": {"price_cents": 15500}}}

    result = validate_rate_used_persistence(metadata, order_id="o-1", route="apply-rate")

    assert result.to_dict() == {
        "is_valid": True,
        "has_canonical_pricing": True,
        "rate_used_has_numbers": True,
        "discrepancy": None,
    }


def test_merge_prefers_incoming_then_existing_cents() -> None:
    merged = merge_rate_used_preserve_cents(
        {"price_cents": 14000, "carrier_cents": None, "provider": "DHL"},
        {"price_cents": None, "carrier_cents": 13000, "service": "Express"},
        PRICING,
    )

    assert merged == {
        "price_cents": 14000,
        "carrier_cents": 13000,
        "customer_total_cents": 15500,
        "provider": "DHL",
        "service": "Express",
    }


def test_merge_without_pricing_keeps_missing_cents_empty() -> None:
    merged = merge_rate_used_preserve_cents(None, {"provider": "FedEx"}, None)

    assert merged == {
        "provider": "FedEx",
        "price_cents": None,
        "carrier_cents": None,
        "customer_total_cents": None,
    }
