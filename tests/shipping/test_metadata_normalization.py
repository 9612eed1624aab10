"""
Unit tests for shipping metadata normalization and merge-patch semantics.
They check that rate_used, rate, rate_id, and option_code are derived from canonical pricing.
"""

from __future__ import annotations

import copy

from src.shipping.metadata import (
    json_merge_patch,
    normalize_shipping_metadata,
    resolve_canonical_pricing,
)
from src.shipping.pricing import CORRECTION_MISMATCH


def _selected_rate_metadata() -> dict:
    return {
        "shipping_pricing": {
            "carrier_cents": 15000,
            "packaging_cents": 500,
            "margin_cents": 0,
            "total_cents": 15500,
        },
        "shipping": {
            "rate": {
                "external_id": "r1",
                "provider": "DHL",
                "service": "Express",
                "eta_min_days": 1,
                "eta_max_days": 2,
            }
        },
    }


def test_rate_used_is_derived_from_canonical_pricing() -> None:
    original = _selected_rate_metadata()
    snapshot = copy.deepcopy(original)

    result = normalize_shipping_metadata(original, source="admin", order_id="o-1")
    shipping = result.metadata["shipping"]

    assert original == snapshot
    assert result.canonical_detected is True
    assert result.mismatch_detected is False
    assert result.corrected is False
    assert shipping["rate_used"]["price_cents"] == 15500
    assert shipping["rate_used"]["carrier_cents"] == 15000
    assert shipping["rate_used"]["customer_total_cents"] == 15500
    assert shipping["rate_used"]["selection_source"] == "admin"
    assert shipping["rate_id"] == "r1"
    assert shipping["option_code"] == "dhl_express"
    assert shipping["rate"]["eta_max_days"] == 2
    assert shipping["price_cents"] == 15500
    assert shipping["pricing"] == result.metadata["shipping_pricing"]
    assert result.metadata["shipping_cost_cents"] == 15500


def test_root_and_nested_pricing_mismatch_is_reconciled() -> None:
    metadata = _selected_rate_metadata()
    metadata["shipping_pricing"]["total_cents"] = 16000
    metadata["shipping"]["pricing"] = {"carrier_cents": 15000, "total_cents": 15000}

    result = normalize_shipping_metadata(metadata)

    assert result.mismatch_detected is True
    assert result.corrected is True
    assert result.correction_reason == CORRECTION_MISMATCH
    assert result.metadata["shipping_pricing"]["carrier_cents"] == 15500
    assert result.metadata["shipping"]["pricing"] == result.metadata["shipping_pricing"]
    assert result.metadata["shipping"]["rate_used"]["price_cents"] == 16000
    assert result.metadata["shipping"]["rate_used"]["carrier_cents"] == 15500


def test_legacy_shipping_cost_column_acts_as_canonical_total() -> None:
    metadata = {
        "shipping_cost_cents": 9900,
        "shipping": {"rate_used": {"provider": "Estafeta", "service": "Standard"}},
    }

    result = normalize_shipping_metadata(metadata, source="checkout")
    rate_used = result.metadata["shipping"]["rate_used"]

    assert rate_used["price_cents"] == 9900
    assert rate_used["carrier_cents"] == 9900
    assert rate_used["selection_source"] == "checkout"
    assert result.metadata["shipping"]["option_code"] == "estafeta_standard"


def test_metadata_without_shipping_data_is_unchanged() -> None:
    result = normalize_shipping_metadata({"notes": "gift"})

    assert result.metadata == {"notes": "gift"}
    assert result.pricing is None
    assert result.canonical_detected is False


def test_canonical_pricing_prefers_root_block() -> None:
    metadata = {
        "shipping_pricing": {"total_cents": 100},
        "shipping": {"pricing": {"total_cents": 200}},
    }
    assert resolve_canonical_pricing(metadata) == {"total_cents": 100}
    assert resolve_canonical_pricing({"shipping": {"price_cents": "450"}}) == {
        "total_cents": 450,
        "customer_total_cents": 450,
    }
    assert resolve_canonical_pricing({}) is None


def test_merge_patch_merges_nested_and_deletes_nulls() -> None:
    target = {"a": 1, "b": {"c": 2, "d": 3}}
    patched = json_merge_patch(target, {"b": {"c": None, "e": 4}, "f": 5})

    assert patched == {"a": 1, "b": {"d": 3, "e": 4}, "f": 5}
    assert target == {"a": 1, "b": {"c": 2, "d": 3}}


def test_merge_patch_replaces_with_non_mapping_values() -> None:
    assert json_merge_patch({"a": {"b": 1}}, {"a": [1, 2]}) == {"a": [1, 2]}
    assert json_merge_patch({"a": 1}, ["x"]) == ["x"]
