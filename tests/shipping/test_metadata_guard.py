# This test file validates the guarded read-merge-write cycle for order metadata.
# It exists because concurrent writers once wiped the selected rate price on live orders.
# The fake store simulates a writer landing between our read and our conditional update.

from __future__ import annotations

import pytest
from prometheus_client import REGISTRY

from src.shipping.metadata_guard import (
    MetadataGuard,
    OrderNotFoundError,
    PricingFieldClobberError,
    StaleMetadataError,
    UnsafeMetadataPathError,
)
from tests.shipping.support import FakeOrderStore

PRICING = {"carrier_cents": 15000, "packaging_cents": 500, "margin_cents": 0, "total_cents": 15500}


def _priced_metadata() -> dict:
    return {
        "shipping_pricing": dict(PRICING),
        "shipping": {
            "status": "pending",
            "rate_used": {"price_cents": 15500, "carrier_cents": 15000, "customer_total_cents": 15500},
        },
    }


@pytest.fixture
def store() -> FakeOrderStore:
    store = FakeOrderStore()
    store.add_order("o-1", _priced_metadata())
    return store


def _writes(route: str, outcome: str) -> float:
    return REGISTRY.get_sample_value("shipping_metadata_writes_total", {"route": route, "outcome": outcome}) or 0.0


def test_patch_merges_onto_fresh_metadata_and_keeps_cents(store: FakeOrderStore) -> None:
    guard = MetadataGuard(store=store, sha="abc123")
    before = _writes("label-webhook", "written")

    result = guard.apply_patch(
        order_id="o-1",
        patch={"shipping": {"tracking_number": "TRK1"}},
        route_name="label-webhook",
    )

    metadata = store.metadata_of("o-1")
    assert result.attempts == 1
    assert result.validation.is_valid is True
    assert metadata["shipping"]["tracking_number"] == "TRK1"
    assert metadata["shipping"]["status"] == "pending"
    assert metadata["shipping"]["rate_used"]["price_cents"] == 15500
    assert metadata["shipping"]["_last_write"]["route"] == "label-webhook"
    assert metadata["shipping"]["_last_write"]["sha"] == "abc123"
    assert {"path": "_last_write.route", "before": None, "after": "label-webhook"} in result.changes
    assert _writes("label-webhook", "written") == before + 1


def test_clearing_pricing_cents_is_refused(store: FakeOrderStore) -> None:
    guard = MetadataGuard(store=store)
    before = _writes("checkout-sync", "clobber_blocked")

    with pytest.raises(PricingFieldClobberError) as exc_info:
        guard.apply_patch(
            order_id="o-1",
            patch={"shipping_pricing": {"total_cents": None}},
            route_name="checkout-sync",
        )

    assert exc_info.value.fields == ["shipping_pricing.total_cents"]
    assert store.writes == []
    assert _writes("checkout-sync", "clobber_blocked") == before + 1


def test_partial_canonical_pricing_never_nulls_stored_rate_cents() -> None:
    store = FakeOrderStore()
    store.add_order(
        "o-4",
        {
            "shipping_pricing": {"carrier_cents": 1000},
            "shipping": {"rate_used": {"price_cents": 0, "carrier_cents": 0, "customer_total_cents": 0}},
        },
    )
    guard = MetadataGuard(store=store)

    result = guard.apply_patch(order_id="o-4", patch={"shipping": {"status": "packed"}}, route_name="label-webhook")

    rate_used = store.metadata_of("o-4")["shipping"]["rate_used"]
    assert rate_used == {"price_cents": 0, "carrier_cents": 1000, "customer_total_cents": 0}
    assert not any(change["after"] is None for change in result.changes if change["path"].startswith("rate_used."))


def test_stale_write_is_retried_on_fresh_row(store: FakeOrderStore) -> None:
    store.concurrent_patches.append({"shipping": {"status": "packed"}})
    guard = MetadataGuard(store=store)

    result = guard.apply_patch(
        order_id="o-1",
        patch={"shipping": {"tracking_number": "TRK2"}},
        route_name="label-webhook",
    )

    metadata = store.metadata_of("o-1")
    assert result.attempts == 2
    assert metadata["shipping"]["status"] == "packed"
    assert metadata["shipping"]["tracking_number"] == "TRK2"
    assert len(store.writes) == 1


def test_exhausted_retries_raise_stale_error(store: FakeOrderStore) -> None:
    store.concurrent_patches.extend([{"shipping": {"status": "a"}}, {"shipping": {"status": "b"}}])
    guard = MetadataGuard(store=store, max_attempts=2)

    with pytest.raises(StaleMetadataError) as exc_info:
        guard.apply_patch(order_id="o-1", patch={"note": "x"}, route_name="label-webhook")

    assert exc_info.value.attempts == 2
    assert store.writes == []


def test_missing_order_raises_not_found() -> None:
    guard = MetadataGuard(store=FakeOrderStore())

    with pytest.raises(OrderNotFoundError):
        guard.apply_patch(order_id="missing", patch={}, route_name="label-webhook")


def test_pricing_reset_is_allowed_when_requested(store: FakeOrderStore) -> None:
    guard = MetadataGuard(store=store)

    guard.apply_patch(
        order_id="o-1",
        patch={"shipping_pricing": None, "shipping": {"rate_used": None}},
        route_name="reset-quote",
        allow_pricing_reset=True,
    )

    metadata = store.metadata_of("o-1")
    assert "shipping_pricing" not in metadata
    assert "rate_used" not in metadata["shipping"]
    assert metadata["shipping"]["_last_write"]["canonical_detected"] is False


def test_inherited_last_write_does_not_force_canonical_overwrite() -> None:
    store = FakeOrderStore()
    metadata = _priced_metadata()
    metadata["shipping_pricing"] = {"carrier_cents": 15500, "packaging_cents": 500, "total_cents": 16000}
    metadata["shipping"]["rate_used"] = {"price_cents": 16000, "carrier_cents": 15500, "customer_total_cents": 16000}
    metadata["shipping"]["_last_write"] = {"route": "apply-rate", "canonical_detected": True}
    store.add_order("o-2", metadata)
    guard = MetadataGuard(store=store)

    guard.apply_patch(
        order_id="o-2",
        patch={"shipping_pricing": {"carrier_cents": 9000, "packaging_cents": 0, "total_cents": 9000}},
        route_name="checkout-sync",
    )

    shipping = store.metadata_of("o-2")["shipping"]
    assert shipping["rate_used"]["price_cents"] == 16000
    assert shipping["_last_write"]["route"] == "checkout-sync"


def test_normalized_patch_derives_rate_fields() -> None:
    store = FakeOrderStore()
    store.add_order("o-3")
    guard = MetadataGuard(store=store)

    guard.apply_patch(
        order_id="o-3",
        patch={
            "shipping_pricing": dict(PRICING),
            "shipping": {
                "rate": {"external_id": "r1", "provider": "DHL", "service": "Express"},
                "_last_write": {"route": "apply-rate"},
            },
        },
        route_name="apply-rate",
        normalize=True,
    )

    metadata = store.metadata_of("o-3")
    assert metadata["shipping_cost_cents"] == 15500
    assert metadata["shipping"]["option_code"] == "dhl_express"
    assert metadata["shipping"]["rate_id"] == "r1"
    assert metadata["shipping"]["rate_used"]["price_cents"] == 15500
    assert metadata["shipping"]["rate_used"]["carrier_cents"] == 15000


def test_precondition_failure_aborts_without_writing(store: FakeOrderStore) -> None:
    guard = MetadataGuard(store=store)

    def _refuse(order) -> None:
        raise RuntimeError(f"order {order.id} is locked")

    with pytest.raises(RuntimeError, match="o-1 is locked"):
        guard.apply_patch(order_id="o-1", patch={"note": "x"}, route_name="label-webhook", precondition=_refuse)
    assert store.writes == []


def test_patch_shipping_path_sets_nested_value(store: FakeOrderStore) -> None:
    guard = MetadataGuard(store=store)

    guard.patch_shipping_path(
        order_id="o-1",
        field_path="shipping.tracking.number",
        value="TRK9",
        route_name="label-webhook",
    )

    metadata = store.metadata_of("o-1")
    assert metadata["shipping"]["tracking"] == {"number": "TRK9"}
    assert metadata["shipping_pricing"]["total_cents"] == 15500


@pytest.mark.parametrize(
    "field_path",
    ["", "shipping", "shipping.rate_used.price_cents", "rate_used", "shipping.pricing.total_cents"],
)
def test_patch_shipping_path_rejects_unsafe_paths(store: FakeOrderStore, field_path: str) -> None:
    guard = MetadataGuard(store=store)

    with pytest.raises(UnsafeMetadataPathError):
        guard.patch_shipping_path(order_id="o-1", field_path=field_path, value=1, route_name="label-webhook")
    assert store.writes == []


def test_max_attempts_must_be_positive() -> None:
    with pytest.raises(ValueError, match="max_attempts"):
        MetadataGuard(store=FakeOrderStore(), max_attempts=0)
