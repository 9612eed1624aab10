# This file tests the public package and rate endpoints.
# It exists so checkout keeps receiving the same envelope, option ranking, and fallback behavior.
# Real services run against a fake carrier so the tests cover routing and service logic together.
# Carrier failures and flat zone fallbacks are asserted explicitly because checkout depends on them.

from __future__ import annotations

from src.shipping.rates import CarrierRate
from src.skydropx.client import SkydropxAuthError, SkydropxUnavailableError
from tests.api.support import FakeDBClient, api_test_client, build_services
from tests.shipping.support import FakeCarrier, FakeOrderStore

DESTINATION = {"postal_code": "01000", "state": "CDMX", "city": "Álvaro Obregón"}
ITEMS = [{"product_id": "p1", "qty": 2}]
PRODUCTS = {
    "p1": {
        "shipping_weight_g": 300,
        "shipping_length_cm": 20,
        "shipping_width_cm": 15,
        "shipping_height_cm": 10,
    }
}

CARRIER_RATES = [
    CarrierRate(carrier="Estafeta", service="Standard", price_cents=9900, eta_min_days=4, eta_max_days=6, external_rate_id="est"),
    CarrierRate(carrier="FedEx", service="Standard", price_cents=12900, eta_min_days=2, eta_max_days=3, external_rate_id="fdx"),
    CarrierRate(carrier="DHL", service="Express", price_cents=21900, eta_min_days=1, eta_max_days=1, external_rate_id="dhl"),
    CarrierRate(carrier="DHL", service="Express", price_cents=23900, eta_min_days=1, eta_max_days=1, external_rate_id="dhl-dup"),
]


def _client(carrier: FakeCarrier | None):
    quote_service, order_service, report_service = build_services(store=FakeOrderStore(), carrier=carrier)
    return api_test_client(
        db_client=FakeDBClient(),
        quote_service=quote_service,
        order_shipping_service=order_service,
        report_service=report_service,
    )


def test_package_endpoint_returns_billable_weight() -> None:
    with _client(FakeCarrier()) as client:
        response = client.post("/api/v1/shipping/package", json={"items": ITEMS, "products": PRODUCTS})

    assert response.status_code == 200
    payload = response.json()
    assert payload["api_version"] == "v1"
    assert payload["warnings"] is None
    assert payload["data"]["mass_weight_g"] == 1800
    assert payload["data"]["billable_weight_kg"] == 1.8
    assert payload["data"]["dims_source"] == "products"


def test_package_endpoint_warns_about_default_weights() -> None:
    with _client(FakeCarrier()) as client:
        payload = client.post(
            "/api/v1/shipping/package",
            json={"items": [{"product_id": "ghost", "qty": 3}]},
        ).json()

    assert payload["data"]["missing_weight_fields_count"] == 3
    assert payload["warnings"] == ["3 item(s) used the default product weight."]


def test_rates_endpoint_ranks_carrier_options() -> None:
    carrier = FakeCarrier(rates=CARRIER_RATES)
    with _client(carrier) as client:
        response = client.post(
            "/api/v1/shipping/rates",
            json={"destination": DESTINATION, "items": ITEMS, "products": PRODUCTS},
        )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["source"] == "skydropx"
    assert data["zone"] is None
    assert data["recommended_code"] == "fdx"
    assert data["cheapest_code"] == "est"
    assert data["fastest_code"] == "dhl"
    assert [option["code"] for option in data["primary_options"]] == ["fdx", "est", "dhl"]
    assert [option["code"] for option in data["all_options"]] == ["est", "fdx", "dhl"]
    assert data["all_options"][2]["service_label"] == "Exprés"
    assert carrier.calls[0]["parcel"].weight_kg == 1.8
    assert carrier.calls[0]["destination"].postal_code == "01000"


def test_rates_endpoint_uses_explicit_parcel() -> None:
    carrier = FakeCarrier(rates=CARRIER_RATES[:1])
    with _client(carrier) as client:
        data = client.post(
            "/api/v1/shipping/rates",
            json={
                "destination": DESTINATION,
                "parcel": {"weight_g": 500, "length_cm": 40, "width_cm": 30, "height_cm": 20},
            },
        ).json()["data"]

    assert data["package"]["dims_source"] == "explicit"
    assert data["package"]["billable_weight_kg"] == 4.8
    assert carrier.calls[0]["parcel"].weight_kg == 4.8


def test_rates_fall_back_to_flat_tariff_without_carrier() -> None:
    with _client(None) as client:
        payload = client.post(
            "/api/v1/shipping/rates",
            json={"destination": DESTINATION, "items": ITEMS, "products": PRODUCTS},
        ).json()

    data = payload["data"]
    assert data["source"] == "flat_rate"
    assert data["zone"] == "metro"
    assert [option["price_cents"] for option in data["all_options"]] == [9900, 17800]
    assert data["recommended_code"] == "flat_rate_metro_standard"
    assert data["fastest_code"] == "flat_rate_metro_standard"
    assert payload["warnings"] == ["Carrier quotes are not configured; showing flat zone rates."]


def test_rates_fall_back_to_flat_tariff_when_carrier_has_no_rates() -> None:
    with _client(FakeCarrier(rates=[])) as client:
        payload = client.post(
            "/api/v1/shipping/rates",
            json={"destination": {**DESTINATION, "postal_code": "44100"}, "items": ITEMS, "products": PRODUCTS},
        ).json()

    assert payload["data"]["source"] == "flat_rate"
    assert payload["data"]["zone"] == "nacional"
    assert payload["warnings"] == ["The carrier returned no rates; showing flat zone rates."]


def test_rates_endpoint_maps_carrier_auth_failure() -> None:
    with _client(FakeCarrier(error=SkydropxAuthError("401"))) as client:
        response = client.post(
            "/api/v1/shipping/rates",
            json={"destination": DESTINATION, "items": ITEMS, "products": PRODUCTS},
        )

    assert response.status_code == 502
    assert response.json()["error_code"] == "CARRIER_AUTH_ERROR"


def test_rates_endpoint_maps_carrier_outage() -> None:
    with _client(FakeCarrier(error=SkydropxUnavailableError("timeout"))) as client:
        response = client.post(
            "/api/v1/shipping/rates",
            json={"destination": DESTINATION, "items": ITEMS, "products": PRODUCTS},
        )

    assert response.status_code == 502
    payload = response.json()
    assert payload["error_code"] == "CARRIER_UNAVAILABLE"
    assert payload["details"] == "timeout"


def test_rates_endpoint_requires_items_or_parcel() -> None:
    with _client(FakeCarrier()) as client:
        response = client.post("/api/v1/shipping/rates", json={"destination": DESTINATION})

    assert response.status_code == 422
    assert response.json()["error_code"] == "VALIDATION_ERROR"


def test_rates_endpoint_rejects_blank_postal_code() -> None:
    with _client(FakeCarrier()) as client:
        response = client.post(
            "/api/v1/shipping/rates",
            json={"destination": {**DESTINATION, "postal_code": ""}, "items": ITEMS},
        )

    assert response.status_code == 422


def test_validation_details_do_not_echo_input() -> None:
    with _client(FakeCarrier()) as client:
        payload = client.post(
            "/api/v1/shipping/rates",
            json={"destination": {**DESTINATION, "postal_code": ""}, "items": ITEMS},
        ).json()

    assert payload["details"]
    assert all(set(detail) == {"loc", "msg", "type"} for detail in payload["details"])
