# This file implements the Skydropx carrier client used for quotes and label creation.
# It exists so routes and services can ask for rates without knowing the aggregator's payload quirks.
# The client converts transport failures into typed errors and parses rates into CarrierRate values.
# The API key is never logged; only the origin, destination zip, and status codes are.

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import requests
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, field_validator

from src.common.env import env_bool, env_int, env_optional_str, env_str
from src.shipping.address import DestinationAddress, normalize_mx_address
from src.shipping.rates import CarrierRate

LOGGER = logging.getLogger("skydropx.client")

SANDBOX_BASE_URL = "https://api-demo.skydropx.com/v1"
PRODUCTION_BASE_URL = "https://api.skydropx.com/v1"


class SkydropxError(RuntimeError):
    """Base error for carrier failures."""


class SkydropxConfigError(SkydropxError):
    """Raised when the API key or origin address is not configured."""


class SkydropxAuthError(SkydropxError):
    """Raised when Skydropx rejects the API key."""


class SkydropxUnavailableError(SkydropxError):
    """Raised when Skydropx cannot be reached or answers with an unusable payload."""


class SkydropxConfig(BaseModel):
    """Typed carrier configuration."""

    model_config = ConfigDict(extra="ignore")

    api_key: str
    is_sandbox: bool = True
    origin_name: str
    origin_phone: str | None = None
    origin_email: str | None = None
    origin_state: str
    origin_city: str
    origin_postal_code: str
    origin_address_line1: str | None = None
    origin_country: str = "MX"
    timeout_seconds: int = 15

    @field_validator("api_key", "origin_name", "origin_state", "origin_city", "origin_postal_code")
    @classmethod
    def validate_required_text(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Value must not be empty.")
        return value.strip()

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("timeout_seconds must be greater than 0.")
        return value

    @property
    def base_url(self) -> str:
        return SANDBOX_BASE_URL if self.is_sandbox else PRODUCTION_BASE_URL


def load_skydropx_config(*, load_env: bool = True) -> SkydropxConfig:
    """Load carrier configuration from `.env` and process environment."""

    if load_env:
        load_dotenv()

    values = {
        "api_key": env_str("SKYDROPX_API_KEY"),
        "is_sandbox": env_bool("SKYDROPX_IS_SANDBOX", True),
        "origin_name": env_str("SKYDROPX_ORIGIN_NAME"),
        "origin_phone": env_optional_str("SKYDROPX_ORIGIN_PHONE"),
        "origin_email": env_optional_str("SKYDROPX_ORIGIN_EMAIL"),
        "origin_state": env_str("SKYDROPX_ORIGIN_STATE"),
        "origin_city": env_str("SKYDROPX_ORIGIN_CITY"),
        "origin_postal_code": env_str("SKYDROPX_ORIGIN_POSTAL_CODE"),
        "origin_address_line1": env_optional_str("SKYDROPX_ORIGIN_ADDRESS_LINE1"),
        "origin_country": env_str("SKYDROPX_ORIGIN_COUNTRY", "MX"),
        "timeout_seconds": env_int("SKYDROPX_TIMEOUT_SECONDS", 15),
    }
    missing = [key for key in ("api_key", "origin_name", "origin_state", "origin_city", "origin_postal_code") if not values[key]]
    if missing:
        raise SkydropxConfigError(f"Skydropx is not configured; missing: {', '.join(missing)}")
    return SkydropxConfig.model_validate(values)


@dataclass(frozen=True)
class Parcel:
    weight_kg: float
    length_cm: float
    width_cm: float
    height_cm: float

    def to_payload(self) -> dict[str, Any]:
        return {
            "weight": self.weight_kg,
            "distance_unit": "CM",
            "mass_unit": "KG",
            "height": self.height_cm,
            "width": self.width_cm,
            "length": self.length_cm,
        }


@dataclass(frozen=True)
class ShipmentResult:
    shipment_id: str
    tracking_number: str | None
    label_url: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "shipment_id": self.shipment_id,
            "tracking_number": self.tracking_number,
            "label_url": self.label_url,
        }


def _number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value)
        except ValueError:
            return None
    else:
        return None
    # NaN and Infinity parse as floats but are never a usable price or ETA.
    return number if math.isfinite(number) else None


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None and value != "":
            return value
    return None


def _extract_rate_items(payload: Any) -> list[Mapping[str, Any]]:
    if isinstance(payload, list):
        items: Any = payload
    elif isinstance(payload, Mapping):
        data = payload.get("data")
        if isinstance(data, list):
            items = data
        elif isinstance(data, Mapping) and isinstance(data.get("data"), list):
            items = data["data"]
        elif isinstance(payload.get("included"), list):
            items = payload["included"]
        else:
            items = next((value for value in payload.values() if isinstance(value, list)), [])
    else:
        items = []
    return [item for item in items if isinstance(item, Mapping)]


def _parse_eta(value: Any) -> tuple[int | None, int | None]:
    if isinstance(value, Mapping):
        eta_min = _number(_first(value.get("min"), value.get("min_days")))
        eta_max = _number(_first(value.get("max"), value.get("max_days")))
        return (
            int(eta_min) if eta_min is not None else None,
            int(eta_max) if eta_max is not None else None,
        )
    days = _number(value)
    if days is None:
        return None, None
    return int(days), int(days)


def parse_rates_payload(payload: Any) -> list[CarrierRate]:
    """Turn a quotations response into CarrierRate values ordered by price.

    Skydropx has returned rates as a bare list, under ``data`` (sometimes nested
    twice), and under ``included``. Items without a positive price are dropped.
    """

    rates: list[CarrierRate] = []
    for index, item in enumerate(_extract_rate_items(payload)):
        attributes = item.get("attributes") if isinstance(item.get("attributes"), Mapping) else {}
        price = _number(
            _first(
                item.get("total_price"),
                attributes.get("total_price"),
                item.get("total_pricing"),
                attributes.get("total_pricing"),
                item.get("amount_local"),
                attributes.get("amount_local"),
            )
        )
        if price is None or price <= 0:
            continue

        carrier = _first(attributes.get("provider"), item.get("provider"), item.get("carrier"), attributes.get("carrier"))
        service = _first(
            attributes.get("name"),
            attributes.get("service_level_name"),
            item.get("service_level_name"),
            item.get("name"),
            item.get("service"),
        )
        rate_id = _first(item.get("id"), attributes.get("id"), item.get("rate_id"))
        eta_min, eta_max = _parse_eta(
            _first(
                attributes.get("delivery_time"),
                item.get("delivery_time"),
                attributes.get("delivery_range"),
                item.get("delivery_range"),
            )
        )
        rates.append(
            CarrierRate.from_mapping(
                {
                    "carrier": carrier,
                    "service": service,
                    "price_cents": price * 100,
                    "eta_min_days": eta_min,
                    "eta_max_days": eta_max,
                    "external_rate_id": str(rate_id) if rate_id is not None else str(index),
                    "currency": _first(attributes.get("currency_local"), item.get("currency")),
                }
            )
        )
    return sorted(rates, key=lambda rate: rate.price_cents)


def parse_shipment_payload(payload: Any) -> ShipmentResult:
    """Read the shipment id, tracking number, and label URL from a shipments response.

    Tracking and label may arrive later than the shipment itself; both are then None.
    """

    if not isinstance(payload, Mapping):
        raise SkydropxUnavailableError("Skydropx shipment response was not an object.")
    data = payload.get("data") if isinstance(payload.get("data"), Mapping) else {}
    nested = data.get("data") if isinstance(data.get("data"), Mapping) else {}
    labels = payload.get("labels") if isinstance(payload.get("labels"), list) else []
    first_label = labels[0] if labels and isinstance(labels[0], Mapping) else {}
    included = [item for item in payload.get("included") or [] if isinstance(item, Mapping)]
    package_attributes = [
        item.get("attributes") if isinstance(item.get("attributes"), Mapping) else item for item in included
    ]

    shipment_id = _first(payload.get("id"), data.get("id"))
    if shipment_id is None:
        raise SkydropxUnavailableError("Skydropx shipment response did not include an id.")
    tracking_number = _first(
        payload.get("master_tracking_number"),
        data.get("master_tracking_number"),
        payload.get("tracking_number"),
        data.get("tracking_number"),
        nested.get("tracking_number"),
        *(package.get("tracking_number") for package in package_attributes),
    )
    label_url = _first(
        payload.get("label_url"),
        data.get("label_url"),
        first_label.get("url"),
        *(package.get("label_url") for package in package_attributes),
    )
    return ShipmentResult(
        shipment_id=str(shipment_id),
        tracking_number=str(tracking_number) if tracking_number is not None else None,
        label_url=str(label_url) if label_url is not None else None,
    )


class SkydropxClient:
    def __init__(
        self,
        *,
        config: SkydropxConfig,
        session: requests.Session | None = None,
    ) -> None:
        self.config = config
        self.session = session or requests.Session()

    def _origin_payload(self) -> dict[str, Any]:
        return {
            "province": self.config.origin_state,
            "city": self.config.origin_city,
            "country": self.config.origin_country,
            "zip": self.config.origin_postal_code,
            "name": self.config.origin_name,
            "phone": self.config.origin_phone,
            "email": self.config.origin_email,
            "address1": self.config.origin_address_line1,
        }

    @staticmethod
    def _destination_payload(destination: DestinationAddress) -> dict[str, Any]:
        normalized = normalize_mx_address(
            state=destination.state,
            city=destination.city,
            postal_code=destination.postal_code,
        )
        return {
            "province": normalized.state,
            "city": normalized.city,
            "country": destination.country or "MX",
            "zip": normalized.postal_code,
            "name": destination.name,
            "phone": destination.phone,
            "email": destination.email,
            "address1": destination.address1,
        }

    def quote_rates(self, *, destination: DestinationAddress, parcel: Parcel) -> list[CarrierRate]:
        body = {
            "address_from": self._origin_payload(),
            "address_to": self._destination_payload(destination),
            "parcels": [parcel.to_payload()],
        }
        LOGGER.info(
            "Requesting Skydropx quotation origin_zip=%s destination_zip=%s weight_kg=%s",
            self.config.origin_postal_code,
            destination.postal_code,
            parcel.weight_kg,
        )
        payload = self._post_json("/quotations", body)
        rates = parse_rates_payload(payload)
        LOGGER.info("Skydropx returned %s usable rates destination_zip=%s", len(rates), destination.postal_code)
        return rates

    def create_shipment(self, *, rate_id: str, destination: DestinationAddress, parcel: Parcel) -> ShipmentResult:
        body = {
            "address_from": self._origin_payload(),
            "address_to": self._destination_payload(destination),
            "parcels": [parcel.to_payload()],
            "rate_id": rate_id,
        }
        LOGGER.info(
            "Creating Skydropx shipment rate_id=%s destination_zip=%s weight_kg=%s",
            rate_id,
            destination.postal_code,
            parcel.weight_kg,
        )
        payload = self._post_json("/shipments", body)
        shipment = parse_shipment_payload(payload)
        LOGGER.info(
            "Skydropx shipment created shipment_id=%s has_tracking=%s has_label=%s",
            shipment.shipment_id,
            shipment.tracking_number is not None,
            shipment.label_url is not None,
        )
        return shipment

    def _post_json(self, path: str, body: dict[str, Any]) -> Any:
        url = f"{self.config.base_url}{path}"
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Token token={self.config.api_key}",
        }
        try:
            response = self.session.post(url, json=body, headers=headers, timeout=self.config.timeout_seconds)
        except requests.RequestException as exc:
            raise SkydropxUnavailableError(f"Skydropx request failed for {url}: {exc}") from exc

        if response.status_code in (401, 403):
            LOGGER.error("Skydropx rejected credentials status=%s url=%s", response.status_code, url)
            raise SkydropxAuthError(f"Skydropx rejected credentials with status {response.status_code}")
        if response.status_code >= 400:
            LOGGER.error("Skydropx request failed status=%s url=%s", response.status_code, url)
            raise SkydropxUnavailableError(
                f"Skydropx request failed with status {response.status_code} for {url}"
            )

        try:
            return response.json()
        except ValueError as exc:
            raise SkydropxUnavailableError(f"Skydropx did not return valid JSON for {url}") from exc
