# This module extracts and normalizes Mexican destination addresses for carrier quotes.
# It exists because addresses arrive from checkout, admin overrides, and legacy keys in metadata.
# The carrier rejects CDMX borough names as cities, so those collapse to "Ciudad de Mexico".
# It also provides the flat zone tariff used when the carrier returns no rates.

from __future__ import annotations

import math
import re
import unicodedata
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

CDMX_NAME = "Ciudad de Mexico"
CDMX_VARIANTS = {"ciudad de mexico", "cdmx", "df", "distrito federal", "mexico city"}
METRO_MAX_POSTAL_CODE = 16999

ADDRESS_SOURCE_KEYS: tuple[tuple[str, ...], ...] = (
    ("shipping_address_override",),
    ("shipping_address",),
    ("shipping", "address_override"),
    ("shipping", "address"),
    ("shipping", "shipping_address"),
    ("shippingAddress",),
    ("address",),
)

_NON_DIGIT_RE = re.compile(r"\D")


def strip_accents(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value)
    return "".join(char for char in decomposed if unicodedata.category(char) != "Mn").strip()


def _comparable(value: str) -> str:
    return strip_accents(value.strip().lower())


@dataclass(frozen=True)
class NormalizedMxAddress:
    state: str
    city: str
    postal_code: str
    alcaldia: str | None = None


def normalize_mx_address(*, state: str, city: str, postal_code: str) -> NormalizedMxAddress:
    trimmed_state = (state or "").strip()
    trimmed_city = (city or "").strip()
    trimmed_postal_code = (postal_code or "").strip()

    state_is_cdmx = _comparable(trimmed_state) in CDMX_VARIANTS
    city_is_cdmx = _comparable(trimmed_city) in CDMX_VARIANTS

    if state_is_cdmx or city_is_cdmx:
        alcaldia = trimmed_city if state_is_cdmx and not city_is_cdmx and trimmed_city else None
        return NormalizedMxAddress(
            state=CDMX_NAME,
            city=CDMX_NAME,
            postal_code=trimmed_postal_code,
            alcaldia=alcaldia,
        )

    return NormalizedMxAddress(
        state=strip_accents(trimmed_state),
        city=strip_accents(trimmed_city),
        postal_code=trimmed_postal_code,
    )


@dataclass(frozen=True)
class DestinationAddress:
    postal_code: str
    state: str
    city: str
    country: str = "MX"
    address1: str | None = None
    address2: str | None = None
    name: str | None = None
    phone: str | None = None
    email: str | None = None
    source_key: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "postal_code": self.postal_code,
            "state": self.state,
            "city": self.city,
            "country": self.country,
            "address1": self.address1,
            "address2": self.address2,
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "source_key": self.source_key,
        }


def _text(candidate: Mapping[str, Any], *keys: str) -> str:
    for key in keys:
        value = candidate.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
    return ""


def _candidate_at(metadata: Mapping[str, Any], path: tuple[str, ...]) -> Mapping[str, Any] | None:
    current: Any = metadata
    for part in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current if isinstance(current, Mapping) else None


def address_from_mapping(
    candidate: Mapping[str, Any],
    *,
    contact: Mapping[str, Any] | None = None,
    source_key: str | None = None,
) -> DestinationAddress | None:
    contact = contact or {}
    postal_code = _text(candidate, "postal_code", "postalCode", "cp", "zip")
    state = _text(candidate, "state", "estado", "province")
    city = _text(candidate, "city", "ciudad", "municipality", "municipio", "alcaldia")
    if not postal_code or not state or not city:
        return None
    return DestinationAddress(
        postal_code=postal_code,
        state=state,
        city=city,
        country=_text(candidate, "country", "country_code", "countryCode") or "MX",
        address1=_text(candidate, "address1", "street1", "address", "direccion", "street") or None,
        address2=_text(candidate, "address2", "neighborhood", "colonia", "address_line2", "street2") or None,
        name=_text(candidate, "name", "nombre") or _text(contact, "contact_name") or None,
        phone=_text(candidate, "phone", "telefono") or _text(contact, "contact_phone") or None,
        email=_text(candidate, "email") or _text(contact, "contact_email") or None,
        source_key=source_key,
    )


def extract_destination_address(metadata: Mapping[str, Any] | None) -> DestinationAddress | None:
    """Return the first complete address found in metadata, honoring admin overrides first."""

    if not isinstance(metadata, Mapping):
        return None
    for path in ADDRESS_SOURCE_KEYS:
        candidate = _candidate_at(metadata, path)
        if candidate is None:
            continue
        address = address_from_mapping(candidate, contact=metadata, source_key=".".join(path))
        if address is not None:
            return address
    return None


def postal_code_to_zone(postal_code: str) -> str:
    digits = _NON_DIGIT_RE.sub("", postal_code or "")
    if not digits:
        return "nacional"
    return "metro" if int(digits) <= METRO_MAX_POSTAL_CODE else "nacional"


@dataclass(frozen=True)
class FlatRateQuote:
    zone: str
    billable_kg: float
    standard_cents: int
    express_cents: int


def quote_flat_rate(
    *,
    zone: str,
    billable_kg: float,
    tariffs: Mapping[str, Mapping[float, int]],
    express_multiplier: float = 1.8,
) -> FlatRateQuote:
    """Look up the flat tariff for a zone, rounding weight up to the next half kilogram."""

    table = tariffs.get(zone)
    if not table:
        raise ValueError(f"No flat tariff configured for zone {zone!r}")
    if billable_kg < 0:
        raise ValueError("billable_kg must be nonnegative")

    rounded_kg = math.ceil(billable_kg * 2) / 2
    ordered = sorted(table.items())
    standard_mxn = ordered[-1][1]
    for ceiling_kg, price in ordered:
        if rounded_kg <= ceiling_kg:
            standard_mxn = price
            break

    express_mxn = int(round(standard_mxn * express_multiplier))
    return FlatRateQuote(
        zone=zone,
        billable_kg=rounded_kg,
        standard_cents=int(standard_mxn) * 100,
        express_cents=express_mxn * 100,
    )
