# This module normalizes carrier rate quotes into the options shown at checkout and in admin.
# It exists so duplicated quotes from the aggregator collapse into one clean, price-ordered list.
# Dedupe keeps the cheapest quote per carrier, service, and ETA window and is safe to rerun.
# The helpers also format ETAs and service names in Spanish for storefront labels.

from __future__ import annotations

import math
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

ETA_BUCKETS = ("0-1", "2-3", "4-7", "8+")

SERVICE_NAME_TRANSLATIONS: dict[str, str] = {
    "standard": "Estándar",
    "express": "Exprés",
    "next day": "Siguiente día",
    "next-day": "Siguiente día",
    "economy": "Económico",
    "priority": "Prioritario",
}

_WHITESPACE_RE = re.compile(r"\s+")
_SLUG_INVALID_RE = re.compile(r"[^a-z0-9_]")


def _normalize_label(value: str | None) -> str:
    return _WHITESPACE_RE.sub(" ", (value or "").strip()).lower()


@dataclass(frozen=True)
class CarrierRate:
    carrier: str
    service: str
    price_cents: int
    eta_min_days: int | None = None
    eta_max_days: int | None = None
    external_rate_id: str | None = None
    currency: str = "MXN"

    def dedupe_key(self) -> tuple[str, str, int | None, int | None]:
        return (
            _normalize_label(self.carrier),
            _normalize_label(self.service),
            self.eta_min_days,
            self.eta_max_days,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "carrier": self.carrier,
            "service": self.service,
            "price_cents": self.price_cents,
            "eta_min_days": self.eta_min_days,
            "eta_max_days": self.eta_max_days,
            "external_rate_id": self.external_rate_id,
            "currency": self.currency,
        }

    @classmethod
    def from_mapping(cls, value: Mapping[str, Any]) -> CarrierRate:
        price = value.get("price_cents")
        if isinstance(price, bool) or not isinstance(price, (int, float)) or not math.isfinite(price):
            raise ValueError(f"price_cents must be a number, got {price!r}")
        eta_min = value.get("eta_min_days")
        eta_max = value.get("eta_max_days")
        return cls(
            carrier=str(value.get("carrier") or "unknown"),
            service=str(value.get("service") or "Standard"),
            price_cents=int(round(price)),
            eta_min_days=int(eta_min) if eta_min is not None else None,
            eta_max_days=int(eta_max) if eta_max is not None else None,
            external_rate_id=str(value["external_rate_id"]) if value.get("external_rate_id") else None,
            currency=str(value.get("currency") or "MXN"),
        )


def _rate_sort_key(rate: CarrierRate) -> tuple[Any, ...]:
    eta_max = rate.eta_max_days if rate.eta_max_days is not None else math.inf
    eta_min = rate.eta_min_days if rate.eta_min_days is not None else math.inf
    carrier, service, _, _ = rate.dedupe_key()
    return (rate.price_cents, eta_max, eta_min, carrier, service)


def dedupe_rates(rates: Iterable[CarrierRate]) -> list[CarrierRate]:
    """Collapse duplicate quotes, keeping the cheapest per (carrier, service, eta_min, eta_max).

    Quotes with a non-positive price are dropped. The result is ordered by price
    ascending and running it again on its own output returns the same list.
    """

    best: dict[tuple[str, str, int | None, int | None], CarrierRate] = {}
    for rate in rates:
        if rate.price_cents <= 0:
            continue
        key = rate.dedupe_key()
        current = best.get(key)
        if current is None or rate.price_cents < current.price_cents:
            best[key] = rate
    return sorted(best.values(), key=_rate_sort_key)


def rate_option_code(carrier: str | None, service: str | None) -> str | None:
    if not carrier or not service:
        return None
    slug = _WHITESPACE_RE.sub("_", f"{carrier}_{service}".strip().lower())
    return _SLUG_INVALID_RE.sub("", slug)


def translate_service_name(service: str) -> str:
    return SERVICE_NAME_TRANSLATIONS.get(_normalize_label(service), service)


def format_eta(eta_min_days: int | None, eta_max_days: int | None) -> str:
    if eta_min_days is None and eta_max_days is None:
        return "Tiempo estimado"
    if eta_min_days is not None and eta_max_days is not None:
        if eta_min_days == eta_max_days:
            return "1 día" if eta_min_days == 1 else f"{eta_min_days} días"
        return f"{eta_min_days}-{eta_max_days} días"
    if eta_min_days is not None:
        return "1+ día" if eta_min_days == 1 else f"{eta_min_days}+ días"
    return "Hasta 1 día" if eta_max_days == 1 else f"Hasta {eta_max_days} días"


def eta_bucket(eta_min_days: int | None, eta_max_days: int | None) -> str:
    # The upper bound is what customers plan around.
    if eta_max_days is not None:
        days = eta_max_days
    elif eta_min_days is not None:
        days = eta_min_days
    else:
        return "8+"
    if days <= 1:
        return "0-1"
    if days <= 3:
        return "2-3"
    if days <= 7:
        return "4-7"
    return "8+"


@dataclass(frozen=True)
class ShippingOption:
    code: str
    option_code: str | None
    rate: CarrierRate
    service_label: str
    eta_label: str
    eta_bucket: str
    packaging_cents: int
    customer_total_cents: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "option_code": self.option_code,
            **self.rate.to_dict(),
            "service_label": self.service_label,
            "eta_label": self.eta_label,
            "eta_bucket": self.eta_bucket,
            "packaging_cents": self.packaging_cents,
            "customer_total_cents": self.customer_total_cents,
        }


@dataclass(frozen=True)
class TopOptions:
    recommended: ShippingOption | None
    cheapest: ShippingOption | None
    fastest: ShippingOption | None


def build_shipping_options(
    rates: Iterable[CarrierRate],
    *,
    packaging_cents: int = 0,
) -> list[ShippingOption]:
    """Dedupe rates and attach storefront labels plus the customer-facing total."""

    if packaging_cents < 0:
        raise ValueError("packaging_cents must be nonnegative")

    options: list[ShippingOption] = []
    for index, rate in enumerate(dedupe_rates(rates)):
        option_code = rate_option_code(rate.carrier, rate.service)
        code = rate.external_rate_id or f"{option_code or 'rate'}_{index}"
        options.append(
            ShippingOption(
                code=code,
                option_code=option_code,
                rate=rate,
                service_label=translate_service_name(rate.service),
                eta_label=format_eta(rate.eta_min_days, rate.eta_max_days),
                eta_bucket=eta_bucket(rate.eta_min_days, rate.eta_max_days),
                packaging_cents=packaging_cents,
                customer_total_cents=rate.price_cents + packaging_cents,
            )
        )
    return options


def select_top_options(
    options: list[ShippingOption],
    *,
    recommended_max_eta_days: int = 3,
) -> TopOptions:
    """Pick recommended, cheapest, and fastest from price-ordered options."""

    if not options:
        return TopOptions(recommended=None, cheapest=None, fastest=None)

    cheapest = options[0]
    within_eta = [
        option
        for option in options
        if option.rate.eta_max_days is not None and option.rate.eta_max_days <= recommended_max_eta_days
    ]
    recommended = within_eta[0] if within_eta else cheapest

    fastest = cheapest
    for option in options[1:]:
        best_max = fastest.rate.eta_max_days if fastest.rate.eta_max_days is not None else math.inf
        current_max = option.rate.eta_max_days if option.rate.eta_max_days is not None else math.inf
        if current_max < best_max or (
            current_max == best_max and option.rate.price_cents < fastest.rate.price_cents
        ):
            fastest = option

    return TopOptions(recommended=recommended, cheapest=cheapest, fastest=fastest)


def build_primary_options(top: TopOptions) -> list[ShippingOption]:
    primary: list[ShippingOption] = []
    seen_codes: set[str] = set()
    for option in (top.recommended, top.cheapest, top.fastest):
        if option is None or option.code in seen_codes:
            continue
        primary.append(option)
        seen_codes.add(option.code)
    return primary[:3]
