# This file implements the admin shipping actions for a single order.
# It exists so every admin shipping action, label creation included, shares one guarded write path.
# Every metadata change goes through MetadataGuard, which re-reads the row and protects pricing cents.
# Guard and carrier failures are translated into APIError values with stable error codes.

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from src.api.error_handlers import APIError
from src.api.services.shipping_quote_service import carrier_error_to_api_error, options_payload
from src.shipping.address import extract_destination_address
from src.shipping.metadata_guard import (
    GuardedWriteResult,
    MetadataGuard,
    OrderNotFoundError,
    PricingFieldClobberError,
    StaleMetadataError,
)
from src.shipping.order_store import OrderRecord
from src.shipping.package_profiles import get_package_profile, validate_package_dimensions
from src.shipping.pricing import has_pricing_numbers
from src.shipping.rates import build_shipping_options, rate_option_code
from src.shipping.shipping_config import ShippingConfig
from src.skydropx.client import (
    Parcel,
    ShipmentResult,
    SkydropxAuthError,
    SkydropxClient,
    SkydropxUnavailableError,
)

LOGGER = logging.getLogger("api.order_shipping")

SKYDROPX_PROVIDER = "skydropx"
RESET_CONFIRMATION_PREFIX = "RESET COTIZACION"
LABEL_STATUS_CREATED = "label_created"
LABEL_STATUS_PENDING_TRACKING = "label_pending_tracking"
MIN_FORCE_REASON_LENGTH = 5
DEFAULT_PACKAGE_WARNING = (
    "No saved package was found; default dimensions were used. "
    "Select a package before requoting to get accurate rates."
)

QUOTE_KEYS_REMOVED_ON_RESET = (
    "quotation_id",
    "rate_id",
    "rate",
    "rate_used",
    "option_code",
    "quoted_package",
    "last_quote_at",
    "quoted_at",
    "pricing",
    "price_cents",
)


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _invalid_request(message: str, details: Any | None = None) -> APIError:
    return APIError(status_code=400, error_code="INVALID_REQUEST", message=message, details=details)


def _reject_if_label(order: OrderRecord) -> None:
    if order.has_label():
        raise APIError(
            status_code=409,
            error_code="LABEL_ALREADY_CREATED",
            message="This order already has a shipping label; cancel it before changing the shipment.",
            details={"tracking_number": order.shipping_tracking_number},
        )


def _write_result_payload(result: GuardedWriteResult) -> dict[str, Any]:
    return {
        "order_id": result.order.id,
        "updated_at": result.order.updated_at,
        "attempts": result.attempts,
        "changes": result.changes,
        "rate_used_validation": result.validation.to_dict(),
        "metadata": result.order.metadata,
    }


def _shipping_meta(metadata: Mapping[str, Any] | None) -> Mapping[str, Any]:
    shipping = (metadata or {}).get("shipping")
    return shipping if isinstance(shipping, Mapping) else {}


def _existing_shipment_id(order: OrderRecord) -> str | None:
    shipment_id = order.shipping_shipment_id or _shipping_meta(order.metadata).get("shipment_id")
    return str(shipment_id) if shipment_id else None


def _selected_rate_id(metadata: Mapping[str, Any]) -> str | None:
    shipping = _shipping_meta(metadata)
    rate_used = shipping.get("rate_used") if isinstance(shipping.get("rate_used"), Mapping) else {}
    for candidate in (rate_used.get("external_rate_id"), rate_used.get("rate_id"), shipping.get("rate_id")):
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None


def _label_lock_active(metadata: Mapping[str, Any], *, now: datetime, ttl_seconds: int) -> bool:
    lock = _shipping_meta(metadata).get("label_creation")
    if not isinstance(lock, Mapping) or lock.get("status") != "in_progress":
        return False
    try:
        started_at = datetime.fromisoformat(str(lock.get("started_at")))
    except ValueError:
        return False
    if started_at.tzinfo is None:
        started_at = started_at.replace(tzinfo=UTC)
    return (now - started_at).total_seconds() < ttl_seconds


def _carrier_parcel(parcel: Mapping[str, Any]) -> Parcel:
    return Parcel(
        weight_kg=round(parcel["weight_g"] / 1000.0, 3),
        length_cm=parcel["length_cm"],
        width_cm=parcel["width_cm"],
        height_cm=parcel["height_cm"],
    )


def _label_payload(order: OrderRecord, *, already_created: bool) -> dict[str, Any]:
    return {
        "order_id": order.id,
        "already_created": already_created,
        "shipment_id": _existing_shipment_id(order),
        "tracking_number": order.shipping_tracking_number,
        "label_url": order.shipping_label_url,
        "shipping_status": order.shipping_status,
        "tracking_pending": not (order.shipping_tracking_number and order.shipping_label_url),
    }


class OrderShippingService:
    """Admin operations that change an order's shipping state."""

    def __init__(
        self,
        *,
        guard: MetadataGuard,
        shipping_config: ShippingConfig,
        carrier: SkydropxClient | None,
    ) -> None:
        self.guard = guard
        self.shipping_config = shipping_config
        self.carrier = carrier

    def _guarded_write(self, order_id: str, write: Callable[[], GuardedWriteResult]) -> GuardedWriteResult:
        try:
            return write()
        except OrderNotFoundError as exc:
            raise APIError(status_code=404, error_code="ORDER_NOT_FOUND", message=str(exc)) from exc
        except PricingFieldClobberError as exc:
            raise APIError(
                status_code=409,
                error_code="PRICING_FIELD_CLOBBER",
                message="The update would clear pricing fields that are already set.",
                details={"fields": exc.fields},
            ) from exc
        except StaleMetadataError as exc:
            raise APIError(
                status_code=409,
                error_code="STALE_METADATA",
                message="The order kept changing while we tried to save it. Reload and try again.",
                details={"attempts": exc.attempts},
            ) from exc

    def _fetch_order(self, order_id: str) -> OrderRecord:
        order = self.guard.store.fetch_order(order_id)
        if order is None:
            raise APIError(status_code=404, error_code="ORDER_NOT_FOUND", message=f"Order {order_id} was not found.")
        return order

    def set_shipping_package(
        self,
        *,
        order_id: str,
        profile: str | None,
        length_cm: float | None,
        width_cm: float | None,
        height_cm: float | None,
        weight_g: float | None,
    ) -> dict[str, Any]:
        custom_values = (length_cm, width_cm, height_cm, weight_g)
        has_custom = any(value is not None for value in custom_values)
        if profile and has_custom:
            raise _invalid_request("Send either a package profile or custom dimensions, not both.")
        if not profile and not has_custom:
            raise _invalid_request("A package profile or custom dimensions are required.")

        try:
            if profile:
                selected = get_package_profile(profile, shipping_config=self.shipping_config)
                package = {"mode": "profile", **selected.to_dict()}
            else:
                if any(value is None for value in custom_values):
                    raise ValueError("Custom packages need length_cm, width_cm, height_cm, and weight_g.")
                validate_package_dimensions(
                    length_cm=float(length_cm),
                    width_cm=float(width_cm),
                    height_cm=float(height_cm),
                    weight_g=float(weight_g),
                    shipping_config=self.shipping_config,
                )
                # None removes a profile left over from an earlier selection.
                package = {
                    "mode": "custom",
                    "profile": None,
                    "length_cm": float(length_cm),
                    "width_cm": float(width_cm),
                    "height_cm": float(height_cm),
                    "weight_g": int(round(float(weight_g))),
                }
        except ValueError as exc:
            raise _invalid_request(str(exc)) from exc

        package["updated_at"] = _utc_now().isoformat()
        result = self._guarded_write(
            order_id,
            lambda: self.guard.apply_patch(
                order_id=order_id,
                patch={"shipping_package": package},
                route_name="set-shipping-package",
                precondition=_reject_if_label,
            ),
        )
        payload = _write_result_payload(result)
        payload["shipping_package"] = result.order.metadata.get("shipping_package")
        return payload

    def set_shipping_package_final(
        self,
        *,
        order_id: str,
        length_cm: float,
        width_cm: float,
        height_cm: float,
        weight_g: float,
    ) -> dict[str, Any]:
        try:
            validate_package_dimensions(
                length_cm=length_cm,
                width_cm=width_cm,
                height_cm=height_cm,
                weight_g=weight_g,
                shipping_config=self.shipping_config,
            )
        except ValueError as exc:
            raise _invalid_request(str(exc)) from exc

        package_final = {
            "mode": "custom",
            "length_cm": float(length_cm),
            "width_cm": float(width_cm),
            "height_cm": float(height_cm),
            "weight_g": int(round(weight_g)),
            "updated_at": _utc_now().isoformat(),
        }
        result = self._guarded_write(
            order_id,
            lambda: self.guard.apply_patch(
                order_id=order_id,
                patch={"shipping_package_final": package_final},
                route_name="set-shipping-package-final",
            ),
        )
        payload = _write_result_payload(result)
        payload["shipping_package_final"] = result.order.metadata.get("shipping_package_final")
        return payload

    def apply_rate(
        self,
        *,
        order_id: str,
        external_rate_id: str,
        provider: str,
        service: str,
        price_cents: int,
        eta_min_days: int | None,
        eta_max_days: int | None,
        customer_total_cents: int | None = None,
    ) -> dict[str, Any]:
        """Select a carrier rate for the order and make it the canonical shipping price."""

        if price_cents <= 0:
            raise _invalid_request("price_cents must be greater than 0.")
        customer_total = (
            customer_total_cents
            if customer_total_cents is not None
            else price_cents + self.shipping_config.packaging_cents
        )
        if customer_total < price_cents:
            raise _invalid_request("customer_total_cents cannot be lower than the carrier price.")

        now_iso = _utc_now().isoformat()
        option_code = rate_option_code(provider, service)
        patch = {
            "shipping": {
                "rate": {
                    "external_id": external_rate_id,
                    "provider": provider,
                    "service": service,
                    "eta_min_days": eta_min_days,
                    "eta_max_days": eta_max_days,
                },
                "rate_id": external_rate_id,
                "option_code": option_code,
                "quoted_at": now_iso,
                "price_cents": customer_total,
                "rate_used": {
                    "external_rate_id": external_rate_id,
                    "provider": provider,
                    "service": service,
                    "eta_min_days": eta_min_days,
                    "eta_max_days": eta_max_days,
                    "selection_source": "admin",
                    "price_cents": customer_total,
                    "carrier_cents": price_cents,
                    "customer_total_cents": customer_total,
                },
                "_last_write": {"route": "apply-rate"},
            },
            "shipping_pricing": {
                "carrier_cents": price_cents,
                "packaging_cents": customer_total - price_cents,
                "margin_cents": 0,
                "total_cents": customer_total,
                "customer_total_cents": customer_total,
                "customer_eta_min_days": eta_min_days,
                "customer_eta_max_days": eta_max_days,
                "corrected": False,
                "correction_reason": None,
            },
        }
        extra_columns = {
            "shipping_status": "rate_selected",
            "shipping_provider": SKYDROPX_PROVIDER,
            "shipping_service_name": service,
            "shipping_price_cents": customer_total,
            "shipping_rate_ext_id": external_rate_id,
            "shipping_eta_min_days": eta_min_days,
            "shipping_eta_max_days": eta_max_days,
        }
        result = self._guarded_write(
            order_id,
            lambda: self.guard.apply_patch(
                order_id=order_id,
                patch=patch,
                route_name="apply-rate",
                extra_columns=extra_columns,
                normalize=True,
                precondition=_reject_if_label,
            ),
        )
        LOGGER.info(
            "Applied rate order_id=%s provider=%s service=%s carrier_cents=%s total_cents=%s",
            order_id,
            provider,
            service,
            price_cents,
            customer_total,
        )
        payload = _write_result_payload(result)
        payload["shipping_pricing"] = result.order.metadata.get("shipping_pricing")
        return payload

    def _saved_parcel(self, metadata: Mapping[str, Any]) -> tuple[dict[str, Any], bool]:
        for key in ("shipping_package_final", "shipping_package"):
            saved = metadata.get(key)
            if not isinstance(saved, Mapping):
                continue
            values = [saved.get(name) for name in ("weight_g", "length_cm", "width_cm", "height_cm")]
            if all(isinstance(value, (int, float)) and not isinstance(value, bool) for value in values):
                min_dim = self.shipping_config.requote_min_dimension_cm
                return (
                    {
                        "source": key,
                        "weight_g": max(float(saved["weight_g"]), float(self.shipping_config.requote_min_weight_g)),
                        "length_cm": max(float(saved["length_cm"]), min_dim),
                        "width_cm": max(float(saved["width_cm"]), min_dim),
                        "height_cm": max(float(saved["height_cm"]), min_dim),
                    },
                    False,
                )

        dims = self.shipping_config.requote_default_dims
        return (
            {
                "source": "default",
                "weight_g": float(self.shipping_config.requote_default_weight_g),
                "length_cm": dims.length_cm,
                "width_cm": dims.width_cm,
                "height_cm": dims.height_cm,
            },
            True,
        )

    def requote(self, *, order_id: str) -> dict[str, Any]:
        """Fetch fresh carrier rates for an existing order using its saved package."""

        order = self._fetch_order(order_id)
        metadata = order.metadata or {}

        if order.shipping_provider != SKYDROPX_PROVIDER:
            raise APIError(
                status_code=400,
                error_code="REQUOTE_PRECONDITION_FAILED",
                message="Only orders shipped with Skydropx can be requoted.",
                details={"shipping_provider": order.shipping_provider},
            )
        if metadata.get("shipping_method") == "pickup":
            raise APIError(
                status_code=400,
                error_code="REQUOTE_PRECONDITION_FAILED",
                message="Pickup orders do not need a shipping quote.",
            )
        destination = extract_destination_address(metadata)
        if destination is None:
            raise APIError(
                status_code=400,
                error_code="REQUOTE_PRECONDITION_FAILED",
                message="The order has no complete destination address.",
                details={"missing_fields": ["postal_code", "state", "city"]},
            )
        if self.carrier is None:
            raise APIError(
                status_code=502,
                error_code="CARRIER_UNAVAILABLE",
                message="The shipping carrier is not configured.",
            )

        parcel, used_default = self._saved_parcel(metadata)
        try:
            rates = self.carrier.quote_rates(
                destination=destination,
                parcel=_carrier_parcel(parcel),
            )
        except (SkydropxAuthError, SkydropxUnavailableError) as exc:
            LOGGER.warning("Requote failed order_id=%s error=%s", order_id, exc)
            raise carrier_error_to_api_error(exc) from exc

        options = build_shipping_options(rates, packaging_cents=self.shipping_config.packaging_cents)
        if not options:
            LOGGER.warning(
                "Requote returned no rates order_id=%s destination_zip=%s package=%s",
                order_id,
                destination.postal_code,
                parcel,
            )

        quoted_at = _utc_now().isoformat()
        self._guarded_write(
            order_id,
            lambda: self.guard.patch_shipping_path(
                order_id=order_id,
                field_path="shipping.quoted_package",
                value={**parcel, "quoted_at": quoted_at, "rates_count": len(options)},
                route_name="requote",
            ),
        )

        warnings = [DEFAULT_PACKAGE_WARNING] if used_default else []
        return {
            "data": {
                "order_id": order_id,
                "package": parcel,
                "destination": destination.to_dict(),
                "empty_reason": "skydropx_no_rates" if not options else None,
                **options_payload(
                    options,
                    recommended_max_eta_days=self.shipping_config.recommended_max_eta_days,
                ),
            },
            "warnings": warnings or None,
        }

    def create_label(self, *, order_id: str) -> dict[str, Any]:
        """Buy the carrier label for the order's applied rate, at most once per order.

        An ``in_progress`` lock in ``shipping.label_creation`` keeps double clicks and
        retries from buying a second label while the carrier call is running. Orders that
        already have a shipment are returned as they are.
        """

        order = self._fetch_order(order_id)
        if order.has_label() or _existing_shipment_id(order):
            return _label_payload(order, already_created=True)

        metadata = order.metadata or {}
        if order.shipping_provider != SKYDROPX_PROVIDER:
            raise APIError(
                status_code=400,
                error_code="LABEL_PRECONDITION_FAILED",
                message="Only orders shipped with Skydropx can get a carrier label.",
                details={"shipping_provider": order.shipping_provider},
            )
        if metadata.get("shipping_method") == "pickup":
            raise APIError(
                status_code=400,
                error_code="LABEL_PRECONDITION_FAILED",
                message="Pickup orders do not need a shipping label.",
            )
        rate_id = _selected_rate_id(metadata)
        if rate_id is None or not has_pricing_numbers(metadata.get("shipping_pricing")):
            raise APIError(
                status_code=400,
                error_code="MISSING_SELECTED_RATE",
                message="Requote and apply a rate before creating the label.",
            )
        destination = extract_destination_address(metadata)
        if destination is None:
            raise APIError(
                status_code=400,
                error_code="LABEL_PRECONDITION_FAILED",
                message="The order has no complete destination address.",
                details={"missing_fields": ["postal_code", "state", "city"]},
            )
        if self.carrier is None:
            raise APIError(
                status_code=502,
                error_code="CARRIER_UNAVAILABLE",
                message="The shipping carrier is not configured.",
            )

        parcel, _ = self._saved_parcel(metadata)
        lock = {
            "status": "in_progress",
            "started_at": _utc_now().isoformat(),
            "request_id": uuid.uuid4().hex,
        }
        ttl_seconds = self.shipping_config.label_lock_ttl_seconds

        def _acquire_lock(current: OrderRecord) -> None:
            if current.has_label() or _existing_shipment_id(current):
                raise APIError(
                    status_code=409,
                    error_code="LABEL_ALREADY_CREATED",
                    message="Another request already created the label for this order.",
                    details={"shipment_id": _existing_shipment_id(current)},
                )
            if _label_lock_active(current.metadata, now=_utc_now(), ttl_seconds=ttl_seconds):
                raise APIError(
                    status_code=409,
                    error_code="LABEL_CREATION_IN_PROGRESS",
                    message="The label is already being created. Try again in a few moments.",
                )

        self._guarded_write(
            order_id,
            lambda: self.guard.apply_patch(
                order_id=order_id,
                patch={"shipping": {"label_creation": lock}},
                route_name="create-label",
                precondition=_acquire_lock,
            ),
        )

        try:
            shipment = self.carrier.create_shipment(
                rate_id=rate_id,
                destination=destination,
                parcel=_carrier_parcel(parcel),
            )
        except (SkydropxAuthError, SkydropxUnavailableError) as exc:
            api_error = carrier_error_to_api_error(exc)
            LOGGER.warning("Label creation failed order_id=%s error=%s", order_id, exc)
            self._guarded_write(
                order_id,
                lambda: self.guard.patch_shipping_path(
                    order_id=order_id,
                    field_path="shipping.label_creation",
                    value={
                        **lock,
                        "status": "failed",
                        "finished_at": _utc_now().isoformat(),
                        "error_code": api_error.error_code,
                    },
                    route_name="create-label",
                ),
            )
            raise api_error from exc

        result = self._record_shipment(order_id=order_id, rate_id=rate_id, lock=lock, shipment=shipment)
        LOGGER.info(
            "Label created order_id=%s shipment_id=%s status=%s",
            order_id,
            shipment.shipment_id,
            result.order.shipping_status,
        )
        return _label_payload(result.order, already_created=False)

    def _record_shipment(
        self,
        *,
        order_id: str,
        rate_id: str,
        lock: Mapping[str, Any],
        shipment: ShipmentResult,
    ) -> GuardedWriteResult:
        has_tracking = bool(shipment.tracking_number and shipment.label_url)
        shipping_status = LABEL_STATUS_CREATED if has_tracking else LABEL_STATUS_PENDING_TRACKING
        shipping_patch: dict[str, Any] = {
            "shipment_id": shipment.shipment_id,
            "status": shipping_status,
            "label_creation": {**lock, "status": "created", "finished_at": _utc_now().isoformat()},
        }
        extra_columns: dict[str, Any] = {
            "shipping_status": shipping_status,
            "shipping_shipment_id": shipment.shipment_id,
            "shipping_rate_ext_id": rate_id,
        }
        if shipment.tracking_number:
            shipping_patch["tracking_number"] = shipment.tracking_number
            extra_columns["shipping_tracking_number"] = shipment.tracking_number
        if shipment.label_url:
            shipping_patch["label_url"] = shipment.label_url
            extra_columns["shipping_label_url"] = shipment.label_url

        def _no_other_label(current: OrderRecord) -> None:
            existing = _existing_shipment_id(current)
            if current.has_label() or (existing and existing != shipment.shipment_id):
                LOGGER.error(
                    "Order already had a label when shipment was recorded order_id=%s orphan_shipment_id=%s",
                    order_id,
                    shipment.shipment_id,
                )
                raise APIError(
                    status_code=409,
                    error_code="LABEL_ALREADY_CREATED",
                    message="Another label was saved first; cancel the extra shipment with the carrier.",
                    details={"shipment_id": existing, "orphan_shipment_id": shipment.shipment_id},
                )

        return self._guarded_write(
            order_id,
            lambda: self.guard.apply_patch(
                order_id=order_id,
                patch={"shipping": shipping_patch},
                route_name="create-label",
                extra_columns=extra_columns,
                precondition=_no_other_label,
            ),
        )

    def reset_quote(
        self,
        *,
        order_id: str,
        confirm: str,
        force: bool = False,
        reason: str | None = None,
    ) -> dict[str, Any]:
        """Clear the order's quote and pricing so a new rate can be applied from scratch."""

        expected = f"{RESET_CONFIRMATION_PREFIX} {order_id}"
        if (confirm or "").strip() != expected:
            raise APIError(
                status_code=400,
                error_code="INVALID_CONFIRMATION",
                message=f"Type '{expected}' to confirm the reset.",
            )
        cleaned_reason = (reason or "").strip()
        if force and len(cleaned_reason) < MIN_FORCE_REASON_LENGTH:
            raise _invalid_request(
                f"A forced reset needs a reason of at least {MIN_FORCE_REASON_LENGTH} characters."
            )

        def _precondition(order: OrderRecord) -> None:
            if not force and order.has_shipment():
                raise APIError(
                    status_code=409,
                    error_code="HAS_SHIPMENT",
                    message="The order already has a shipment; use force with a reason to reset anyway.",
                    details={"shipment_id": order.shipping_shipment_id},
                )

        shipping_patch: dict[str, Any] = {key: None for key in QUOTE_KEYS_REMOVED_ON_RESET}
        shipping_patch["quote_reset"] = {
            "at": _utc_now().isoformat(),
            "forced": force,
            "reason": cleaned_reason or None,
            "quote_state": "reset",
        }
        patch = {
            "shipping": shipping_patch,
            "shipping_pricing": None,
            "shipping_cost_cents": None,
        }
        result = self._guarded_write(
            order_id,
            lambda: self.guard.apply_patch(
                order_id=order_id,
                patch=patch,
                route_name="reset-quote",
                allow_pricing_reset=True,
                precondition=_precondition,
            ),
        )
        LOGGER.warning(
            "Quote reset order_id=%s forced=%s reason=%s",
            order_id,
            force,
            cleaned_reason or None,
        )
        return _write_result_payload(result)
