# This module defines the shipping policy used by package, rate, and admin quote logic.
# It exists so weight defaults, package profiles, and tariff tables live in one reviewed place.
# The loader merges YAML defaults with environment overrides and validates every limit.
# Keeping these values together makes quotes reproducible when a carrier disputes a charge.

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from src.common.env import env_float, env_int

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[2] / "configs" / "shipping_policy.yaml"


@dataclass(frozen=True)
class Dimensions:
    length_cm: float
    width_cm: float
    height_cm: float

    def volume_cm3(self) -> float:
        return self.length_cm * self.width_cm * self.height_cm

    def to_dict(self) -> dict[str, float]:
        return {
            "length_cm": self.length_cm,
            "width_cm": self.width_cm,
            "height_cm": self.height_cm,
        }


@dataclass(frozen=True)
class PackageProfile:
    key: str
    length_cm: float
    width_cm: float
    height_cm: float
    weight_g: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "profile": self.key,
            "length_cm": self.length_cm,
            "width_cm": self.width_cm,
            "height_cm": self.height_cm,
            "weight_g": self.weight_g,
        }


def _load_yaml(path: str | Path) -> dict[str, Any]:
    with open(path, encoding="utf-8") as handle:
        loaded = yaml.safe_load(handle) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"Config at {path} must be a mapping, got: {type(loaded).__name__}")
    return dict(loaded)


def _as_dimensions(value: Any, field_name: str) -> Dimensions:
    if not isinstance(value, dict):
        raise ValueError(f"{field_name} must be a mapping with length/width/height")
    try:
        return Dimensions(
            length_cm=float(value["length"]),
            width_cm=float(value["width"]),
            height_cm=float(value["height"]),
        )
    except KeyError as exc:
        raise ValueError(f"{field_name} is missing {exc.args[0]!r}") from exc


def _as_tariffs(value: Any) -> dict[str, dict[float, int]]:
    if not isinstance(value, dict) or not value:
        raise ValueError("flat_rate.zones must be a non-empty mapping of zone->tariffs")
    tariffs: dict[str, dict[float, int]] = {}
    for zone, table in value.items():
        if not isinstance(table, dict) or not table:
            raise ValueError(f"flat_rate.zones.{zone} must be a non-empty mapping of kg->price")
        tariffs[str(zone)] = {float(kg): int(price) for kg, price in sorted(table.items(), key=lambda kv: float(kv[0]))}
    return tariffs


@dataclass(frozen=True)
class ShippingConfig:
    volumetric_divisor: float
    tare_weight_g: int
    default_item_weight_g: int
    default_dims: Dimensions
    profile_dims: dict[str, Dimensions]
    package_profiles: dict[str, PackageProfile]

    max_dimension_cm: float
    max_weight_g: int

    packaging_cents: int
    recommended_max_eta_days: int

    requote_min_weight_g: int
    requote_min_dimension_cm: float
    requote_default_weight_g: int
    requote_default_dims: Dimensions

    flat_rate_express_multiplier: float
    flat_rate_tariffs: dict[str, dict[float, int]] = field(default_factory=dict)

    max_write_attempts: int = 3
    label_lock_ttl_seconds: int = 300

    def fallback_dims_for_profile(self, profile: str | None) -> tuple[str, Dimensions]:
        key = (profile or "").strip().upper()
        if key in self.profile_dims:
            return key, self.profile_dims[key]
        return "CUSTOM", self.profile_dims.get("CUSTOM", self.default_dims)

    def to_dict(self) -> dict[str, Any]:
        return {
            "volumetric_divisor": self.volumetric_divisor,
            "tare_weight_g": self.tare_weight_g,
            "default_item_weight_g": self.default_item_weight_g,
            "default_dims": self.default_dims.to_dict(),
            "profile_dims": {key: dims.to_dict() for key, dims in self.profile_dims.items()},
            "package_profiles": {key: profile.to_dict() for key, profile in self.package_profiles.items()},
            "max_dimension_cm": self.max_dimension_cm,
            "max_weight_g": self.max_weight_g,
            "packaging_cents": self.packaging_cents,
            "recommended_max_eta_days": self.recommended_max_eta_days,
            "requote_min_weight_g": self.requote_min_weight_g,
            "requote_min_dimension_cm": self.requote_min_dimension_cm,
            "requote_default_weight_g": self.requote_default_weight_g,
            "requote_default_dims": self.requote_default_dims.to_dict(),
            "flat_rate_express_multiplier": self.flat_rate_express_multiplier,
            "flat_rate_tariffs": {zone: dict(table) for zone, table in self.flat_rate_tariffs.items()},
            "max_write_attempts": self.max_write_attempts,
            "label_lock_ttl_seconds": self.label_lock_ttl_seconds,
        }


def load_shipping_config(*, config_path: str | Path = DEFAULT_CONFIG_PATH) -> ShippingConfig:
    cfg = _load_yaml(config_path)
    limits_cfg = dict(cfg.get("limits", {}))
    pricing_cfg = dict(cfg.get("pricing", {}))
    requote_cfg = dict(cfg.get("requote", {}))
    flat_cfg = dict(cfg.get("flat_rate", {}))
    guard_cfg = dict(cfg.get("metadata_guard", {}))
    labels_cfg = dict(cfg.get("labels", {}))

    volumetric_divisor = env_float("SHIPPING_VOLUMETRIC_DIVISOR", float(cfg.get("volumetric_divisor", 5000)))
    tare_weight_g = env_int("SHIPPING_TARE_WEIGHT_G", int(cfg.get("tare_weight_g", 1200)))
    default_item_weight_g = env_int("SHIPPING_DEFAULT_ITEM_WEIGHT_G", int(cfg.get("default_item_weight_g", 100)))
    default_dims = _as_dimensions(cfg.get("default_dims_cm", {"length": 25, "width": 20, "height": 15}), "default_dims_cm")

    profile_dims = {
        str(key).upper(): _as_dimensions(value, f"profile_dims_cm.{key}")
        for key, value in dict(cfg.get("profile_dims_cm", {})).items()
    }
    package_profiles: dict[str, PackageProfile] = {}
    for key, value in dict(cfg.get("package_profiles", {})).items():
        if not isinstance(value, dict):
            raise ValueError(f"package_profiles.{key} must be a mapping")
        package_profiles[str(key).upper()] = PackageProfile(
            key=str(key).upper(),
            length_cm=float(value["length_cm"]),
            width_cm=float(value["width_cm"]),
            height_cm=float(value["height_cm"]),
            weight_g=int(value["weight_g"]),
        )

    max_dimension_cm = env_float("SHIPPING_MAX_DIMENSION_CM", float(limits_cfg.get("max_dimension_cm", 200)))
    max_weight_g = env_int("SHIPPING_MAX_WEIGHT_G", int(limits_cfg.get("max_weight_g", 50000)))

    packaging_cents = env_int("SHIPPING_PACKAGING_CENTS", int(pricing_cfg.get("packaging_cents", 0)))
    recommended_max_eta_days = env_int(
        "SHIPPING_RECOMMENDED_MAX_ETA_DAYS", int(pricing_cfg.get("recommended_max_eta_days", 3))
    )

    requote_min_weight_g = int(requote_cfg.get("min_weight_g", 50))
    requote_min_dimension_cm = float(requote_cfg.get("min_dimension_cm", 1))
    requote_default_weight_g = int(requote_cfg.get("default_weight_g", 1000))
    requote_default_dims = _as_dimensions(
        requote_cfg.get("default_dims_cm", {"length": 25, "width": 20, "height": 15}),
        "requote.default_dims_cm",
    )

    flat_rate_express_multiplier = float(flat_cfg.get("express_multiplier", 1.8))
    flat_rate_tariffs = _as_tariffs(flat_cfg.get("zones"))

    max_write_attempts = env_int("SHIPPING_MAX_WRITE_ATTEMPTS", int(guard_cfg.get("max_write_attempts", 3)))
    label_lock_ttl_seconds = env_int(
        "SHIPPING_LABEL_LOCK_TTL_SECONDS", int(labels_cfg.get("lock_ttl_seconds", 300))
    )

    if volumetric_divisor <= 0:
        raise ValueError("volumetric_divisor must be > 0")
    if tare_weight_g < 0:
        raise ValueError("tare_weight_g must be nonnegative")
    if default_item_weight_g <= 0:
        raise ValueError("default_item_weight_g must be > 0")
    if "CUSTOM" not in profile_dims:
        raise ValueError("profile_dims_cm must define a CUSTOM fallback")
    for key, dims in {"default_dims_cm": default_dims, **profile_dims}.items():
        if min(dims.length_cm, dims.width_cm, dims.height_cm) <= 0:
            raise ValueError(f"{key} dimensions must be > 0")
    if max_dimension_cm <= 0 or max_weight_g <= 0:
        raise ValueError("shipping limits must be > 0")
    if packaging_cents < 0:
        raise ValueError("packaging_cents must be nonnegative")
    if recommended_max_eta_days <= 0:
        raise ValueError("recommended_max_eta_days must be > 0")
    if flat_rate_express_multiplier < 1:
        raise ValueError("flat_rate.express_multiplier must be >= 1")
    if max_write_attempts < 1:
        raise ValueError("metadata_guard.max_write_attempts must be >= 1")
    if label_lock_ttl_seconds <= 0:
        raise ValueError("labels.lock_ttl_seconds must be > 0")

    return ShippingConfig(
        volumetric_divisor=volumetric_divisor,
        tare_weight_g=tare_weight_g,
        default_item_weight_g=default_item_weight_g,
        default_dims=default_dims,
        profile_dims=profile_dims,
        package_profiles=package_profiles,
        max_dimension_cm=max_dimension_cm,
        max_weight_g=max_weight_g,
        packaging_cents=packaging_cents,
        recommended_max_eta_days=recommended_max_eta_days,
        requote_min_weight_g=requote_min_weight_g,
        requote_min_dimension_cm=requote_min_dimension_cm,
        requote_default_weight_g=requote_default_weight_g,
        requote_default_dims=requote_default_dims,
        flat_rate_express_multiplier=flat_rate_express_multiplier,
        flat_rate_tariffs=flat_rate_tariffs,
        max_write_attempts=max_write_attempts,
        label_lock_ttl_seconds=label_lock_ttl_seconds,
    )
