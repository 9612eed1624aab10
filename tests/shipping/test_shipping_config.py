"""
Unit tests for the shipping policy loader.
It asserts the YAML defaults, environment overrides, and validation failures.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from src.shipping.shipping_config import load_shipping_config


def test_default_policy_values() -> None:
    config = load_shipping_config()

    assert config.volumetric_divisor == 5000
    assert config.tare_weight_g == 1200
    assert config.default_item_weight_g == 100
    assert config.default_dims.to_dict() == {"length_cm": 25.0, "width_cm": 20.0, "height_cm": 15.0}
    assert set(config.package_profiles) == {"ENVELOPE", "BOX_S", "BOX_M", "CUSTOM"}
    assert config.flat_rate_tariffs["metro"][0.5] == 59
    assert config.flat_rate_tariffs["nacional"][10.0] == 299
    assert config.max_write_attempts == 3
    assert config.label_lock_ttl_seconds == 300


def test_environment_overrides_yaml(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SHIPPING_TARE_WEIGHT_G", "900")
    monkeypatch.setenv("SHIPPING_PACKAGING_CENTS", "2500")

    config = load_shipping_config()

    assert config.tare_weight_g == 900
    assert config.packaging_cents == 2500


def test_invalid_divisor_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SHIPPING_VOLUMETRIC_DIVISOR", "0")
    with pytest.raises(ValueError, match="volumetric_divisor"):
        load_shipping_config()


def test_label_lock_ttl_must_be_positive(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SHIPPING_LABEL_LOCK_TTL_SECONDS", "0")
    with pytest.raises(ValueError, match="lock_ttl_seconds"):
        load_shipping_config()


def test_policy_without_custom_fallback_is_rejected(tmp_path: Path) -> None:
    policy = tmp_path / "policy.yaml"
    policy.write_text(
        "profile_dims_cm:\n"
        "  BOX_S: {length: 15, width: 10, height: 8}\n"
        "flat_rate:\n"
        "  zones:\n"
        "    metro: {\"1\": 79}\n",
        encoding="utf-8",
    )
    with pytest.raises(ValueError, match="CUSTOM"):
        load_shipping_config(config_path=policy)


def test_fallback_dims_for_unknown_profile_is_custom() -> None:
    key, dims = load_shipping_config().fallback_dims_for_profile("PALLET")

    assert key == "CUSTOM"
    assert dims.volume_cm3() == pytest.approx(7500)
