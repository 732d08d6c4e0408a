"""
Tests for Configuration Management
"""

import pytest

from surveillance_fusion.config import EngineConfig, load_region_registry
from surveillance_fusion.models import FusionMethod


def test_defaults_are_valid():
    config = EngineConfig()
    assert config.validate() == []
    assert config.fusion_method == FusionMethod.BAYESIAN
    assert config.sensitivity_scale == 1.0


def test_validate_reports_problems():
    config = EngineConfig(
        default_fusion_method="vote",
        baseline_variance=0.0,
        sensitivity="paranoid",
        retention_buckets=5,
        risk_band_edges={"default": (150.0, 50.0)},
    )
    errors = config.validate()
    assert len(errors) == 5
    assert any("vote" in e for e in errors)


def test_with_sensitivity_copies():
    config = EngineConfig()
    high = config.with_sensitivity("HIGH")

    assert high.sensitivity == "high"
    assert high.sensitivity_scale == 0.8
    assert config.sensitivity == "medium"
    with pytest.raises(ValueError):
        config.with_sensitivity("extreme")


def test_risk_bands_per_disease():
    config = EngineConfig(risk_band_edges={"default": (50.0, 150.0), "measles": (1.0, 10.0)})
    assert config.risk_bands_for("measles") == (1.0, 10.0)
    assert config.risk_bands_for("influenza") == (50.0, 150.0)


def test_from_env(monkeypatch, tmp_path):
    registry = tmp_path / "regions.csv"
    registry.write_text(
        "region_code,latitude,longitude,population,region_name\n"
        "US-CA,36.8,-119.4,39000000,California\n"
        "US-NV,38.8,-116.4,3100000,\n"
    )
    monkeypatch.setenv("DEFAULT_FUSION_METHOD", "kalman_filter")
    monkeypatch.setenv("DETECTION_SENSITIVITY", "Low")
    monkeypatch.setenv("RETRY_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("MAX_WORKERS", "2")
    monkeypatch.setenv("REGION_REGISTRY_PATH", str(registry))

    config = EngineConfig.from_env()

    assert config.fusion_method == FusionMethod.KALMAN_FILTER
    assert config.sensitivity == "low"
    assert config.retry_max_attempts == 5
    assert config.worker_count == 2
    assert config.regions["US-CA"].population == 39_000_000
    assert config.regions["US-CA"].region_name == "California"
    assert config.regions["US-NV"].region_name == ""


def test_region_registry_requires_columns(tmp_path):
    path = tmp_path / "bad.csv"
    path.write_text("region_code,population\nUS-CA,1\n")
    with pytest.raises(ValueError):
        load_region_registry(path)


def test_summary_sections():
    summary = EngineConfig().summary()
    assert set(summary) == {"fusion", "store", "detection", "aggregation", "sources", "regions"}
