"""
Tests for the Source Normalizer
"""

import math
from datetime import timedelta

import pandas as pd
import pytest

from surveillance_fusion.config import EngineConfig
from surveillance_fusion.models import CellKey, RegionInfo, SourceStatus
from surveillance_fusion.normalizer import SourceNormalizer


@pytest.fixture
def normalizer(clock):
    config = EngineConfig(
        regions={"US-CA": RegionInfo("US-CA", 36.8, -119.4, 39_000_000, "California")}
    )
    return SourceNormalizer(config, clock=clock)


class TestFieldMapping:
    """Test column aliases and disease codes"""

    def test_aliases_are_mapped(self, normalizer):
        estimates, errors = normalizer.normalize(
            [{"location": "US-CA", "pathogen": "ILI", "epi_week": "2025-W3", "cases": "412"}],
            "cdc",
        )

        assert errors == []
        estimate = estimates[0]
        assert estimate.cell_key == CellKey("US-CA", "influenza", "2025-W03")
        assert estimate.value == 412.0
        assert estimate.status == SourceStatus.OK

    @pytest.mark.parametrize("code,canonical", [
        ("flu", "influenza"),
        ("J10", "influenza"),
        ("COVID-19", "covid19"),
        ("U07.1", "covid19"),
        ("monkeypox", "mpox"),
        ("Yellow Fever", "yellow_fever"),
    ])
    def test_disease_codes(self, normalizer, code, canonical):
        assert normalizer.canonical_disease(code) == canonical

    def test_daily_dates_bucketed_by_week(self, normalizer):
        estimates, _ = normalizer.normalize(
            [{"region": "US-CA", "disease": "influenza", "date": "2025-01-15", "value": 10}],
            "who",
        )
        assert estimates[0].time_bucket == "2025-W03"

    def test_accepts_dataframe(self, normalizer):
        df = pd.DataFrame({
            "Region": ["US-CA", "US-CA"],
            "Disease": ["flu", "flu"],
            "Week": ["2025-W02", "2025-W03"],
            "Cases": [100, 120],
        })
        estimates, errors = normalizer.normalize(df, "who")
        assert errors == []
        assert [e.time_bucket for e in estimates] == ["2025-W02", "2025-W03"]


class TestUnitsAndReliability:
    """Test unit conversion and reliability priors"""

    def test_rate_converted_with_population(self, normalizer):
        estimates, _ = normalizer.normalize(
            [{"region": "US-CA", "disease": "flu", "week": "2025-W03", "value": 2.0, "unit": "per_100k"}],
            "ecdc",
        )
        assert estimates[0].value == pytest.approx(780.0)

    def test_rate_without_population_rejected(self, normalizer):
        estimates, errors = normalizer.normalize(
            [{"region": "US-TX", "disease": "flu", "week": "2025-W03", "value": 2.0, "unit": "per_100k"}],
            "ecdc",
        )
        assert estimates == []
        assert "population" in errors[0].reason

    def test_registry_prior_when_reliability_absent(self, normalizer):
        estimates, _ = normalizer.normalize(
            [{"region": "US-CA", "disease": "flu", "week": "2025-W03", "value": 5}],
            "cdc",
        )
        assert estimates[0].reliability == pytest.approx(0.98)

    def test_unknown_source_uses_default_reliability(self, normalizer):
        estimates, _ = normalizer.normalize(
            [{"region": "US-CA", "disease": "flu", "week": "2025-W03", "value": 5}],
            "county_feed",
        )
        assert estimates[0].reliability == pytest.approx(0.8)

    def test_old_observation_marked_stale(self, normalizer, now):
        observed = (now - timedelta(days=30)).isoformat()
        estimates, _ = normalizer.normalize(
            [{"region": "US-CA", "disease": "flu", "week": "2025-W03", "value": 5, "reported_at": observed}],
            "who",
        )
        assert estimates[0].status == SourceStatus.STALE


class TestRejection:
    """Test that bad records are reported, not raised"""

    @pytest.mark.parametrize("record,reason", [
        ({"region": "US CA!", "disease": "flu", "week": "2025-W03", "value": 1}, "region"),
        ({"region": "US-CA", "week": "2025-W03", "value": 1}, "disease"),
        ({"region": "US-CA", "disease": "flu", "week": "someday", "value": 1}, "time bucket"),
        ({"region": "US-CA", "disease": "flu", "week": "2025-W03", "value": -4}, "Invalid value"),
        ({"region": "US-CA", "disease": "flu", "week": "2025-W03", "value": "many"}, "Non-numeric"),
        ({"region": "US-CA", "disease": "flu", "week": "2025-W03", "value": 1, "confidence": 1.4}, "outside"),
        ({"region": "US-CA", "disease": "flu", "week": "2025-W03", "value": 1, "unit": "furlongs"}, "unit"),
    ])
    def test_bad_records(self, normalizer, record, reason):
        estimates, errors = normalizer.normalize([record], "who")

        assert estimates == []
        assert len(errors) == 1
        assert reason in errors[0].reason
        assert errors[0].to_dict()["sourceId"] == "who"

    def test_good_records_survive_bad_neighbours(self, normalizer):
        records = [
            {"region": "US-CA", "disease": "flu", "week": "2025-W03", "value": 10},
            {"region": "US-CA", "disease": "flu", "week": "2025-W03", "value": None},
        ]
        estimates, errors = normalizer.normalize(records, "who")
        assert len(estimates) == 1
        assert len(errors) == 1


def test_failure_sentinels(normalizer):
    cells = [CellKey("US-CA", "influenza", "2025-W03"), CellKey("US-NY", "influenza", "2025-W03")]
    sentinels = normalizer.normalize_failure("who", cells)

    assert len(sentinels) == 2
    assert all(s.is_missing for s in sentinels)
    assert all(s.status == SourceStatus.MISSING for s in sentinels)
    assert math.isnan(sentinels[0].value)
    assert sentinels[0].to_dict()["value"] is None
