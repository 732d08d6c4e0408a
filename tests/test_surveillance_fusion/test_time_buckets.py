"""
Tests for time bucket parsing and arithmetic
"""

from datetime import date

import pytest

from surveillance_fusion.time_buckets import (
    bucket_distance,
    canonical_time_bucket,
    parse_time_bucket,
    parse_timeframe,
    shift_time_bucket,
)


def test_iso_weeks_order_across_year_boundary():
    """Test that weeks sort chronologically, not lexically."""
    assert parse_time_bucket("2024-W52") < parse_time_bucket("2025-W01")
    assert bucket_distance("2024-W52", "2025-W01") == 1
    assert bucket_distance("2025-W03", "2024-W48") == -7


def test_week_53_years():
    assert shift_time_bucket("2020-W53", 1) == "2021-W01"
    with pytest.raises(ValueError):
        parse_time_bucket("2021-W53")


def test_single_digit_week_is_canonicalised():
    assert canonical_time_bucket("2025-W3") == "2025-W03"


def test_dates_map_to_iso_week():
    """Test that a date bucket becomes its ISO week under weekly granularity."""
    assert canonical_time_bucket("2025-01-15", "week") == "2025-W03"
    assert canonical_time_bucket(date(2024, 12, 30), "week") == "2025-W01"
    assert canonical_time_bucket("2025-01-15") == "2025-01-15"


def test_month_buckets():
    assert bucket_distance("2024-11", "2025-02") == 3


def test_mixed_granularity_distance_rejected():
    with pytest.raises(ValueError):
        bucket_distance("2025-W01", "2025-01")


def test_parse_timeframe_range():
    assert parse_timeframe("2024-W52/2025-W02") == ["2024-W52", "2025-W01", "2025-W02"]
    assert parse_timeframe("2025-W03") == ["2025-W03"]
    assert parse_timeframe(["2025-W02", "2025-W01", "2025-W02"]) == ["2025-W01", "2025-W02"]


@pytest.mark.parametrize("bad", ["2025-W03/2025-W01", "next week", "2025-13"])
def test_parse_timeframe_invalid(bad):
    with pytest.raises(ValueError):
        parse_timeframe(bad)
