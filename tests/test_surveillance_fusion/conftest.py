"""
Pytest configuration and fixtures for the surveillance fusion tests
"""

import pytest

from surveillance_fusion.config import EngineConfig
from surveillance_fusion.models import RegionInfo

from .helpers import NOW


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    """Fixed clock so timeliness and staleness are deterministic."""
    return lambda: NOW


@pytest.fixture
def config():
    """Weekly configuration; seasonal detection needs a year of history."""
    return EngineConfig(
        seasonal_period=52,
        seasonal_window=156,
        source_timeout_seconds=2.0,
        retry_base_delay_seconds=0.0,
        max_workers=4,
    )


@pytest.fixture
def grid_regions():
    """5x5 grid of regions one degree apart, equal populations."""
    return {
        f"R{row}{col}": RegionInfo(
            region_code=f"R{row}{col}",
            latitude=float(row),
            longitude=float(col),
            population=100_000,
        )
        for row in range(5)
        for col in range(5)
    }
