"""
Tests for the Kulldorff spatial scan
"""

import numpy as np
import pytest

from surveillance_fusion.exceptions import InsufficientDataError
from surveillance_fusion.spatial_clustering import (
    KulldorffScan,
    candidate_windows,
    haversine_distance,
    poisson_llr,
)


def grid_counts(grid_regions, hot=(), hot_value=300.0, base=100.0):
    return {code: (hot_value if code in hot else base) for code in grid_regions}


def test_haversine_one_degree():
    assert haversine_distance(0.0, 0.0, 0.0, 1.0) == pytest.approx(111.19, abs=0.1)


def test_poisson_llr_only_for_excess():
    llr = poisson_llr(np.array([20.0, 5.0, 10.0]), np.array([10.0, 10.0, 10.0]))
    assert llr[0] == pytest.approx(20 * np.log(2) - 10)
    assert llr[1] == 0.0
    assert llr[2] == 0.0


def test_windows_respect_population_cap(grid_regions):
    codes = sorted(grid_regions)
    lat = np.array([grid_regions[c].latitude for c in codes])
    lon = np.array([grid_regions[c].longitude for c in codes])
    pop = np.array([grid_regions[c].population for c in codes], dtype=float)

    membership, centres, radii = candidate_windows(lat, lon, pop, 0.5)

    assert membership.shape[1] == 25
    assert membership.sum(axis=1).max() <= 12
    assert len({tuple(row) for row in membership.tolist()}) == len(membership)


def test_injected_cluster_is_significant(grid_regions):
    hot = {"R00", "R01", "R10"}
    scan = KulldorffScan(permutations=199, random_seed=1)

    cluster = scan.scan(grid_counts(grid_regions, hot), grid_regions)

    assert cluster is not None
    assert cluster.p_value < 0.05
    assert hot <= set(cluster.regions)
    assert cluster.relative_risk > 1.5
    assert cluster.contains("R00")
    assert not cluster.contains("R44")
    assert cluster.to_dict()["pValue"] == cluster.p_value


def test_uniform_rates_not_significant(grid_regions):
    scan = KulldorffScan(permutations=99, random_seed=1)
    cluster = scan.scan(grid_counts(grid_regions), grid_regions)
    assert cluster is None or cluster.p_value > 0.05


def test_same_seed_same_result(grid_regions):
    counts = grid_counts(grid_regions, {"R22", "R23"}, hot_value=180.0)
    first = KulldorffScan(permutations=99, random_seed=5).scan(counts, grid_regions)
    second = KulldorffScan(permutations=99, random_seed=5).scan(counts, grid_regions)
    assert first == second


def test_regions_without_geography_ignored(grid_regions):
    counts = grid_counts(grid_regions, {"R00"})
    counts["ZZ-UNKNOWN"] = 10_000.0
    cluster = KulldorffScan(permutations=99).scan(counts, grid_regions)
    assert "ZZ-UNKNOWN" not in cluster.regions


def test_needs_two_regions(grid_regions):
    with pytest.raises(InsufficientDataError):
        KulldorffScan().scan({"R00": 10.0}, grid_regions)
