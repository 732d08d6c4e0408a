"""
Spatial Cluster Detection using the Kulldorff Scan Statistic
Circular scan windows over region centroids with Poisson likelihood ratios
and Monte Carlo significance testing.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, List, Optional, Tuple
import logging

import numpy as np

from .exceptions import InsufficientDataError
from .models import RegionInfo

logger = logging.getLogger(__name__)

# Monte Carlo replicates are evaluated in batches to bound memory
PERMUTATION_BATCH = 100


@dataclass
class SpatialCluster:
    """Most likely cluster found by the scan"""
    cluster_id: str
    center_region: str
    regions: Tuple[str, ...]
    radius_km: float
    observed_cases: float
    expected_cases: float
    relative_risk: float
    log_likelihood_ratio: float
    p_value: float
    population: int
    permutations: int

    def contains(self, region: str) -> bool:
        return region in self.regions

    def to_dict(self) -> Dict:
        return {
            "clusterId": self.cluster_id,
            "centerRegion": self.center_region,
            "regions": list(self.regions),
            "radiusKm": round(self.radius_km, 3),
            "observedCases": self.observed_cases,
            "expectedCases": round(self.expected_cases, 3),
            "relativeRisk": round(self.relative_risk, 4),
            "logLikelihoodRatio": round(self.log_likelihood_ratio, 4),
            "pValue": self.p_value,
            "population": self.population,
        }


def haversine_distance(lat1, lon1, lat2, lon2):
    """Great-circle distance in km (works element-wise on arrays)"""
    R = 6371  # Earth radius in km

    lat1, lon1, lat2, lon2 = map(np.radians, [lat1, lon1, lat2, lon2])

    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = np.sin(dlat / 2) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlon / 2) ** 2
    c = 2 * np.arcsin(np.sqrt(a))

    return R * c


def poisson_llr(observed: np.ndarray, expected: np.ndarray) -> np.ndarray:
    """
    Poisson log-likelihood ratio O*ln(O/E) - (O - E), zero unless O > E
    """
    elevated = (observed > expected) & (expected > 0)
    safe_observed = np.where(elevated, observed, 1.0)
    safe_expected = np.where(elevated, expected, 1.0)
    llr = safe_observed * np.log(safe_observed / safe_expected) - (safe_observed - safe_expected)
    return np.where(elevated, llr, 0.0)


class KulldorffScan:
    """
    Circular spatial scan statistic

    Windows are centred on each region centroid and grown by nearest
    neighbour until the window holds more than ``max_population_fraction``
    of the total population. Expected counts assume a uniform rate across
    the study area.
    """

    def __init__(
        self,
        max_population_fraction: float = 0.5,
        permutations: int = 999,
        random_seed: Optional[int] = 42
    ):
        """
        Args:
            max_population_fraction: Largest window as a share of total population
            permutations: Monte Carlo replicates for the p-value
            random_seed: Seed for the replicate generator (None for entropy)
        """
        self.max_population_fraction = max_population_fraction
        self.permutations = permutations
        self.random_seed = random_seed

    def scan(
        self,
        counts: Dict[str, float],
        regions: Dict[str, RegionInfo]
    ) -> Optional[SpatialCluster]:
        """
        Find the most likely cluster of elevated counts

        Args:
            counts: Region code -> case count for one disease and bucket
            regions: Region registry (centroids and populations)

        Returns:
            The most likely cluster (significant or not), or None when no
            window has more cases than expected

        Raises:
            InsufficientDataError: Fewer than two regions with geographic data
        """
        usable = sorted(
            code for code, value in counts.items()
            if code in regions and regions[code].population > 0 and np.isfinite(value)
        )
        if len(usable) < 2:
            raise InsufficientDataError(
                f"Spatial scan needs at least 2 regions with centroid and population, got {len(usable)}"
            )

        key = tuple(
            (code, float(counts[code]), regions[code].latitude, regions[code].longitude, int(regions[code].population))
            for code in usable
        )
        return _cached_scan(key, self.max_population_fraction, self.permutations, self.random_seed)


def candidate_windows(
    latitudes: np.ndarray,
    longitudes: np.ndarray,
    populations: np.ndarray,
    max_population_fraction: float
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Enumerate distinct circular windows

    Returns:
        Tuple of (membership matrix [windows x regions], centre index per
        window, radius in km per window)
    """
    n = len(latitudes)
    distances = haversine_distance(
        latitudes[:, None], longitudes[:, None], latitudes[None, :], longitudes[None, :]
    )
    limit = max_population_fraction * populations.sum()

    seen = set()
    memberships = []
    centres = []
    radii = []
    for centre in range(n):
        order = np.argsort(distances[centre], kind="stable")
        cumulative = np.cumsum(populations[order])
        for size in range(1, n + 1):
            if cumulative[size - 1] > limit:
                break
            members = frozenset(order[:size].tolist())
            if members in seen:
                continue
            seen.add(members)
            row = np.zeros(n, dtype=bool)
            row[list(members)] = True
            memberships.append(row)
            centres.append(centre)
            radii.append(float(distances[centre, order[size - 1]]))

    if not memberships:
        return np.zeros((0, n), dtype=bool), np.array([], dtype=int), np.array([])
    return np.vstack(memberships), np.array(centres), np.array(radii)


@lru_cache(maxsize=256)
def _cached_scan(
    key: Tuple[Tuple[str, float, float, float, int], ...],
    max_population_fraction: float,
    permutations: int,
    random_seed: Optional[int]
) -> Optional[SpatialCluster]:
    codes = [row[0] for row in key]
    counts = np.array([row[1] for row in key], dtype=float)
    latitudes = np.array([row[2] for row in key], dtype=float)
    longitudes = np.array([row[3] for row in key], dtype=float)
    populations = np.array([row[4] for row in key], dtype=float)

    total_cases = counts.sum()
    if total_cases <= 0:
        return None

    membership, centres, radii = candidate_windows(
        latitudes, longitudes, populations, max_population_fraction
    )
    if len(membership) == 0:
        logger.debug("No scan window fits under the population limit")
        return None

    window_share = membership.astype(float) @ populations / populations.sum()
    expected = total_cases * window_share
    observed = membership.astype(float) @ counts
    llr = poisson_llr(observed, expected)

    best = int(np.argmax(llr))
    best_llr = float(llr[best])
    if best_llr <= 0:
        return None

    # Monte Carlo: redistribute the total case count by population
    rng = np.random.default_rng(random_seed)
    n_cases = int(round(total_cases))
    probabilities = populations / populations.sum()
    exceed = 0
    remaining = permutations
    weights = membership.T.astype(float)
    while remaining > 0:
        batch = min(PERMUTATION_BATCH, remaining)
        simulated = rng.multinomial(n_cases, probabilities, size=batch).astype(float)
        sim_observed = simulated @ weights
        sim_expected = n_cases * window_share
        sim_max = poisson_llr(sim_observed, sim_expected[None, :]).max(axis=1)
        exceed += int(np.sum(sim_max >= best_llr))
        remaining -= batch

    p_value = (exceed + 1) / (permutations + 1)

    members = tuple(code for code, inside in zip(codes, membership[best]) if inside)
    centre_code = codes[int(centres[best])]
    cluster_population = int(populations[membership[best]].sum())

    logger.debug(
        f"Most likely cluster centred on {centre_code}: {len(members)} regions, "
        f"LLR={best_llr:.3f}, p={p_value:.4f}"
    )

    return SpatialCluster(
        cluster_id=f"scan_{centre_code}_{len(members)}",
        center_region=centre_code,
        regions=members,
        radius_km=float(radii[best]),
        observed_cases=float(observed[best]),
        expected_cases=float(expected[best]),
        relative_risk=float(observed[best] / expected[best]) if expected[best] > 0 else float("inf"),
        log_likelihood_ratio=best_llr,
        p_value=p_value,
        population=cluster_population,
        permutations=permutations,
    )
