"""
Fusion Engine
Reconciles disagreeing source estimates for one cell into a single
estimate with quantified uncertainty.

Each method is a pure function ``(inputs, prior, config) -> FusionResult``
registered in a strategy table keyed by FusionMethod.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from itertools import product
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple
import logging

import numpy as np

from .config import EngineConfig
from .exceptions import ConflictingEvidenceError, InsufficientDataError
from .models import CellKey, FusedEstimate, FusionMethod, SourceEstimate, SourceStatus
from .time_buckets import bucket_distance

logger = logging.getLogger(__name__)

RISK_BANDS = ("low", "moderate", "high")


@dataclass
class FusionInputs:
    """Usable estimates for one cell, ordered by observation time"""
    cell_key: CellKey
    source_ids: List[str]
    values: np.ndarray
    reliabilities: np.ndarray
    observed_at: List[datetime]

    @property
    def size(self) -> int:
        return len(self.source_ids)


@dataclass
class FusionResult:
    """Output of a fusion strategy"""
    mean: float
    variance: float
    agreement_score: float
    warnings: Tuple[str, ...] = ()
    diagnostics: Dict = field(default_factory=dict)


# ═══════════════════════════════════════════════════════════
# Shared statistics
# ═══════════════════════════════════════════════════════════

def weighted_mean(values: np.ndarray, weights: np.ndarray) -> float:
    return float(np.sum(weights * values) / np.sum(weights))


def weighted_variance(values: np.ndarray, weights: np.ndarray, mean: float) -> float:
    """Reliability-weighted variance of values around ``mean``"""
    return float(np.sum(weights * (values - mean) ** 2) / np.sum(weights))


def agreement_from_dispersion(dispersion: float, baseline_variance: float) -> float:
    """
    Agreement in [0, 1] that falls as between-source dispersion grows

    Dispersion is measured against the baseline observation variance, so a
    single source (zero dispersion) has agreement 1.
    """
    return 1.0 / (1.0 + max(dispersion, 0.0) / baseline_variance)


def _dispersion_agreement(inputs: FusionInputs, config: EngineConfig) -> Tuple[float, float]:
    mean = weighted_mean(inputs.values, inputs.reliabilities)
    dispersion = weighted_variance(inputs.values, inputs.reliabilities, mean)
    return dispersion, agreement_from_dispersion(dispersion, config.baseline_variance)


# ═══════════════════════════════════════════════════════════
# Strategies
# ═══════════════════════════════════════════════════════════

def fuse_weighted_average(
    inputs: FusionInputs,
    prior: Optional[FusedEstimate],
    config: EngineConfig
) -> FusionResult:
    """Reliability-weighted mean with weighted sample variance"""
    mean = weighted_mean(inputs.values, inputs.reliabilities)
    variance = weighted_variance(inputs.values, inputs.reliabilities, mean)
    return FusionResult(
        mean=mean,
        variance=variance,
        agreement_score=agreement_from_dispersion(variance, config.baseline_variance),
        diagnostics={"weights": dict(zip(inputs.source_ids, inputs.reliabilities.tolist()))},
    )


def fuse_bayesian(
    inputs: FusionInputs,
    prior: Optional[FusedEstimate],
    config: EngineConfig
) -> FusionResult:
    """
    Precision-weighted posterior

    Source precision is ``reliability / baseline_variance``. The posterior
    variance ``1 / sum(precision)`` is scaled by ``1 + Q / (n - 1)`` where Q
    is Cochran's heterogeneity statistic, so disagreeing sources widen the
    reported uncertainty.
    """
    precision = inputs.reliabilities / config.baseline_variance
    tau_post = float(np.sum(precision))
    mean = float(np.sum(precision * inputs.values) / tau_post)
    posterior_variance = 1.0 / tau_post

    heterogeneity = float(np.sum(precision * (inputs.values - mean) ** 2))
    inflation = 1.0 + heterogeneity / (inputs.size - 1) if inputs.size > 1 else 1.0

    dispersion, agreement = _dispersion_agreement(inputs, config)
    return FusionResult(
        mean=mean,
        variance=posterior_variance * inflation,
        agreement_score=agreement,
        diagnostics={
            "posterior_precision": tau_post,
            "posterior_variance": posterior_variance,
            "heterogeneity": heterogeneity,
            "dispersion": dispersion,
        },
    )


def fuse_kalman(
    inputs: FusionInputs,
    prior: Optional[FusedEstimate],
    config: EngineConfig
) -> FusionResult:
    """
    Scalar Kalman filter over the cell's time series

    Predicts from the prior bucket's fused estimate (mean plus drift,
    variance plus process noise per elapsed bucket), then applies one update
    per source estimate in observation order. Without a prior the first
    observation initialises the state.
    """
    obs_variance = config.baseline_variance / inputs.reliabilities
    warnings = []
    innovations = []
    gain_history = []

    if prior is not None:
        try:
            gap = max(1, bucket_distance(prior.time_bucket, inputs.cell_key.time_bucket))
        except ValueError:
            gap = 1
            warnings.append(f"Prior bucket {prior.time_bucket} not comparable, assuming adjacent")
        mean = prior.mean + config.kalman_drift * gap
        variance = prior.variance + config.kalman_process_noise * gap
        start = 0
        predicted = {"mean": mean, "variance": variance, "gap": gap}
    else:
        mean = float(inputs.values[0])
        variance = float(obs_variance[0])
        start = 1
        predicted = None

    for value, r_var in zip(inputs.values[start:], obs_variance[start:]):
        gain = variance / (variance + r_var)
        innovation = float(value - mean)
        mean = mean + gain * innovation
        variance = variance * (1.0 - gain)
        innovations.append(innovation)
        gain_history.append(float(gain))

    _, agreement = _dispersion_agreement(inputs, config)
    return FusionResult(
        mean=float(mean),
        variance=float(variance),
        agreement_score=agreement,
        warnings=tuple(warnings),
        diagnostics={
            "predicted": predicted,
            "innovations": innovations,
            "gains": gain_history,
        },
    )


def risk_band(value: float, edges: Tuple[float, float]) -> str:
    """Discretize a value into an ordinal incidence band"""
    low_edge, high_edge = edges
    if value < low_edge:
        return "low"
    if value < high_edge:
        return "moderate"
    return "high"


def combine_masses(
    m1: Dict[FrozenSet[str], float],
    m2: Dict[FrozenSet[str], float]
) -> Tuple[Dict[FrozenSet[str], float], float]:
    """
    Dempster's rule of combination

    Returns:
        Tuple of (unnormalised combined masses, conflict mass K)
    """
    combined: Dict[FrozenSet[str], float] = {}
    conflict = 0.0
    for (a, mass_a), (b, mass_b) in product(m1.items(), m2.items()):
        intersection = a & b
        if intersection:
            combined[intersection] = combined.get(intersection, 0.0) + mass_a * mass_b
        else:
            conflict += mass_a * mass_b
    return combined, conflict


def pignistic_probability(masses: Dict[FrozenSet[str], float]) -> Dict[str, float]:
    """Spread each focal set's mass evenly over its members"""
    betp = {band: 0.0 for band in RISK_BANDS}
    for focal, mass in masses.items():
        for band in focal:
            betp[band] += mass / len(focal)
    return betp


def fuse_dempster_shafer(
    inputs: FusionInputs,
    prior: Optional[FusedEstimate],
    config: EngineConfig
) -> FusionResult:
    """
    Dempster-Shafer evidence combination over ordinal risk bands

    Each source commits its reliability to its own band and the remainder to
    the whole frame. Agreement is ``1 - K`` where K is the total conflict.
    Total conflict is reported as a warning and falls back to the weighted
    average for the point estimate.
    """
    edges = config.risk_bands_for(inputs.cell_key.disease)
    frame = frozenset(RISK_BANDS)
    bands = [risk_band(v, edges) for v in inputs.values]

    source_masses = []
    for band, reliability in zip(bands, inputs.reliabilities):
        masses = {frozenset([band]): float(reliability)}
        if reliability < 1.0:
            masses[frame] = masses.get(frame, 0.0) + 1.0 - float(reliability)
        source_masses.append(masses)

    combined = source_masses[0]
    retained = 1.0
    try:
        for masses in source_masses[1:]:
            unnormalised, pair_conflict = combine_masses(combined, masses)
            if pair_conflict >= 1.0 - config.conflict_tolerance:
                raise ConflictingEvidenceError(1.0, inputs.cell_key)
            combined = {k: v / (1.0 - pair_conflict) for k, v in unnormalised.items()}
            retained *= 1.0 - pair_conflict
    except ConflictingEvidenceError as e:
        logger.warning(f"{inputs.cell_key}: {e}; falling back to weighted average")
        fallback = fuse_weighted_average(inputs, prior, config)
        return FusionResult(
            mean=fallback.mean,
            variance=fallback.variance,
            agreement_score=0.0,
            warnings=(f"ConflictingEvidenceError: {e}",),
            diagnostics={"conflict": 1.0, "bands": dict(zip(inputs.source_ids, bands))},
        )

    conflict = 1.0 - retained
    betp = pignistic_probability(combined)
    weights = inputs.reliabilities * np.array([betp[band] for band in bands])
    if np.sum(weights) <= 0:
        weights = inputs.reliabilities

    mean = weighted_mean(inputs.values, weights)
    return FusionResult(
        mean=mean,
        variance=weighted_variance(inputs.values, weights, mean),
        agreement_score=float(min(1.0, max(0.0, 1.0 - conflict))),
        diagnostics={
            "conflict": conflict,
            "bands": dict(zip(inputs.source_ids, bands)),
            "belief": {"|".join(sorted(k)): v for k, v in combined.items()},
            "pignistic": betp,
        },
    )


def fuse_ensemble(
    inputs: FusionInputs,
    prior: Optional[FusedEstimate],
    config: EngineConfig
) -> FusionResult:
    """Equal blend of weighted average and bayesian, keeping the wider variance"""
    wa = fuse_weighted_average(inputs, prior, config)
    bayes = fuse_bayesian(inputs, prior, config)
    return FusionResult(
        mean=0.5 * wa.mean + 0.5 * bayes.mean,
        variance=max(wa.variance, bayes.variance),
        agreement_score=min(wa.agreement_score, bayes.agreement_score),
        diagnostics={"weighted_average": wa.mean, "bayesian": bayes.mean},
    )


FusionStrategy = Callable[[FusionInputs, Optional[FusedEstimate], EngineConfig], FusionResult]

FUSION_STRATEGIES: Dict[FusionMethod, FusionStrategy] = {
    FusionMethod.WEIGHTED_AVERAGE: fuse_weighted_average,
    FusionMethod.BAYESIAN: fuse_bayesian,
    FusionMethod.KALMAN_FILTER: fuse_kalman,
    FusionMethod.DEMPSTER_SHAFER: fuse_dempster_shafer,
    FusionMethod.ENSEMBLE: fuse_ensemble,
}


# ═══════════════════════════════════════════════════════════
# Engine
# ═══════════════════════════════════════════════════════════

class FusionEngine:
    """
    Fuses the estimates for one cell using a selected strategy
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.config = config or EngineConfig()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def fuse(
        self,
        cell_key: CellKey,
        estimates: Iterable[SourceEstimate],
        method=None,
        prior_fused_estimate: Optional[FusedEstimate] = None
    ) -> FusedEstimate:
        """
        Fuse all estimates for a cell

        Args:
            cell_key: Cell being fused; estimates for other cells are ignored
            estimates: Source estimates (any status)
            method: FusionMethod or its name (defaults to the configured method)
            prior_fused_estimate: Fused estimate of the previous bucket

        Returns:
            FusedEstimate for the cell

        Raises:
            InvalidMethodError: Unknown method
            InsufficientDataError: No usable estimates and no prior to carry
        """
        method = FusionMethod.parse(method or self.config.default_fusion_method)
        relevant = [e for e in estimates if e.cell_key == cell_key]

        if not relevant:
            if prior_fused_estimate is not None:
                return self.carry_forward(cell_key, prior_fused_estimate)
            raise InsufficientDataError(f"No estimates for {cell_key}", cell_key)

        latest = self._latest_per_source(relevant)
        failed = frozenset(
            e.source_id for e in latest if e.is_missing or e.reliability <= 0
        )
        usable = [e for e in latest if e.source_id not in failed]

        if not usable:
            raise InsufficientDataError(
                f"All {len(latest)} sources missing for {cell_key}", cell_key
            )

        inputs = self._prepare_inputs(cell_key, usable)
        prior = prior_fused_estimate if method == FusionMethod.KALMAN_FILTER else None
        result = FUSION_STRATEGIES[method](inputs, prior, self.config)

        return FusedEstimate(
            region=cell_key.region,
            disease=cell_key.disease,
            time_bucket=cell_key.time_bucket,
            mean=result.mean,
            variance=max(0.0, result.variance),
            method=method,
            sources_used=frozenset(inputs.source_ids),
            sources_failed=failed,
            agreement_score=result.agreement_score,
            computed_at=self.clock(),
            warnings=result.warnings,
            diagnostics=result.diagnostics,
        )

    def carry_forward(self, cell_key: CellKey, prior: FusedEstimate) -> FusedEstimate:
        """Carry a prior estimate into a cell that received no data"""
        logger.info(f"{cell_key}: no estimates, carrying forward {prior.time_bucket}")
        return FusedEstimate(
            region=cell_key.region,
            disease=cell_key.disease,
            time_bucket=cell_key.time_bucket,
            mean=prior.mean,
            variance=prior.variance,
            method=prior.method,
            sources_used=frozenset(),
            sources_failed=frozenset(),
            agreement_score=0.0,
            computed_at=self.clock(),
            carried_forward=True,
            warnings=(f"carried forward from {prior.time_bucket}",),
        )

    def _latest_per_source(self, estimates: List[SourceEstimate]) -> List[SourceEstimate]:
        latest: Dict[str, SourceEstimate] = {}
        for estimate in estimates:
            current = latest.get(estimate.source_id)
            if current is None or estimate.observed_at >= current.observed_at:
                latest[estimate.source_id] = estimate
        return list(latest.values())

    def _prepare_inputs(self, cell_key: CellKey, usable: List[SourceEstimate]) -> FusionInputs:
        ordered = sorted(usable, key=lambda e: (e.observed_at, e.source_id))
        reliabilities = np.array([
            e.reliability * (self.config.stale_reliability_factor if e.status == SourceStatus.STALE else 1.0)
            for e in ordered
        ], dtype=float)
        return FusionInputs(
            cell_key=cell_key,
            source_ids=[e.source_id for e in ordered],
            values=np.array([e.value for e in ordered], dtype=float),
            reliabilities=reliabilities,
            observed_at=[e.observed_at for e in ordered],
        )
