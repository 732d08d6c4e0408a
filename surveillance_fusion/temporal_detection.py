"""
Temporal Outbreak Detection
CUSUM, EWMA control charts and an STL seasonal-baseline residual test,
evaluated on a cell's fused time series.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple
import logging
import warnings

import numpy as np
from scipy import stats
from statsmodels.tsa.seasonal import STL

from .config import EngineConfig
from .exceptions import InsufficientDataError
from .models import CellKey, DetectionMethod, DetectorSignal

logger = logging.getLogger(__name__)


@dataclass
class Baseline:
    """Reference-window statistics"""
    mean: float
    std: float
    size: int


@dataclass
class CusumResult:
    """Replay of the upper CUSUM over a series"""
    statistics: np.ndarray
    threshold: float
    alarms: List[int] = field(default_factory=list)
    alarm_starts: List[int] = field(default_factory=list)

    @property
    def fired_at_end(self) -> bool:
        return bool(self.alarms) and self.alarms[-1] == len(self.statistics) - 1


@dataclass
class EwmaResult:
    """EWMA chart replay"""
    z: np.ndarray
    upper: float
    lower: float
    sigma_z: float

    @property
    def last(self) -> float:
        return float(self.z[-1])

    @property
    def direction(self) -> Optional[str]:
        if self.last > self.upper:
            return "increase"
        if self.last < self.lower:
            return "decrease"
        return None

    def run_start(self) -> int:
        """Index where the current out-of-control run began"""
        index = len(self.z) - 1
        while index > 0 and not (self.lower <= self.z[index - 1] <= self.upper):
            index -= 1
        return index


def reference_baseline(
    values: Sequence[float],
    window: int = 14,
    exclude: int = 2,
    min_sigma: float = 1.0
) -> Baseline:
    """
    Mean and standard deviation of the trailing reference window

    The most recent ``exclude`` buckets are left out so the signal being
    tested does not contaminate its own baseline.

    Raises:
        InsufficientDataError: Fewer than ``window + exclude`` observations
    """
    values = np.asarray(values, dtype=float)
    if len(values) < window + exclude:
        raise InsufficientDataError(
            f"Insufficient data: {len(values)} observations, need at least {window + exclude}"
        )

    reference = values[len(values) - window - exclude:len(values) - exclude]
    return Baseline(
        mean=float(np.mean(reference)),
        std=max(float(np.std(reference)), min_sigma),
        size=len(reference),
    )


def cusum(
    values: Sequence[float],
    mean: float,
    std: float,
    k_sigma: float = 0.5,
    h_sigma: float = 5.0
) -> CusumResult:
    """
    Upper one-sided CUSUM

    S_t = max(0, S_{t-1} + x_t - mean - k), alarm when S_t > h, after which
    S is reset to zero. ``statistics`` holds the pre-reset values.
    """
    k = k_sigma * std
    h = h_sigma * std

    s = 0.0
    run_start = None
    statistics = []
    alarms = []
    alarm_starts = []

    for i, x in enumerate(np.asarray(values, dtype=float)):
        previous = s
        s = max(0.0, s + x - mean - k)

        if s > 0 and previous == 0:
            run_start = i
        elif s == 0:
            run_start = None

        statistics.append(s)
        if s > h:
            alarms.append(i)
            alarm_starts.append(run_start if run_start is not None else i)
            s = 0.0
            run_start = None

    return CusumResult(statistics=np.array(statistics), threshold=h, alarms=alarms, alarm_starts=alarm_starts)


def ewma(
    values: Sequence[float],
    mean: float,
    std: float,
    lam: float = 0.2,
    L: float = 3.0
) -> EwmaResult:
    """
    Exponentially weighted moving average chart

    z_t = lam * x_t + (1 - lam) * z_{t-1}, starting from the baseline mean,
    with limits mean +/- L * std * sqrt(lam / (2 - lam)).
    """
    z = []
    current = mean
    for x in np.asarray(values, dtype=float):
        current = lam * x + (1.0 - lam) * current
        z.append(current)

    sigma_z = std * np.sqrt(lam / (2.0 - lam))
    return EwmaResult(
        z=np.array(z),
        upper=mean + L * sigma_z,
        lower=mean - L * sigma_z,
        sigma_z=float(sigma_z),
    )


def seasonal_forecast(
    history: Sequence[float],
    period: int = 7,
    robust: bool = True
) -> Tuple[float, float]:
    """
    One-step forecast from an STL decomposition of the history

    Forecast = last trend + last trend slope + seasonal component of the
    same phase one period back.

    Returns:
        Tuple of (forecast, residual standard deviation)
    """
    history = np.asarray(history, dtype=float)
    if len(history) < 2 * period + 1:
        raise InsufficientDataError(
            f"Insufficient data: {len(history)} observations, need at least {2 * period + 1}"
        )

    # LOESS seasonal smoother must be odd
    seasonal = period if period % 2 else period + 1
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        result = STL(history, period=period, seasonal=max(seasonal, 7), robust=robust).fit()

    trend = np.asarray(result.trend)
    seasonal_component = np.asarray(result.seasonal)
    slope = trend[-1] - trend[-2]

    forecast = float(trend[-1] + slope + seasonal_component[-period])
    return forecast, float(np.std(np.asarray(result.resid)))


def exceedance_confidence(magnitude: float, threshold: float) -> float:
    """
    Confidence that an exceedance is real

    0.95 exactly at the threshold, rising towards 0.99 as the statistic
    grows past it.
    """
    if threshold <= 0:
        return 0.99
    return float(min(0.99, stats.norm.cdf(abs(magnitude) / threshold * stats.norm.ppf(0.95))))


class TemporalOutbreakDetector:
    """
    Runs the temporal detectors on one cell's series

    Each ``detect_*`` method returns a DetectorSignal or None and raises
    InsufficientDataError when the series is too short for that method.
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()

    def _baseline(self, values: np.ndarray) -> Baseline:
        return reference_baseline(
            values,
            window=self.config.reference_window,
            exclude=self.config.reference_exclude,
            min_sigma=self.config.min_sigma,
        )

    def detect_cusum(self, cell_key: CellKey, buckets: List[str], values: np.ndarray) -> Optional[DetectorSignal]:
        """
        CUSUM replayed over the retained series against the current baseline
        """
        baseline = self._baseline(values)
        result = cusum(
            values,
            baseline.mean,
            baseline.std,
            k_sigma=self.config.cusum_k_sigma,
            h_sigma=self.config.cusum_h_sigma * self.config.sensitivity_scale,
        )
        if not result.fired_at_end:
            return None

        statistic = float(result.statistics[-1])
        return DetectorSignal(
            method=DetectionMethod.CUSUM,
            cell_key=cell_key,
            statistic=statistic,
            threshold=result.threshold,
            confidence=exceedance_confidence(statistic, result.threshold),
            direction="increase",
            estimated_start=buckets[result.alarm_starts[-1]],
            details={"baseline_mean": baseline.mean, "baseline_std": baseline.std},
        )

    def detect_ewma(self, cell_key: CellKey, buckets: List[str], values: np.ndarray) -> Optional[DetectorSignal]:
        baseline = self._baseline(values)
        L = self.config.ewma_l * self.config.sensitivity_scale
        result = ewma(values, baseline.mean, baseline.std, lam=self.config.ewma_lambda, L=L)

        direction = result.direction
        if direction is None:
            return None

        return DetectorSignal(
            method=DetectionMethod.EWMA,
            cell_key=cell_key,
            statistic=result.last,
            threshold=result.upper if direction == "increase" else result.lower,
            confidence=exceedance_confidence(result.last - baseline.mean, L * result.sigma_z),
            direction=direction,
            estimated_start=buckets[result.run_start()],
            details={
                "baseline_mean": baseline.mean,
                "upper_limit": result.upper,
                "lower_limit": result.lower,
            },
        )

    def detect_seasonal(self, cell_key: CellKey, buckets: List[str], values: np.ndarray) -> Optional[DetectorSignal]:
        """Residual of the latest value against an STL seasonal-trend forecast"""
        history = values[:-1][-self.config.seasonal_window:]
        forecast, residual_std = seasonal_forecast(
            history,
            period=self.config.seasonal_period,
            robust=self.config.stl_robust,
        )
        residual_std = max(residual_std, self.config.min_sigma)
        threshold = self.config.seasonal_threshold * self.config.sensitivity_scale * residual_std
        residual = float(values[-1] - forecast)

        if abs(residual) <= threshold:
            return None

        return DetectorSignal(
            method=DetectionMethod.SEASONAL,
            cell_key=cell_key,
            statistic=residual,
            threshold=threshold,
            confidence=exceedance_confidence(residual, threshold),
            direction="increase" if residual > 0 else "decrease",
            estimated_start=buckets[-1],
            details={"forecast": forecast, "residual_std": residual_std},
        )
