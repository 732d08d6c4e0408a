"""
Tests for CUSUM, EWMA and seasonal outbreak detection
"""

import numpy as np
import pytest

from surveillance_fusion.config import EngineConfig
from surveillance_fusion.exceptions import InsufficientDataError
from surveillance_fusion.models import CellKey, DetectionMethod
from surveillance_fusion.temporal_detection import (
    TemporalOutbreakDetector,
    cusum,
    ewma,
    exceedance_confidence,
    reference_baseline,
    seasonal_forecast,
)
from surveillance_fusion.time_buckets import shift_time_bucket

CELL = CellKey("US-CA", "influenza", "2025-W20")


def buckets_for(values, end="2025-W20"):
    return [shift_time_bucket(end, i - len(values) + 1) for i in range(len(values))]


class TestCusum:
    """Test the upper CUSUM chart"""

    def test_quiet_series_rarely_alarms(self):
        rng = np.random.default_rng(7)
        values = rng.normal(100.0, 10.0, size=1000)

        result = cusum(values, mean=100.0, std=10.0)
        assert len(result.alarms) <= 10

    def test_five_sigma_step_detected_quickly(self):
        rng = np.random.default_rng(11)
        values = rng.normal(100.0, 10.0, size=60)
        values[30:] += 50.0

        result = cusum(values, mean=100.0, std=10.0)
        after_step = [a for a in result.alarms if a >= 30]
        assert after_step
        assert after_step[0] - 30 <= 5

    def test_statistic_resets_after_alarm(self):
        result = cusum([10, 10, 10, 100, 10], mean=10.0, std=2.0)
        assert result.alarms == [3]
        assert result.alarm_starts == [3]
        assert result.statistics[4] == 0.0

    def test_run_start_is_first_positive_bucket(self):
        result = cusum([0, 0, 2, 2, 2, 2], mean=0.0, std=1.0, k_sigma=0.5, h_sigma=5.0)
        assert result.fired_at_end
        assert result.alarm_starts[-1] == 2


class TestEwma:
    """Test the EWMA chart"""

    def test_limits(self):
        result = ewma([100.0] * 5, mean=100.0, std=15.0, lam=0.2, L=3.0)
        assert result.sigma_z == pytest.approx(5.0)
        assert result.upper == pytest.approx(115.0)
        assert result.lower == pytest.approx(85.0)
        assert result.direction is None

    def test_two_sided(self):
        up = ewma([100.0] * 5 + [200.0], mean=100.0, std=15.0)
        down = ewma([100.0] * 5 + [0.0], mean=100.0, std=15.0)
        assert up.direction == "increase"
        assert down.direction == "decrease"
        assert up.run_start() == 5


def test_reference_window_excludes_recent_buckets():
    values = [10.0] * 14 + [500.0, 900.0]
    baseline = reference_baseline(values, window=14, exclude=2)
    assert baseline.mean == pytest.approx(10.0)
    assert baseline.std == pytest.approx(1.0)  # floored at min_sigma
    assert baseline.size == 14


def test_reference_window_needs_history():
    with pytest.raises(InsufficientDataError):
        reference_baseline([1.0] * 15, window=14, exclude=2)


def test_confidence_at_threshold():
    assert exceedance_confidence(5.0, 5.0) == pytest.approx(0.95, abs=1e-3)
    assert exceedance_confidence(50.0, 5.0) == pytest.approx(0.99)
    assert exceedance_confidence(1.0, 5.0) < 0.95


class TestTemporalOutbreakDetector:
    """Test detector signals built from fused series"""

    def test_cusum_signal_on_step(self):
        detector = TemporalOutbreakDetector(EngineConfig())
        values = np.array([120.0] * 7 + [150.0] * 7 + [135.0, 205.0])

        signal = detector.detect_cusum(CELL, buckets_for(values), values)

        assert signal is not None
        assert signal.method == DetectionMethod.CUSUM
        assert signal.statistic > signal.threshold
        assert signal.estimated_start == buckets_for(values)[7]
        assert signal.confidence > 0.95

    def test_no_signal_on_flat_series(self):
        detector = TemporalOutbreakDetector(EngineConfig())
        values = np.full(20, 100.0)
        assert detector.detect_cusum(CELL, buckets_for(values), values) is None
        assert detector.detect_ewma(CELL, buckets_for(values), values) is None

    def test_sensitivity_scales_threshold(self):
        values = np.array([120.0] * 7 + [150.0] * 7 + [135.0, 205.0])
        high = TemporalOutbreakDetector(EngineConfig(sensitivity="high"))
        low = TemporalOutbreakDetector(EngineConfig(sensitivity="low"))

        high_signal = high.detect_cusum(CELL, buckets_for(values), values)
        low_signal = low.detect_cusum(CELL, buckets_for(values), values)
        assert high_signal.threshold < low_signal.threshold

    def test_ewma_decrease_direction(self):
        detector = TemporalOutbreakDetector(EngineConfig())
        values = np.array([100.0, 104.0, 96.0] * 6 + [20.0])
        signal = detector.detect_ewma(CELL, buckets_for(values), values)
        assert signal.direction == "decrease"

    def test_short_series_is_insufficient(self):
        detector = TemporalOutbreakDetector(EngineConfig())
        values = np.full(10, 100.0)
        with pytest.raises(InsufficientDataError):
            detector.detect_ewma(CELL, buckets_for(values), values)


class TestSeasonal:
    """Test the STL seasonal baseline"""

    def seasonal_series(self, n=29, seed=3):
        rng = np.random.default_rng(seed)
        t = np.arange(n)
        return 100.0 + 20.0 * np.sin(2 * np.pi * t / 7) + rng.normal(0, 1.0, size=n)

    def test_forecast_tracks_pattern(self):
        history = self.seasonal_series(28)
        forecast, residual_std = seasonal_forecast(history, period=7)
        expected = 100.0 + 20.0 * np.sin(2 * np.pi * 28 / 7)
        assert forecast == pytest.approx(expected, abs=10.0)
        assert residual_std < 5.0

    def test_spike_detected(self):
        values = self.seasonal_series()
        values[-1] += 80.0
        detector = TemporalOutbreakDetector(EngineConfig())

        signal = detector.detect_seasonal(CELL, buckets_for(values), values)
        assert signal is not None
        assert signal.direction == "increase"
        assert signal.estimated_start == "2025-W20"

    def test_needs_two_periods(self):
        with pytest.raises(InsufficientDataError):
            seasonal_forecast(np.ones(14), period=7)
