"""
Tests for the Outbreak Detector and the detection worker
"""

import pytest

from surveillance_fusion.aggregator import AlertAggregator, InMemoryAlertSink
from surveillance_fusion.config import EngineConfig
from surveillance_fusion.detector import (
    SKIP_INSUFFICIENT_HISTORY,
    SKIP_NO_OBSERVATION,
    DetectionWorker,
    OutbreakDetector,
)
from surveillance_fusion.models import CellKey, DetectionMethod
from surveillance_fusion.store import WindowedTimeSeriesStore
from surveillance_fusion.time_buckets import shift_time_bucket

from .helpers import make_fused, weekly_series

STEP = [120.0] * 7 + [150.0] * 7 + [135.0, 205.0]


def last_cell(series):
    return series[-1].cell_key


def test_short_series_skips_every_temporal_method():
    detector = OutbreakDetector(EngineConfig(), ["cusum", "ewma", "seasonal"])
    series = weekly_series([100.0] * 5)

    result = detector.evaluate(last_cell(series), series)

    assert result.signals == []
    assert result.skipped == {
        "cusum": SKIP_INSUFFICIENT_HISTORY,
        "ewma": SKIP_INSUFFICIENT_HISTORY,
        "seasonal": SKIP_INSUFFICIENT_HISTORY,
    }
    assert result.to_dict()["skipped"]["cusum"] == "skipped: insufficient_history"


def test_missing_bucket_is_not_evaluated():
    detector = OutbreakDetector(EngineConfig(), ["cusum"])
    series = weekly_series(STEP)
    gap_cell = CellKey("US-CA", "influenza", shift_time_bucket(series[-1].time_bucket, 1))

    result = detector.evaluate(gap_cell, series)
    assert result.skipped == {"cusum": SKIP_NO_OBSERVATION}


def test_step_raises_cusum_and_ewma():
    detector = OutbreakDetector(EngineConfig(seasonal_period=52), ["cusum", "ewma", "seasonal"])
    series = weekly_series(STEP)

    signals = detector.detect(last_cell(series), series)

    assert {s.method for s in signals} == {DetectionMethod.CUSUM, DetectionMethod.EWMA}


def test_later_buckets_are_ignored():
    detector = OutbreakDetector(EngineConfig(), ["cusum"])
    series = weekly_series(STEP + [150.0, 150.0])
    target = series[len(STEP) - 1].cell_key

    signals = detector.detect(target, series)
    assert [s.cell_key for s in signals] == [target]


def test_spatial_scan_signal(grid_regions):
    config = EngineConfig(regions=grid_regions, scan_permutations=199)
    detector = OutbreakDetector(config, ["spatial_scan"])
    hot = {"R00", "R01", "R10"}
    context = {
        code: make_fused(300.0 if code in hot else 100.0, "2025-W04", region=code)
        for code in grid_regions
    }
    cell = CellKey("R00", "influenza", "2025-W04")

    result = detector.evaluate(cell, [context["R00"]], context)

    assert [s.method for s in result.signals] == [DetectionMethod.SPATIAL_SCAN]
    signal = result.signals[0]
    assert signal.statistic < signal.threshold
    assert signal.confidence > 0.95
    assert signal.details["population"] == 300_000
    assert result.cluster.contains("R00")


def test_spatial_scan_without_registry_is_skipped():
    detector = OutbreakDetector(EngineConfig(), ["spatial_scan"])
    series = weekly_series([100.0])
    context = {"US-CA": series[0], "US-NY": 50.0}

    result = detector.evaluate(last_cell(series), series, context)
    assert result.skipped == {"spatial_scan": SKIP_INSUFFICIENT_HISTORY}


def test_unknown_method_rejected():
    with pytest.raises(ValueError):
        OutbreakDetector(EngineConfig(), ["crystal_ball"])


class TestDetectionWorker:
    """Test event-driven detection"""

    def build(self, clock, detector=None):
        config = EngineConfig(seasonal_period=52)
        store = WindowedTimeSeriesStore()
        sink = InMemoryAlertSink()
        aggregator = AlertAggregator(config, sink=sink, clock=clock)
        worker = DetectionWorker(store, detector or OutbreakDetector(config), aggregator, max_workers=2)
        return store, aggregator, sink, worker

    def test_drain_emits_one_alert_for_step(self, clock):
        store, aggregator, sink, worker = self.build(clock)
        for estimate in weekly_series(STEP):
            store.append(estimate.cell_key, estimate)

        outcomes = worker.drain()
        aggregator.close()

        assert len(outcomes) == len(STEP)
        alerts = [o.alert for o in outcomes if o.alert is not None]
        assert len(alerts) == 1
        assert alerts[0].time_bucket == weekly_series(STEP)[-1].time_bucket
        assert len(sink.events) == 1
        assert worker.drain() == []

    def test_error_in_one_cell_does_not_stop_others(self, clock):
        class ExplodingDetector(OutbreakDetector):
            def evaluate(self, cell_key, series, spatial_context=None, methods=None):
                if cell_key.region == "US-TX":
                    raise RuntimeError("corrupt series")
                return super().evaluate(cell_key, series, spatial_context, methods)

        detector = ExplodingDetector(EngineConfig(), ["cusum"])
        store, aggregator, _, worker = self.build(clock, detector)
        for region in ["US-TX", "US-CA"]:
            for estimate in weekly_series(STEP, region=region):
                store.append(estimate.cell_key, estimate)

        outcomes = worker.drain()
        aggregator.close()

        failed = [o for o in outcomes if o.error]
        assert len(failed) == len(STEP)
        assert all(o.event.cell_key.region == "US-TX" for o in failed)
        assert [o.alert.region for o in outcomes if o.alert] == ["US-CA"]
