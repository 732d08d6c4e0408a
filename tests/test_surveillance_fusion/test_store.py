"""
Tests for the Windowed Time-Series Store
"""

import threading

import pytest

from surveillance_fusion.models import CellKey, SeriesKey
from surveillance_fusion.store import WindowedTimeSeriesStore
from surveillance_fusion.time_buckets import shift_time_bucket

from .helpers import make_fused

SERIES = SeriesKey("US-CA", "influenza")


def cell(bucket):
    return CellKey("US-CA", "influenza", bucket)


def append(store, bucket, mean):
    return store.append(cell(bucket), make_fused(mean, bucket))


def test_window_is_ordered_by_bucket():
    store = WindowedTimeSeriesStore()
    for bucket, mean in [("2025-W02", 2), ("2024-W52", 0), ("2025-W01", 1)]:
        append(store, bucket, mean)

    window = store.read_window(SERIES)
    assert window.buckets() == ["2024-W52", "2025-W01", "2025-W02"]
    assert list(window.values()) == [0.0, 1.0, 2.0]


def test_supersede_replaces_bucket():
    store = WindowedTimeSeriesStore()
    first = append(store, "2025-W03", 100)
    second = append(store, "2025-W03", 120)

    assert first.superseded is None
    assert second.superseded.mean == 100.0
    assert store.get(cell("2025-W03")).mean == 120.0
    assert len(store.read_window(SERIES)) == 1


def test_late_data_is_flagged():
    store = WindowedTimeSeriesStore()
    append(store, "2025-W03", 100)
    event = append(store, "2025-W01", 90)

    assert event.late is True
    assert store.previous(cell("2025-W03")).time_bucket == "2025-W01"
    assert store.latest(SERIES).time_bucket == "2025-W03"


def test_retention_evicts_and_drops():
    store = WindowedTimeSeriesStore(retention_buckets=3)
    for i in range(4):
        append(store, shift_time_bucket("2025-W01", i), i)

    assert store.read_window(SERIES).buckets() == ["2025-W02", "2025-W03", "2025-W04"]
    assert append(store, "2025-W01", 5) is None
    assert store.get(cell("2025-W01")) is None


def test_window_bounds_and_restart():
    store = WindowedTimeSeriesStore()
    for i in range(6):
        append(store, shift_time_bucket("2025-W01", i), i)

    window = store.read_window(cell("2025-W01"), from_bucket="2025-W02", to_bucket="2025-W04")
    assert [e.mean for e in window] == [1.0, 2.0, 3.0]
    # Iterating again yields the same snapshot
    assert [e.mean for e in window] == [1.0, 2.0, 3.0]

    append(store, "2025-W03", 99)
    assert [e.mean for e in window] == [1.0, 2.0, 3.0]
    series = window.to_series()
    assert series.tolist() == [1.0, 2.0, 3.0]
    assert str(series.index[0].start_time.date()) == "2025-01-06"


def test_every_append_publishes_event():
    store = WindowedTimeSeriesStore()
    append(store, "2025-W01", 1)
    append(store, "2025-W01", 2)

    events = [store.events.get_nowait() for _ in range(2)]
    assert [e.estimate.mean for e in events] == [1.0, 2.0]
    assert events[1].superseded is not None
    assert store.events.empty()


def test_unchanged_reappend_still_publishes():
    store = WindowedTimeSeriesStore()
    append(store, "2025-W01", 5)
    append(store, "2025-W01", 5)

    events = [store.events.get_nowait() for _ in range(2)]
    assert events[1].superseded == events[0].estimate
    assert len(store.read_window(SERIES)) == 1


def test_update_sees_previous_bucket():
    store = WindowedTimeSeriesStore()
    append(store, "2025-W01", 10)

    def compute(previous, existing):
        assert existing is None
        return make_fused(previous.mean + 5, "2025-W02")

    event = store.update(cell("2025-W02"), compute)
    assert event.estimate.mean == 15.0


def test_concurrent_updates_are_serialised():
    store = WindowedTimeSeriesStore()
    append(store, "2025-W01", 0)

    def increment():
        for _ in range(50):
            store.update(
                cell("2025-W01"),
                lambda previous, existing: make_fused(existing.mean + 1, "2025-W01"),
            )

    threads = [threading.Thread(target=increment) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert store.get(cell("2025-W01")).mean == 200.0


def test_snapshot_bucket_spans_regions():
    store = WindowedTimeSeriesStore()
    store.append(CellKey("US-CA", "influenza", "2025-W03"), make_fused(10, "2025-W03"))
    store.append(CellKey("US-NY", "influenza", "2025-W03"), make_fused(20, "2025-W03", region="US-NY"))
    store.append(CellKey("US-NY", "measles", "2025-W03"), make_fused(1, "2025-W03", region="US-NY", disease="measles"))

    snapshot = store.snapshot_bucket("influenza", "2025-W03")
    assert {region: e.mean for region, e in snapshot.items()} == {"US-CA": 10.0, "US-NY": 20.0}
    assert len(store.series_keys()) == 3
