"""
Windowed Time-Series Store
Holds the latest fused estimate per (region, disease, time bucket) over a
rolling horizon and announces every append on an event queue.
"""

import bisect
import logging
import queue
import threading
from typing import Callable, Dict, Iterator, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from .models import AppendedEvent, CellKey, FusedEstimate, SeriesKey
from .time_buckets import parse_time_bucket

logger = logging.getLogger(__name__)

SeriesRef = Union[SeriesKey, CellKey]
ComputeFn = Callable[[Optional[FusedEstimate], Optional[FusedEstimate]], FusedEstimate]


class SeriesWindow:
    """
    Read-only view over a slice of one series

    Iteration is lazy and can be restarted any number of times; the view
    works on a snapshot, so later appends do not change it.
    """

    def __init__(
        self,
        series_key: SeriesKey,
        entries: Tuple[Tuple[pd.Period, FusedEstimate], ...],
        from_bucket: Optional[pd.Period] = None,
        to_bucket: Optional[pd.Period] = None
    ):
        self.series_key = series_key
        self._entries = entries
        self._from = from_bucket
        self._to = to_bucket

    def __iter__(self) -> Iterator[FusedEstimate]:
        for period, estimate in self._entries:
            if self._from is not None and period < self._from:
                continue
            if self._to is not None and period > self._to:
                break
            yield estimate

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def __bool__(self) -> bool:
        return any(True for _ in self)

    def buckets(self) -> List[str]:
        return [e.time_bucket for e in self]

    def values(self) -> np.ndarray:
        return np.array([e.mean for e in self], dtype=float)

    def to_series(self) -> pd.Series:
        """Fused means as a pandas Series indexed by Period"""
        estimates = list(self)
        index = pd.PeriodIndex([parse_time_bucket(e.time_bucket) for e in estimates])
        return pd.Series([e.mean for e in estimates], index=index, name=str(self.series_key), dtype=float)


class WindowedTimeSeriesStore:
    """
    In-memory rolling store of fused estimates

    One writer per series at a time (a lock per series key). Every append
    is published as an AppendedEvent on ``events``; detection consumes the
    queue rather than being called by the store.
    """

    def __init__(
        self,
        retention_buckets: int = 90,
        events: Optional[queue.Queue] = None
    ):
        self.retention_buckets = retention_buckets
        self.events: queue.Queue = events if events is not None else queue.Queue()
        self._series: Dict[SeriesKey, Dict[pd.Period, FusedEstimate]] = {}
        self._periods: Dict[SeriesKey, List[pd.Period]] = {}
        self._locks: Dict[SeriesKey, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def lock_for(self, series_key: SeriesKey) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(series_key)
            if lock is None:
                lock = self._locks[series_key] = threading.Lock()
            return lock

    def append(self, cell_key: CellKey, estimate: FusedEstimate) -> Optional[AppendedEvent]:
        """
        Insert (or supersede) the estimate for a cell

        Returns:
            The published AppendedEvent, or None if the bucket is older than
            the retention horizon
        """
        with self.lock_for(cell_key.series_key):
            return self._append_locked(cell_key, estimate)

    def update(self, cell_key: CellKey, compute: ComputeFn) -> Optional[AppendedEvent]:
        """
        Atomically recompute one bucket

        ``compute(previous_estimate, existing_estimate)`` runs under the
        series lock with the estimate of the closest earlier bucket and the
        current value of this bucket (either may be None). Only this bucket
        is rewritten.
        """
        series_key = cell_key.series_key
        with self.lock_for(series_key):
            period = parse_time_bucket(cell_key.time_bucket)
            estimate = compute(self._previous_locked(series_key, period), self._series.get(series_key, {}).get(period))
            return self._append_locked(cell_key, estimate)

    def _append_locked(self, cell_key: CellKey, estimate: FusedEstimate) -> Optional[AppendedEvent]:
        series_key = cell_key.series_key
        period = parse_time_bucket(cell_key.time_bucket)
        series = self._series.setdefault(series_key, {})
        periods = self._periods.setdefault(series_key, [])

        if periods and (periods[-1] - period).n >= self.retention_buckets:
            logger.warning(f"{cell_key}: bucket is outside the {self.retention_buckets}-bucket window, dropped")
            return None

        late = bool(periods) and period < periods[-1]
        superseded = series.get(period)
        if superseded is None:
            bisect.insort(periods, period)
        series[period] = estimate

        self._evict_locked(series_key)

        event = AppendedEvent(cell_key=cell_key, estimate=estimate, superseded=superseded, late=late)
        self.events.put(event)
        if late:
            logger.info(f"{cell_key}: late data, bucket re-fused")
        return event

    def _evict_locked(self, series_key: SeriesKey):
        series = self._series[series_key]
        periods = self._periods[series_key]
        newest = periods[-1]
        while periods and (newest - periods[0]).n >= self.retention_buckets:
            oldest = periods.pop(0)
            del series[oldest]

    def _previous_locked(self, series_key: SeriesKey, period: pd.Period) -> Optional[FusedEstimate]:
        periods = self._periods.get(series_key, [])
        index = bisect.bisect_left(periods, period)
        if index == 0:
            return None
        return self._series[series_key][periods[index - 1]]

    def read_window(
        self,
        key: SeriesRef,
        from_bucket: Optional[str] = None,
        to_bucket: Optional[str] = None
    ) -> SeriesWindow:
        """Snapshot view of a series between two buckets (inclusive)"""
        series_key = key.series_key if isinstance(key, CellKey) else key
        with self.lock_for(series_key):
            series = self._series.get(series_key, {})
            entries = tuple((p, series[p]) for p in self._periods.get(series_key, []))
        return SeriesWindow(
            series_key,
            entries,
            parse_time_bucket(from_bucket) if from_bucket else None,
            parse_time_bucket(to_bucket) if to_bucket else None,
        )

    def get(self, cell_key: CellKey) -> Optional[FusedEstimate]:
        series_key = cell_key.series_key
        with self.lock_for(series_key):
            return self._series.get(series_key, {}).get(parse_time_bucket(cell_key.time_bucket))

    def previous(self, cell_key: CellKey) -> Optional[FusedEstimate]:
        """Estimate for the closest bucket before the cell's bucket"""
        series_key = cell_key.series_key
        with self.lock_for(series_key):
            return self._previous_locked(series_key, parse_time_bucket(cell_key.time_bucket))

    def latest(self, key: SeriesRef) -> Optional[FusedEstimate]:
        series_key = key.series_key if isinstance(key, CellKey) else key
        with self.lock_for(series_key):
            periods = self._periods.get(series_key)
            if not periods:
                return None
            return self._series[series_key][periods[-1]]

    def series_keys(self) -> List[SeriesKey]:
        with self._locks_guard:
            keys = list(self._locks)
        return [k for k in keys if self._periods.get(k)]

    def snapshot_bucket(self, disease: str, time_bucket: str) -> Dict[str, FusedEstimate]:
        """Latest estimate of every region for one disease and bucket"""
        snapshot = {}
        for series_key in self.series_keys():
            if series_key.disease != disease:
                continue
            estimate = self.get(CellKey(series_key.region, disease, time_bucket))
            if estimate is not None:
                snapshot[series_key.region] = estimate
        return snapshot
