"""
Outbreak Detector
Runs the configured detection methods on a cell's fused series and consumes
the store's append events.
"""

from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Union
import logging
import queue
import threading

import numpy as np

from .aggregator import AlertAggregator
from .config import EngineConfig
from .exceptions import InsufficientDataError
from .models import Alert, AppendedEvent, CellKey, DetectionMethod, DetectorSignal, FusedEstimate
from .spatial_clustering import KulldorffScan, SpatialCluster
from .store import WindowedTimeSeriesStore
from .temporal_detection import TemporalOutbreakDetector
from .time_buckets import parse_time_bucket

logger = logging.getLogger(__name__)

SKIP_INSUFFICIENT_HISTORY = "insufficient_history"
SKIP_NO_OBSERVATION = "no_observation"

SpatialContext = Mapping[str, Union[FusedEstimate, float]]


@dataclass
class DetectionResult:
    """Signals raised for one cell plus the methods that were skipped"""
    cell_key: CellKey
    signals: List[DetectorSignal] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)
    cluster: Optional[SpatialCluster] = None

    def to_dict(self) -> Dict:
        return {
            "region": self.cell_key.region,
            "disease": self.cell_key.disease,
            "timeBucket": self.cell_key.time_bucket,
            "signals": [s.to_dict() for s in self.signals],
            "skipped": {method: f"skipped: {reason}" for method, reason in self.skipped.items()},
            "cluster": self.cluster.to_dict() if self.cluster else None,
        }


@dataclass
class DetectionOutcome:
    """Result of processing one append event"""
    event: AppendedEvent
    result: Optional[DetectionResult] = None
    alert: Optional[Alert] = None
    error: Optional[str] = None


class OutbreakDetector:
    """
    Evaluates temporal and spatial detectors for a cell

    Each method contributes at most one signal. Methods without enough
    history are reported as skipped rather than failing.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        methods: Optional[Iterable] = None
    ):
        self.config = config or EngineConfig()
        self.methods = [DetectionMethod.parse(m) for m in methods] if methods else list(DetectionMethod)
        self.temporal = TemporalOutbreakDetector(self.config)
        self.scanner = KulldorffScan(
            max_population_fraction=self.config.max_cluster_population_fraction,
            permutations=self.config.scan_permutations,
            random_seed=self.config.random_seed,
        )
        self._temporal_runners = {
            DetectionMethod.CUSUM: self.temporal.detect_cusum,
            DetectionMethod.EWMA: self.temporal.detect_ewma,
            DetectionMethod.SEASONAL: self.temporal.detect_seasonal,
        }

    def detect(
        self,
        cell_key: CellKey,
        series: Iterable[FusedEstimate],
        spatial_context: Optional[SpatialContext] = None
    ) -> List[DetectorSignal]:
        """Signals raised for the cell (see ``evaluate`` for skip reasons)"""
        return self.evaluate(cell_key, series, spatial_context).signals

    def evaluate(
        self,
        cell_key: CellKey,
        series: Iterable[FusedEstimate],
        spatial_context: Optional[SpatialContext] = None,
        methods: Optional[Iterable[DetectionMethod]] = None
    ) -> DetectionResult:
        """
        Run every configured method for the cell's bucket

        Args:
            cell_key: Cell being evaluated
            series: The cell's fused series in bucket order; entries after
                the cell's bucket are ignored
            spatial_context: Region -> estimate (or count) for the same
                disease and bucket, used by the spatial scan
            methods: Override of the configured methods

        Returns:
            DetectionResult with signals and skipped methods
        """
        methods = [DetectionMethod.parse(m) for m in methods] if methods else self.methods
        result = DetectionResult(cell_key=cell_key)

        target = parse_time_bucket(cell_key.time_bucket)
        estimates = [e for e in series if parse_time_bucket(e.time_bucket) <= target]
        if not estimates or estimates[-1].time_bucket != cell_key.time_bucket:
            for method in methods:
                result.skipped[method.value] = SKIP_NO_OBSERVATION
            return result

        buckets = [e.time_bucket for e in estimates]
        values = np.array([e.mean for e in estimates], dtype=float)

        for method in methods:
            try:
                if method == DetectionMethod.SPATIAL_SCAN:
                    signal = self._detect_spatial(cell_key, spatial_context, result)
                else:
                    signal = self._temporal_runners[method](cell_key, buckets, values)
            except InsufficientDataError as e:
                logger.debug(f"{cell_key}: {method.value} skipped ({e})")
                result.skipped[method.value] = SKIP_INSUFFICIENT_HISTORY
                continue

            if signal is not None:
                result.signals.append(signal)

        return result

    def _detect_spatial(
        self,
        cell_key: CellKey,
        spatial_context: Optional[SpatialContext],
        result: DetectionResult
    ) -> Optional[DetectorSignal]:
        if not spatial_context or cell_key.region not in spatial_context:
            raise InsufficientDataError("No spatial context for the bucket")

        counts = {
            region: float(value.mean if isinstance(value, FusedEstimate) else value)
            for region, value in spatial_context.items()
        }
        cluster = self.scanner.scan(counts, self.config.regions)
        result.cluster = cluster

        if cluster is None or cluster.p_value >= self.config.scan_alpha or not cluster.contains(cell_key.region):
            return None

        return DetectorSignal(
            method=DetectionMethod.SPATIAL_SCAN,
            cell_key=cell_key,
            statistic=cluster.p_value,
            threshold=self.config.scan_alpha,
            confidence=1.0 - cluster.p_value,
            direction="increase",
            estimated_start=cell_key.time_bucket,
            details={
                "cluster_id": cluster.cluster_id,
                "regions": list(cluster.regions),
                "relative_risk": cluster.relative_risk,
                "log_likelihood_ratio": cluster.log_likelihood_ratio,
                "population": cluster.population,
            },
        )


class DetectionWorker:
    """
    Consumes AppendedEvents from the store and runs detection + aggregation

    Events for one series are handled in arrival order; different series run
    on a worker pool. A failure in one cell is logged and never stops the
    others.
    """

    def __init__(
        self,
        store: WindowedTimeSeriesStore,
        detector: OutbreakDetector,
        aggregator: AlertAggregator,
        max_workers: Optional[int] = None
    ):
        self.store = store
        self.detector = detector
        self.aggregator = aggregator
        self.max_workers = max_workers or detector.config.worker_count
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def process_event(self, event: AppendedEvent) -> DetectionOutcome:
        """Evaluate the series up to the appended bucket (error boundary per cell)"""
        cell_key = event.cell_key
        try:
            series = self.store.read_window(cell_key, to_bucket=cell_key.time_bucket)
            context = None
            if DetectionMethod.SPATIAL_SCAN in self.detector.methods:
                context = self.store.snapshot_bucket(cell_key.disease, cell_key.time_bucket)

            result = self.detector.evaluate(cell_key, series, context)
            alert = self.aggregator.aggregate(cell_key, result.signals, latest=event.estimate, series=series)
            return DetectionOutcome(event=event, result=result, alert=alert)
        except Exception as e:
            logger.warning(f"Error detecting outbreaks for {cell_key}: {str(e)}", exc_info=True)
            return DetectionOutcome(event=event, error=str(e))

    def drain(self) -> List[DetectionOutcome]:
        """Process every event currently queued"""
        events = []
        while True:
            try:
                events.append(self.store.events.get_nowait())
            except queue.Empty:
                break

        if not events:
            return []

        by_series: "OrderedDict" = OrderedDict()
        for event in events:
            by_series.setdefault(event.cell_key.series_key, []).append(event)

        def run_series(series_events: List[AppendedEvent]) -> List[DetectionOutcome]:
            return [self.process_event(e) for e in series_events]

        outcomes = []
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            for series_outcomes in pool.map(run_series, by_series.values()):
                outcomes.extend(series_outcomes)

        for _ in events:
            self.store.events.task_done()

        return outcomes

    def start(self, poll_seconds: float = 0.5):
        """Consume events continuously on a background thread"""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, args=(poll_seconds,), name="detection-worker", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self, poll_seconds: float):
        while not self._stop.is_set():
            try:
                event = self.store.events.get(timeout=poll_seconds)
            except queue.Empty:
                continue
            try:
                self.process_event(event)
            finally:
                self.store.events.task_done()
