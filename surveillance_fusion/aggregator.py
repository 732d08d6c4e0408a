"""
Alert Aggregator
Merges detector signals for a cell into outbreak alerts, deduplicates them
per (region, disease) and hands them to the notification sink.
"""

from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional
import logging
import threading
import uuid

import numpy as np

from .config import EngineConfig
from .models import (
    Alert,
    CellKey,
    DetectionMethod,
    DetectorSignal,
    FusedEstimate,
    SeriesKey,
    Severity,
)
from .time_buckets import bucket_distance, parse_time_bucket

logger = logging.getLogger(__name__)

OUTBREAK_ALERT_EVENT = "outbreak_alert"


class AlertSink(ABC):
    """Downstream consumer of outbreak alert events"""

    @abstractmethod
    def emit(self, event_type: str, payload: Dict):
        pass


class LoggingAlertSink(AlertSink):
    """Writes alert events to the log"""

    def emit(self, event_type: str, payload: Dict):
        logger.warning(
            f"[{event_type}] {payload['severity'].upper()} {payload['disease']} in "
            f"{payload['region']} ({payload['timeBucket']}), confidence {payload['confidence']:.2f}"
        )


class CallbackAlertSink(AlertSink):
    """Forwards alert events to a callable"""

    def __init__(self, callback: Callable[[str, Dict], None]):
        self.callback = callback

    def emit(self, event_type: str, payload: Dict):
        self.callback(event_type, payload)


class InMemoryAlertSink(AlertSink):
    """Keeps emitted events in a list"""

    def __init__(self):
        self.events: List[Dict] = []
        self._lock = threading.Lock()

    def emit(self, event_type: str, payload: Dict):
        with self._lock:
            self.events.append({"type": event_type, "payload": payload})


class AlertAggregator:
    """
    Turns detector signals into deduplicated outbreak alerts

    Severity is driven by growth rate, the number of agreeing methods and
    the fused estimate's agreement score. Alerts are immutable; an open
    alert suppresses new ones for the same (region, disease) within the
    cooldown window on either side of its bucket. Only an alert for a later
    bucket replaces the open one.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        sink: Optional[AlertSink] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.config = config or EngineConfig()
        self.sink = sink or LoggingAlertSink()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.history: List[Alert] = []
        self._open: Dict[SeriesKey, Alert] = {}
        self._lock = threading.Lock()
        self._dispatcher = ThreadPoolExecutor(max_workers=1, thread_name_prefix="alert-sink")
        self._pending: List[Future] = []

    def aggregate(
        self,
        cell_key: CellKey,
        signals: Iterable[DetectorSignal],
        latest: Optional[FusedEstimate] = None,
        series: Optional[Iterable[FusedEstimate]] = None
    ) -> Optional[Alert]:
        """
        Merge the signals raised for one cell into at most one alert

        Args:
            cell_key: Cell the signals were raised for
            signals: Detector signals for the cell
            latest: Fused estimate of the cell (for the agreement score)
            series: The cell's series up to and including its bucket

        Returns:
            The emitted Alert, or None if there was nothing to raise or the
            alert was suppressed by an open one
        """
        increases = [s for s in signals if s.direction == "increase"]
        if not increases:
            return None

        methods = frozenset(s.method for s in increases)
        confidence = 1.0 - float(np.prod([1.0 - s.confidence for s in increases]))
        growth_rate = self.growth_rate(cell_key, series) if series is not None else None
        agreement = latest.agreement_score if latest is not None else None
        severity = self.assess_severity(len(methods), growth_rate, agreement)

        starts = [s.estimated_start for s in increases if s.estimated_start]
        estimated_start = min(starts, key=parse_time_bucket) if starts else cell_key.time_bucket

        with self._lock:
            if self._is_suppressed(cell_key):
                logger.info(f"{cell_key}: alert suppressed by open alert within cooldown")
                return None

            alert = Alert(
                id=f"alert_{cell_key.region}_{cell_key.disease}_{cell_key.time_bucket}_{uuid.uuid4().hex[:8]}",
                region=cell_key.region,
                disease=cell_key.disease,
                time_bucket=cell_key.time_bucket,
                detected_at=self.clock(),
                window=(estimated_start, cell_key.time_bucket),
                methods=methods,
                severity=severity,
                confidence=confidence,
                estimated_start=estimated_start,
                growth_rate=growth_rate,
                agreement_score=agreement,
                affected_population=self._affected_population(cell_key, increases),
                recommended_actions=tuple(self.recommended_actions(severity, methods, growth_rate)),
            )
            # A late alert for an earlier bucket never displaces the newer open one
            current = self._open.get(cell_key.series_key)
            if current is None or parse_time_bucket(cell_key.time_bucket) >= parse_time_bucket(current.time_bucket):
                self._open[cell_key.series_key] = alert
            self.history.append(alert)

        logger.info(
            f"{cell_key}: {severity.value} alert from {sorted(m.value for m in methods)} "
            f"(confidence {confidence:.3f})"
        )
        self._emit(alert)
        return alert

    def assess_severity(
        self,
        method_count: int,
        growth_rate: Optional[float],
        agreement_score: Optional[float]
    ) -> Severity:
        if (growth_rate is not None and growth_rate > self.config.high_growth_rate) or method_count >= 2:
            return Severity.HIGH
        if (
            method_count == 1
            and agreement_score is not None
            and agreement_score < self.config.low_agreement_threshold
        ):
            return Severity.MODERATE
        return Severity.LOW

    def growth_rate(self, cell_key: CellKey, series: Iterable[FusedEstimate]) -> Optional[float]:
        """Relative change from the previous bucket to the cell's bucket"""
        target = parse_time_bucket(cell_key.time_bucket)
        previous = None
        current = None
        for estimate in series:
            period = parse_time_bucket(estimate.time_bucket)
            if period < target:
                previous = estimate
            elif period == target:
                current = estimate
        if previous is None or current is None or previous.mean <= 0:
            return None
        return (current.mean - previous.mean) / previous.mean

    def recommended_actions(
        self,
        severity: Severity,
        methods: Iterable[DetectionMethod],
        growth_rate: Optional[float]
    ) -> List[str]:
        """Generate recommended public health actions"""
        methods = set(methods)
        actions = []

        if severity == Severity.HIGH:
            actions.extend([
                "Activate enhanced surveillance protocols",
                "Consider implementing containment measures",
                "Notify healthcare providers",
                "Monitor hospital capacity",
            ])
        elif severity == Severity.MODERATE:
            actions.extend([
                "Continue enhanced monitoring",
                "Verify source data with reporting jurisdictions",
                "Review and update response plans",
            ])
        else:
            actions.extend([
                "Maintain routine surveillance",
                "Document findings for trend analysis",
            ])

        if DetectionMethod.SPATIAL_SCAN in methods:
            actions.append("Coordinate multi-jurisdictional response")

        if growth_rate is not None and growth_rate > self.config.high_growth_rate:
            actions.append("Implement rapid response measures")

        return actions

    def resolve(self, region: str, disease: str) -> Optional[Alert]:
        """Close the open alert for a series"""
        with self._lock:
            return self._open.pop(SeriesKey(region, disease), None)

    def open_alerts(self) -> List[Alert]:
        with self._lock:
            return list(self._open.values())

    def flush(self, timeout: Optional[float] = None):
        """Wait for queued sink deliveries"""
        with self._lock:
            pending, self._pending = self._pending, []
        wait(pending, timeout=timeout)

    def close(self):
        self.flush()
        self._dispatcher.shutdown(wait=True)

    def _is_suppressed(self, cell_key: CellKey) -> bool:
        series_key = cell_key.series_key
        open_alert = self._open.get(series_key)
        if open_alert is None:
            return False

        try:
            distance = bucket_distance(open_alert.time_bucket, cell_key.time_bucket)
        except ValueError:
            return False

        if abs(distance) < self.config.cooldown_buckets:
            return True

        if distance > 0:
            # Cooldown elapsed; the old alert no longer blocks new ones
            del self._open[series_key]
        return False

    def _affected_population(self, cell_key: CellKey, signals: List[DetectorSignal]) -> Optional[int]:
        for signal in signals:
            if signal.method == DetectionMethod.SPATIAL_SCAN and signal.details.get("population"):
                return int(signal.details["population"])
        region = self.config.regions.get(cell_key.region)
        return region.population if region else None

    def _emit(self, alert: Alert):
        payload = alert.to_dict()

        def deliver():
            try:
                self.sink.emit(OUTBREAK_ALERT_EVENT, payload)
            except Exception as e:
                logger.error(f"Alert sink failed for {alert.id}: {e}", exc_info=True)

        future = self._dispatcher.submit(deliver)
        with self._lock:
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(future)
