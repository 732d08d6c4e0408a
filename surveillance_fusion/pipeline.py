"""
Surveillance Fusion Pipeline
Orchestrates source fan-out, normalization, fusion, windowed storage,
outbreak detection and alert aggregation.
"""

from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple
import logging
import random
import threading
import time

import numpy as np

from .aggregator import AlertAggregator, AlertSink
from .config import EngineConfig
from .detector import DetectionOutcome, DetectionWorker, OutbreakDetector
from .exceptions import InsufficientDataError, NormalizationError, SourceUnavailableError
from .fusion import FusionEngine
from .models import (
    Alert,
    CellKey,
    DetectionMethod,
    FusedEstimate,
    FusionMethod,
    SeriesKey,
    SourceEstimate,
    Severity,
)
from .normalizer import SourceNormalizer
from .quality import assess_source_quality, detect_cross_source_outliers
from .resilience import CircuitBreaker, RetryConfig, call_with_retry
from .sources import RawRecords, SourceAdapter, SourceRegistry
from .store import WindowedTimeSeriesStore
from .time_buckets import parse_time_bucket, parse_timeframe

logger = logging.getLogger(__name__)


@dataclass
class SourceFetchReport:
    """Outcome of one fan-out over the source adapters"""
    queried: List[str]
    successful: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    estimates: List[SourceEstimate] = field(default_factory=list)
    rejected: List[NormalizationError] = field(default_factory=list)


@dataclass
class CellResult:
    """Fusion outcome for one cell"""
    cell_key: CellKey
    status: str  # ok | fallback | error
    estimate: Optional[FusedEstimate] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "region": self.cell_key.region,
            "disease": self.cell_key.disease,
            "timeBucket": self.cell_key.time_bucket,
            "status": self.status,
            "error": self.error,
        }


@dataclass
class BatchReport:
    """Fusion and detection results for one ingested batch"""
    cells: List[CellResult] = field(default_factory=list)
    outcomes: List[DetectionOutcome] = field(default_factory=list)
    rejected: List[NormalizationError] = field(default_factory=list)

    @property
    def alerts(self) -> List[Alert]:
        return [o.alert for o in self.outcomes if o.alert is not None]

    @property
    def estimates(self) -> List[FusedEstimate]:
        return [c.estimate for c in self.cells if c.estimate is not None]

    @property
    def fallback_used(self) -> bool:
        return any(c.status == "fallback" for c in self.cells)

    @property
    def errors(self) -> List[CellResult]:
        return [c for c in self.cells if c.status == "error"]


class SurveillanceEngine:
    """
    End-to-end fusion and outbreak-detection engine

    Workflow:
    1. Fan out to source adapters (timeout, retries, circuit breaker)
    2. Normalize raw records into SourceEstimates
    3. Fuse each cell and append it to the windowed store
    4. Detect outbreaks on every appended cell
    5. Aggregate signals into deduplicated alerts
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        adapters: Optional[Iterable[SourceAdapter]] = None,
        registry: Optional[SourceRegistry] = None,
        sink: Optional[AlertSink] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Args:
            config: Engine configuration (defaults to EngineConfig())
            adapters: Source adapters keyed by their ``source_id``
            registry: Source profiles used for reliability priors
            sink: Destination for outbreak alert events
            clock: Returns the current UTC time; injectable for tests
            sleep: Used between retries; injectable for tests
        """
        self.config = config or EngineConfig()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.sleep = sleep
        self.registry = registry or SourceRegistry()

        self.normalizer = SourceNormalizer(self.config, self.registry, clock=self.clock)
        self.fusion = FusionEngine(self.config, clock=self.clock)
        self.store = WindowedTimeSeriesStore(retention_buckets=self.config.retention_buckets)
        self.detector = OutbreakDetector(self.config)
        self.aggregator = AlertAggregator(self.config, sink=sink, clock=self.clock)
        self.worker = DetectionWorker(self.store, self.detector, self.aggregator, self.config.worker_count)

        self.retry_config = RetryConfig(
            max_attempts=self.config.retry_max_attempts,
            base_delay_seconds=self.config.retry_base_delay_seconds,
            max_delay_seconds=self.config.retry_max_delay_seconds,
        )
        self.adapters: Dict[str, SourceAdapter] = {}
        self.breakers: Dict[str, CircuitBreaker] = {}
        for adapter in adapters or []:
            self.register_adapter(adapter)

        # Latest estimate per source for each cell, used to re-fuse late data
        self._ledger: Dict[CellKey, Dict[str, SourceEstimate]] = defaultdict(dict)
        self._ledger_lock = threading.Lock()
        self._rng = random.Random(self.config.random_seed)

    # ═══════════════════════════════════════════════════════════
    # Sources
    # ═══════════════════════════════════════════════════════════

    def register_adapter(self, adapter: SourceAdapter):
        self.adapters[adapter.source_id] = adapter
        self.breakers[adapter.source_id] = CircuitBreaker(
            adapter.source_id,
            failure_threshold=self.config.breaker_failure_threshold,
            reset_timeout_seconds=self.config.breaker_reset_seconds,
        )

    def resolve_sources(self, sources: Optional[Sequence[str]], diseases: Sequence[str]) -> List[str]:
        """Requested sources, or the registered sources routed for the diseases"""
        if sources:
            return list(dict.fromkeys(sources))

        routed = []
        for disease in diseases:
            routed.extend(s for s in self.registry.sources_for(disease) if s in self.adapters)
        return list(dict.fromkeys(routed)) or list(self.adapters)

    def fetch_sources(
        self,
        sources: Sequence[str],
        regions: Sequence[str],
        diseases: Sequence[str],
        time_buckets: Sequence[str]
    ) -> SourceFetchReport:
        """
        Query every source concurrently and normalize what comes back

        Sources that time out, fail after retries or have an open circuit
        produce missing sentinels for the requested cells.
        """
        report = SourceFetchReport(queried=list(sources))
        cells = [CellKey(r, d, b) for r in regions for d in diseases for b in time_buckets]
        raw_results: Dict[str, RawRecords] = {}

        runnable = []
        for source_id in sources:
            if source_id not in self.adapters:
                report.failed[source_id] = "no adapter registered"
            else:
                runnable.append(source_id)

        if runnable:
            pool = ThreadPoolExecutor(max_workers=len(runnable), thread_name_prefix="source")
            futures = {
                pool.submit(self._fetch_one, source_id, regions, diseases, time_buckets): source_id
                for source_id in runnable
            }
            done, not_done = wait(futures, timeout=self.config.source_timeout_seconds)

            for future in not_done:
                source_id = futures[future]
                future.cancel()
                report.failed[source_id] = f"timed out after {self.config.source_timeout_seconds}s"
                self.breakers[source_id].record_failure()

            for future in done:
                source_id = futures[future]
                try:
                    raw_results[source_id] = future.result()
                except SourceUnavailableError as e:
                    report.failed[source_id] = e.reason
            # Late results from timed-out calls are discarded
            pool.shutdown(wait=False, cancel_futures=True)

        for source_id in sources:
            if source_id in raw_results:
                estimates, rejected = self.normalizer.normalize(raw_results[source_id], source_id)
                report.estimates.extend(estimates)
                report.rejected.extend(rejected)
                report.successful.append(source_id)
            else:
                error = SourceUnavailableError(source_id, report.failed.get(source_id, "unavailable"))
                report.estimates.extend(self.normalizer.normalize_failure(source_id, cells, error))

        logger.info(
            f"Sources: {len(report.successful)}/{len(report.queried)} successful, "
            f"{len(report.rejected)} records rejected"
        )
        return report

    def _fetch_one(self, source_id, regions, diseases, time_buckets) -> RawRecords:
        adapter = self.adapters[source_id]
        return call_with_retry(
            lambda: adapter.fetch(regions, diseases, time_buckets),
            source_id,
            self.retry_config,
            breaker=self.breakers[source_id],
            sleep=self.sleep,
            rng=self._rng,
        )

    # ═══════════════════════════════════════════════════════════
    # Fusion & storage
    # ═══════════════════════════════════════════════════════════

    def submit(self, raw_records: RawRecords, source_id: str, method=None) -> BatchReport:
        """Normalize records pushed by a source and process them"""
        estimates, rejected = self.normalizer.normalize(raw_records, source_id)
        if rejected:
            logger.info(f"{source_id}: {len(rejected)} records rejected")
        report = self.ingest(estimates, method=method)
        report.rejected = list(rejected)
        return report

    def ingest(
        self,
        estimates: Iterable[SourceEstimate],
        method=None,
        detect: bool = True,
        exclude_sources: Iterable[str] = ()
    ) -> BatchReport:
        """
        Fuse every cell touched by the estimates and run detection

        Cells are fused independently on the worker pool; a failing cell is
        reported with ``status="error"`` and does not affect the others.
        Sources in ``exclude_sources`` are left out of this fusion even if
        the ledger holds earlier estimates from them.
        """
        method = FusionMethod.parse(method or self.config.default_fusion_method)
        excluded = frozenset(exclude_sources)
        touched = self._record(estimates)

        by_series: Dict[SeriesKey, List[CellKey]] = defaultdict(list)
        for cell in touched:
            by_series[cell.series_key].append(cell)

        def fuse_series(cells: List[CellKey]) -> List[CellResult]:
            # Bucket order within a series so each cell sees its fused predecessor
            return [self._fuse_cell(cell, method, excluded) for cell in cells]

        report = BatchReport()
        if by_series:
            with ThreadPoolExecutor(max_workers=self.config.worker_count, thread_name_prefix="fusion") as pool:
                for results in pool.map(fuse_series, by_series.values()):
                    report.cells.extend(results)
            self._prune_ledger(by_series)

        if detect:
            report.outcomes = self.process_pending()

        return report

    def process_pending(self) -> List[DetectionOutcome]:
        """Run detection for every append event not yet handled"""
        outcomes = self.worker.drain()
        self.aggregator.flush()
        return outcomes

    def _record(self, estimates: Iterable[SourceEstimate]) -> List[CellKey]:
        touched = []
        with self._ledger_lock:
            for estimate in estimates:
                cell = estimate.cell_key
                sources = self._ledger[cell]
                current = sources.get(estimate.source_id)
                # A transport failure never hides a value already delivered
                if estimate.is_missing and current is not None and not current.is_missing:
                    pass
                elif current is None or estimate.observed_at >= current.observed_at:
                    sources[estimate.source_id] = estimate
                if cell not in touched:
                    touched.append(cell)
        touched.sort(key=lambda c: (c.region, c.disease, parse_time_bucket(c.time_bucket)))
        return touched

    def _prune_ledger(self, series_keys: Iterable[SeriesKey]):
        """Forget source estimates for buckets the store no longer retains"""
        newest = {}
        for series_key in series_keys:
            latest = self.store.latest(series_key)
            if latest is not None:
                newest[series_key] = parse_time_bucket(latest.time_bucket)

        with self._ledger_lock:
            expired = [
                cell for cell in self._ledger
                if cell.series_key in newest
                and (newest[cell.series_key] - parse_time_bucket(cell.time_bucket)).n >= self.config.retention_buckets
            ]
            for cell in expired:
                del self._ledger[cell]

    def _fuse_cell(
        self,
        cell_key: CellKey,
        method: FusionMethod,
        excluded: FrozenSet[str] = frozenset()
    ) -> CellResult:
        with self._ledger_lock:
            cell_estimates = [
                e for e in self._ledger.get(cell_key, {}).values() if e.source_id not in excluded
            ]

        fallback = []

        def compute(previous: Optional[FusedEstimate], existing: Optional[FusedEstimate]) -> FusedEstimate:
            try:
                return self.fusion.fuse(cell_key, cell_estimates, method, prior_fused_estimate=previous)
            except InsufficientDataError:
                carry = existing or previous
                if carry is None:
                    raise
                fallback.append(True)
                failed = frozenset(e.source_id for e in cell_estimates if e.is_missing)
                carried = self.fusion.carry_forward(cell_key, carry)
                return replace(carried, sources_failed=failed)

        try:
            event = self.store.update(cell_key, compute)
        except Exception as e:
            logger.warning(f"Error fusing {cell_key}: {str(e)}")
            return CellResult(cell_key=cell_key, status="error", error=str(e))

        if event is None:
            return CellResult(cell_key=cell_key, status="error", error="outside retention window")

        return CellResult(
            cell_key=cell_key,
            status="fallback" if fallback else "ok",
            estimate=event.estimate,
        )

    # ═══════════════════════════════════════════════════════════
    # External operations
    # ═══════════════════════════════════════════════════════════

    def aggregate(
        self,
        sources: Optional[Sequence[str]],
        regions: Sequence[str],
        diseases: Sequence[str],
        timeframe,
        fusion_method=None
    ) -> Dict:
        """
        Fetch, fuse and store the requested cells

        Returns:
            Response with source counts, fused data per region and disease,
            quality metadata and fallback/partial flags
        """
        method = FusionMethod.parse(fusion_method or self.config.default_fusion_method)
        diseases = [self.normalizer.canonical_disease(d) for d in diseases]
        buckets = parse_timeframe(timeframe)
        sources = self.resolve_sources(sources, diseases)

        logger.info(f"\n[Step 1/3] Querying {len(sources)} sources for {len(regions)} regions x {len(diseases)} diseases")
        fetch = self.fetch_sources(sources, regions, diseases, buckets)
        requested = self._requested_cells(regions, diseases, buckets)
        estimates = [e for e in fetch.estimates if e.cell_key in requested]

        logger.info(f"\n[Step 2/3] Fusing {len(requested)} cells ({method.value})")
        batch = self.ingest(estimates, method=method)

        logger.info(f"\n[Step 3/3] Assessing data quality")
        quality = assess_source_quality(
            estimates, self.clock(), self.config.timeliness_half_life_hours, requested_cells=len(requested)
        )

        fused_cells = [c for c in batch.cells if c.estimate is not None]
        coverage = 100.0 * len({c.cell_key for c in fused_cells}) / len(requested) if requested else 0.0
        quality_score = float(np.mean([q.overall for q in quality.values()])) if quality else 0.0

        return {
            "sourcesQueried": len(fetch.queried),
            "sourcesSuccessful": len(fetch.successful),
            "sourcesFailed": len(fetch.failed),
            "sourceErrors": dict(fetch.failed),
            "data": self._data_by_region(fused_cells),
            "metadata": {
                "dataQualityScore": round(quality_score, 4),
                "coveragePct": round(coverage, 2),
                "timeframe": buckets,
                "fusionMethod": method.value,
                "rejectedRecords": len(fetch.rejected),
            },
            "alerts": [a.to_dict() for a in batch.alerts],
            "errors": [c.to_dict() for c in batch.errors],
            "fallback_used": batch.fallback_used,
            "partial_data": bool(fetch.failed) or bool(batch.errors),
        }

    def fuse(
        self,
        sources: Optional[Sequence[str]],
        fusion_method=None,
        confidence_threshold: Optional[float] = None,
        regions: Sequence[str] = (),
        diseases: Sequence[str] = (),
        timeframe=None
    ) -> Dict:
        """
        Fuse the requested cells with an explicit method

        Sources whose overall quality is below ``confidence_threshold`` are
        left out of fusion; cross-source outliers are reported as anomalies.
        """
        method = FusionMethod.parse(fusion_method or self.config.default_fusion_method)
        threshold = self.config.quality_threshold if confidence_threshold is None else confidence_threshold
        diseases = [self.normalizer.canonical_disease(d) for d in diseases]
        buckets = parse_timeframe(timeframe)
        sources = self.resolve_sources(sources, diseases)

        fetch = self.fetch_sources(sources, regions, diseases, buckets)
        requested = self._requested_cells(regions, diseases, buckets)
        estimates = [e for e in fetch.estimates if e.cell_key in requested]

        quality = assess_source_quality(
            estimates, self.clock(), self.config.timeliness_half_life_hours, requested_cells=len(requested)
        )
        excluded = sorted(
            source_id for source_id, q in quality.items()
            if q.overall < threshold and source_id not in fetch.failed
        )
        if excluded:
            logger.info(f"Excluding sources below quality {threshold}: {excluded}")
        kept = [e for e in estimates if e.source_id not in excluded]

        anomalies = detect_cross_source_outliers(estimates, self.config.outlier_z_threshold)
        batch = self.ingest(kept, method=method, exclude_sources=excluded)

        fused = [c.estimate for c in batch.cells if c.estimate is not None]
        live = [e for e in fused if not e.carried_forward]
        confidence = float(np.mean([e.agreement_score for e in live])) if live else 0.0

        return {
            "methodUsed": method.value,
            "confidenceScore": round(confidence, 4),
            "fusedData": [e.to_dict() for e in fused],
            "anomaliesDetected": anomalies,
            "qualityAssessment": {
                "sources": {source_id: q.to_dict() for source_id, q in quality.items()},
                "threshold": threshold,
                "excludedSources": excluded,
            },
            "alerts": [a.to_dict() for a in batch.alerts],
            "errors": [c.to_dict() for c in batch.errors],
            "fallback_used": batch.fallback_used,
            "partial_data": bool(fetch.failed) or bool(batch.errors) or bool(excluded),
        }

    def detect_outbreaks(
        self,
        detection_methods: Optional[Sequence[str]] = None,
        sensitivity: str = "medium",
        temporal_window: int = 1,
        regions: Optional[Sequence[str]] = None,
        diseases: Optional[Sequence[str]] = None
    ) -> Dict:
        """
        Scan stored series for outbreaks on demand

        Evaluates the last ``temporal_window`` buckets of every matching
        series. Alerts go through the same deduplication as the streaming
        path, so repeated calls do not re-raise open alerts.
        """
        methods = [DetectionMethod.parse(m) for m in detection_methods] if detection_methods else list(DetectionMethod)
        detector = OutbreakDetector(self.config.with_sensitivity(sensitivity), methods)
        wanted_regions = set(regions or [])
        wanted_diseases = {self.normalizer.canonical_disease(d) for d in diseases or []}

        new_alerts: List[Alert] = []
        skipped: Dict[str, Dict[str, str]] = {}
        errors: List[Dict] = []

        for series_key in sorted(self.store.series_keys(), key=str):
            if wanted_regions and series_key.region not in wanted_regions:
                continue
            if wanted_diseases and series_key.disease not in wanted_diseases:
                continue

            try:
                window = self.store.read_window(series_key)
                estimates = list(window)
                for estimate in estimates[-max(1, temporal_window):]:
                    cell = estimate.cell_key
                    context = None
                    if DetectionMethod.SPATIAL_SCAN in methods:
                        context = self.store.snapshot_bucket(cell.disease, cell.time_bucket)
                    result = detector.evaluate(cell, window, context)
                    if result.skipped:
                        skipped[str(cell)] = {m: f"skipped: {r}" for m, r in result.skipped.items()}
                    alert = self.aggregator.aggregate(cell, result.signals, latest=estimate, series=window)
                    if alert is not None:
                        new_alerts.append(alert)
            except Exception as e:
                logger.warning(f"Error detecting outbreaks for {series_key}: {str(e)}")
                errors.append({"series": str(series_key), "error": str(e)})

        self.aggregator.flush()

        seen = {a.id for a in new_alerts}
        open_alerts = [
            a for a in self.aggregator.open_alerts()
            if a.id not in seen
            and (not wanted_regions or a.region in wanted_regions)
            and (not wanted_diseases or a.disease in wanted_diseases)
        ]
        outbreaks = new_alerts + open_alerts

        return {
            "alertsGenerated": len(new_alerts),
            "outbreaksDetected": [a.to_dict() for a in outbreaks],
            "monitoringRecommendations": self.monitoring_recommendations(outbreaks, skipped),
            "skipped": skipped,
            "errors": errors,
            "sensitivity": sensitivity,
            "methods": [m.value for m in methods],
        }

    def monitoring_recommendations(self, alerts: List[Alert], skipped: Dict[str, Dict[str, str]]) -> List[str]:
        """Surveillance recommendations for a set of active outbreaks"""
        recommendations = []

        if any(a.severity == Severity.HIGH for a in alerts):
            recommendations.extend([
                "Activate enhanced surveillance protocols",
                "Consider implementing containment measures",
            ])

        regions_by_disease: Dict[str, Set[str]] = defaultdict(set)
        for alert in alerts:
            regions_by_disease[alert.disease].add(alert.region)
        for disease, regions in sorted(regions_by_disease.items()):
            if len(regions) > 1:
                recommendations.append(
                    f"Coordinate multi-jurisdictional response for {disease} ({len(regions)} regions)"
                )

        if any(a.growth_rate is not None and a.growth_rate > self.config.high_growth_rate for a in alerts):
            recommendations.append("Implement rapid response measures")

        if skipped:
            recommendations.append(
                f"Extend data collection: {len(skipped)} cells lack history for some detection methods"
            )

        if not alerts:
            recommendations.append("Continue routine surveillance")

        return recommendations

    def series(self, region: str, disease: str) -> List[FusedEstimate]:
        return list(self.store.read_window(SeriesKey(region, self.normalizer.canonical_disease(disease))))

    def close(self):
        self.worker.stop()
        self.aggregator.close()

    def _requested_cells(self, regions, diseases, buckets) -> Set[CellKey]:
        return {CellKey(r, d, b) for r in regions for d in diseases for b in buckets}

    def _data_by_region(self, cells: List[CellResult]) -> Dict[str, Dict[str, Dict]]:
        """Latest fused estimate per region and disease"""
        data: Dict[str, Dict[str, Dict]] = defaultdict(dict)
        latest: Dict[Tuple[str, str], FusedEstimate] = {}
        for cell in cells:
            key = (cell.cell_key.region, cell.cell_key.disease)
            current = latest.get(key)
            if current is None or parse_time_bucket(cell.estimate.time_bucket) > parse_time_bucket(current.time_bucket):
                latest[key] = cell.estimate
        for (region, disease), estimate in latest.items():
            data[region][disease] = estimate.to_dict()
        return dict(data)
