"""
Data Models for the Surveillance Fusion Engine
Source estimates, fused estimates, detector signals and outbreak alerts
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple
import math

from .exceptions import InvalidMethodError


class SourceStatus(Enum):
    """Delivery status of a source estimate"""
    OK = "ok"
    STALE = "stale"
    MISSING = "missing"


class FusionMethod(Enum):
    """Reconciliation strategies for disagreeing sources"""
    WEIGHTED_AVERAGE = "weighted_average"
    BAYESIAN = "bayesian"
    KALMAN_FILTER = "kalman_filter"
    DEMPSTER_SHAFER = "dempster_shafer"
    ENSEMBLE = "ensemble"

    @classmethod
    def parse(cls, value) -> "FusionMethod":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ", ".join(m.value for m in cls)
            raise InvalidMethodError(f"Unknown fusion method '{value}' (expected one of: {valid})")


class DetectionMethod(Enum):
    """Outbreak detection algorithms"""
    CUSUM = "cusum"
    EWMA = "ewma"
    SPATIAL_SCAN = "spatial_scan"
    SEASONAL = "seasonal"

    @classmethod
    def parse(cls, value) -> "DetectionMethod":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ", ".join(m.value for m in cls)
            raise InvalidMethodError(f"Unknown detection method '{value}' (expected one of: {valid})")


class Severity(Enum):
    """Severity levels for outbreak alerts"""
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"


@dataclass(frozen=True)
class SeriesKey:
    """A (region, disease) time series"""
    region: str
    disease: str

    def __str__(self) -> str:
        return f"{self.region}/{self.disease}"


@dataclass(frozen=True)
class CellKey:
    """A single (region, disease, time bucket) cell"""
    region: str
    disease: str
    time_bucket: str

    @property
    def series_key(self) -> SeriesKey:
        return SeriesKey(self.region, self.disease)

    def __str__(self) -> str:
        return f"{self.region}/{self.disease}@{self.time_bucket}"


@dataclass
class RegionInfo:
    """Geographic metadata for a region"""
    region_code: str
    latitude: float
    longitude: float
    population: int
    region_name: str = ""


@dataclass(frozen=True)
class SourceEstimate:
    """One source's incidence estimate for one cell"""
    source_id: str
    region: str
    disease: str
    time_bucket: str
    value: float
    reliability: float
    observed_at: datetime
    status: SourceStatus = SourceStatus.OK

    @property
    def cell_key(self) -> CellKey:
        return CellKey(self.region, self.disease, self.time_bucket)

    @property
    def is_missing(self) -> bool:
        return self.status == SourceStatus.MISSING or math.isnan(self.value)

    def to_dict(self) -> Dict:
        return {
            "sourceId": self.source_id,
            "region": self.region,
            "disease": self.disease,
            "timeBucket": self.time_bucket,
            "value": None if math.isnan(self.value) else self.value,
            "reliability": self.reliability,
            "observedAt": self.observed_at.isoformat(),
            "status": self.status.value,
        }


@dataclass(frozen=True)
class FusedEstimate:
    """
    Reconciled estimate for a cell with quantified uncertainty

    For Bayesian fusion ``variance`` is the posterior variance widened by
    the sources' heterogeneity; the unscaled posterior is kept in
    ``diagnostics["posterior_variance"]``.
    """
    region: str
    disease: str
    time_bucket: str
    mean: float
    variance: float
    method: FusionMethod
    sources_used: FrozenSet[str]
    sources_failed: FrozenSet[str]
    agreement_score: float
    computed_at: datetime
    carried_forward: bool = False
    warnings: Tuple[str, ...] = ()
    diagnostics: Dict = field(default_factory=dict, compare=False)

    @property
    def cell_key(self) -> CellKey:
        return CellKey(self.region, self.disease, self.time_bucket)

    @property
    def std(self) -> float:
        return math.sqrt(self.variance)

    def to_dict(self) -> Dict:
        return {
            "region": self.region,
            "disease": self.disease,
            "timeBucket": self.time_bucket,
            "mean": self.mean,
            "variance": self.variance,
            "method": self.method.value,
            "sourcesUsed": sorted(self.sources_used),
            "sourcesFailed": sorted(self.sources_failed),
            "agreementScore": self.agreement_score,
            "computedAt": self.computed_at.isoformat(),
            "carriedForward": self.carried_forward,
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class DetectorSignal:
    """Output of one detection algorithm for one cell"""
    method: DetectionMethod
    cell_key: CellKey
    statistic: float
    threshold: float
    confidence: float
    direction: str = "increase"
    estimated_start: Optional[str] = None
    details: Dict = field(default_factory=dict, compare=False)

    def to_dict(self) -> Dict:
        return {
            "method": self.method.value,
            "region": self.cell_key.region,
            "disease": self.cell_key.disease,
            "timeBucket": self.cell_key.time_bucket,
            "statistic": self.statistic,
            "threshold": self.threshold,
            "confidence": self.confidence,
            "direction": self.direction,
            "estimatedStart": self.estimated_start,
            "details": self.details,
        }


@dataclass(frozen=True)
class Alert:
    """Outbreak alert, immutable once emitted"""
    id: str
    region: str
    disease: str
    time_bucket: str
    detected_at: datetime
    window: Tuple[str, str]
    methods: FrozenSet[DetectionMethod]
    severity: Severity
    confidence: float
    estimated_start: str
    growth_rate: Optional[float] = None
    agreement_score: Optional[float] = None
    affected_population: Optional[int] = None
    recommended_actions: Tuple[str, ...] = ()

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "region": self.region,
            "disease": self.disease,
            "timeBucket": self.time_bucket,
            "detectedAt": self.detected_at.isoformat(),
            "window": {"start": self.window[0], "end": self.window[1]},
            "methods": sorted(m.value for m in self.methods),
            "severity": self.severity.value,
            "confidence": self.confidence,
            "estimatedStart": self.estimated_start,
            "growthRate": self.growth_rate,
            "agreementScore": self.agreement_score,
            "affectedPopulation": self.affected_population,
            "recommendedActions": list(self.recommended_actions),
        }


@dataclass(frozen=True)
class AppendedEvent:
    """Emitted by the store for every append"""
    cell_key: CellKey
    estimate: FusedEstimate
    superseded: Optional[FusedEstimate] = None
    late: bool = False
