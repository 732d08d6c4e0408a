"""
Multi-Source Health Surveillance Fusion Engine
Source normalization, Bayesian/Kalman/Dempster-Shafer fusion, and
CUSUM/EWMA/seasonal/Kulldorff outbreak detection
"""

from .exceptions import (
    SurveillanceEngineError,
    SourceUnavailableError,
    InsufficientDataError,
    InvalidMethodError,
    ConflictingEvidenceError,
    NormalizationError
)

from .models import (
    SourceStatus,
    FusionMethod,
    DetectionMethod,
    Severity,
    SeriesKey,
    CellKey,
    RegionInfo,
    SourceEstimate,
    FusedEstimate,
    DetectorSignal,
    Alert,
    AppendedEvent
)

from .config import EngineConfig, load_region_registry, configure_logging

from .sources import (
    SourceProfile,
    SourceRegistry,
    SourceAdapter,
    InMemorySourceAdapter,
    CsvSourceAdapter,
    CallableSourceAdapter
)

from .normalizer import SourceNormalizer
from .quality import SourceQuality, assess_source_quality, detect_cross_source_outliers
from .fusion import FusionEngine
from .store import WindowedTimeSeriesStore, SeriesWindow

from .temporal_detection import TemporalOutbreakDetector
from .spatial_clustering import KulldorffScan, SpatialCluster

from .aggregator import (
    AlertAggregator,
    AlertSink,
    LoggingAlertSink,
    CallbackAlertSink,
    InMemoryAlertSink
)

from .detector import OutbreakDetector, DetectionWorker, DetectionResult
from .resilience import RetryPolicy, RetryConfig, CircuitBreaker, call_with_retry
from .pipeline import SurveillanceEngine, BatchReport

__version__ = "1.0.0"

__all__ = [
    # Errors
    "SurveillanceEngineError",
    "SourceUnavailableError",
    "InsufficientDataError",
    "InvalidMethodError",
    "ConflictingEvidenceError",
    "NormalizationError",

    # Models
    "SourceStatus",
    "FusionMethod",
    "DetectionMethod",
    "Severity",
    "SeriesKey",
    "CellKey",
    "RegionInfo",
    "SourceEstimate",
    "FusedEstimate",
    "DetectorSignal",
    "Alert",
    "AppendedEvent",

    # Configuration
    "EngineConfig",
    "load_region_registry",
    "configure_logging",

    # Sources & Normalization
    "SourceProfile",
    "SourceRegistry",
    "SourceAdapter",
    "InMemorySourceAdapter",
    "CsvSourceAdapter",
    "CallableSourceAdapter",
    "SourceNormalizer",
    "SourceQuality",
    "assess_source_quality",
    "detect_cross_source_outliers",

    # Fusion & Storage
    "FusionEngine",
    "WindowedTimeSeriesStore",
    "SeriesWindow",

    # Detection
    "TemporalOutbreakDetector",
    "KulldorffScan",
    "SpatialCluster",
    "OutbreakDetector",
    "DetectionWorker",
    "DetectionResult",

    # Alerts
    "AlertAggregator",
    "AlertSink",
    "LoggingAlertSink",
    "CallbackAlertSink",
    "InMemoryAlertSink",

    # Resilience
    "RetryPolicy",
    "RetryConfig",
    "CircuitBreaker",
    "call_with_retry",

    # Pipeline
    "SurveillanceEngine",
    "BatchReport"
]
