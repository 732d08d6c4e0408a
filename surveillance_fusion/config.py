"""
Configuration for the Surveillance Fusion Engine
"""

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pandas as pd
from dotenv import load_dotenv

from .models import FusionMethod, RegionInfo

load_dotenv()


SENSITIVITY_SCALE = {
    "low": 1.25,
    "medium": 1.0,
    "high": 0.8,
}

DEFAULT_RISK_BANDS = {
    "default": (50.0, 150.0),
}


@dataclass
class EngineConfig:
    """Tunable parameters for fusion, storage, detection and fan-out"""

    # ═══════════════════════════════════════════════════════════
    # Fusion
    # ═══════════════════════════════════════════════════════════
    default_fusion_method: str = "bayesian"
    baseline_variance: float = 100.0
    default_reliability: float = 0.8
    stale_reliability_factor: float = 0.5
    stale_after_hours: float = 336.0
    kalman_process_noise: float = 25.0
    kalman_drift: float = 0.0
    conflict_tolerance: float = 1e-9
    risk_band_edges: Dict[str, Tuple[float, float]] = field(
        default_factory=lambda: dict(DEFAULT_RISK_BANDS)
    )

    # ═══════════════════════════════════════════════════════════
    # Data Quality
    # ═══════════════════════════════════════════════════════════
    quality_threshold: float = 0.6
    outlier_z_threshold: float = 2.5
    timeliness_half_life_hours: float = 168.0

    # ═══════════════════════════════════════════════════════════
    # Windowed Store
    # ═══════════════════════════════════════════════════════════
    retention_buckets: int = 90

    # ═══════════════════════════════════════════════════════════
    # Temporal Detection
    # ═══════════════════════════════════════════════════════════
    reference_window: int = 14
    reference_exclude: int = 2
    min_sigma: float = 1.0
    cusum_k_sigma: float = 0.5
    cusum_h_sigma: float = 5.0
    ewma_lambda: float = 0.2
    ewma_l: float = 3.0
    seasonal_period: int = 7
    seasonal_window: int = 28
    seasonal_threshold: float = 3.0
    stl_robust: bool = True
    sensitivity: str = "medium"

    # ═══════════════════════════════════════════════════════════
    # Spatial Scan
    # ═══════════════════════════════════════════════════════════
    scan_permutations: int = 999
    scan_alpha: float = 0.05
    max_cluster_population_fraction: float = 0.5
    random_seed: Optional[int] = 42

    # ═══════════════════════════════════════════════════════════
    # Alert Aggregation
    # ═══════════════════════════════════════════════════════════
    cooldown_buckets: int = 7
    high_growth_rate: float = 0.5
    low_agreement_threshold: float = 0.7

    # ═══════════════════════════════════════════════════════════
    # Source Fan-Out
    # ═══════════════════════════════════════════════════════════
    source_timeout_seconds: float = 10.0
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 0.5
    retry_max_delay_seconds: float = 8.0
    breaker_failure_threshold: int = 3
    breaker_reset_seconds: float = 60.0
    max_workers: Optional[int] = None

    # ═══════════════════════════════════════════════════════════
    # Regions & Logging
    # ═══════════════════════════════════════════════════════════
    regions: Dict[str, RegionInfo] = field(default_factory=dict)
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build a configuration from environment variables (and .env)"""
        seed = os.getenv("SCAN_RANDOM_SEED", "42")
        workers = os.getenv("MAX_WORKERS")
        config = cls(
            default_fusion_method=os.getenv("DEFAULT_FUSION_METHOD", "bayesian"),
            baseline_variance=float(os.getenv("FUSION_BASELINE_VARIANCE", "100.0")),
            default_reliability=float(os.getenv("DEFAULT_SOURCE_RELIABILITY", "0.8")),
            stale_reliability_factor=float(os.getenv("STALE_RELIABILITY_FACTOR", "0.5")),
            stale_after_hours=float(os.getenv("STALE_AFTER_HOURS", "336")),
            kalman_process_noise=float(os.getenv("KALMAN_PROCESS_NOISE", "25.0")),
            kalman_drift=float(os.getenv("KALMAN_DRIFT", "0.0")),
            quality_threshold=float(os.getenv("QUALITY_THRESHOLD", "0.6")),
            outlier_z_threshold=float(os.getenv("OUTLIER_Z_THRESHOLD", "2.5")),
            timeliness_half_life_hours=float(os.getenv("TIMELINESS_HALF_LIFE_HOURS", "168")),
            retention_buckets=int(os.getenv("RETENTION_BUCKETS", "90")),
            reference_window=int(os.getenv("REFERENCE_WINDOW", "14")),
            reference_exclude=int(os.getenv("REFERENCE_EXCLUDE", "2")),
            min_sigma=float(os.getenv("MIN_SIGMA", "1.0")),
            cusum_k_sigma=float(os.getenv("CUSUM_K_SIGMA", "0.5")),
            cusum_h_sigma=float(os.getenv("CUSUM_H_SIGMA", "5.0")),
            ewma_lambda=float(os.getenv("EWMA_LAMBDA", "0.2")),
            ewma_l=float(os.getenv("EWMA_L", "3.0")),
            seasonal_period=int(os.getenv("STL_SEASONAL_PERIOD", "7")),
            seasonal_window=int(os.getenv("SEASONAL_WINDOW", "28")),
            seasonal_threshold=float(os.getenv("SEASONAL_THRESHOLD", "3.0")),
            stl_robust=os.getenv("STL_ROBUST", "true").lower() == "true",
            sensitivity=os.getenv("DETECTION_SENSITIVITY", "medium").lower(),
            scan_permutations=int(os.getenv("SCAN_PERMUTATIONS", "999")),
            scan_alpha=float(os.getenv("SCAN_ALPHA", "0.05")),
            max_cluster_population_fraction=float(os.getenv("MAX_CLUSTER_SIZE", "0.5")),
            random_seed=int(seed) if seed.strip() else None,
            cooldown_buckets=int(os.getenv("COOLDOWN_BUCKETS", "7")),
            high_growth_rate=float(os.getenv("HIGH_GROWTH_RATE", "0.5")),
            low_agreement_threshold=float(os.getenv("LOW_AGREEMENT_THRESHOLD", "0.7")),
            source_timeout_seconds=float(os.getenv("SOURCE_TIMEOUT_SECONDS", "10")),
            retry_max_attempts=int(os.getenv("RETRY_MAX_ATTEMPTS", "3")),
            retry_base_delay_seconds=float(os.getenv("RETRY_BASE_DELAY_SECONDS", "0.5")),
            retry_max_delay_seconds=float(os.getenv("RETRY_MAX_DELAY_SECONDS", "8")),
            breaker_failure_threshold=int(os.getenv("BREAKER_FAILURE_THRESHOLD", "3")),
            breaker_reset_seconds=float(os.getenv("BREAKER_RESET_SECONDS", "60")),
            max_workers=int(workers) if workers else None,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

        registry_path = os.getenv("REGION_REGISTRY_PATH")
        if registry_path:
            config.regions = load_region_registry(Path(registry_path))

        return config

    @property
    def sensitivity_scale(self) -> float:
        return SENSITIVITY_SCALE[self.sensitivity]

    @property
    def worker_count(self) -> int:
        return self.max_workers or os.cpu_count() or 4

    @property
    def fusion_method(self) -> FusionMethod:
        return FusionMethod.parse(self.default_fusion_method)

    def risk_bands_for(self, disease: str) -> Tuple[float, float]:
        """Band edges (low/moderate, moderate/high) for a disease"""
        return self.risk_band_edges.get(disease, self.risk_band_edges["default"])

    def with_sensitivity(self, sensitivity: str) -> "EngineConfig":
        """Copy of this configuration at another sensitivity preset"""
        level = sensitivity.lower()
        if level not in SENSITIVITY_SCALE:
            raise ValueError(
                f"Unknown sensitivity '{sensitivity}' (expected one of: {', '.join(SENSITIVITY_SCALE)})"
            )
        return replace(self, sensitivity=level)

    def validate(self) -> List[str]:
        """Return a list of configuration errors (empty when valid)"""
        errors = []

        try:
            FusionMethod.parse(self.default_fusion_method)
        except ValueError as e:
            errors.append(str(e))

        if self.baseline_variance <= 0:
            errors.append("Baseline variance must be positive")

        if not 0 < self.default_reliability <= 1:
            errors.append("Default reliability must be in (0, 1]")

        if self.reference_window < 2:
            errors.append("Reference window needs at least 2 buckets")

        if not 0 < self.ewma_lambda <= 1:
            errors.append("EWMA lambda must be in (0, 1]")

        if self.seasonal_period < 2:
            errors.append("Seasonal period must be at least 2")

        if self.sensitivity not in SENSITIVITY_SCALE:
            errors.append(f"Unknown sensitivity '{self.sensitivity}'")

        if self.scan_permutations < 1:
            errors.append("Spatial scan needs at least one permutation")

        if not 0 < self.max_cluster_population_fraction <= 1:
            errors.append("Maximum cluster population fraction must be in (0, 1]")

        if self.retention_buckets < self.reference_window + self.reference_exclude:
            errors.append("Retention window is shorter than the detection reference window")

        if self.retry_max_attempts < 1:
            errors.append("Retry attempts must be at least 1")

        for disease, (low, high) in self.risk_band_edges.items():
            if low >= high:
                errors.append(f"Risk band edges for '{disease}' must be increasing")

        return errors

    def summary(self) -> dict:
        """Return configuration summary"""
        return {
            "fusion": {
                "default_method": self.default_fusion_method,
                "baseline_variance": self.baseline_variance,
                "kalman_process_noise": self.kalman_process_noise,
                "risk_band_edges": {k: list(v) for k, v in self.risk_band_edges.items()},
            },
            "store": {
                "retention_buckets": self.retention_buckets,
            },
            "detection": {
                "reference_window": self.reference_window,
                "reference_exclude": self.reference_exclude,
                "cusum": {"k_sigma": self.cusum_k_sigma, "h_sigma": self.cusum_h_sigma},
                "ewma": {"lambda": self.ewma_lambda, "L": self.ewma_l},
                "seasonal": {
                    "period": self.seasonal_period,
                    "window": self.seasonal_window,
                    "threshold": self.seasonal_threshold,
                },
                "spatial_scan": {
                    "permutations": self.scan_permutations,
                    "alpha": self.scan_alpha,
                    "max_cluster_population_fraction": self.max_cluster_population_fraction,
                },
                "sensitivity": self.sensitivity,
            },
            "aggregation": {
                "cooldown_buckets": self.cooldown_buckets,
                "high_growth_rate": self.high_growth_rate,
                "low_agreement_threshold": self.low_agreement_threshold,
            },
            "sources": {
                "timeout_seconds": self.source_timeout_seconds,
                "retry_max_attempts": self.retry_max_attempts,
                "breaker_failure_threshold": self.breaker_failure_threshold,
                "max_workers": self.worker_count,
            },
            "regions": len(self.regions),
        }


def load_region_registry(path: Path) -> Dict[str, RegionInfo]:
    """
    Load region centroids and populations from a CSV file

    Expected columns: region_code, latitude, longitude, population and
    optionally region_name.
    """
    df = pd.read_csv(path)
    required = {"region_code", "latitude", "longitude", "population"}
    missing = required - set(df.columns)
    if missing:
        raise ValueError(f"Region registry {path} is missing columns: {sorted(missing)}")

    registry = {}
    for row in df.itertuples(index=False):
        code = str(row.region_code)
        name = getattr(row, "region_name", "")
        registry[code] = RegionInfo(
            region_code=code,
            latitude=float(row.latitude),
            longitude=float(row.longitude),
            population=int(row.population),
            region_name=str(name) if pd.notna(name) else "",
        )
    return registry


def configure_logging(config: Optional[EngineConfig] = None):
    """Apply the configured log level and format to the root logger"""
    config = config or EngineConfig()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format=config.log_format,
    )


if __name__ == "__main__":
    import json

    config = EngineConfig.from_env()
    print(json.dumps(config.summary(), indent=2))

    problems = config.validate()
    if problems:
        for problem in problems:
            print(f"Configuration Error: {problem}")
    else:
        print("\nConfiguration valid")
