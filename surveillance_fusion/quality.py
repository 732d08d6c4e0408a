"""
Data Quality Assessment
Per-source quality scoring and cross-source outlier detection
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import numpy as np

from .models import CellKey, SourceEstimate

# Relative weight of each quality dimension (normalised on use)
QUALITY_WEIGHTS = {
    "completeness": 0.25,
    "timeliness": 0.20,
    "consistency": 0.15,
    "reliability": 0.15,
}

GRADE_THRESHOLDS = [
    (0.9, "A"),
    (0.8, "B"),
    (0.7, "C"),
    (0.6, "D"),
]


@dataclass
class SourceQuality:
    """Quality scores for one source within a batch"""
    source_id: str
    completeness: float
    timeliness: float
    consistency: float
    reliability: float
    overall: float
    grade: str

    def to_dict(self) -> Dict:
        return {
            "completeness": round(self.completeness, 4),
            "timeliness": round(self.timeliness, 4),
            "consistency": round(self.consistency, 4),
            "reliability": round(self.reliability, 4),
            "overallQuality": round(self.overall, 4),
            "qualityGrade": self.grade,
        }


def quality_grade(score: float) -> str:
    for threshold, grade in GRADE_THRESHOLDS:
        if score >= threshold:
            return grade
    return "F"


def overall_quality(scores: Dict[str, float]) -> float:
    total_weight = sum(QUALITY_WEIGHTS.values())
    return sum(scores[name] * weight for name, weight in QUALITY_WEIGHTS.items()) / total_weight


def calculate_modified_zscore(values: np.ndarray) -> np.ndarray:
    """
    Modified Z-scores using the Median Absolute Deviation (MAD)

    Modified Z-score = 0.6745 * (x - median(x)) / MAD, falling back to the
    standard deviation when MAD is zero.
    """
    median = np.median(values)
    mad = np.median(np.abs(values - median))

    if mad == 0:
        std = np.std(values)
        if std == 0:
            return np.zeros_like(values, dtype=float)
        return (values - median) / std

    return 0.6745 * (values - median) / mad


def assess_source_quality(
    estimates: Iterable[SourceEstimate],
    now: datetime,
    half_life_hours: float = 168.0,
    requested_cells: Optional[int] = None
) -> Dict[str, SourceQuality]:
    """
    Score each source on completeness, timeliness, consistency and reliability

    Args:
        estimates: Normalized estimates (including missing sentinels)
        now: Reference time for timeliness
        half_life_hours: Age at which timeliness drops to 0.5
        requested_cells: Number of cells requested from each source; when
            omitted completeness is the share of non-missing estimates

    Returns:
        Mapping of source id to SourceQuality
    """
    estimates = list(estimates)
    by_source = defaultdict(list)
    by_cell = defaultdict(list)
    for estimate in estimates:
        by_source[estimate.source_id].append(estimate)
        if not estimate.is_missing:
            by_cell[estimate.cell_key].append(estimate.value)

    consensus = {cell: float(np.median(values)) for cell, values in by_cell.items()}

    assessment = {}
    for source_id, source_estimates in by_source.items():
        usable = [e for e in source_estimates if not e.is_missing]
        cells_delivered = len({e.cell_key for e in usable})

        if requested_cells:
            completeness = min(1.0, cells_delivered / requested_cells)
        else:
            completeness = len(usable) / len(source_estimates)

        if usable:
            ages = np.array([
                max(0.0, (now - e.observed_at).total_seconds() / 3600.0) for e in usable
            ])
            timeliness = float(np.mean(0.5 ** (ages / half_life_hours)))

            deviations = []
            for e in usable:
                reference = consensus[e.cell_key]
                deviations.append(abs(e.value - reference) / max(abs(reference), 1.0))
            consistency = float(np.mean(1.0 / (1.0 + np.array(deviations))))

            reliability = float(np.mean([e.reliability for e in usable]))
        else:
            timeliness = consistency = reliability = 0.0

        scores = {
            "completeness": completeness,
            "timeliness": timeliness,
            "consistency": consistency,
            "reliability": reliability,
        }
        overall = overall_quality(scores)
        assessment[source_id] = SourceQuality(
            source_id=source_id,
            overall=overall,
            grade=quality_grade(overall),
            **scores
        )

    return assessment


def detect_cross_source_outliers(
    estimates: Iterable[SourceEstimate],
    threshold: float = 2.5
) -> List[Dict]:
    """
    Flag source values that sit far from the other sources for the same cell

    Cells with fewer than three usable values are not scored.
    """
    by_cell: Dict[CellKey, List[SourceEstimate]] = defaultdict(list)
    for estimate in estimates:
        if not estimate.is_missing:
            by_cell[estimate.cell_key].append(estimate)

    outliers = []
    for cell, cell_estimates in by_cell.items():
        if len(cell_estimates) < 3:
            continue

        values = np.array([e.value for e in cell_estimates], dtype=float)
        zscores = calculate_modified_zscore(values)

        for estimate, z in zip(cell_estimates, zscores):
            if abs(z) > threshold:
                outliers.append({
                    "type": "statistical_outlier",
                    "sourceId": estimate.source_id,
                    "region": cell.region,
                    "disease": cell.disease,
                    "timeBucket": cell.time_bucket,
                    "value": estimate.value,
                    "zScore": round(float(z), 3),
                    "severity": "high" if abs(z) > 3 else "medium",
                })

    return outliers
