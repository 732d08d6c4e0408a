"""
Source Normalizer
Maps heterogeneous feed records onto canonical SourceEstimates
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple
import logging
import math
import re

import pandas as pd

from .config import EngineConfig
from .exceptions import NormalizationError
from .models import CellKey, SourceEstimate, SourceStatus
from .sources import RawRecords, SourceRegistry
from .time_buckets import canonical_time_bucket

logger = logging.getLogger(__name__)


# Source-specific disease codes (ICD-10 stems, syndromes, aliases)
DISEASE_CODE_MAP = {
    "flu": "influenza",
    "ili": "influenza",
    "influenza a": "influenza",
    "influenza b": "influenza",
    "j09": "influenza",
    "j10": "influenza",
    "j11": "influenza",
    "covid": "covid19",
    "covid-19": "covid19",
    "sars-cov-2": "covid19",
    "u07.1": "covid19",
    "rubeola": "measles",
    "b05": "measles",
    "monkeypox": "mpox",
    "b04": "mpox",
    "a90": "dengue",
    "a91": "dengue",
    "a00": "cholera",
}

# Rate units and their population denominators
RATE_DENOMINATORS = {
    "per_1k": 1_000,
    "per_1000": 1_000,
    "per_100k": 100_000,
    "per_100000": 100_000,
}

COUNT_UNITS = {"cases", "count", "counts"}

REGION_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$")

COLUMN_MAPPING = {
    "date": "time_bucket",
    "week": "time_bucket",
    "epi_week": "time_bucket",
    "period": "time_bucket",
    "timeframe": "time_bucket",
    "cases": "value",
    "count": "value",
    "case_count": "value",
    "incidence": "value",
    "location": "region",
    "region_code": "region",
    "area": "region",
    "country": "region",
    "disease_code": "disease",
    "pathogen": "disease",
    "condition": "disease",
    "timestamp": "observed_at",
    "reported_at": "observed_at",
    "updated": "observed_at",
    "confidence": "reliability",
    "units": "unit",
}


def _is_blank(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


class SourceNormalizer:
    """
    Normalizes raw feed records into SourceEstimates

    Handles column aliases, disease code mapping, rate-to-count conversion,
    time bucket canonicalisation and reliability priors. Bad records are
    returned as NormalizationErrors rather than raised.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        registry: Optional[SourceRegistry] = None,
        granularity: str = "week",
        disease_codes: Optional[Dict[str, str]] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Args:
            config: Engine configuration (reliability defaults, regions, staleness)
            registry: Source registry used for reliability priors
            granularity: Bucket size for date-valued records ("week", "day", "month")
            disease_codes: Extra source code -> canonical disease mappings
            clock: Returns the current time (UTC); injectable for tests
        """
        self.config = config or EngineConfig()
        self.registry = registry or SourceRegistry()
        self.granularity = granularity
        self.disease_codes = dict(DISEASE_CODE_MAP)
        if disease_codes:
            self.disease_codes.update({k.lower(): v for k, v in disease_codes.items()})
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def canonical_disease(self, code: str) -> str:
        """Map a source-specific disease code to its canonical code"""
        key = str(code).strip().lower()
        return self.disease_codes.get(key, key.replace(" ", "_"))

    def normalize(
        self,
        raw_records: RawRecords,
        source_id: str
    ) -> Tuple[List[SourceEstimate], List[NormalizationError]]:
        """
        Normalize a batch of raw records from one source

        Args:
            raw_records: List of mappings or a DataFrame
            source_id: Identifier of the source that produced the batch

        Returns:
            Tuple of (accepted estimates, rejected records)
        """
        df = self._standardize_columns(self._to_frame(raw_records))
        now = self.clock()

        estimates = []
        errors = []
        for record in df.to_dict("records"):
            try:
                estimates.append(self._normalize_record(record, source_id, now))
            except NormalizationError as e:
                errors.append(e)

        if errors:
            logger.warning(
                f"[{source_id}] Rejected {len(errors)} of {len(df)} records "
                f"(first: {errors[0].reason})"
            )
        logger.debug(f"[{source_id}] Normalized {len(estimates)} records")

        return estimates, errors

    def normalize_failure(
        self,
        source_id: str,
        cells: Iterable[CellKey],
        error: Optional[Exception] = None
    ) -> List[SourceEstimate]:
        """
        Emit missing-status sentinels for every requested cell of a failed source

        The sentinels let fusion record the source under ``sources_failed``.
        """
        now = self.clock()
        if error is not None:
            logger.warning(f"[{source_id}] Transport failure, marking cells missing: {error}")

        return [
            SourceEstimate(
                source_id=source_id,
                region=cell.region,
                disease=cell.disease,
                time_bucket=cell.time_bucket,
                value=float("nan"),
                reliability=0.0,
                observed_at=now,
                status=SourceStatus.MISSING,
            )
            for cell in cells
        ]

    def _to_frame(self, raw_records: RawRecords) -> pd.DataFrame:
        if isinstance(raw_records, pd.DataFrame):
            return raw_records.copy()
        return pd.DataFrame(list(raw_records or []))

    def _standardize_columns(self, df: pd.DataFrame) -> pd.DataFrame:
        """Standardize column names to expected format"""
        df.columns = [str(c).lower().strip() for c in df.columns]

        for old_col, new_col in COLUMN_MAPPING.items():
            if old_col in df.columns and new_col not in df.columns:
                df = df.rename(columns={old_col: new_col})

        return df

    def _normalize_record(self, record: Dict, source_id: str, now: datetime) -> SourceEstimate:
        region = record.get("region")
        if _is_blank(region) or not REGION_PATTERN.match(str(region).strip()):
            raise NormalizationError(source_id, f"Unparsable region '{region}'", record)
        region = str(region).strip()

        disease = record.get("disease")
        if _is_blank(disease):
            raise NormalizationError(source_id, "Missing disease code", record)
        disease = self.canonical_disease(disease)

        bucket = record.get("time_bucket")
        if _is_blank(bucket):
            raise NormalizationError(source_id, "Missing time bucket", record)
        try:
            time_bucket = canonical_time_bucket(bucket, self.granularity)
        except ValueError as e:
            raise NormalizationError(source_id, f"Unparsable time bucket: {e}", record)

        value = self._parse_value(record, source_id, region)
        reliability = self._parse_reliability(record, source_id)
        observed_at = self._parse_observed_at(record, source_id, now)

        status = SourceStatus.OK
        if now - observed_at > timedelta(hours=self.config.stale_after_hours):
            status = SourceStatus.STALE

        return SourceEstimate(
            source_id=source_id,
            region=region,
            disease=disease,
            time_bucket=time_bucket,
            value=value,
            reliability=reliability,
            observed_at=observed_at,
            status=status,
        )

    def _parse_value(self, record: Dict, source_id: str, region: str) -> float:
        raw = record.get("value")
        if _is_blank(raw):
            raise NormalizationError(source_id, "Missing value", record)
        try:
            value = float(raw)
        except (TypeError, ValueError):
            raise NormalizationError(source_id, f"Non-numeric value '{raw}'", record)
        if math.isnan(value) or math.isinf(value) or value < 0:
            raise NormalizationError(source_id, f"Invalid value {value}", record)

        unit = record.get("unit")
        unit = "cases" if _is_blank(unit) else str(unit).strip().lower()
        if unit in COUNT_UNITS:
            return value

        denominator = RATE_DENOMINATORS.get(unit)
        if denominator is None:
            raise NormalizationError(source_id, f"Unknown unit '{unit}'", record)

        region_info = self.config.regions.get(region)
        if region_info is None or not region_info.population:
            raise NormalizationError(
                source_id, f"Cannot convert '{unit}' without a population for region '{region}'", record
            )
        return value * region_info.population / denominator

    def _parse_reliability(self, record: Dict, source_id: str) -> float:
        raw = record.get("reliability")
        if _is_blank(raw):
            return self.registry.reliability_for(source_id, self.config.default_reliability)
        try:
            reliability = float(raw)
        except (TypeError, ValueError):
            raise NormalizationError(source_id, f"Non-numeric reliability '{raw}'", record)
        if not 0.0 <= reliability <= 1.0:
            raise NormalizationError(source_id, f"Reliability {reliability} outside [0, 1]", record)
        return reliability

    def _parse_observed_at(self, record: Dict, source_id: str, now: datetime) -> datetime:
        raw = record.get("observed_at")
        if _is_blank(raw):
            return now
        try:
            stamp = pd.Timestamp(raw)
        except (TypeError, ValueError):
            raise NormalizationError(source_id, f"Unparsable observation time '{raw}'", record)
        if stamp.tzinfo is None:
            stamp = stamp.tz_localize("UTC")
        return stamp.to_pydatetime()
