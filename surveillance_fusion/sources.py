"""
Source Adapters and Source Registry
Adapters fetch raw incidence records from one feed; the registry holds
per-source metadata used to derive reliability priors.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Union
import logging

import pandas as pd

logger = logging.getLogger(__name__)

RawRecords = Union[List[Dict], pd.DataFrame]

# Reliability prior for each data-quality grade
DATA_QUALITY_RELIABILITY = {
    "low": 0.5,
    "medium": 0.75,
    "high": 0.9,
    "very_high": 0.98,
}

QUALITY_LEVELS = ["low", "medium", "high", "very_high"]


@dataclass
class SourceProfile:
    """Metadata for a surveillance feed"""
    source_id: str
    name: str
    coverage: str = "global"
    data_quality: str = "medium"
    update_frequency: str = "weekly"
    priority: int = 2
    capabilities: List[str] = field(default_factory=list)

    @property
    def reliability(self) -> float:
        return DATA_QUALITY_RELIABILITY.get(self.data_quality, DATA_QUALITY_RELIABILITY["medium"])


DEFAULT_SOURCE_PROFILES = {
    "who": SourceProfile("who", "WHO Global Health Observatory", "global", "high", "monthly", 1),
    "cdc": SourceProfile("cdc", "CDC Data.gov", "usa", "very_high", "weekly", 1),
    "ecdc": SourceProfile("ecdc", "European Centre for Disease Prevention and Control", "europe", "high", "weekly", 2),
    "paho": SourceProfile("paho", "Pan American Health Organization", "americas", "high", "weekly", 2),
    "owid": SourceProfile("owid", "Our World in Data", "global", "very_high", "daily", 1),
    "healthmap": SourceProfile("healthmap", "HealthMap Outbreak Detection", "global", "medium", "real_time", 2),
    "gisaid": SourceProfile("gisaid", "GISAID Viral Surveillance", "global", "very_high", "daily", 1),
    "promed": SourceProfile("promed", "ProMED Disease Intelligence", "global", "high", "real_time", 2),
    "disease_sh": SourceProfile("disease_sh", "disease.sh", "global", "high", "daily", 1),
}

# Feeds consulted per canonical disease code
DISEASE_SOURCE_MAP = {
    "influenza": ["disease_sh", "cdc", "ecdc", "healthmap", "gisaid"],
    "covid19": ["disease_sh", "owid", "cdc", "who", "gisaid"],
    "measles": ["who", "cdc", "ecdc", "paho"],
    "mpox": ["who", "cdc", "ecdc", "promed"],
    "dengue": ["who", "paho", "healthmap", "promed"],
    "cholera": ["who", "promed", "healthmap"],
}


class SourceRegistry:
    """Lookup of source profiles and disease-to-source routing"""

    def __init__(
        self,
        profiles: Optional[Dict[str, SourceProfile]] = None,
        disease_sources: Optional[Dict[str, List[str]]] = None
    ):
        self.profiles = dict(DEFAULT_SOURCE_PROFILES if profiles is None else profiles)
        self.disease_sources = dict(DISEASE_SOURCE_MAP if disease_sources is None else disease_sources)

    def register(self, profile: SourceProfile):
        self.profiles[profile.source_id] = profile

    def get(self, source_id: str) -> Optional[SourceProfile]:
        return self.profiles.get(source_id)

    def reliability_for(self, source_id: str, default: float) -> float:
        """Reliability prior for a source, falling back to ``default``"""
        profile = self.profiles.get(source_id)
        return profile.reliability if profile else default

    def sources_for(self, disease: str) -> List[str]:
        return list(self.disease_sources.get(disease, []))

    def meets_quality_threshold(self, source_id: str, threshold: str) -> bool:
        """True if the source's data-quality grade is at least ``threshold``"""
        profile = self.profiles.get(source_id)
        if profile is None or threshold not in QUALITY_LEVELS:
            return False
        return QUALITY_LEVELS.index(profile.data_quality) >= QUALITY_LEVELS.index(threshold)


class SourceAdapter(ABC):
    """Abstract base class for a surveillance feed"""

    def __init__(self, source_id: str):
        self.source_id = source_id

    @abstractmethod
    def fetch(
        self,
        regions: Sequence[str],
        diseases: Sequence[str],
        time_buckets: Sequence[str]
    ) -> RawRecords:
        """
        Fetch raw records for the requested cells

        Adapters may return a superset of the requested cells; records are
        normalized and filtered downstream.
        """
        pass


class InMemorySourceAdapter(SourceAdapter):
    """Serves records held in memory (fixtures, replays, pushed batches)"""

    def __init__(self, source_id: str, records: Iterable[Dict]):
        super().__init__(source_id)
        self.records = list(records)

    def fetch(self, regions, diseases, time_buckets) -> List[Dict]:
        wanted = set(regions)
        return [
            dict(record) for record in self.records
            if not wanted or record.get("region", record.get("location")) in wanted
        ]


class CsvSourceAdapter(SourceAdapter):
    """Reads a feed exported as CSV"""

    def __init__(self, source_id: str, file_path: Path, **read_csv_kwargs):
        super().__init__(source_id)
        self.file_path = Path(file_path)
        self.read_csv_kwargs = read_csv_kwargs

    def fetch(self, regions, diseases, time_buckets) -> pd.DataFrame:
        logger.info(f"Loading {self.source_id} records from {self.file_path}")
        return pd.read_csv(self.file_path, **self.read_csv_kwargs)


class CallableSourceAdapter(SourceAdapter):
    """Wraps a plain function ``(regions, diseases, time_buckets) -> records``"""

    def __init__(self, source_id: str, func: Callable[[Sequence[str], Sequence[str], Sequence[str]], RawRecords]):
        super().__init__(source_id)
        self.func = func

    def fetch(self, regions, diseases, time_buckets) -> RawRecords:
        return self.func(regions, diseases, time_buckets)
