"""
Error types raised by the fusion and outbreak-detection engine
"""

from typing import Any, Optional


class SurveillanceEngineError(Exception):
    """Base class for engine errors"""


class SourceUnavailableError(SurveillanceEngineError):
    """A source adapter timed out, failed, or has an open circuit"""

    def __init__(self, source_id: str, reason: str = "unavailable"):
        self.source_id = source_id
        self.reason = reason
        super().__init__(f"Source '{source_id}' unavailable: {reason}")


class InsufficientDataError(SurveillanceEngineError):
    """No usable estimates (and no prior) for a cell"""

    def __init__(self, message: str, cell_key: Optional[Any] = None):
        self.cell_key = cell_key
        super().__init__(message)


class InvalidMethodError(SurveillanceEngineError, ValueError):
    """Unknown fusion or detection method requested by the caller"""


class ConflictingEvidenceError(SurveillanceEngineError):
    """
    Sources are in total conflict (Dempster-Shafer conflict mass near 1)

    Surfaced as a warning on the fused estimate rather than raised through
    the batch.
    """

    def __init__(self, conflict: float, cell_key: Optional[Any] = None):
        self.conflict = conflict
        self.cell_key = cell_key
        super().__init__(f"Total conflict between sources (K={conflict:.4f})")


class NormalizationError(SurveillanceEngineError):
    """A raw record rejected by the source normalizer"""

    def __init__(self, source_id: str, reason: str, record: Optional[dict] = None):
        self.source_id = source_id
        self.reason = reason
        self.record = record or {}
        super().__init__(f"[{source_id}] {reason}")

    def to_dict(self) -> dict:
        return {
            "sourceId": self.source_id,
            "reason": self.reason,
            "record": {k: str(v) for k, v in self.record.items()},
        }
