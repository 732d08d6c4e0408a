"""
Shared factories for the surveillance fusion tests
"""

from datetime import datetime, timezone

from surveillance_fusion.models import FusedEstimate, FusionMethod, SourceEstimate, SourceStatus
from surveillance_fusion.time_buckets import shift_time_bucket

NOW = datetime(2025, 1, 24, 12, 0, tzinfo=timezone.utc)


def make_estimate(
    source_id="who",
    value=100.0,
    reliability=0.9,
    region="US-CA",
    disease="influenza",
    time_bucket="2025-W03",
    observed_at=NOW,
    status=SourceStatus.OK
):
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


def make_fused(
    mean,
    time_bucket,
    region="US-CA",
    disease="influenza",
    variance=25.0,
    agreement=1.0
):
    return FusedEstimate(
        region=region,
        disease=disease,
        time_bucket=time_bucket,
        mean=float(mean),
        variance=variance,
        method=FusionMethod.BAYESIAN,
        sources_used=frozenset(["who"]),
        sources_failed=frozenset(),
        agreement_score=agreement,
        computed_at=NOW,
    )


def weekly_series(values, start="2024-W40", **kwargs):
    """Fused estimates for consecutive ISO weeks."""
    return [make_fused(v, shift_time_bucket(start, i), **kwargs) for i, v in enumerate(values)]


# 2024-W40 .. 2025-W02: a quiet autumn followed by a plateau
INFLUENZA_HISTORY = [135.0] + [120.0] * 7 + [150.0] * 7


def influenza_records(time_bucket, value, reliability):
    return [{
        "location": "US-CA",
        "pathogen": "flu",
        "week": time_bucket,
        "cases": value,
        "confidence": reliability,
    }]
