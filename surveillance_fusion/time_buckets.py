"""
Time bucket helpers

Buckets are canonical ISO period strings: ISO weeks ("2025-W03"),
days ("2025-01-15") or months ("2025-01"). Ordering and distances are
computed on pandas Periods.
"""

import re
from datetime import date, datetime
from typing import Iterable, List, Optional, Union

import pandas as pd


ISO_WEEK_PATTERN = re.compile(r"^(\d{4})-W(\d{1,2})$")
DAY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
MONTH_PATTERN = re.compile(r"^\d{4}-\d{2}$")

GRANULARITY_FREQ = {
    "week": "W-SUN",  # Monday-Sunday, aligned with ISO weeks
    "day": "D",
    "month": "M",
}

BucketLike = Union[str, pd.Period, date, datetime, pd.Timestamp]


def parse_time_bucket(value: BucketLike, granularity: Optional[str] = None) -> pd.Period:
    """
    Parse a time bucket into a pandas Period

    Args:
        value: Canonical bucket string, Period, or date-like value
        granularity: Bucket size ("week", "day", "month") used when the value
            is a plain date/timestamp

    Returns:
        pandas Period for the bucket

    Raises:
        ValueError: If the value cannot be interpreted as a time bucket
    """
    if isinstance(value, pd.Period):
        if granularity:
            return value.asfreq(_freq_for(granularity))
        return value

    if isinstance(value, (datetime, date, pd.Timestamp)):
        return pd.Period(pd.Timestamp(value), freq=_freq_for(granularity or "day"))

    if not isinstance(value, str):
        raise ValueError(f"Unsupported time bucket type: {type(value).__name__}")

    text = value.strip()
    match = ISO_WEEK_PATTERN.match(text)
    if match:
        year, week = int(match.group(1)), int(match.group(2))
        try:
            monday = date.fromisocalendar(year, week, 1)
        except ValueError as e:
            raise ValueError(f"Invalid ISO week '{value}': {e}")
        return pd.Period(pd.Timestamp(monday), freq=GRANULARITY_FREQ["week"])

    if DAY_PATTERN.match(text):
        try:
            period = pd.Period(text, freq="D")
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid date bucket '{value}': {e}")
        if granularity and granularity != "day":
            return period.asfreq(_freq_for(granularity))
        return period

    if MONTH_PATTERN.match(text):
        try:
            return pd.Period(text, freq="M")
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid month bucket '{value}': {e}")

    raise ValueError(f"Unrecognised time bucket '{value}'")


def format_time_bucket(period: pd.Period) -> str:
    """Render a Period as its canonical bucket string"""
    code = period.freqstr[0]
    if code == "W":
        year, week, _ = period.start_time.date().isocalendar()
        return f"{year}-W{week:02d}"
    if code == "M":
        return period.strftime("%Y-%m")
    return period.strftime("%Y-%m-%d")


def canonical_time_bucket(value: BucketLike, granularity: Optional[str] = None) -> str:
    """Normalise any accepted bucket representation to its canonical string"""
    return format_time_bucket(parse_time_bucket(value, granularity))


def bucket_distance(start: BucketLike, end: BucketLike) -> int:
    """Number of buckets from ``start`` to ``end`` (negative if end is earlier)"""
    start_period = parse_time_bucket(start)
    end_period = parse_time_bucket(end)
    if start_period.freqstr != end_period.freqstr:
        raise ValueError(
            f"Cannot compare buckets of different granularity: "
            f"{start_period.freqstr} vs {end_period.freqstr}"
        )
    return (end_period - start_period).n


def shift_time_bucket(bucket: BucketLike, steps: int) -> str:
    """Move a bucket forward (or backward) by a number of buckets"""
    return format_time_bucket(parse_time_bucket(bucket) + steps)


def parse_timeframe(timeframe: Union[str, Iterable[str], None]) -> List[str]:
    """
    Expand a timeframe into canonical buckets

    Accepts a single bucket ("2025-W03"), an inclusive range
    ("2025-W01/2025-W03") or an iterable of buckets.
    """
    if timeframe is None:
        return []

    if isinstance(timeframe, str):
        if "/" in timeframe:
            start_text, end_text = timeframe.split("/", 1)
            start = parse_time_bucket(start_text)
            end = parse_time_bucket(end_text)
            if start.freqstr != end.freqstr:
                raise ValueError(f"Timeframe bounds differ in granularity: '{timeframe}'")
            if end < start:
                raise ValueError(f"Timeframe ends before it starts: '{timeframe}'")
            return [format_time_bucket(p) for p in pd.period_range(start=start, end=end)]
        return [canonical_time_bucket(timeframe)]

    buckets = sorted({canonical_time_bucket(b) for b in timeframe}, key=parse_time_bucket)
    return buckets


def _freq_for(granularity: str) -> str:
    try:
        return GRANULARITY_FREQ[granularity]
    except KeyError:
        raise ValueError(f"Unknown bucket granularity '{granularity}'")
