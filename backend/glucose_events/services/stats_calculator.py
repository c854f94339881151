"""
Pure glucose statistics.

No I/O and no rounding: values are rounded only at the serialization
boundary, so running the same reading set twice yields identical results.
"""

import statistics
from datetime import datetime
from fractions import Fraction
from typing import Iterable, Optional

from glucose_events.models.event import EventStats
from glucose_events.models.glucose import Reading
from glucose_events.models.stats import GlucoseStats

DEFAULT_LOW_MGDL = 70.0
DEFAULT_HIGH_MGDL = 180.0


def _ordered(readings: Iterable[Reading]) -> list[Reading]:
    return sorted(readings, key=lambda r: r.timestamp)


def nearest_reading(readings: list[Reading], ts: datetime) -> Optional[Reading]:
    """Reading closest to ts; on equal distance the earlier one wins."""
    if not readings:
        return None
    return min(readings, key=lambda r: (abs((r.timestamp - ts).total_seconds()), r.timestamp))


def compute_event_stats(readings: Iterable[Reading], event_timestamp: datetime) -> EventStats:
    ordered = _ordered(readings)
    if not ordered:
        return EventStats.empty()

    values = [r.value for r in ordered]
    at_event = nearest_reading(ordered, event_timestamp).value

    spike = None
    peak_time = None
    after = [r for r in ordered if r.timestamp >= event_timestamp]
    if after:
        # max() keeps the first maximum, i.e. the earliest peak
        peak = max(after, key=lambda r: r.value)
        peak_time = peak.timestamp
        # signed: a post-event drop is reported as a negative spike
        spike = peak.value - at_event

    return EventStats(
        at_event=at_event,
        min=min(values),
        max=max(values),
        avg=statistics.fmean(values),
        spike=spike,
        peak_time=peak_time,
        count=len(ordered),
    )


def compute_glucose_stats(
    readings: Iterable[Reading],
    low: float = DEFAULT_LOW_MGDL,
    high: float = DEFAULT_HIGH_MGDL,
) -> GlucoseStats:
    """Range statistics for a day or an arbitrary period.

    Time-in-range is the share of readings (not wall-clock time) in
    [low, high]; below is < low and above is > high.
    """
    ordered = _ordered(readings)
    if not ordered:
        return GlucoseStats.empty()

    values = [r.value for r in ordered]
    n = len(values)
    below = sum(1 for v in values if v < low)
    above = sum(1 for v in values if v > high)
    in_range = n - below - above

    return GlucoseStats(
        min=min(values),
        max=max(values),
        avg=statistics.fmean(values),
        std_dev=statistics.pstdev(values),
        time_in_range_pct=Fraction(100 * in_range, n),
        time_below_pct=Fraction(100 * below, n),
        time_above_pct=Fraction(100 * above, n),
        reading_count=n,
        first_reading_at=ordered[0].timestamp,
        last_reading_at=ordered[-1].timestamp,
    )


def delta(a: Optional[float | Fraction], b: Optional[float | Fraction]) -> Optional[float | Fraction]:
    """b - a, or None when either side has no data."""
    if a is None or b is None:
        return None
    return b - a
