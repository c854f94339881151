from dataclasses import dataclass, field
from datetime import date, datetime
from fractions import Fraction
from typing import Optional

from glucose_events.models.enums import Classification


@dataclass(frozen=True)
class GlucoseStats:
    """Range-level statistics over a bounded set of readings.

    Percentages are kept as exact fractions of the reading count so the
    three buckets always add up to exactly 100; rounding happens only when
    the value is serialized.
    """

    min: Optional[float] = None
    max: Optional[float] = None
    avg: Optional[float] = None
    std_dev: Optional[float] = None
    time_in_range_pct: Optional[Fraction] = None
    time_below_pct: Optional[Fraction] = None
    time_above_pct: Optional[Fraction] = None
    reading_count: int = 0
    first_reading_at: Optional[datetime] = None
    last_reading_at: Optional[datetime] = None

    @classmethod
    def empty(cls) -> "GlucoseStats":
        return cls()


def _empty_counts() -> dict[Classification, int]:
    return {c: 0 for c in Classification}


@dataclass(frozen=True)
class PeriodStats:
    start: datetime
    end: datetime
    glucose: GlucoseStats
    event_ids: tuple[int, ...] = ()
    classification_counts: dict[Classification, int] = field(default_factory=_empty_counts)

    @property
    def event_count(self) -> int:
        return len(self.event_ids)


@dataclass(frozen=True)
class DayStats(PeriodStats):
    local_date: Optional[date] = None
    timezone: str = "UTC"


@dataclass(frozen=True)
class PeriodComparison:
    period_a: PeriodStats
    period_b: PeriodStats
    avg_delta: Optional[float]
    std_dev_delta: Optional[float]
    time_in_range_delta: Optional[Fraction]
    time_below_delta: Optional[Fraction]
    time_above_delta: Optional[Fraction]
    reading_count_delta: int
    event_count_delta: int
