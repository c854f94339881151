from datetime import date, datetime
from fractions import Fraction
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from glucose_events.models.event import AnalysisRecord, Event, EventStats
from glucose_events.models.stats import GlucoseStats, PeriodComparison, PeriodStats, DayStats

Number = Union[int, float, Fraction]


def _to_epoch_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def round_value(value: Optional[Number], precision: int) -> Optional[float]:
    """Serialization-boundary rounding; internal values are never rounded."""
    if value is None:
        return None
    return round(float(value), precision)


class NightscoutSGV(BaseModel):
    sgv: int
    direction: Optional[str] = None
    date: int
    delta: Optional[float] = None

    @field_validator("date", mode="before")
    def ensure_epoch_ms(cls, v: int | datetime) -> int:
        if isinstance(v, datetime):
            return _to_epoch_ms(v)
        return int(v)


class EventStatsOut(BaseModel):
    at_event: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None
    avg: Optional[float] = None
    spike: Optional[float] = None
    peak_time: Optional[datetime] = None
    reading_count: int = 0

    @classmethod
    def from_stats(cls, stats: EventStats, precision: int = 1) -> "EventStatsOut":
        return cls(
            at_event=round_value(stats.at_event, precision),
            min=round_value(stats.min, precision),
            max=round_value(stats.max, precision),
            avg=round_value(stats.avg, precision),
            spike=round_value(stats.spike, precision),
            peak_time=stats.peak_time,
            reading_count=stats.count,
        )


class EventOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    note_uuid: str
    note_title: str
    event_timestamp: datetime
    period_start: datetime
    period_end: datetime
    stats: EventStatsOut
    status: str
    needs_reanalysis: bool
    classification: Optional[str] = None
    analysis: Optional[str] = None
    last_analyzed_at: Optional[datetime] = None
    overlapping_event_ids: list[int] = Field(default_factory=list)

    @classmethod
    def from_event(
        cls, event: Event, precision: int = 1, overlapping: Optional[list[Event]] = None
    ) -> "EventOut":
        return cls(
            id=event.id,
            note_uuid=event.note_uuid,
            note_title=event.note_title,
            event_timestamp=event.event_timestamp,
            period_start=event.period_start,
            period_end=event.period_end,
            stats=EventStatsOut.from_stats(event.stats, precision),
            status=event.status.value,
            needs_reanalysis=event.needs_reanalysis,
            classification=event.classification.value if event.classification else None,
            analysis=event.analysis_text,
            last_analyzed_at=event.last_analyzed_at,
            overlapping_event_ids=[e.id for e in overlapping or []],
        )


class AnalysisRecordOut(BaseModel):
    id: int
    event_id: int
    analyzed_at: datetime
    reason: str
    period_start: datetime
    period_end: datetime
    stats: EventStatsOut
    analysis: str
    classification: Optional[str] = None
    model: Optional[str] = None

    @classmethod
    def from_record(cls, record: AnalysisRecord, precision: int = 1) -> "AnalysisRecordOut":
        return cls(
            id=record.id,
            event_id=record.event_id,
            analyzed_at=record.analyzed_at,
            reason=record.reason.value,
            period_start=record.period_start,
            period_end=record.period_end,
            stats=EventStatsOut.from_stats(record.stats, precision),
            analysis=record.text,
            classification=record.classification.value if record.classification else None,
            model=record.model,
        )


class GlucoseStatsOut(BaseModel):
    min: Optional[float] = None
    max: Optional[float] = None
    avg: Optional[float] = None
    std_dev: Optional[float] = None
    time_in_range_pct: Optional[float] = None
    time_below_pct: Optional[float] = None
    time_above_pct: Optional[float] = None
    reading_count: int = 0
    first_reading_at: Optional[datetime] = None
    last_reading_at: Optional[datetime] = None

    @classmethod
    def from_stats(cls, stats: GlucoseStats, precision: int = 1) -> "GlucoseStatsOut":
        return cls(
            min=round_value(stats.min, precision),
            max=round_value(stats.max, precision),
            avg=round_value(stats.avg, precision),
            std_dev=round_value(stats.std_dev, precision),
            time_in_range_pct=round_value(stats.time_in_range_pct, precision),
            time_below_pct=round_value(stats.time_below_pct, precision),
            time_above_pct=round_value(stats.time_above_pct, precision),
            reading_count=stats.reading_count,
            first_reading_at=stats.first_reading_at,
            last_reading_at=stats.last_reading_at,
        )


class PeriodStatsOut(BaseModel):
    start: datetime
    end: datetime
    glucose: GlucoseStatsOut
    event_count: int
    event_ids: list[int]
    classification_counts: dict[str, int]
    local_date: Optional[date] = None
    timezone: Optional[str] = None

    @classmethod
    def from_stats(cls, stats: PeriodStats, precision: int = 1) -> "PeriodStatsOut":
        is_day = isinstance(stats, DayStats)
        return cls(
            start=stats.start,
            end=stats.end,
            glucose=GlucoseStatsOut.from_stats(stats.glucose, precision),
            event_count=stats.event_count,
            event_ids=list(stats.event_ids),
            classification_counts={c.value: n for c, n in stats.classification_counts.items()},
            local_date=stats.local_date if is_day else None,
            timezone=stats.timezone if is_day else None,
        )


class DayStatsOut(PeriodStatsOut):
    local_date: date
    timezone: str

    @classmethod
    def from_day(cls, stats: DayStats, precision: int = 1) -> "DayStatsOut":
        return cls.model_validate(PeriodStatsOut.from_stats(stats, precision).model_dump())


class ComparisonOut(BaseModel):
    period_a: PeriodStatsOut
    period_b: PeriodStatsOut
    avg_delta: Optional[float] = None
    std_dev_delta: Optional[float] = None
    time_in_range_delta: Optional[float] = None
    time_below_delta: Optional[float] = None
    time_above_delta: Optional[float] = None
    reading_count_delta: int = 0
    event_count_delta: int = 0

    @classmethod
    def from_comparison(cls, comparison: PeriodComparison, precision: int = 1) -> "ComparisonOut":
        return cls(
            period_a=PeriodStatsOut.from_stats(comparison.period_a, precision),
            period_b=PeriodStatsOut.from_stats(comparison.period_b, precision),
            avg_delta=round_value(comparison.avg_delta, precision),
            std_dev_delta=round_value(comparison.std_dev_delta, precision),
            time_in_range_delta=round_value(comparison.time_in_range_delta, precision),
            time_below_delta=round_value(comparison.time_below_delta, precision),
            time_above_delta=round_value(comparison.time_above_delta, precision),
            reading_count_delta=comparison.reading_count_delta,
            event_count_delta=comparison.event_count_delta,
        )
