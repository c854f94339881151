import math
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Optional

from glucose_events.models.enums import AnalysisReason, Classification, EventStatus

# Float fields are compared within this tolerance when deciding whether a
# recompute produced a materially different snapshot.
STATS_EPSILON = 1e-9


@dataclass(frozen=True)
class EventStats:
    at_event: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None
    avg: Optional[float] = None
    spike: Optional[float] = None
    peak_time: Optional[datetime] = None
    count: int = 0

    @classmethod
    def empty(cls) -> "EventStats":
        return cls()

    def differs_from(self, other: "EventStats") -> bool:
        for f in fields(self):
            a = getattr(self, f.name)
            b = getattr(other, f.name)
            if a is None or b is None:
                if a is not b:
                    return True
                continue
            if isinstance(a, float) or isinstance(b, float):
                if not math.isclose(a, b, rel_tol=0.0, abs_tol=STATS_EPSILON):
                    return True
            elif a != b:
                return True
        return False


@dataclass(frozen=True)
class Event:
    """One note correlated with the glucose window [period_start, period_end).

    Records are immutable; every change goes through ``dataclasses.replace``
    and a whole-record write to the event store.
    """

    id: int
    note_uuid: str
    note_title: str
    note_text: str
    event_timestamp: datetime
    period_start: datetime
    period_end: datetime
    created_at: datetime
    updated_at: datetime
    stats: EventStats = EventStats()
    status: EventStatus = EventStatus.FRESH
    pending_reason: Optional[AnalysisReason] = AnalysisReason.INITIAL
    last_analyzed_at: Optional[datetime] = None
    classification: Optional[Classification] = None
    analysis_text: Optional[str] = None

    @property
    def needs_reanalysis(self) -> bool:
        return self.status in (
            EventStatus.FRESH,
            EventStatus.NEEDS_RECOMPUTE,
            EventStatus.NEEDS_REANALYSIS,
        )

    @property
    def has_analysis(self) -> bool:
        return self.last_analyzed_at is not None

    def contains(self, ts: datetime) -> bool:
        return self.period_start <= ts < self.period_end


@dataclass(frozen=True)
class AnalysisRecord:
    """Append-only result of one analysis run, with the stats it was based on."""

    id: int
    event_id: int
    analyzed_at: datetime
    reason: AnalysisReason
    period_start: datetime
    period_end: datetime
    stats: EventStats
    text: str
    classification: Optional[Classification]
    model: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True)
class AiUsageRecord:
    event_id: Optional[int]
    model: str
    input_tokens: int
    output_tokens: int
    success: bool
    called_at: datetime
    reason: Optional[str] = None
    duration_ms: Optional[int] = None
    cost_usd: float = 0.0
    error: Optional[str] = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens
