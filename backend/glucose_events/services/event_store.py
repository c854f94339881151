"""
In-memory arena for readings, events and analysis history.

Events are addressed by id and only ever written as whole records; staleness
is tracked in a separate dirty set rather than in per-field flags.
"""

import bisect
import itertools
import logging
from datetime import datetime
from typing import Iterable, Iterator, Optional

from glucose_events.core.errors import InvariantViolation
from glucose_events.models.event import AnalysisRecord, Event
from glucose_events.models.glucose import DEFAULT_PATIENT, Reading

logger = logging.getLogger(__name__)


class ReadingStore:
    def __init__(self) -> None:
        self._timestamps: dict[str, list[datetime]] = {}
        self._readings: dict[str, list[Reading]] = {}

    def add(self, reading: Reading) -> bool:
        """Stores a reading; returns False when (patient, timestamp) already exists."""
        stamps = self._timestamps.setdefault(reading.patient_id, [])
        rows = self._readings.setdefault(reading.patient_id, [])
        idx = bisect.bisect_left(stamps, reading.timestamp)
        if idx < len(stamps) and stamps[idx] == reading.timestamp:
            return False
        stamps.insert(idx, reading.timestamp)
        rows.insert(idx, reading)
        return True

    def in_range(self, start: datetime, end: datetime, patient_id: str = DEFAULT_PATIENT) -> list[Reading]:
        """Readings with start <= timestamp < end, oldest first."""
        stamps = self._timestamps.get(patient_id, [])
        lo = bisect.bisect_left(stamps, start)
        hi = bisect.bisect_left(stamps, end)
        return self._readings.get(patient_id, [])[lo:hi]


class EventStore:
    def __init__(self) -> None:
        self._events: dict[int, Event] = {}
        self._order: list[tuple[datetime, int]] = []
        self._by_uuid: dict[str, int] = {}
        self._by_timestamp: dict[datetime, int] = {}
        self._dirty: set[int] = set()
        self._ids = itertools.count(1)

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[Event]:
        return iter(self.ordered())

    def next_id(self) -> int:
        return next(self._ids)

    def get(self, event_id: int) -> Optional[Event]:
        return self._events.get(event_id)

    def require(self, event_id: int) -> Event:
        try:
            return self._events[event_id]
        except KeyError:
            raise KeyError(f"Unknown event id {event_id}") from None

    def by_uuid(self, note_uuid: str) -> Optional[Event]:
        event_id = self._by_uuid.get(note_uuid)
        return self._events.get(event_id) if event_id is not None else None

    def check_insertable(self, note_uuid: str, ts: datetime) -> None:
        owner = self._by_uuid.get(note_uuid)
        if owner is not None:
            raise InvariantViolation(
                f"Note {note_uuid} is already owned by event {owner}",
                note_uuid=note_uuid,
                event_id=owner,
            )
        clash = self._by_timestamp.get(ts)
        if clash is not None:
            raise InvariantViolation(
                f"Note {note_uuid} shares timestamp {ts.isoformat()} with event {clash} "
                f"(note {self._events[clash].note_uuid})",
                note_uuid=note_uuid,
                event_id=clash,
            )

    def add(self, event: Event) -> None:
        if event.id in self._events:
            raise InvariantViolation(f"Event id {event.id} already exists", event_id=event.id)
        self.check_insertable(event.note_uuid, event.event_timestamp)
        self._events[event.id] = event
        bisect.insort(self._order, (event.event_timestamp, event.id))
        self._by_uuid[event.note_uuid] = event.id
        self._by_timestamp[event.event_timestamp] = event.id

    def replace(self, event: Event) -> None:
        current = self.require(event.id)
        if current.note_uuid != event.note_uuid or current.event_timestamp != event.event_timestamp:
            raise InvariantViolation(
                f"Event {event.id} identity cannot change (uuid/timestamp)",
                note_uuid=current.note_uuid,
                event_id=event.id,
            )
        self._events[event.id] = event

    def ordered(self) -> list[Event]:
        return [self._events[event_id] for _, event_id in self._order]

    def neighbors(self, ts: datetime) -> tuple[Optional[Event], Optional[Event]]:
        """Closest events strictly before and strictly after ts."""
        lo = bisect.bisect_left(self._order, (ts,))
        hi = bisect.bisect_right(self._order, (ts, float("inf")))
        prev_event = self._events[self._order[lo - 1][1]] if lo > 0 else None
        next_event = self._events[self._order[hi][1]] if hi < len(self._order) else None
        return prev_event, next_event

    def in_range(self, start: datetime, end: datetime) -> list[Event]:
        """Events whose own timestamp lies in [start, end), oldest first."""
        lo = bisect.bisect_left(self._order, (start,))
        hi = bisect.bisect_left(self._order, (end,))
        return [self._events[event_id] for _, event_id in self._order[lo:hi]]

    def windows_containing_any(self, timestamps: Iterable[datetime]) -> list[Event]:
        """Events whose [period_start, period_end) contains at least one of timestamps."""
        stamps = sorted(timestamps)
        if not stamps:
            return []
        hits = []
        for event in self.ordered():
            idx = bisect.bisect_left(stamps, event.period_start)
            if idx < len(stamps) and stamps[idx] < event.period_end:
                hits.append(event)
        return hits

    # dirty-set bookkeeping

    def mark_dirty(self, event_id: int) -> None:
        self.require(event_id)
        self._dirty.add(event_id)

    def clear_dirty(self, event_id: int) -> None:
        self._dirty.discard(event_id)

    def is_dirty(self, event_id: int) -> bool:
        return event_id in self._dirty

    def dirty_ids(self) -> list[int]:
        return sorted(self._dirty, key=lambda i: (self._events[i].event_timestamp, i))


class AnalysisLog:
    """Append-only analysis history; the latest record is the current one."""

    def __init__(self) -> None:
        self._records: dict[int, list[AnalysisRecord]] = {}
        self._ids = itertools.count(1)

    def next_id(self) -> int:
        return next(self._ids)

    def append(self, record: AnalysisRecord) -> None:
        history = self._records.setdefault(record.event_id, [])
        if history and record.analyzed_at < history[-1].analyzed_at:
            logger.warning(
                "Analysis record %s for event %s is older than the current one; appending anyway",
                record.id,
                record.event_id,
            )
        history.append(record)

    def history(self, event_id: int) -> tuple[AnalysisRecord, ...]:
        return tuple(self._records.get(event_id, ()))

    def current(self, event_id: int) -> Optional[AnalysisRecord]:
        history = self._records.get(event_id)
        return history[-1] if history else None
