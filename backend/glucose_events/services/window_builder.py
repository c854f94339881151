"""
Event window assignment.

Each event observes glucose over [period_start, period_end):

* period_start is the previous event's timestamp, or ``default_lookback``
  before the event when it is the first one.
* period_end is ``max(ts + minimum_lookahead, next.ts)`` when a next event
  exists, otherwise ``ts + max_lookahead_no_next``.

Inserting an event also re-evaluates its predecessor's period_end as
``max(prev.ts + minimum_lookahead, ts)``. A period_end never moves earlier:
the predecessor keeps its current end when that is already later, so windows
only widen. Consecutive windows closer than twice the minimum lookahead
overlap; that overlap is intended.

Notes arriving in the same batch are placed on one timeline before any
bounds are computed, so a batch of [08:00, 08:20] produces 08:00's window
ending at 11:00 exactly as if 08:20 had already been known.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Iterable, Optional

from glucose_events.core.errors import InvariantViolation
from glucose_events.core.settings import WindowConfig
from glucose_events.models.enums import AnalysisReason, EventStatus
from glucose_events.models.event import Event
from glucose_events.models.glucose import Note
from glucose_events.services.event_store import EventStore

logger = logging.getLogger(__name__)


def compute_bounds(
    ts: datetime,
    prev_ts: Optional[datetime],
    next_ts: Optional[datetime],
    config: WindowConfig,
) -> tuple[datetime, datetime]:
    start = prev_ts if prev_ts is not None else ts - config.default_lookback
    if next_ts is not None:
        end = max(ts + config.minimum_lookahead, next_ts)
    else:
        end = ts + config.max_lookahead_no_next
    return start, end


def widened_period_end(event: Event, successor_ts: datetime, config: WindowConfig) -> datetime:
    candidate = max(event.event_timestamp + config.minimum_lookahead, successor_ts)
    return max(event.period_end, candidate)


@dataclass
class WindowBuildResult:
    created: list[Event] = field(default_factory=list)
    widened: list[Event] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)
    violations: list[InvariantViolation] = field(default_factory=list)

    @property
    def changed_ids(self) -> list[int]:
        return [e.id for e in self.created] + [e.id for e in self.widened]


class WindowBuilder:
    def __init__(self, store: EventStore, config: WindowConfig):
        self.store = store
        self.config = config

    def _accept(self, notes: Iterable[Note], result: WindowBuildResult) -> list[Note]:
        accepted: list[Note] = []
        seen_uuids: set[str] = set()
        batch_stamps: dict[datetime, str] = {}

        for note in sorted(notes, key=lambda n: (n.timestamp, n.uuid)):
            if note.uuid in seen_uuids or self.store.by_uuid(note.uuid) is not None:
                # idempotent on uuid
                result.duplicates.append(note.uuid)
                continue
            try:
                self.store.check_insertable(note.uuid, note.timestamp)
                if note.timestamp in batch_stamps:
                    raise InvariantViolation(
                        f"Note {note.uuid} shares timestamp {note.timestamp.isoformat()} "
                        f"with note {batch_stamps[note.timestamp]} in the same batch",
                        note_uuid=note.uuid,
                    )
            except InvariantViolation as exc:
                logger.error("Rejected note %s: %s", note.uuid, exc)
                result.violations.append(exc)
                continue
            seen_uuids.add(note.uuid)
            batch_stamps[note.timestamp] = note.uuid
            accepted.append(note)
        return accepted

    def insert_notes(self, notes: Iterable[Note], now: datetime) -> WindowBuildResult:
        """Creates one event per unseen note and widens predecessors as needed."""
        result = WindowBuildResult()
        accepted = self._accept(notes, result)
        widened: dict[int, Event] = {}

        for i, note in enumerate(accepted):
            ts = note.timestamp
            prev_event, next_event = self.store.neighbors(ts)

            next_ts = next_event.event_timestamp if next_event else None
            if i + 1 < len(accepted):
                batch_next = accepted[i + 1].timestamp
                next_ts = batch_next if next_ts is None else min(next_ts, batch_next)

            start, end = compute_bounds(
                ts, prev_event.event_timestamp if prev_event else None, next_ts, self.config
            )
            event = Event(
                id=self.store.next_id(),
                note_uuid=note.uuid,
                note_title=note.display_title,
                note_text=note.text or "",
                event_timestamp=ts,
                period_start=start,
                period_end=end,
                created_at=now,
                updated_at=now,
                status=EventStatus.FRESH,
                pending_reason=AnalysisReason.INITIAL,
            )
            self.store.add(event)
            self.store.mark_dirty(event.id)
            result.created.append(event)
            logger.info(
                "Created event %s for note %s at %s window [%s, %s)",
                event.id,
                note.uuid,
                ts.isoformat(),
                start.isoformat(),
                end.isoformat(),
            )

            if prev_event is not None:
                updated = self._widen(prev_event, ts, now)
                if updated is not None:
                    widened[updated.id] = updated

        created_ids = {e.id for e in result.created}
        result.widened = [e for e in widened.values() if e.id not in created_ids]
        return result

    def _widen(self, prev_event: Event, successor_ts: datetime, now: datetime) -> Optional[Event]:
        # re-read: an earlier note in this batch may already have replaced it
        current = self.store.require(prev_event.id)
        new_end = widened_period_end(current, successor_ts, self.config)
        if new_end == current.period_end:
            return None
        updated = replace(current, period_end=new_end, updated_at=now)
        self.store.replace(updated)
        logger.info(
            "Widened event %s period_end %s -> %s due to new event at %s",
            current.id,
            current.period_end.isoformat(),
            new_end.isoformat(),
            successor_ts.isoformat(),
        )
        return updated
