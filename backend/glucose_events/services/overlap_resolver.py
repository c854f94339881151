from typing import Iterable

from glucose_events.models.event import Event
from glucose_events.services.event_store import EventStore


def _proximity_key(event: Event):
    def key(other: Event):
        distance = abs((other.event_timestamp - event.event_timestamp).total_seconds())
        return (distance, other.event_timestamp, other.id)

    return key


def find_overlapping(event: Event, candidates: Iterable[Event]) -> list[Event]:
    """
    Other events whose own timestamp falls inside ``event``'s window,
    nearest first.

    Context is always relative to the event's own window, so the relation is
    not reciprocal: A may see B while B's narrower window excludes A.
    """
    hits = [
        other
        for other in candidates
        if other.id != event.id and event.period_start <= other.event_timestamp < event.period_end
    ]
    return sorted(hits, key=_proximity_key(event))


def overlapping_in_store(event: Event, store: EventStore) -> list[Event]:
    return find_overlapping(event, store.in_range(event.period_start, event.period_end))
