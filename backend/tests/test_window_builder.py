from datetime import datetime, timedelta, timezone

from glucose_events.core.settings import WindowConfig
from glucose_events.models.enums import AnalysisReason, EventStatus
from glucose_events.models.glucose import Note
from glucose_events.services.event_store import EventStore
from glucose_events.services.window_builder import WindowBuilder, compute_bounds, widened_period_end

DAY = datetime(2024, 1, 15, tzinfo=timezone.utc)
NOW = datetime(2024, 1, 16, tzinfo=timezone.utc)
CONFIG = WindowConfig()


def at(hour: int, minute: int = 0) -> datetime:
    return DAY + timedelta(hours=hour, minutes=minute)


def note(uuid: str, ts: datetime, text: str = "Breakfast") -> Note:
    return Note(uuid=uuid, timestamp=ts, text=text, folder="Cukier")


def make_builder() -> tuple[EventStore, WindowBuilder]:
    store = EventStore()
    return store, WindowBuilder(store, CONFIG)


def test_compute_bounds_without_neighbors():
    assert compute_bounds(at(8), None, None, CONFIG) == (at(5), at(12))


def test_compute_bounds_with_close_and_far_successor():
    assert compute_bounds(at(8), at(6), at(8, 20), CONFIG) == (at(6), at(11))
    assert compute_bounds(at(8), at(6), at(15), CONFIG) == (at(6), at(15))


def test_first_event_uses_lookback_and_cap():
    store, builder = make_builder()

    result = builder.insert_notes([note("a", at(8))], NOW)

    event = result.created[0]
    assert (event.period_start, event.period_end) == (at(5), at(12))
    assert event.status == EventStatus.FRESH
    assert event.pending_reason == AnalysisReason.INITIAL
    assert store.is_dirty(event.id)
    assert event.note_title == "Breakfast"


def test_close_notes_in_one_batch():
    store, builder = make_builder()

    result = builder.insert_notes([note("b", at(8, 20)), note("a", at(8))], NOW)

    first, second = store.ordered()
    assert first.note_uuid == "a"
    assert (first.period_start, first.period_end) == (at(5), at(11))
    assert (second.period_start, second.period_end) == (at(8), at(12, 20))
    assert second.period_end - second.event_timestamp >= CONFIG.minimum_lookahead
    assert second.period_start < first.period_end
    assert result.widened == []


def test_close_note_in_later_cycle_never_shrinks_predecessor():
    store, builder = make_builder()
    builder.insert_notes([note("a", at(8))], NOW)

    result = builder.insert_notes([note("b", at(8, 20))], NOW)

    first = store.by_uuid("a")
    assert first.period_end == at(12)
    assert result.widened == []


def test_far_successor_widens_predecessor():
    store, builder = make_builder()
    builder.insert_notes([note("a", at(8))], NOW)

    result = builder.insert_notes([note("b", at(14))], NOW)

    first = store.by_uuid("a")
    assert first.period_end == at(14)
    assert [e.id for e in result.widened] == [first.id]
    assert first.updated_at == NOW


def test_late_note_between_existing_events():
    store, builder = make_builder()
    builder.insert_notes([note("a", at(8)), note("c", at(14))], NOW)
    successor_before = store.by_uuid("c")

    result = builder.insert_notes([note("b", at(10))], NOW)

    middle = store.by_uuid("b")
    assert (middle.period_start, middle.period_end) == (at(8), at(14))
    assert store.by_uuid("a").period_end == at(14)
    assert store.by_uuid("c").period_start == successor_before.period_start
    assert result.widened == []


def test_widened_period_end_is_monotone():
    store, builder = make_builder()
    builder.insert_notes([note("a", at(8))], NOW)
    event = store.by_uuid("a")

    assert widened_period_end(event, at(8, 10), CONFIG) == at(12)
    assert widened_period_end(event, at(13), CONFIG) == at(13)


def test_same_uuid_is_idempotent():
    store, builder = make_builder()
    builder.insert_notes([note("a", at(8))], NOW)

    result = builder.insert_notes([note("a", at(8)), note("a", at(9))], NOW)

    assert len(store) == 1
    assert result.created == []
    assert result.duplicates == ["a", "a"]


def test_timestamp_collision_with_stored_event_is_a_violation():
    store, builder = make_builder()
    builder.insert_notes([note("a", at(8))], NOW)

    result = builder.insert_notes([note("z", at(8))], NOW)

    assert len(store) == 1
    assert len(result.violations) == 1
    assert result.violations[0].note_uuid == "z"
    assert result.violations[0].event_id == store.by_uuid("a").id


def test_timestamp_collision_within_batch_is_a_violation():
    store, builder = make_builder()

    result = builder.insert_notes([note("b", at(8)), note("a", at(8))], NOW)

    assert [e.note_uuid for e in result.created] == ["a"]
    assert [v.note_uuid for v in result.violations] == ["b"]
    assert len(store) == 1


def test_windows_never_shrink_and_always_cover_minimum():
    store, builder = make_builder()
    offsets = [300, 20, 600, 45, 170, 900, 0, 610, 185, 400]
    previous_ends: dict[int, datetime] = {}

    for i, minutes in enumerate(offsets):
        builder.insert_notes([note(f"n{i}", DAY + timedelta(minutes=minutes))], NOW)
        for event in store.ordered():
            assert event.period_start <= event.event_timestamp < event.period_end
            assert event.period_end - event.event_timestamp >= CONFIG.minimum_lookahead
            if event.id in previous_ends:
                assert event.period_end >= previous_ends[event.id]
            previous_ends[event.id] = event.period_end

    assert len(store) == len(offsets)
