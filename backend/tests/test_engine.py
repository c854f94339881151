from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from glucose_events.core.errors import ValidationError
from glucose_events.core.settings import DisplayConfig, Settings
from glucose_events.models.enums import AnalysisReason, Classification, EventStatus, Trend
from glucose_events.models.glucose import Note, Reading
from glucose_events.services.engine import GlucoseEventEngine
from glucose_events.services.recompute_scheduler import AnalysisResult

DAY = datetime(2024, 1, 15, tzinfo=timezone.utc)


def at(hour: int, minute: int = 0) -> datetime:
    return DAY + timedelta(hours=hour, minutes=minute)


def reading(hour: int, minute: int, value: float, **kwargs) -> Reading:
    return Reading(value=value, timestamp=at(hour, minute), trend=Trend.STABLE, **kwargs)


def note(uuid: str, ts: datetime, text: str = "Toast with jam", folder: str = "Cukier") -> Note:
    return Note(uuid=uuid, timestamp=ts, text=text, folder=folder)


BREAKFAST = [reading(8, 0, 95), reading(8, 15, 140), reading(8, 30, 180), reading(9, 0, 150)]


@pytest.fixture
def engine(clock):
    return GlucoseEventEngine(Settings(), clock=clock)


def good_analysis() -> AsyncMock:
    return AsyncMock(return_value=AnalysisResult(text="[GOOD] Nice recovery", success=True))


@pytest.mark.asyncio
async def test_ingest_creates_event_with_stats(engine):
    report = await engine.ingest(BREAKFAST, [note("n1", at(8, 5))])

    assert report.inserted_readings == 4
    assert report.created == [1]
    assert report.recomputed == [1]
    assert report.needs_reanalysis == [1]
    assert report.rejected == [] and report.violations == []
    event = engine.get_event(1)
    assert event.stats.at_event == 95
    assert event.stats.spike == 85
    assert event.stats.peak_time == at(8, 30)
    assert event.status == EventStatus.NEEDS_REANALYSIS
    assert event.needs_reanalysis


@pytest.mark.asyncio
async def test_note_after_readings_uses_stored_readings(engine):
    first = await engine.ingest(BREAKFAST, [])
    assert first.created == [] and first.recomputed == []

    second = await engine.ingest([], [note("n1", at(8, 5))])

    assert second.created == [1]
    assert engine.get_event(1).stats.count == 4


@pytest.mark.asyncio
async def test_invalid_inputs_are_rejected_and_skipped(engine):
    report = await engine.ingest(
        [
            reading(8, 0, 0),
            Reading(value=120, timestamp=datetime(2024, 1, 15, 8, 5)),
            reading(8, 10, 120, patient_id="someone-else"),
            reading(8, 15, 130),
        ],
        [
            note("n1", at(8), folder="Recipes"),
            note("", at(9)),
            Note(uuid="n3", timestamp=datetime(2024, 1, 15, 10, 0), text="Lunch", folder="Cukier"),
            note("n4", at(11)),
        ],
    )

    assert len(report.rejected) == 6
    assert all(isinstance(exc, ValidationError) for exc in report.rejected)
    assert report.inserted_readings == 1
    assert report.created == [1]
    assert engine.get_event(1).note_uuid == "n4"


@pytest.mark.asyncio
async def test_duplicate_readings_and_notes_are_idempotent(engine):
    await engine.ingest(BREAKFAST, [note("n1", at(8, 5))])

    report = await engine.ingest(BREAKFAST, [note("n1", at(8, 5))])

    assert report.inserted_readings == 0
    assert report.duplicate_readings == 4
    assert report.duplicate_notes == ["n1"]
    assert report.created == []
    assert len(engine.list_events_in_range(at(0), at(23))) == 1


@pytest.mark.asyncio
async def test_timestamp_collision_is_surfaced(engine):
    await engine.ingest([], [note("a", at(8))])

    report = await engine.ingest([], [note("b", at(8))])

    assert len(report.violations) == 1
    assert report.violations[0].note_uuid == "b"
    assert report.created == []


@pytest.mark.asyncio
async def test_late_note_widens_predecessor(engine):
    await engine.ingest([], [note("a", at(8))])
    assert engine.get_event(1).period_end == at(12)

    report = await engine.ingest([], [note("b", at(14))])

    assert report.widened == [1]
    assert set(report.recomputed) == {1, 2}
    assert engine.get_event(1).period_end == at(14)
    assert engine.get_event(2).period_start == at(8)


@pytest.mark.asyncio
async def test_late_reading_triggers_reanalysis_after_cooldown(engine, clock):
    await engine.ingest(BREAKFAST, [note("n1", at(8, 5))])
    await engine.analyze_pending(good_analysis())
    assert engine.get_event(1).status == EventStatus.CURRENT

    clock.advance(10)
    report = await engine.ingest([reading(10, 0, 210)], [])
    assert report.needs_reanalysis == [1]
    deferred = await engine.analyze_pending(good_analysis())
    assert deferred.deferred == [1]

    clock.advance(25)
    again = await engine.analyze_pending(good_analysis())
    assert again.analyzed == [1]
    assert engine.get_current_analysis(1).reason == AnalysisReason.NEW_READINGS
    assert engine.get_current_analysis(1).stats.max == 210
    assert len(engine.get_analysis_history(1)) == 2


@pytest.mark.asyncio
async def test_analysis_results_are_queryable(engine):
    await engine.ingest(BREAKFAST, [note("n1", at(8, 5))])

    report = await engine.analyze_pending(good_analysis())

    assert report.analyzed == [1]
    current = engine.get_current_analysis(1)
    assert current.text == "Nice recovery"
    assert current.classification == Classification.GOOD
    day = engine.get_day_stats(date(2024, 1, 15))
    assert day.classification_counts[Classification.GOOD] == 1


@pytest.mark.asyncio
async def test_failed_analysis_keeps_event_queryable(engine):
    await engine.ingest(BREAKFAST, [note("n1", at(8, 5))])

    report = await engine.analyze_pending(AsyncMock(side_effect=TimeoutError("slow")))

    assert report.failed == [1]
    event = engine.get_event(1)
    assert event.status == EventStatus.NEEDS_REANALYSIS
    assert engine.get_current_analysis(1) is None


@pytest.mark.asyncio
async def test_day_stats_are_cached_per_touched_day(engine):
    await engine.ingest(BREAKFAST, [note("n1", at(8, 5))])

    day = engine.get_day_stats(date(2024, 1, 15))

    assert day.glucose.reading_count == 4
    assert day.glucose.min == 95
    assert day.event_ids == (1,)
    assert day.local_date == date(2024, 1, 15)
    assert day.start == DAY
    assert engine.get_day_stats(date(2024, 1, 16)) is None


@pytest.mark.asyncio
async def test_day_stats_follow_display_timezone(clock):
    engine = GlucoseEventEngine(Settings(display=DisplayConfig(timezone="Europe/Madrid")), clock=clock)

    await engine.ingest([reading(22, 30, 100), reading(23, 30, 200)], [])

    jan_15 = engine.get_day_stats(date(2024, 1, 15))
    jan_16 = engine.get_day_stats(date(2024, 1, 16))
    assert jan_15.glucose.reading_count == 1
    assert jan_16.glucose.reading_count == 1
    assert jan_15.start == datetime(2024, 1, 14, 23, 0, tzinfo=timezone.utc)
    assert jan_15.timezone == "Europe/Madrid"


@pytest.mark.asyncio
async def test_period_stats_and_comparison(engine):
    await engine.ingest(
        [reading(8, 0, 100), reading(8, 5, 100), reading(10, 0, 150), reading(10, 5, 250)],
        [note("n1", at(10, 2))],
    )

    comparison = engine.compare_periods(at(8), at(9), at(10), at(11))

    assert comparison.period_a.glucose.avg == 100
    assert comparison.period_b.glucose.avg == 200
    assert comparison.avg_delta == 100
    assert comparison.time_in_range_delta == -50
    assert comparison.time_above_delta == 50
    assert comparison.reading_count_delta == 0
    assert comparison.event_count_delta == 1
    empty = engine.get_period_stats(at(20), at(21))
    assert empty.glucose.reading_count == 0
    assert empty.event_count == 0


@pytest.mark.asyncio
async def test_overlapping_events_query(engine):
    await engine.ingest([], [note("a", at(8)), note("b", at(8, 20))])

    assert [e.id for e in engine.get_overlapping_events(1)] == [2]
    assert [e.id for e in engine.get_overlapping_events(2)] == [1]
    assert engine.get_overlapping_events(99) == []


@pytest.mark.asyncio
async def test_list_events_in_range_is_half_open(engine):
    await engine.ingest([], [note("a", at(8)), note("b", at(12))])

    assert [e.id for e in engine.list_events_in_range(at(8), at(12))] == [1]
    assert [e.id for e in engine.list_events_in_range(at(8), at(12, 1))] == [1, 2]


@pytest.mark.asyncio
async def test_hooks_receive_changes_and_failures_are_contained(engine):
    received = []

    async def on_changed(event_ids):
        received.append(event_ids)

    def broken(event_ids):
        raise RuntimeError("push service down")

    engine.hooks.on_events_changed(broken)
    engine.hooks.on_events_changed(on_changed)

    report = await engine.ingest(BREAKFAST, [note("n1", at(8, 5))])

    assert report.created == [1]
    assert received == [[1]]


@pytest.mark.asyncio
async def test_reprocess_event(engine, clock):
    await engine.ingest(BREAKFAST, [note("n1", at(8, 5))])
    await engine.analyze_pending(good_analysis())

    clock.advance(10)
    assert await engine.reprocess_event(1)
    early = await engine.analyze_pending(good_analysis())
    assert early.deferred == [1]

    clock.advance(30)
    report = await engine.analyze_pending(good_analysis())
    assert report.analyzed == [1]
    assert engine.get_current_analysis(1).reason == AnalysisReason.MANUAL
    assert not await engine.reprocess_event(99)


@pytest.mark.asyncio
async def test_run_cycle_pulls_from_collaborators(engine):
    calls = []

    def fetch_readings(since):
        calls.append(("readings", since))
        return BREAKFAST if since is None else []

    async def fetch_notes(since, folder):
        calls.append(("notes", since, folder))
        return [note("n1", at(8, 5))] if since is None else []

    first = await engine.run_cycle(fetch_readings, fetch_notes)
    second = await engine.run_cycle(fetch_readings, fetch_notes)

    assert first.created == [1]
    assert not second.has_changes
    assert second.duplicate_readings == 4
    assert second.duplicate_notes == []
    assert calls == [("readings", None), ("notes", None, "Cukier")] * 2


@pytest.mark.asyncio
async def test_run_cycle_picks_up_late_notes_and_backfilled_readings(engine):
    synced_readings = [reading(10, 0, 120), reading(10, 30, 150)]
    synced_notes = [note("b", at(10), text="Lunch")]
    cursors = []

    def fetch_readings(since):
        cursors.append(since)
        return [r for r in synced_readings if since is None or r.timestamp > since]

    def fetch_notes(since, folder):
        return [n for n in synced_notes if since is None or n.timestamp > since]

    first = await engine.run_cycle(fetch_readings, fetch_notes)
    assert first.created == [1]

    # uploader catches up with older data after the first poll
    synced_readings += [reading(8, 0, 95), reading(8, 30, 180)]
    synced_notes.append(note("a", at(8), text="Breakfast"))
    second = await engine.run_cycle(fetch_readings, fetch_notes)

    assert cursors == [None, None]
    assert second.inserted_readings == 2
    assert second.duplicate_readings == 2
    late = engine.events.by_uuid("a")
    assert late is not None
    assert second.created == [late.id]
    assert late.stats.at_event == 95
    assert late.stats.max == 180
    assert late.needs_reanalysis
