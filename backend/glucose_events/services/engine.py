"""
In-process facade over the event-correlation core.

The host calls ``ingest``/``run_cycle`` on its polling timer and
``analyze_pending`` whenever it wants AI work done; every query is a pure
read over state computed by those two entry points.
"""

import inspect
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Iterable, Optional

from glucose_events.core.errors import InvariantViolation, ValidationError
from glucose_events.core.hooks import EngineHooks
from glucose_events.core.settings import Settings, get_settings
from glucose_events.core.slices import TimeSliceLocks
from glucose_events.models.enums import AnalysisReason, Classification
from glucose_events.models.event import AnalysisRecord, Event
from glucose_events.models.glucose import DEFAULT_PATIENT, Note, Reading
from glucose_events.models.stats import DayStats, PeriodComparison, PeriodStats
from glucose_events.services.event_store import AnalysisLog, EventStore, ReadingStore
from glucose_events.services.overlap_resolver import overlapping_in_store
from glucose_events.services.recompute_scheduler import (
    AnalysisPassReport,
    Clock,
    RecomputeScheduler,
    RequestAnalysis,
    utc_now,
)
from glucose_events.services.stats_calculator import compute_glucose_stats, delta
from glucose_events.services.validation import validate_note, validate_reading
from glucose_events.services.window_builder import WindowBuilder
from glucose_events.utils.timezone import day_bounds_utc, local_date_of, resolve_timezone

logger = logging.getLogger(__name__)


@dataclass
class CycleReport:
    inserted_readings: int = 0
    duplicate_readings: int = 0
    created: list[int] = field(default_factory=list)
    widened: list[int] = field(default_factory=list)
    duplicate_notes: list[str] = field(default_factory=list)
    recomputed: list[int] = field(default_factory=list)
    needs_reanalysis: list[int] = field(default_factory=list)
    rejected: list[ValidationError] = field(default_factory=list)
    violations: list[InvariantViolation] = field(default_factory=list)

    @property
    def changed_ids(self) -> list[int]:
        return sorted(set(self.created) | set(self.widened) | set(self.recomputed))

    @property
    def has_changes(self) -> bool:
        return bool(self.inserted_readings or self.changed_ids)


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class GlucoseEventEngine:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
        hooks: Optional[EngineHooks] = None,
        patient_id: str = DEFAULT_PATIENT,
    ):
        self.settings = settings or get_settings()
        self.clock = clock
        self.hooks = hooks or EngineHooks()
        self.patient_id = patient_id
        self.tz = resolve_timezone(self.settings.display.timezone)

        self.readings = ReadingStore()
        self.events = EventStore()
        self.analysis_log = AnalysisLog()
        self.slices = TimeSliceLocks()
        self.window_builder = WindowBuilder(self.events, self.settings.windows)
        self.scheduler = RecomputeScheduler(
            self.events,
            self.readings,
            self.analysis_log,
            self.settings.analysis,
            self.tz,
            clock=clock,
            hooks=self.hooks,
            patient_id=patient_id,
        )
        self._day_stats: dict[date, DayStats] = {}

    # ------------------------------------------------------------------
    # ingestion
    # ------------------------------------------------------------------

    def _accept_readings(self, readings: Iterable[Reading], report: CycleReport) -> list[Reading]:
        accepted = []
        for reading in readings:
            try:
                valid = validate_reading(reading)
                if valid.patient_id != self.patient_id:
                    raise ValidationError(
                        f"Reading for patient {valid.patient_id!r} sent to engine for {self.patient_id!r}"
                    )
            except ValidationError as exc:
                logger.warning("Rejected reading: %s", exc)
                report.rejected.append(exc)
                continue
            accepted.append(valid)
        return accepted

    def _accept_notes(self, notes: Iterable[Note], report: CycleReport) -> list[Note]:
        folder = self.settings.analysis.notes_folder
        accepted = []
        for note in notes:
            try:
                accepted.append(validate_note(note, folder))
            except ValidationError as exc:
                logger.warning("Rejected note: %s", exc)
                report.rejected.append(exc)
        return accepted

    def _ingest_slice(self, stamps: list[datetime]) -> tuple[datetime, datetime]:
        """
        Time range whose events this cycle may touch: the predecessor of the
        earliest input (which may be widened) through the latest input's
        longest possible window.
        """
        windows = self.settings.windows
        earliest, latest = min(stamps), max(stamps)
        start = earliest - windows.default_lookback
        prev_event, _ = self.events.neighbors(earliest)
        if prev_event is not None:
            start = min(start, prev_event.event_timestamp)
        for event in self.events.windows_containing_any([earliest]):
            start = min(start, event.event_timestamp)
        return start, latest + windows.max_lookahead_no_next

    async def ingest(self, readings: Iterable[Reading] = (), notes: Iterable[Note] = ()) -> CycleReport:
        """Processes one batch of new readings and notes into event state transitions."""
        report = CycleReport()
        new_readings = self._accept_readings(readings, report)
        new_notes = self._accept_notes(notes, report)

        stamps = [r.timestamp for r in new_readings] + [n.timestamp for n in new_notes]
        if not stamps:
            logger.debug("Ingestion cycle with no usable input")
            return report

        touched_dates: set[date] = set()
        start, end = self._ingest_slice(stamps)
        async with self.slices.hold(start, end):
            now = self.clock()

            inserted = []
            for reading in new_readings:
                if self.readings.add(reading):
                    inserted.append(reading)
                else:
                    report.duplicate_readings += 1
            report.inserted_readings = len(inserted)
            touched_dates.update(local_date_of(r.timestamp, self.tz) for r in inserted)

            build = self.window_builder.insert_notes(new_notes, now)
            report.created = [e.id for e in build.created]
            report.widened = [e.id for e in build.widened]
            report.duplicate_notes = build.duplicates
            report.violations = build.violations

            self.scheduler.mark_stale(report.widened, AnalysisReason.BOUNDARY_CHANGED)
            covering = self.events.windows_containing_any(r.timestamp for r in inserted)
            self.scheduler.mark_stale([e.id for e in covering], AnalysisReason.NEW_READINGS)

            recompute = self.scheduler.recompute_dirty()
            report.recomputed = recompute.recomputed
            report.needs_reanalysis = recompute.needs_reanalysis

            for event_id in report.changed_ids:
                touched_dates.add(local_date_of(self.events.require(event_id).event_timestamp, self.tz))
            self._refresh_day_stats(touched_dates)

        if report.has_changes:
            logger.info(
                "Cycle: %s new readings, %s new events, %s widened, %s recomputed, %s awaiting analysis",
                report.inserted_readings,
                len(report.created),
                len(report.widened),
                len(report.recomputed),
                len(report.needs_reanalysis),
            )
        else:
            logger.debug("Cycle produced no changes")
        await self.hooks.emit_events_changed(report.changed_ids)
        return report

    async def run_cycle(
        self,
        fetch_readings: Callable[[Optional[datetime]], Any],
        fetch_notes: Callable[[Optional[datetime], str], Any],
        since_readings: Optional[datetime] = None,
        since_notes: Optional[datetime] = None,
    ) -> CycleReport:
        """
        Pulls input from both collaborators, then ingests it.

        Without explicit cursors the collaborators return their whole recent
        horizon. Late notes and backfilled readings keep their original
        timestamps, so novelty is decided here: notes by uuid, readings by
        the store's (patient, timestamp) key.
        """
        readings = await _maybe_await(fetch_readings(since_readings))
        notes = await _maybe_await(fetch_notes(since_notes, self.settings.analysis.notes_folder))
        unseen = [n for n in notes or () if self.events.by_uuid(n.uuid) is None]
        return await self.ingest(readings or (), unseen)

    # ------------------------------------------------------------------
    # analysis
    # ------------------------------------------------------------------

    async def analyze_pending(self, request_analysis: RequestAnalysis) -> AnalysisPassReport:
        recompute = self.scheduler.recompute_dirty()
        if recompute.recomputed:
            await self.hooks.emit_events_changed(recompute.recomputed)
        report = await self.scheduler.analyze_pending(request_analysis)
        touched = {
            local_date_of(self.events.require(event_id).event_timestamp, self.tz)
            for event_id in report.analyzed
        }
        self._refresh_day_stats(touched)
        return report

    async def reprocess_event(self, event_id: int) -> bool:
        """Marks one event stale so the next pass recomputes and re-analyzes it."""
        event = self.events.get(event_id)
        if event is None:
            return False
        async with self.slices.hold(event.period_start, event.period_end):
            self.scheduler.mark_stale([event_id], AnalysisReason.MANUAL)
        logger.info("Event %s queued for manual reprocessing", event_id)
        return True

    # ------------------------------------------------------------------
    # day statistics
    # ------------------------------------------------------------------

    def _classification_counts(self, events: list[Event]) -> dict[Classification, int]:
        counts = {c: 0 for c in Classification}
        for event in events:
            if event.classification is not None:
                counts[event.classification] += 1
        return counts

    def _period_stats(self, start: datetime, end: datetime) -> tuple:
        ranges = self.settings.ranges
        readings = self.readings.in_range(start, end, self.patient_id)
        glucose = compute_glucose_stats(readings, ranges.low_mgdl, ranges.high_mgdl)
        events = self.events.in_range(start, end)
        return glucose, tuple(e.id for e in events), self._classification_counts(events)

    def _refresh_day_stats(self, dates: Iterable[date]) -> None:
        for local_day in sorted(set(dates)):
            start, end = day_bounds_utc(local_day, self.tz)
            glucose, event_ids, counts = self._period_stats(start, end)
            self._day_stats[local_day] = DayStats(
                start=start,
                end=end,
                glucose=glucose,
                event_ids=event_ids,
                classification_counts=counts,
                local_date=local_day,
                timezone=self.tz.key,
            )
            logger.debug("Day stats refreshed for %s: %s readings", local_day, glucose.reading_count)

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def get_event(self, event_id: int) -> Optional[Event]:
        return self.events.get(event_id)

    def list_events_in_range(self, start: datetime, end: datetime) -> list[Event]:
        return self.events.in_range(start, end)

    def get_overlapping_events(self, event_id: int) -> list[Event]:
        event = self.events.get(event_id)
        if event is None:
            return []
        return overlapping_in_store(event, self.events)

    def get_analysis_history(self, event_id: int) -> tuple[AnalysisRecord, ...]:
        return self.analysis_log.history(event_id)

    def get_current_analysis(self, event_id: int) -> Optional[AnalysisRecord]:
        return self.analysis_log.current(event_id)

    def get_day_stats(self, local_day: date) -> Optional[DayStats]:
        """Cached stats for a local calendar day; None when no cycle touched it."""
        return self._day_stats.get(local_day)

    def get_period_stats(self, start: datetime, end: datetime) -> PeriodStats:
        glucose, event_ids, counts = self._period_stats(start, end)
        return PeriodStats(start=start, end=end, glucose=glucose, event_ids=event_ids, classification_counts=counts)

    def compare_periods(
        self, a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime
    ) -> PeriodComparison:
        a = self.get_period_stats(a_start, a_end)
        b = self.get_period_stats(b_start, b_end)
        return PeriodComparison(
            period_a=a,
            period_b=b,
            avg_delta=delta(a.glucose.avg, b.glucose.avg),
            std_dev_delta=delta(a.glucose.std_dev, b.glucose.std_dev),
            time_in_range_delta=delta(a.glucose.time_in_range_pct, b.glucose.time_in_range_pct),
            time_below_delta=delta(a.glucose.time_below_pct, b.glucose.time_below_pct),
            time_above_delta=delta(a.glucose.time_above_pct, b.glucose.time_above_pct),
            reading_count_delta=b.glucose.reading_count - a.glucose.reading_count,
            event_count_delta=b.event_count - a.event_count,
        )
