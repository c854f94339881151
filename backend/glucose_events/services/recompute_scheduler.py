"""
Per-event recompute / re-analysis state machine.

    FRESH ──┐
    CURRENT ├─(readings in window, bounds changed)─> NEEDS_RECOMPUTE
    NEEDS_REANALYSIS ┘
    NEEDS_RECOMPUTE ─(stats re-run, material change)─> NEEDS_REANALYSIS
    NEEDS_RECOMPUTE ─(stats re-run, nothing new)─────> CURRENT
    NEEDS_REANALYSIS ─(cooldown passed)──────────────> ANALYZING
    ANALYZING ─(success)─> CURRENT
    ANALYZING ─(failure / cancellation)─> NEEDS_REANALYSIS

An event that was never analyzed is not cooldown-gated. Events marked stale
while ANALYZING stay in the dirty set and drop back to NEEDS_RECOMPUTE when
the in-flight call returns.

The scheduler never performs network I/O itself; the AI collaborator is an
injected coroutine and at most one call per event is in flight at a time.
"""

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional, Union
from zoneinfo import ZoneInfo

from glucose_events.core.errors import TransientExternalError
from glucose_events.core.hooks import EngineHooks
from glucose_events.core.settings import AnalysisConfig
from glucose_events.models.enums import AnalysisReason, EventStatus
from glucose_events.models.event import AiUsageRecord, AnalysisRecord, Event
from glucose_events.models.glucose import DEFAULT_PATIENT
from glucose_events.services.ai_cost import compute_cost
from glucose_events.services.classification_parser import parse_classification
from glucose_events.services.event_store import AnalysisLog, EventStore, ReadingStore
from glucose_events.services.overlap_resolver import overlapping_in_store
from glucose_events.services.prompt_builder import build_event_prompts
from glucose_events.services.stats_calculator import compute_event_stats

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalysisResult:
    text: Optional[str]
    success: bool
    error: Optional[str] = None
    model: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    duration_ms: Optional[int] = None


RequestAnalysis = Callable[[str, str], Awaitable[Union[AnalysisResult, tuple]]]
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def coerce_result(raw: Any) -> AnalysisResult:
    """Accepts an AnalysisResult or a plain (text, success, error_info) tuple."""
    if isinstance(raw, AnalysisResult):
        return raw
    if isinstance(raw, tuple) and len(raw) == 3:
        text, success, error = raw
        return AnalysisResult(text=text, success=bool(success), error=str(error) if error else None)
    raise TransientExternalError(f"Unexpected analysis result type {type(raw).__name__}")


# Earlier entries win when reasons are merged.
_REASON_PRIORITY = (
    AnalysisReason.INITIAL,
    AnalysisReason.MANUAL,
    AnalysisReason.BOUNDARY_CHANGED,
    AnalysisReason.NEW_READINGS,
)
# These re-analyze even when the recomputed stats match the last analysis.
FORCED_REASONS = frozenset(
    {AnalysisReason.INITIAL, AnalysisReason.MANUAL, AnalysisReason.BOUNDARY_CHANGED}
)


def merge_reason(
    current: Optional[AnalysisReason], new: Optional[AnalysisReason]
) -> Optional[AnalysisReason]:
    candidates = [r for r in (current, new) if r is not None]
    if not candidates:
        return None
    return min(candidates, key=_REASON_PRIORITY.index)


@dataclass
class RecomputeResult:
    recomputed: list[int] = field(default_factory=list)
    needs_reanalysis: list[int] = field(default_factory=list)
    unchanged: list[int] = field(default_factory=list)
    in_flight: list[int] = field(default_factory=list)


@dataclass(frozen=True)
class Admission:
    event: Event
    reason: AnalysisReason


@dataclass
class AnalysisOutcome:
    event_id: int
    success: bool
    record: Optional[AnalysisRecord] = None
    error: Optional[str] = None


@dataclass
class AnalysisPassReport:
    analyzed: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    deferred: list[int] = field(default_factory=list)
    in_flight: list[int] = field(default_factory=list)
    errors: dict[int, str] = field(default_factory=dict)

    @property
    def changed_ids(self) -> list[int]:
        return sorted(self.analyzed + self.failed)


class RecomputeScheduler:
    def __init__(
        self,
        events: EventStore,
        readings: ReadingStore,
        analysis_log: AnalysisLog,
        config: AnalysisConfig,
        tz: ZoneInfo,
        clock: Clock = utc_now,
        hooks: Optional[EngineHooks] = None,
        patient_id: str = DEFAULT_PATIENT,
    ):
        self.events = events
        self.readings = readings
        self.analysis_log = analysis_log
        self.config = config
        self.tz = tz
        self.clock = clock
        self.hooks = hooks or EngineHooks()
        self.patient_id = patient_id
        # per-event exclusion tokens for in-flight analyses
        self._tokens: dict[int, object] = {}

    def in_flight_ids(self) -> list[int]:
        return sorted(self._tokens)

    # ------------------------------------------------------------------
    # staleness + recompute
    # ------------------------------------------------------------------

    def mark_stale(self, event_ids: Iterable[int], reason: AnalysisReason) -> list[int]:
        now = self.clock()
        marked = []
        for event_id in event_ids:
            event = self.events.get(event_id)
            if event is None:
                continue
            self.events.mark_dirty(event_id)
            marked.append(event_id)

            if event.status == EventStatus.ANALYZING:
                # applied when the in-flight call returns
                self.events.replace(replace(event, pending_reason=merge_reason(event.pending_reason, reason)))
                continue

            if not event.has_analysis:
                pending = AnalysisReason.INITIAL
            elif event.status in (EventStatus.NEEDS_RECOMPUTE, EventStatus.NEEDS_REANALYSIS):
                pending = merge_reason(event.pending_reason, reason)
            else:
                pending = reason
            self.events.replace(
                replace(event, status=EventStatus.NEEDS_RECOMPUTE, pending_reason=pending, updated_at=now)
            )
        return marked

    def recompute_dirty(self) -> RecomputeResult:
        """Re-runs stats for every dirty event and decides which need analysis."""
        now = self.clock()
        result = RecomputeResult()

        for event_id in self.events.dirty_ids():
            event = self.events.require(event_id)
            if event.status == EventStatus.ANALYZING:
                result.in_flight.append(event_id)
                continue

            readings = self.readings.in_range(event.period_start, event.period_end, self.patient_id)
            stats = compute_event_stats(readings, event.event_timestamp)
            baseline = self.analysis_log.current(event_id)

            if baseline is None:
                needs, reason = True, AnalysisReason.INITIAL
            elif event.pending_reason in FORCED_REASONS:
                needs, reason = True, event.pending_reason
            else:
                needs = stats.differs_from(baseline.stats)
                reason = event.pending_reason or AnalysisReason.NEW_READINGS

            if stats.differs_from(event.stats):
                logger.info(
                    "Event %s stats changed: readings %s -> %s, at_event %s -> %s, spike %s -> %s",
                    event_id,
                    event.stats.count,
                    stats.count,
                    event.stats.at_event,
                    stats.at_event,
                    event.stats.spike,
                    stats.spike,
                )

            status = EventStatus.NEEDS_REANALYSIS if needs else EventStatus.CURRENT
            self.events.replace(
                replace(
                    event,
                    stats=stats,
                    status=status,
                    pending_reason=reason if needs else None,
                    updated_at=now,
                )
            )
            self.events.clear_dirty(event_id)
            result.recomputed.append(event_id)
            if needs:
                result.needs_reanalysis.append(event_id)
            else:
                result.unchanged.append(event_id)

        return result

    # ------------------------------------------------------------------
    # admission (cooldown gate)
    # ------------------------------------------------------------------

    def cooldown_remaining(self, event: Event, now: datetime) -> float:
        """Seconds until the event may be re-analyzed; 0 when it may run now."""
        if event.last_analyzed_at is None:
            return 0.0
        elapsed = now - event.last_analyzed_at
        remaining = self.config.reanalysis_min_interval - elapsed
        return max(0.0, remaining.total_seconds())

    def admit(self, now: Optional[datetime] = None) -> tuple[list[Admission], list[int], list[int]]:
        """
        Moves every eligible NEEDS_REANALYSIS event to ANALYZING and takes
        its exclusion token. Returns (admitted, deferred_by_cooldown, in_flight).
        """
        now = now or self.clock()
        admitted: list[Admission] = []
        deferred: list[int] = []
        in_flight: list[int] = []

        for event in self.events.ordered():
            if event.status == EventStatus.ANALYZING or event.id in self._tokens:
                in_flight.append(event.id)
                continue
            if event.status != EventStatus.NEEDS_REANALYSIS:
                continue
            remaining = self.cooldown_remaining(event, now)
            if remaining > 0:
                logger.debug(
                    "Deferring re-analysis of event %s: last analysis %s, %.0fs of cooldown left",
                    event.id,
                    event.last_analyzed_at.isoformat(),
                    remaining,
                )
                deferred.append(event.id)
                continue

            self._tokens[event.id] = object()
            reason = event.pending_reason or AnalysisReason.NEW_READINGS
            analyzing = replace(event, status=EventStatus.ANALYZING, pending_reason=None, updated_at=now)
            self.events.replace(analyzing)
            admitted.append(Admission(event=analyzing, reason=reason))

        return admitted, deferred, in_flight

    # ------------------------------------------------------------------
    # running analyses
    # ------------------------------------------------------------------

    def _build_prompts(self, event: Event) -> tuple[str, str]:
        readings = self.readings.in_range(event.period_start, event.period_end, self.patient_id)
        overlapping = overlapping_in_store(event, self.events)
        return build_event_prompts(event, readings, overlapping, self.tz)

    def _settle(self, event_id: int, reason: AnalysisReason) -> Event:
        """Returns a failed/cancelled event to the queue."""
        current = self.events.require(event_id)
        if self.events.is_dirty(event_id):
            status = EventStatus.NEEDS_RECOMPUTE
        else:
            status = EventStatus.NEEDS_REANALYSIS
        updated = replace(
            current,
            status=status,
            pending_reason=merge_reason(reason, current.pending_reason),
            updated_at=self.clock(),
        )
        self.events.replace(updated)
        return updated

    def _usage(
        self,
        admission: Admission,
        result: Optional[AnalysisResult],
        started: float,
        success: bool,
        error: Optional[str] = None,
    ) -> AiUsageRecord:
        model = (result.model if result and result.model else None) or self.config.model
        input_tokens = result.input_tokens if result else 0
        output_tokens = result.output_tokens if result else 0
        duration_ms = result.duration_ms if result and result.duration_ms is not None else int(
            (time.perf_counter() - started) * 1000
        )
        return AiUsageRecord(
            event_id=admission.event.id,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            success=success,
            called_at=self.clock(),
            reason=admission.reason.value,
            duration_ms=duration_ms,
            cost_usd=compute_cost(model, input_tokens, output_tokens),
            error=error,
        )

    async def _fail(
        self, admission: Admission, result: Optional[AnalysisResult], started: float, error: str
    ) -> AnalysisOutcome:
        event_id = admission.event.id
        self._settle(event_id, admission.reason)
        logger.warning("AI analysis failed for event %s (%s): %s", event_id, admission.reason.value, error)
        await self.hooks.emit_analysis_logged(self._usage(admission, result, started, False, error), None)
        return AnalysisOutcome(event_id=event_id, success=False, error=error)

    async def _succeed(self, admission: Admission, result: AnalysisResult, started: float) -> AnalysisOutcome:
        snapshot = admission.event
        now = self.clock()
        text, classification = parse_classification(result.text)
        record = AnalysisRecord(
            id=self.analysis_log.next_id(),
            event_id=snapshot.id,
            analyzed_at=now,
            reason=admission.reason,
            period_start=snapshot.period_start,
            period_end=snapshot.period_end,
            stats=snapshot.stats,
            text=text,
            classification=classification,
            model=result.model or self.config.model,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
        )
        self.analysis_log.append(record)

        current = self.events.require(snapshot.id)
        if self.events.is_dirty(snapshot.id):
            status = EventStatus.NEEDS_RECOMPUTE
            pending = current.pending_reason or AnalysisReason.NEW_READINGS
        else:
            status, pending = EventStatus.CURRENT, None
        self.events.replace(
            replace(
                current,
                status=status,
                pending_reason=pending,
                last_analyzed_at=now,
                classification=classification,
                analysis_text=text,
                updated_at=now,
            )
        )
        logger.info(
            "AI analysis complete for event %s (%s). Classification: %s",
            snapshot.id,
            admission.reason.value,
            classification.value if classification else None,
        )
        await self.hooks.emit_analysis_logged(self._usage(admission, result, started, True), record)
        return AnalysisOutcome(event_id=snapshot.id, success=True, record=record)

    async def run_admitted(
        self,
        admission: Admission,
        request_analysis: RequestAnalysis,
        limiter: Optional[asyncio.Semaphore] = None,
    ) -> AnalysisOutcome:
        """Awaits the AI collaborator for one admitted event, holding its token."""
        event_id = admission.event.id
        started = time.perf_counter()
        result: Optional[AnalysisResult] = None
        try:
            try:
                async with limiter or contextlib.nullcontext():
                    started = time.perf_counter()
                    system_prompt, user_prompt = self._build_prompts(admission.event)
                    result = coerce_result(await request_analysis(system_prompt, user_prompt))
                if not result.success or not (result.text or "").strip():
                    raise TransientExternalError(result.error or "AI collaborator returned an empty analysis")
            except asyncio.CancelledError:
                self._settle(event_id, admission.reason)
                logger.warning("Analysis of event %s cancelled; it will be retried", event_id)
                raise
            except TransientExternalError as exc:
                return await self._fail(admission, result, started, str(exc))
            except Exception as exc:
                logger.warning("AI collaborator raised for event %s", event_id, exc_info=True)
                return await self._fail(admission, result, started, f"{type(exc).__name__}: {exc}")
            return await self._succeed(admission, result, started)
        finally:
            self._tokens.pop(event_id, None)

    async def analyze_pending(self, request_analysis: RequestAnalysis) -> AnalysisPassReport:
        """One scheduling pass: admit what the cooldown allows and analyze it in parallel."""
        admitted, deferred, in_flight = self.admit()
        report = AnalysisPassReport(deferred=deferred, in_flight=in_flight)
        if not admitted:
            if deferred:
                logger.debug("%s event(s) waiting for the re-analysis cooldown", len(deferred))
            return report

        logger.info("Analyzing %s event(s); %s deferred by cooldown", len(admitted), len(deferred))
        limiter = asyncio.Semaphore(self.config.max_parallel)
        outcomes = await asyncio.gather(
            *(self.run_admitted(admission, request_analysis, limiter) for admission in admitted)
        )
        for outcome in outcomes:
            if outcome.success:
                report.analyzed.append(outcome.event_id)
            else:
                report.failed.append(outcome.event_id)
                report.errors[outcome.event_id] = outcome.error or "unknown error"

        await self.hooks.emit_events_changed(report.changed_ids)
        return report
