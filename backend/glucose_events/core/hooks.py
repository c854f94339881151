import inspect
import logging
from typing import Any, Callable, Optional

from glucose_events.models.event import AiUsageRecord, AnalysisRecord

logger = logging.getLogger(__name__)

EventsChangedHook = Callable[[list[int]], Any]
AnalysisLoggedHook = Callable[[AiUsageRecord, Optional[AnalysisRecord]], Any]


class EngineHooks:
    """
    Notification hooks for the push-notification and usage-tracking
    collaborators. Hooks may be plain callables or coroutine functions.
    A failing hook is logged and never interrupts the core.
    """

    def __init__(self) -> None:
        self._events_changed: list[EventsChangedHook] = []
        self._analysis_logged: list[AnalysisLoggedHook] = []

    def on_events_changed(self, hook: EventsChangedHook) -> EventsChangedHook:
        self._events_changed.append(hook)
        return hook

    def on_analysis_logged(self, hook: AnalysisLoggedHook) -> AnalysisLoggedHook:
        self._analysis_logged.append(hook)
        return hook

    async def _call(self, hook: Callable[..., Any], *args: Any) -> None:
        try:
            result = hook(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.warning("Hook %r failed", getattr(hook, "__name__", hook), exc_info=True)

    async def emit_events_changed(self, event_ids: list[int]) -> None:
        if not event_ids:
            return
        ids = sorted(set(event_ids))
        for hook in list(self._events_changed):
            await self._call(hook, ids)

    async def emit_analysis_logged(self, usage: AiUsageRecord, record: Optional[AnalysisRecord]) -> None:
        for hook in list(self._analysis_logged):
            await self._call(hook, usage, record)
