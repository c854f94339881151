import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator

logger = logging.getLogger(__name__)


class TimeSliceLocks:
    """
    Exclusive ownership of contiguous time ranges.

    A holder of [start, end] may mutate any event whose timestamp lies in
    that range. Overlapping requests wait; disjoint ranges proceed in
    parallel.
    """

    def __init__(self) -> None:
        self._held: list[tuple[datetime, datetime]] = []
        self._cond = asyncio.Condition()

    def _overlaps(self, start: datetime, end: datetime) -> bool:
        return any(s <= end and start <= e for s, e in self._held)

    @asynccontextmanager
    async def hold(self, start: datetime, end: datetime) -> AsyncIterator[None]:
        if end < start:
            start, end = end, start
        span = (start, end)
        async with self._cond:
            if self._overlaps(start, end):
                logger.debug("Waiting for time slice %s - %s", start.isoformat(), end.isoformat())
            await self._cond.wait_for(lambda: not self._overlaps(start, end))
            self._held.append(span)
        try:
            yield
        finally:
            async with self._cond:
                self._held.remove(span)
                self._cond.notify_all()
