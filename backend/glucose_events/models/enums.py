from enum import Enum
from typing import Optional


class Trend(str, Enum):
    FAST_FALL = "fast-fall"
    FALL = "fall"
    STABLE = "stable"
    RISE = "rise"
    FAST_RISE = "fast-rise"
    UNKNOWN = "unknown"


# Nightscout / Dexcom direction arrows
_DIRECTION_TO_TREND = {
    "DoubleUp": Trend.FAST_RISE,
    "SingleUp": Trend.RISE,
    "FortyFiveUp": Trend.RISE,
    "Flat": Trend.STABLE,
    "FortyFiveDown": Trend.FALL,
    "SingleDown": Trend.FALL,
    "DoubleDown": Trend.FAST_FALL,
}


def trend_from_direction(direction: Optional[str]) -> Trend:
    if not direction:
        return Trend.UNKNOWN
    return _DIRECTION_TO_TREND.get(direction.strip(), Trend.UNKNOWN)


class EventStatus(str, Enum):
    FRESH = "fresh"
    NEEDS_RECOMPUTE = "needs_recompute"
    NEEDS_REANALYSIS = "needs_reanalysis"
    ANALYZING = "analyzing"
    CURRENT = "current"


class Classification(str, Enum):
    GOOD = "good"
    CONCERNING = "concerning"
    BAD = "bad"


class AnalysisReason(str, Enum):
    INITIAL = "Initial analysis"
    NEW_READINGS = "Re-analysis: new glucose data received"
    BOUNDARY_CHANGED = "Re-analysis: period boundary changed due to new event"
    MANUAL = "Re-analysis: manually requested"
