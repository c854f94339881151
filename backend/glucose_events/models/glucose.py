from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from glucose_events.models.enums import Trend

DEFAULT_PATIENT = "default"


@dataclass(frozen=True)
class Reading:
    """A single sensor glucose value (mg/dL) at a UTC instant."""

    value: float
    timestamp: datetime
    trend: Trend = Trend.UNKNOWN
    patient_id: str = DEFAULT_PATIENT

    def __post_init__(self):
        object.__setattr__(self, "value", float(self.value))
        if not isinstance(self.trend, Trend):
            object.__setattr__(self, "trend", Trend(self.trend))

    @property
    def key(self) -> tuple[str, datetime]:
        return (self.patient_id, self.timestamp)


@dataclass(frozen=True)
class Note:
    """A free-text activity note sourced from the notes collaborator."""

    uuid: str
    timestamp: datetime
    text: str
    folder: str
    title: Optional[str] = field(default=None)

    @property
    def display_title(self) -> str:
        if self.title and self.title.strip():
            return self.title.strip()
        first_line = (self.text or "").strip().splitlines()
        return first_line[0].strip() if first_line else "(untitled)"
