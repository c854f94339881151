class GlucoseEventsError(Exception):
    """Base class for errors raised by the event-correlation core."""


class ValidationError(GlucoseEventsError):
    """Raised when an input item is malformed and must be skipped."""


class InvariantViolation(GlucoseEventsError):
    """Raised when identity or ordering of stored events would be corrupted.

    These are never auto-resolved: the offending item is skipped and the
    violation is surfaced to the caller for investigation.
    """

    def __init__(self, message: str, *, note_uuid: str | None = None, event_id: int | None = None) -> None:
        super().__init__(message)
        self.note_uuid = note_uuid
        self.event_id = event_id


class TransientExternalError(GlucoseEventsError):
    """Raised when the AI collaborator fails; the event is retried next pass."""


class NightscoutError(GlucoseEventsError):
    """Raised when Nightscout interaction fails."""


__all__ = [
    "GlucoseEventsError",
    "ValidationError",
    "InvariantViolation",
    "TransientExternalError",
    "NightscoutError",
]
