import math
from dataclasses import replace

from glucose_events.core.errors import ValidationError
from glucose_events.models.glucose import Note, Reading
from glucose_events.utils.timezone import ensure_utc

# Sensors report roughly 40-400 mg/dL; anything outside this is a transport error.
MAX_PLAUSIBLE_MGDL = 1000.0


def validate_reading(reading: Reading) -> Reading:
    if not math.isfinite(reading.value) or reading.value <= 0 or reading.value > MAX_PLAUSIBLE_MGDL:
        raise ValidationError(f"Implausible glucose value {reading.value!r} at {reading.timestamp!r}")
    if not reading.patient_id:
        raise ValidationError("Reading without patient id")
    ts = ensure_utc(reading.timestamp, "reading timestamp")
    if ts is reading.timestamp:
        return reading
    return replace(reading, timestamp=ts)


def validate_note(note: Note, folder: str) -> Note:
    if not note.uuid or not note.uuid.strip():
        raise ValidationError("Note without uuid")
    if (note.folder or "").strip() != folder.strip():
        raise ValidationError(f"Note {note.uuid} belongs to unknown folder {note.folder!r}")
    ts = ensure_utc(note.timestamp, f"note {note.uuid} timestamp")
    if ts is note.timestamp:
        return note
    return replace(note, timestamp=ts)
