import statistics
from typing import Sequence
from zoneinfo import ZoneInfo

from glucose_events.models.event import Event
from glucose_events.models.glucose import Reading
from glucose_events.utils.timezone import format_datetime, format_time

MAX_READINGS_BEFORE = 10
MAX_READINGS_AFTER = 15
MAX_CONTEXT_CHARS = 200

SYSTEM_PROMPT = """You are a diabetes management assistant analyzing glucose responses to food and activities.
The user logs meals and activities as short notes. Given a note plus the glucose readings around it,
provide a clear and helpful analysis.

Your response MUST start with exactly one classification tag on its own line:
[GOOD], [CONCERNING] or [BAD]

- GOOD: well controlled. Spike <= 30 mg/dL, stayed within 70-180, good recovery.
- CONCERNING: spike 30-60 mg/dL, briefly above range, or slow recovery.
- BAD: spike > 60 mg/dL, extended time above range, poor recovery, or hypoglycemia.

After the tag cover baseline, response and peak, spike size, recovery, an overall
assessment and one practical tip. If other events fall inside the same glucose window,
explain how they likely influenced the response and say so when the main event's
effect cannot be isolated. Keep it to 2-3 short paragraphs, mg/dL units, markdown,
no title heading. All timestamps are in the user's local time."""


def truncate(text: str, max_length: int = MAX_CONTEXT_CHARS) -> str:
    if not text or len(text) <= max_length:
        return text
    return text[:max_length] + "…"


def _fmt(value: float) -> str:
    return f"{value:.0f}" if float(value).is_integer() else f"{value:.1f}"


def _before_section(event: Event, before: Sequence[Reading], tz: ZoneInfo) -> list[str]:
    lines = ["=== GLUCOSE DATA BEFORE EVENT ==="]
    if not before:
        lines.append("No glucose readings before the event.")
        return lines
    values = [r.value for r in before]
    last = before[-1]
    lines.append(f"Readings: {len(before)}")
    lines.append(f"Range: {_fmt(min(values))} – {_fmt(max(values))} mg/dL")
    lines.append(f"Average: {statistics.fmean(values):.1f} mg/dL")
    lines.append(f"Last reading before event: {_fmt(last.value)} mg/dL at {format_time(last.timestamp, tz)}")
    lines.append("Recent readings before:")
    for r in before[-MAX_READINGS_BEFORE:]:
        lines.append(f"  {format_datetime(r.timestamp, tz)} → {_fmt(r.value)} mg/dL")
    return lines


def _after_section(event: Event, after: Sequence[Reading], tz: ZoneInfo) -> list[str]:
    lines = ["=== GLUCOSE DATA AFTER EVENT ==="]
    if not after:
        lines.append("No glucose readings after the event.")
        return lines
    values = [r.value for r in after]
    peak = max(after, key=lambda r: r.value)
    lines.append(f"Readings: {len(after)}")
    lines.append(f"Range: {_fmt(min(values))} – {_fmt(max(values))} mg/dL")
    lines.append(f"Average: {statistics.fmean(values):.1f} mg/dL")
    lines.append(f"Peak: {_fmt(peak.value)} mg/dL at {format_time(peak.timestamp, tz)}")
    if event.stats.spike is not None:
        lines.append(f"Spike from baseline: {event.stats.spike:+.1f} mg/dL")
    minutes_to_peak = (peak.timestamp - event.event_timestamp).total_seconds() / 60
    lines.append(f"Time to peak: {minutes_to_peak:.0f} minutes")
    lines.append("Readings after event:")
    for r in after[:MAX_READINGS_AFTER]:
        lines.append(f"  {format_datetime(r.timestamp, tz)} → {_fmt(r.value)} mg/dL")
    return lines


def _overlap_section(event: Event, overlapping: Sequence[Event], tz: ZoneInfo) -> list[str]:
    if not overlapping:
        return []
    lines = [
        "",
        "=== OTHER EVENTS IN THIS GLUCOSE WINDOW ===",
        f"There are {len(overlapping)} other event(s) within this event's glucose observation period.",
        "These may have influenced the glucose response you see above.",
        "",
    ]
    for other in overlapping:
        offset = (other.event_timestamp - event.event_timestamp).total_seconds() / 60
        direction = "after" if offset >= 0 else "before"
        lines.append(
            f'  • "{other.note_title}" at {format_time(other.event_timestamp, tz)} '
            f"({abs(offset):.0f} min {direction} this event)"
        )
        if other.note_text and other.note_text.strip():
            lines.append(f"    Content: {truncate(other.note_text.strip())}")
        if other.stats.at_event is not None:
            lines.append(f"    Glucose at that event: {_fmt(other.stats.at_event)} mg/dL")
        if other.classification is not None:
            lines.append(f"    Classification: {other.classification.value}")
        lines.append("")
    return lines


def build_event_prompts(
    event: Event,
    readings: Sequence[Reading],
    overlapping: Sequence[Event],
    tz: ZoneInfo,
) -> tuple[str, str]:
    """Returns (system_prompt, user_prompt) for one event analysis."""
    before = [r for r in readings if r.timestamp < event.event_timestamp]
    after = [r for r in readings if r.timestamp >= event.event_timestamp]

    data_lines = _before_section(event, before, tz)
    data_lines.append("")
    data_lines.extend(_after_section(event, after, tz))
    data_lines.extend(_overlap_section(event, overlapping, tz))

    at_event = f"{_fmt(event.stats.at_event)} mg/dL" if event.stats.at_event is not None else "N/A"
    user_prompt = "\n".join(
        [
            f"**Note Title:** {event.note_title}",
            f"**Note Content:** {event.note_text or '(no text content)'}",
            f"**Event Time:** {format_datetime(event.event_timestamp, tz)} (local time)",
            f"**Glucose at Event:** {at_event}",
            "",
            *data_lines,
            "",
            "Please analyze this glucose response.",
        ]
    )
    return SYSTEM_PROMPT, user_prompt
