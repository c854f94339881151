import re
from typing import Optional

from glucose_events.models.enums import Classification

# "[GOOD] ..." or "[CLASSIFICATION: good] ...", only at the very start
_CLASSIFICATION_RE = re.compile(
    r"^\s*\[(?:CLASSIFICATION:\s*)?(good|concerning|bad)\][ \t]*\r?\n?",
    re.IGNORECASE,
)


def parse_classification(raw_text: Optional[str]) -> tuple[str, Optional[Classification]]:
    """
    Splits a leading traffic-light tag off an analysis response.

    Returns (cleaned_text, classification). When the tag is missing,
    malformed or not at the start, the original text comes back untouched
    with classification None.
    """
    if raw_text is None or not raw_text.strip():
        return raw_text or "", None

    match = _CLASSIFICATION_RE.match(raw_text)
    if not match:
        return raw_text, None

    classification = Classification(match.group(1).lower())
    return raw_text[match.end():].lstrip(), classification
