import pytest

from glucose_events.models.enums import Classification
from glucose_events.services.classification_parser import parse_classification


def test_leading_tag_is_stripped():
    assert parse_classification("[GOOD] Great control today") == ("Great control today", Classification.GOOD)


@pytest.mark.parametrize(
    "raw,expected_text,expected",
    [
        ("[bad] Long spike", "Long spike", Classification.BAD),
        ("[Concerning]\nSlow recovery.", "Slow recovery.", Classification.CONCERNING),
        ("  [GOOD]   Stable", "Stable", Classification.GOOD),
        ("[CLASSIFICATION: concerning]\n\nPeak at 210.", "Peak at 210.", Classification.CONCERNING),
    ],
)
def test_tag_variants(raw, expected_text, expected):
    assert parse_classification(raw) == (expected_text, expected)


@pytest.mark.parametrize(
    "raw",
    [
        "Great control today",
        "Overall [GOOD] response",
        "[GREAT] Nice",
        "[GOOD Nice",
        "GOOD] Nice",
        "**[GOOD]** Nice",
    ],
)
def test_missing_or_malformed_tag_keeps_text(raw):
    assert parse_classification(raw) == (raw, None)


def test_empty_input():
    assert parse_classification(None) == ("", None)
    assert parse_classification("   ") == ("   ", None)