import pytest

from glucose_events.services.ai_cost import compute_cost


def test_exact_model_price():
    assert compute_cost("gpt-5-mini", 1_000_000, 1_000_000) == pytest.approx(1.30)


def test_dated_snapshot_uses_longest_prefix():
    assert compute_cost("gpt-5-mini-2025-08-07", 1_000_000, 0) == pytest.approx(0.30)
    assert compute_cost("gpt-4o-mini-2024-07-18", 1_000_000, 0) == pytest.approx(0.15)
    assert compute_cost("GPT-4o", 0, 1_000_000) == pytest.approx(10.0)


def test_unknown_model_is_free():
    assert compute_cost("llama-local", 5000, 5000) == 0.0
    assert compute_cost(None, 5000, 5000) == 0.0
