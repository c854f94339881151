from typing import Optional

# USD per 1M tokens: (input, output)
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-5.2": (1.75, 14.00),
    "gpt-5-mini": (0.30, 1.00),
    "gpt-4.1": (2.00, 8.00),
    "gpt-4.1-mini": (0.40, 1.60),
    "gpt-4.1-nano": (0.10, 0.40),
    "gpt-4o": (2.50, 10.00),
    "gpt-4o-mini": (0.15, 0.60),
    "o4-mini": (1.10, 4.40),
    "o3-mini": (1.10, 4.40),
    "o1-mini": (3.00, 12.00),
    "gpt-4-turbo": (10.0, 30.0),
    "gpt-3.5-turbo": (0.50, 1.50),
}


def _pricing_for(model: Optional[str]) -> Optional[tuple[float, float]]:
    if not model:
        return None
    key = model.strip().lower()
    if key in MODEL_PRICING:
        return MODEL_PRICING[key]
    # dated snapshots, e.g. "gpt-5-mini-2025-08-07"; longest prefix wins so
    # "gpt-4o-mini-..." is not priced as "gpt-4o"
    prefixes = [k for k in MODEL_PRICING if key.startswith(k)]
    if not prefixes:
        return None
    return MODEL_PRICING[max(prefixes, key=len)]


def compute_cost(model: Optional[str], input_tokens: int, output_tokens: int) -> float:
    pricing = _pricing_for(model)
    if pricing is None:
        return 0.0
    input_per_m, output_per_m = pricing
    return (input_tokens * input_per_m + output_tokens * output_per_m) / 1_000_000.0
