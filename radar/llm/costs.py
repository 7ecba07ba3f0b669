"""Credit and USD cost estimates for LLM calls."""

from __future__ import annotations

import math

# USD per 1M tokens (input, output)
PRICING = {
    "deepseek-chat": (0.14, 0.28),
    "claude-sonnet-4-5": (3.0, 15.0),
    "claude-opus-4-1": (15.0, 75.0),
    "claude-haiku-4-5": (1.0, 5.0),
}
DEFAULT_PRICING = (1.0, 2.0)


def estimate_usd(input_tokens: int, output_tokens: int, model: str) -> float:
    """Rough USD estimate; dated model ids match their undated family."""
    rates = PRICING.get(model)
    if rates is None:
        rates = next(
            (r for prefix, r in PRICING.items() if model.startswith(prefix)), DEFAULT_PRICING,
        )
    input_rate, output_rate = rates
    return (input_tokens * input_rate + output_tokens * output_rate) / 1_000_000


def estimate_credits(input_tokens: int, output_tokens: int, rates: tuple[float, float]) -> float:
    """Credits from token usage at per-1K rates. Zero rates disable accounting."""
    input_rate, output_rate = rates
    total = input_tokens / 1000 * input_rate + output_tokens / 1000 * output_rate
    return total if math.isfinite(total) and total > 0 else 0.0


def estimate_tokens(text: str) -> int:
    """Approximate token count (about 4 chars per token)."""
    return math.ceil(len(text) / 4)


def estimate_call_credits(
    prompt: str, system: str, max_output_tokens: int, rates: tuple[float, float],
) -> float:
    """Pre-flight upper bound: full prompt plus the maximum output."""
    return estimate_credits(estimate_tokens(prompt) + estimate_tokens(system), max_output_tokens, rates)
