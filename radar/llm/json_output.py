"""Lenient JSON extraction from LLM output."""

from __future__ import annotations

import json
import re


def _try_parse(text: str) -> dict | None:
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None
    return data if isinstance(data, dict) else None


def extract_json(text: str) -> dict | None:
    """Extract a JSON object from output that may contain markdown fences or extra text."""
    result = _try_parse(text)
    if result is not None:
        return result

    fenced = re.search(r"```(?:json)?\s*\n?(.*?)\n?```", text, re.DOTALL)
    if fenced:
        result = _try_parse(fenced.group(1))
        if result is not None:
            return result

    # Outermost { ... } block
    brace = re.search(r"\{.*\}", text, re.DOTALL)
    if brace:
        return _try_parse(brace.group(0))
    return None
