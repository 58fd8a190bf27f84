"""Serialize sandbox results and bound them to the output budget.

Truncation is structural so the output always stays valid JSON:

1. long string values are cut, with an in-string marker;
2. lists keep their leading items and end with an omission marker item;
3. mappings keep their leading keys and gain a ``"..."`` marker key.

Each pass is tried in order and the first one that fits is returned. All
passes are pure functions of the input, so the same value and budget always
give the same text.
"""

from __future__ import annotations

import json
import math
from typing import Any

MAX_TOKENS = 6000
CHARS_PER_TOKEN = 4

STRING_CAPS = (2000, 500, 100)
OMITTED_KEY = "..."


def _finite(value: Any) -> Any:
    """Replace NaN and infinities with ``None`` so the text is strict JSON."""
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, list):
        return [_finite(item) for item in value]
    if isinstance(value, dict):
        return {key: _finite(item) for key, item in value.items()}
    return value


def serialize(value: Any) -> str:
    return json.dumps(_finite(value), indent=2, ensure_ascii=False, allow_nan=False)


def budget_chars(max_tokens: int = MAX_TOKENS) -> int:
    return max_tokens * CHARS_PER_TOKEN


def _cap_strings(value: Any, cap: int) -> Any:
    if isinstance(value, str):
        if len(value) <= cap:
            return value
        return f"{value[:cap]}... [{len(value) - cap} chars truncated]"
    if isinstance(value, list):
        return [_cap_strings(item, cap) for item in value]
    if isinstance(value, dict):
        return {key: _cap_strings(item, cap) for key, item in value.items()}
    return value


def _cap_lists(value: Any, limit: int) -> Any:
    if isinstance(value, list):
        kept = [_cap_lists(item, limit) for item in value[:limit]]
        if len(value) > limit:
            kept.append(f"... [{len(value) - limit} more items omitted]")
        return kept
    if isinstance(value, dict):
        return {key: _cap_lists(item, limit) for key, item in value.items()}
    return value


def _cap_keys(value: Any, limit: int) -> Any:
    if isinstance(value, list):
        return [_cap_keys(item, limit) for item in value]
    if isinstance(value, dict):
        items = list(value.items())
        kept = {key: _cap_keys(item, limit) for key, item in items[:limit]}
        if len(items) > limit:
            kept[OMITTED_KEY] = f"[{len(items) - limit} more keys omitted]"
        return kept
    return value


def _longest(value: Any, kind: type) -> int:
    """Largest list length or mapping size anywhere in ``value``."""
    if isinstance(value, list):
        size = len(value) if kind is list else 0
        return max([size, *(_longest(item, kind) for item in value)])
    if isinstance(value, dict):
        size = len(value) if kind is dict else 0
        return max([size, *(_longest(item, kind) for item in value.values())])
    return 0


def _largest_fitting(value: Any, cap, upper: int, limit: int) -> str | None:
    """Binary search the largest uniform cap in ``[0, upper]`` that fits."""
    low, high = 0, upper
    best: str | None = None
    while low <= high:
        middle = (low + high) // 2
        text = serialize(cap(value, middle))
        if len(text) <= limit:
            best = text
            low = middle + 1
        else:
            high = middle - 1
    return best


def truncate_response(value: Any, max_tokens: int = MAX_TOKENS) -> str:
    """Serialize ``value`` as JSON no longer than the token budget allows.

    Args:
        value: Any JSON-compatible data returned by a script.
        max_tokens: Approximate token budget; ``CHARS_PER_TOKEN`` characters each.

    Returns:
        The canonical JSON text if it fits, otherwise a structurally
        truncated JSON text that still parses.
    """
    limit = budget_chars(max_tokens)
    text = serialize(value)
    if len(text) <= limit:
        return text

    capped = value
    for cap in STRING_CAPS:
        capped = _cap_strings(value, cap)
        text = serialize(capped)
        if len(text) <= limit:
            return text

    fitted = _largest_fitting(capped, _cap_lists, _longest(capped, list), limit)
    if fitted is not None:
        return fitted

    listless = _cap_lists(capped, 0)
    fitted = _largest_fitting(listless, _cap_keys, _longest(listless, dict), limit)
    if fitted is not None:
        return fitted

    fallback = serialize(
        f"[output truncated: {len(serialize(value))} chars exceeds budget of {limit}]"
    )
    return fallback if len(fallback) <= limit else serialize("")


__all__ = [
    "CHARS_PER_TOKEN",
    "MAX_TOKENS",
    "budget_chars",
    "serialize",
    "truncate_response",
]
