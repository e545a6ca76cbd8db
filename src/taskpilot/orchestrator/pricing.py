"""Token-to-credit conversion for tools that report tokens but no credits."""

from __future__ import annotations

import math
import os

DEFAULT_CREDITS_PER_1K = 3.0

MODEL_CREDITS_PER_1K: dict[str, float] = {
    "claude-haiku-4-5-20250529": 1.0,
    "claude-sonnet-4-5-20250929": 3.0,
    "claude-opus-4-5-20251101": 15.0,
    "gpt-3.5-turbo": 0.5,
    "gpt-4o-mini": 0.15,
    "gpt-4o": 5.0,
    "gpt-4-turbo": 10.0,
    "gemini-1.5-flash": 0.075,
    "gemini-2.0-flash-exp": 0.075,
    "gemini-1.5-pro": 1.25,
}


def calculate_credits(model: str | None, tokens: int) -> int:
    """Credits for `tokens` on `model`; at least 1 when any tokens were used."""

    if tokens <= 0:
        return 0
    rate = credits_per_1k(model)
    return max(1, math.ceil((tokens / 1000) * rate))


def credits_per_1k(model: str | None) -> float:
    overrides = _parse_credit_mapping(os.getenv("TASKPILOT_MODEL_CREDITS", ""))
    name = (model or "").strip()
    if name in overrides:
        return overrides[name]
    if name in MODEL_CREDITS_PER_1K:
        return MODEL_CREDITS_PER_1K[name]
    return overrides.get("*", DEFAULT_CREDITS_PER_1K)


def _parse_credit_mapping(raw: str) -> dict[str, float]:
    """Parse `TASKPILOT_MODEL_CREDITS` mapping.

    Format:
    - `model:credits_per_1k`
    - multiple entries separated by `,`
    - `*` as model sets the fallback rate for unknown models
    """

    parsed: dict[str, float] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value or ":" not in value:
            continue
        model, rate = (part.strip() for part in value.rsplit(":", 1))
        if not model:
            continue
        try:
            parsed[model] = float(rate)
        except ValueError:
            continue
    return parsed
