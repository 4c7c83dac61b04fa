"""Token usage extraction from chat-completion replies."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any


@dataclass(slots=True)
class TokenUsage:
    """Best-effort token usage reported by the model endpoint."""

    prompt_tokens: int | None
    completion_tokens: int | None
    total_tokens: int | None
    usage_status: str


def extract_usage(body: Mapping[str, Any]) -> TokenUsage:
    """Read `usage` from a reply body; derive the total when only parts are reported."""

    usage = body.get("usage")
    if not isinstance(usage, Mapping):
        return TokenUsage(
            prompt_tokens=None,
            completion_tokens=None,
            total_tokens=None,
            usage_status="unknown",
        )

    prompt = _as_int(usage.get("prompt_tokens"))
    completion = _as_int(usage.get("completion_tokens"))
    total = _as_int(usage.get("total_tokens"))
    if total is not None:
        status = "reported"
    else:
        known = [value for value in (prompt, completion) if value is not None]
        total = sum(known) if known else None
        status = "estimated" if total is not None else "unknown"
    return TokenUsage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=total,
        usage_status=status,
    )


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None
