from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

STRUCTURED = "structured"
FENCED = "fenced"
UNPARSEABLE = "unparseable"


@dataclass(frozen=True)
class DecodedAnswer:
    kind: str
    value: dict[str, Any] | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.value is not None


def _strip_json_fence(text: str) -> str:
    if "```" not in text:
        return text
    cleaned = text.replace("```json", "```").replace("```JSON", "```")
    parts = cleaned.split("```")
    if len(parts) >= 2:
        return parts[1].strip()
    return cleaned


def _loads_object(text: str) -> dict[str, Any] | None:
    try:
        value = json.loads(text)
    except (TypeError, ValueError):
        return None
    return value if isinstance(value, dict) else None


def decode_answer_text(text: Any) -> DecodedAnswer:
    """
    Decode a model answer that should be a JSON object.

    Two attempts only: the text as-is, then the text with markdown code fences removed.
    Anything else is unparseable; no further guessing.
    """
    if not isinstance(text, str) or not text.strip():
        return DecodedAnswer(UNPARSEABLE, error="empty_answer")

    value = _loads_object(text)
    if value is not None:
        return DecodedAnswer(STRUCTURED, value)

    if "```" in text:
        value = _loads_object(_strip_json_fence(text))
        if value is not None:
            return DecodedAnswer(FENCED, value)

    return DecodedAnswer(UNPARSEABLE, error="answer_not_json_object")


def _truncate_text(text: str | None, limit: int) -> str | None:
    if not isinstance(text, str):
        return None
    if len(text) <= limit:
        return text
    return text[:limit]
