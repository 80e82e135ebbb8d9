"""Helpers for turning model output into validated values."""

from __future__ import annotations

import json
import math
import re
from collections.abc import Iterable
from typing import Any

MAX_TAGS = 5
MAX_TAG_LENGTH = 30

_CODE_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_TAG_SPLIT_RE = re.compile(r"[,\n]")
_TAG_STRIP_CHARS = " \t\r\"'`*-•#.[]{}"


def parse_json_response(content: str) -> Any | None:
    """Parse a JSON reply, also accepting one wrapped in a markdown code fence."""
    try:
        return json.loads(content)
    except (json.JSONDecodeError, TypeError):
        pass
    match = _CODE_FENCE_RE.search(content or "")
    if match:
        try:
            return json.loads(match.group(1).strip())
        except json.JSONDecodeError:
            return None
    return None


def normalize_tags(candidates: Iterable[Any], *, limit: int = MAX_TAGS) -> list[str]:
    tags: list[str] = []
    seen: set[str] = set()
    for raw in candidates:
        if not isinstance(raw, str):
            continue
        tag = raw.strip(_TAG_STRIP_CHARS).lower()
        if not tag or len(tag) > MAX_TAG_LENGTH or tag in seen:
            continue
        seen.add(tag)
        tags.append(tag)
        if len(tags) >= limit:
            break
    return tags


def extract_tags_from_text(content: str, *, limit: int = MAX_TAGS) -> list[str]:
    """Heuristic fallback when the model did not answer with the JSON shape.

    "Tags: python" and broken JSON such as '{"tags": ["python"' both keep only
    the text after the last colon.
    """
    pieces = (piece.rsplit(":", 1)[-1] for piece in _TAG_SPLIT_RE.split(content or ""))
    return normalize_tags(pieces, limit=limit)


def coerce_score(value: Any) -> float | None:
    """Return a finite float for numeric model output, else None. bool is not a score."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    score = float(value)
    if math.isnan(score) or math.isinf(score):
        return None
    return score


def clamp_unit(value: float) -> float:
    return min(1.0, max(0.0, value))
