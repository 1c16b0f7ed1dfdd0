"""Lenient JSON extraction from model completions."""

from __future__ import annotations

import json
import re
from typing import Any

from prompt_pipeline.core.errors import ProviderParseError

SAMPLE_LENGTH = 200

_FENCE = re.compile(r"```(?:json)?\s*\n?|\n?```", re.IGNORECASE)


def parse_json_response(text: str, *, model: str = "unknown") -> Any:
    """Parse a completion as JSON.

    Tries the raw text, then the text with markdown fences removed, then the
    outermost ``{...}`` or ``[...]`` slice. Raises ``ProviderParseError`` with
    a short sample when all three fail.
    """

    payload = _try_load(text)
    if payload is not None:
        return payload

    cleaned = _FENCE.sub("", text).strip()
    payload = _try_load(cleaned)
    if payload is not None:
        return payload

    sliced = _outer_slice(cleaned)
    if sliced is not None:
        payload = _try_load(sliced)
        if payload is not None:
            return payload

    sample = text[:SAMPLE_LENGTH]
    raise ProviderParseError(f"Failed to parse JSON response from {model}: {sample!r}")


def _try_load(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def _outer_slice(text: str) -> str | None:
    start_obj, end_obj = text.find("{"), text.rfind("}")
    if start_obj != -1 and end_obj > start_obj:
        return text[start_obj : end_obj + 1]
    start_arr, end_arr = text.find("["), text.rfind("]")
    if start_arr != -1 and end_arr > start_arr:
        return text[start_arr : end_arr + 1]
    return None
