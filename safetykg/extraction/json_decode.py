"""Tolerant decoding of JSON produced by a chat model.

Model output is often wrapped in markdown fences, and long generations get cut
off before the closing brace. Decoding takes the fenced block if there is one,
appends the minimal closing tokens when the object is visibly truncated, and
finally lets json_repair deal with comments and trailing commas.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict

import json_repair

_FENCED_JSON = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)
_FENCED_ANY = re.compile(r"```\s*([\s\S]*?)```")
_OPEN_FENCE = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_CLOSE_FENCE = re.compile(r"\s*```$")


class ModelJSONError(ValueError):
    """Raised when model output cannot be turned into a JSON object."""


def strip_code_fences(content: str) -> str:
    """Return the fenced JSON block if present, else the content without stray fences."""
    match = _FENCED_JSON.search(content) or _FENCED_ANY.search(content)
    if match:
        return match.group(1).strip()
    text = _OPEN_FENCE.sub("", content.strip())
    return _CLOSE_FENCE.sub("", text).strip()


def close_truncated_object(text: str) -> str:
    """Append the closing tokens a truncated top-level object is missing.

    When the last ``]`` comes after the last ``}``, the generation stopped at
    the end of a top-level array, so the array is closed (if needed) and then
    the object. Otherwise only the object is closed.
    """
    if not text or text.endswith("}"):
        return text
    if text.rfind("}") < text.rfind("]"):
        if not text.endswith("]"):
            text += "]"
        return text + "}"
    return text + "}"


def decode_model_json(content: str) -> Dict[str, Any]:
    """Decode model output into a JSON object.

    Raises:
        ModelJSONError: If no JSON object can be recovered
    """
    if not content or not content.strip():
        raise ModelJSONError("Empty model response")

    text = strip_code_fences(content)
    closed = close_truncated_object(text)

    try:
        data = json.loads(closed)
    except json.JSONDecodeError as exc:
        strict_error = str(exc)
        data = json_repair.loads(closed)
        if not isinstance(data, dict) or not data:
            data = json_repair.loads(text)
        if not isinstance(data, dict) or not data:
            raise ModelJSONError(f"Could not decode model JSON: {strict_error}") from exc

    if not isinstance(data, dict):
        raise ModelJSONError(f"Model JSON root must be an object, got {type(data).__name__}")
    return data
