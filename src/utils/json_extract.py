from __future__ import annotations

import json
from typing import Any


class JSONExtractionError(ValueError):
    pass


def extract_json_object(text: str) -> dict[str, Any]:
    """Parse an LLM response that should be a single JSON object.

    JSON mode usually returns bare JSON; some gateways still wrap it in prose or
    code fences, so fall back to the outermost `{...}` span.
    """
    s = (text or "").strip()
    if not s:
        raise JSONExtractionError("Empty response.")

    try:
        obj = json.loads(s)
    except json.JSONDecodeError:
        start = s.find("{")
        end = s.rfind("}")
        if start == -1 or end == -1 or end <= start:
            raise JSONExtractionError("No JSON object found in response.")
        try:
            obj = json.loads(s[start : end + 1])
        except json.JSONDecodeError as e:
            raise JSONExtractionError(f"Invalid JSON: {e}") from e

    if not isinstance(obj, dict):
        raise JSONExtractionError(f"Expected a JSON object, got {type(obj).__name__}.")
    return obj
