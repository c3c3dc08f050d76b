from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any


@dataclass(slots=True)
class LlmParse:
    """Tagged result of parsing untrusted model output."""

    ok: bool
    data: dict[str, Any] | None = None
    error: str | None = None


def strip_code_fences(text: str) -> str:
    cleaned = (text or "").strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```[a-zA-Z0-9_-]*", "", cleaned).strip()
        if cleaned.endswith("```"):
            cleaned = cleaned[:-3].strip()
    return cleaned


def parse_json_object(raw: str | None) -> LlmParse:
    if raw is None or not raw.strip():
        return LlmParse(ok=False, error="Empty response")

    cleaned = strip_code_fences(raw)
    candidates = [cleaned]
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end > start:
        candidates.append(cleaned[start : end + 1])

    last_error = "No JSON object found"
    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError as exc:
            last_error = f"Invalid JSON: {exc.msg} at position {exc.pos}"
            continue
        if isinstance(data, dict):
            return LlmParse(ok=True, data=data)
        last_error = f"Expected a JSON object, got {type(data).__name__}"
    return LlmParse(ok=False, error=last_error)
