"""Helpers for parsing agent responses."""

from __future__ import annotations

import json
import re
from typing import Any

from ..errors import AgentError

_JSON_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)
_CODE_FENCE_RE = re.compile(r"^```[\w.+-]*\n(.*?)\n?```\s*$", re.DOTALL)
_CONFLICT_MARKER_RE = re.compile(r"^(<{7}|={7}|>{7})( |$)", re.M)


def extract_json_object(text: str) -> dict[str, Any]:
    """Parse a JSON object from an agent response.

    Agents are asked for JSON only, but markdown fences and leading or
    trailing chatter are tolerated.
    """
    candidate = (text or "").strip()
    if not candidate:
        raise AgentError("Agent returned empty output")

    m = _JSON_FENCE_RE.search(candidate)
    if m:
        candidate = m.group(1).strip()

    try:
        obj = json.loads(candidate)
    except json.JSONDecodeError:
        start = candidate.find("{")
        end = candidate.rfind("}")
        if start == -1 or end == -1 or end <= start:
            raise AgentError("Agent output is not valid JSON") from None
        try:
            obj = json.loads(candidate[start : end + 1])
        except json.JSONDecodeError as exc:
            raise AgentError(f"Agent output JSON parse error: {exc}") from None

    if not isinstance(obj, dict):
        raise AgentError("Agent output JSON must be an object")
    return obj


def strip_code_fence(text: str) -> str:
    """Drop a single surrounding markdown code fence, if present."""
    m = _CODE_FENCE_RE.match(text.strip())
    return m.group(1) if m else text


def has_conflict_markers(text: str) -> bool:
    return bool(_CONFLICT_MARKER_RE.search(text))
