"""
JSON parsing utilities with sanitization for LLM responses.

Handles common LLM output quirks:
- Reasoning tokens (<think>...</think>)
- Markdown code blocks
- Control tokens and chatter before the first brace
- Truncated output, which is rejected rather than repaired
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

log = logging.getLogger(__name__)

_THINK_PATTERN = re.compile(r"<think>.*?</think>", re.DOTALL | re.IGNORECASE)
_CONTROL_TOKEN_PATTERN = re.compile(r"<\|[a-zA-Z_]+\|>(?:[a-zA-Z_]+\s*)?")
_FENCE_PATTERN = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)


def _is_balanced(content: str) -> bool:
    """Checks braces and brackets outside string literals."""
    depth: list[str] = []
    in_string = False
    escaped = False
    pairs = {"}": "{", "]": "["}
    for ch in content:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            depth.append(ch)
        elif ch in "}]":
            if not depth or depth[-1] != pairs[ch]:
                return False
            depth.pop()
    return not depth and not in_string


def sanitize_json_response(raw_content: str) -> str:
    """
    Strips wrappers around a JSON object returned by a model.

    Raises ValueError when the response is empty or the JSON is truncated;
    callers treat that as an incomplete reply and retry.
    """
    if not raw_content or not raw_content.strip():
        raise ValueError("Empty response.")

    content = _THINK_PATTERN.sub("", raw_content).strip()
    content = re.sub(r"</?think\s*>", "", content, flags=re.IGNORECASE).strip()

    fenced = _FENCE_PATTERN.search(content)
    if fenced:
        content = fenced.group(1).strip()
    elif content.startswith("```"):
        # Opening fence without a closing one: the reply was cut off.
        content = content.lstrip("`")
        content = content[4:] if content.lower().startswith("json") else content

    content = _CONTROL_TOKEN_PATTERN.sub("", content).strip()

    starts = [idx for idx in (content.find("{"), content.find("[")) if idx >= 0]
    if not starts:
        raise ValueError("Response does not contain a JSON object.")
    start = min(starts)
    if start > 0:
        log.debug("Dropped %d chars before JSON payload", start)
    content = content[start:]

    closer = "}" if content.startswith("{") else "]"
    end = content.rfind(closer)
    if end < 0 or not _is_balanced(content[: end + 1]):
        raise ValueError("Response JSON appears truncated.")
    return content[: end + 1]


def parse_json_response(raw_content: str) -> dict[str, Any]:
    """Decodes a model reply into a JSON object (dict)."""
    sanitized = sanitize_json_response(raw_content)
    try:
        payload = json.loads(sanitized)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Malformed JSON: {exc.msg} at position {exc.pos}") from exc
    if not isinstance(payload, dict):
        raise ValueError(f"Expected a JSON object, got {type(payload).__name__}.")
    return payload
