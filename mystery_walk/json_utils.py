"""Extract and parse JSON from LLM output.

Models wrap JSON in ```json fences, prepend chatter, put raw newlines inside
strings, or stop mid-array when they hit the token limit. safe_parse_json()
tries progressively more forgiving repairs before giving up:

  1. plain parse of the trimmed block
  2. escape raw newlines inside strings
  3. cut at the last balanced top-level bracket
  4. close unterminated strings/brackets
  5. (arrays only) keep every element that parses on its own
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

_FENCED_JSON = re.compile(r"```json([\s\S]*?)```")


class JSONRecoveryError(ValueError):
    """Raised when no repair strategy yields valid JSON."""


def extract_json_text(text: str) -> str:
    """Return the body of the first ```json fence, or the whole text."""
    match = _FENCED_JSON.search(text)
    return match.group(1) if match else text


def trim_json_block(raw: str) -> str:
    """Strip fences and surrounding prose, keeping the outermost object/array."""
    cleaned = raw.replace("```json", "").replace("```", "").strip()
    first_object = cleaned.find("{")
    first_array = cleaned.find("[")
    use_array = first_array != -1 and (first_object == -1 or first_array < first_object)
    start = first_array if use_array else first_object
    if start == -1:
        return cleaned
    end = cleaned.rfind("]") if use_array else cleaned.rfind("}")
    if end >= start:
        return cleaned[start:end + 1]
    return cleaned[start:]


def _escape_newlines_in_strings(raw: str) -> str:
    out: list[str] = []
    in_string = False
    escaped = False
    for ch in raw:
        if escaped:
            escaped = False
            out.append(ch)
            continue
        if ch == "\\":
            escaped = True
            out.append(ch)
            continue
        if ch == '"':
            in_string = not in_string
            out.append(ch)
            continue
        if in_string and ch in "\r\n":
            out.append("\\n")
            continue
        out.append(ch)
    return "".join(out)


def _trim_to_balanced(raw: str) -> str:
    in_string = False
    escaped = False
    depth = 0
    last_balanced = -1
    for i, ch in enumerate(raw):
        if escaped:
            escaped = False
            continue
        if ch == "\\":
            escaped = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch in "{[":
            depth += 1
        elif ch in "}]" and depth > 0:
            depth -= 1
            if depth == 0:
                last_balanced = i
    if last_balanced != -1:
        return raw[:last_balanced + 1]
    return raw


def _repair_truncated(raw: str) -> str:
    in_string = False
    escaped = False
    stack: list[str] = []
    for ch in raw:
        if escaped:
            escaped = False
            continue
        if ch == "\\":
            escaped = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch in "{[":
            stack.append(ch)
        elif ch in "}]" and stack:
            stack.pop()

    repaired = raw + '"' if in_string else raw
    while stack:
        opener = stack.pop()
        repaired = re.sub(r",\s*$", "", repaired)
        repaired += "}" if opener == "{" else "]"
    return repaired


def _extract_array_elements(raw: str) -> list[Any]:
    start_idx = raw.find("[")
    if start_idx == -1:
        return []
    content = raw[start_idx + 1:]
    elements: list[Any] = []
    depth = 0
    start = 0
    in_string = False
    escaped = False
    end = len(content)

    def _try(chunk: str) -> None:
        chunk = chunk.strip()
        if not chunk:
            return
        try:
            elements.append(json.loads(chunk))
        except json.JSONDecodeError:
            pass  # truncated element

    for i, ch in enumerate(content):
        if escaped:
            escaped = False
            continue
        if ch == "\\":
            escaped = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch in "{[":
            depth += 1
        elif ch in "}]":
            depth -= 1
            if depth == -1:
                end = i
                break
        elif ch == "," and depth == 0:
            _try(content[start:i])
            start = i + 1

    _try(content[start:end])
    return elements


def safe_parse_json(text: str) -> Any:
    """Parse JSON from model output, repairing common breakage.

    Raises JSONRecoveryError when every strategy fails.
    """
    normalized = trim_json_block(text.strip())

    try:
        return json.loads(normalized)
    except json.JSONDecodeError:
        logger.debug("json parse: plain attempt failed, escaping newlines")

    escaped = _escape_newlines_in_strings(normalized)
    candidates = (
        ("escape", escaped),
        ("balanced trim", _trim_to_balanced(escaped)),
        ("repair", _repair_truncated(escaped)),
    )
    for label, candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            logger.debug("json parse: %s attempt failed", label)

    if normalized.lstrip().startswith("["):
        elements = _extract_array_elements(normalized)
        if elements:
            logger.info("json parse: kept %d valid elements from truncated array", len(elements))
            return elements

    raise JSONRecoveryError("Failed to parse JSON after all recovery attempts")


def parse_llm_json(text: str) -> Any:
    """Fence extraction followed by safe_parse_json()."""
    return safe_parse_json(extract_json_text(text))
