"""Structural repair for truncated JSON returned by LLM providers."""

import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

_FENCE_OPEN_RE = re.compile(r"^```(?:json)?\s*\n?", re.IGNORECASE)
_FENCE_CLOSE_RE = re.compile(r"\n?```\s*$")
_PARTIAL_UNICODE_RE = re.compile(r"(\\+)u[0-9a-fA-F]{0,3}$")


def repair_json(json_string: str) -> str:
    """
    Heal a JSON string that was cut off mid-response.

    One pass tracks whether the cursor is inside a string and a stack of
    unmatched openers. A hanging string value is closed, then the open
    containers are closed in reverse order. A tail that cannot be closed
    by quoting (a dangling key, colon, comma or partial number) is cut
    back to the last point where the prefix was complete.

    Balanced input is returned unchanged. Only structure is repaired;
    recovered fields may still be semantically incomplete.
    """
    repaired = json_string.strip()

    if repaired.startswith("```"):
        repaired = _FENCE_OPEN_RE.sub("", repaired, count=1)
        repaired = _FENCE_CLOSE_RE.sub("", repaired).strip()

    in_string = False
    string_is_key = False
    escape = False
    expect_key = False
    stack: list[str] = []

    # End of the longest prefix that can be closed with stack closers alone
    safe_end: int | None = None
    safe_stack: list[str] = []

    for i, char in enumerate(repaired):
        if in_string:
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == '"':
                in_string = False
                if not string_is_key:
                    safe_end, safe_stack = i + 1, list(stack)
            continue

        if char == '"':
            in_string = True
            string_is_key = expect_key and bool(stack) and stack[-1] == "}"
        elif char in "{[":
            stack.append("}" if char == "{" else "]")
            expect_key = char == "{"
            safe_end, safe_stack = i + 1, list(stack)
        elif char in "}]":
            if stack and stack[-1] == char:
                stack.pop()
            expect_key = False
            safe_end, safe_stack = i + 1, list(stack)
        elif char == ",":
            safe_end, safe_stack = i, list(stack)
            expect_key = bool(stack) and stack[-1] == "}"
        elif char == ":":
            expect_key = False

    if not in_string and not stack:
        return repaired

    if in_string and not string_is_key:
        if escape:
            repaired = repaired[:-1]
        repaired = _drop_partial_unicode_escape(repaired)
        return repaired + '"' + "".join(reversed(stack))

    if safe_end is None:
        return repaired + "".join(reversed(stack))

    return repaired[:safe_end] + "".join(reversed(safe_stack))


def _drop_partial_unicode_escape(text: str) -> str:
    match = _PARTIAL_UNICODE_RE.search(text)
    if match and len(match.group(1)) % 2 == 1:
        return text[: match.start() + len(match.group(1)) - 1]
    return text


def safe_parse(json_string: str, fallback: Any = None) -> Any:
    """Parse JSON that might be truncated, returning fallback if even repair fails."""
    cleaned = json_string.strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    try:
        result = json.loads(repair_json(cleaned))
        logger.warning("🔧 Repaired truncated JSON output")
        return result
    except json.JSONDecodeError as e:
        logger.error(f"❌ Final JSON parse failure after repair attempt: {e}")
        return fallback
