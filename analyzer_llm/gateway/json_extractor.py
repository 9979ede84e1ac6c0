"""Response Extractor — turns free-text model output into parsed JSON.

Models asked for "JSON only" still wrap it in prose, fence it in markdown,
or get truncated mid-string. Strategies, first success wins:
  1. Direct parse when the trimmed text starts with { or [
  2. Fenced ```json block (object, then array); on failure the
     balanced-object scan restricted to the block interior
  3. Balanced-object scan from the first {
  4. Balanced-array scan from the first [

The scans track string literals so that delimiters inside strings never
touch the depth counter. A candidate that fails to parse gets one repair
attempt (close an unterminated string) before the scan moves on.

Extraction never raises: no usable JSON → None.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

_QUOTES = ('"', "'")

_FENCED_PATTERNS = (
    re.compile(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```"),
    re.compile(r"```(?:json)?\s*(\[[\s\S]*?\])\s*```"),
)


def extract_json(content: str | None) -> Any | None:
    """Extract the first usable JSON value from *content*, or None."""
    if not content or not content.strip():
        return None

    # Strategy 1: the whole text is JSON
    trimmed = content.strip()
    if trimmed.startswith(("{", "[")):
        try:
            return json.loads(trimmed)
        except (ValueError, RecursionError):
            pass

    # Strategy 2: markdown code fence
    for pattern in _FENCED_PATTERNS:
        match = pattern.search(content)
        if not match:
            continue
        block = match.group(1)
        try:
            return json.loads(block)
        except (ValueError, RecursionError):
            logger.debug("Fenced JSON block did not parse, scanning its interior")
            extracted = _scan_balanced(block, "{", "}")
            if extracted is not None:
                return extracted

    # Strategy 3: first balanced object
    extracted = _scan_balanced(content, "{", "}")
    if extracted is not None:
        return extracted

    # Strategy 4: first balanced array
    return _scan_balanced(content, "[", "]")


def safe_parse_json(content: str | None, fallback: Any = None) -> Any:
    """Like extract_json, but returns *fallback* instead of None."""
    extracted = extract_json(content)
    return fallback if extracted is None else extracted


def repair_unterminated_string(candidate: str) -> str:
    """Close a string literal left open at the end of *candidate*.

    The closing quote goes immediately before the last ``}`` if that brace
    comes after the opening quote, otherwise it is appended at the very end.
    Candidates that do not end inside a string are returned unchanged.
    """
    in_string = False
    string_char = ""
    escape_next = False
    last_string_start = -1

    for i, ch in enumerate(candidate):
        if escape_next:
            escape_next = False
            continue
        if ch == "\\":
            escape_next = True
            continue
        if not in_string and ch in _QUOTES:
            in_string = True
            string_char = ch
            last_string_start = i
            continue
        if in_string and ch == string_char:
            in_string = False
            string_char = ""
            last_string_start = -1

    if not in_string or last_string_start < 0:
        return candidate

    last_brace = candidate.rfind("}")
    if last_brace > last_string_start:
        return candidate[:last_brace] + string_char + candidate[last_brace:]
    return candidate + string_char


def _parse_candidate(candidate: str) -> Any | None:
    """Parse a balanced candidate, with one repair attempt on failure."""
    try:
        return json.loads(candidate)
    except (ValueError, RecursionError):
        pass

    fixed = repair_unterminated_string(candidate)
    try:
        return json.loads(fixed)
    except (ValueError, RecursionError):
        return None


def _scan_balanced(text: str, open_char: str, close_char: str) -> Any | None:
    """Scan from the first *open_char* for a balanced, parseable candidate.

    Every time depth returns to zero the substring from the opening
    delimiter is tried; on failure the scan keeps going. If the text ends
    inside a string literal (truncated output), the remainder is tried too.
    """
    start = text.find(open_char)
    if start == -1:
        return None

    depth = 0
    in_string = False
    string_char = ""
    escape_next = False

    for i in range(start, len(text)):
        ch = text[i]

        if escape_next:
            escape_next = False
            continue

        if ch == "\\":
            escape_next = True
            continue

        if in_string:
            if ch == string_char:
                in_string = False
                string_char = ""
            continue

        if ch in _QUOTES:
            in_string = True
            string_char = ch
            continue

        if ch == open_char:
            depth += 1
        elif ch == close_char:
            depth -= 1
            if depth == 0:
                parsed = _parse_candidate(text[start : i + 1])
                if parsed is not None:
                    return parsed

    if in_string:
        logger.debug("Text ends inside a string literal, trying truncated candidate")
        return _parse_candidate(text[start:])

    return None
