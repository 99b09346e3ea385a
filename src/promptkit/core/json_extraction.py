"""
Best-effort JSON extraction from model output.

Model text is unreliable: JSON arrives wrapped in markdown fences, surrounded by prose, or (while
streaming) cut off half way.  Extraction is split into two independent stages:

1. **candidate extraction** - locate the first balanced ``{...}`` (or ``[...]``) substring,
   honouring string literals so braces inside strings do not count;
2. **strict parse** - hand the candidate to :func:`json.loads`.

Stage 1 never raises; stage 2 raises :class:`JSONExtractionError`, which callers either turn into
a retry or swallow.
"""

from __future__ import annotations

import json
import logging
import re
from typing import (
    Any,
    Dict,
    List,
    Optional,
)

logger = logging.getLogger(__name__)


class JSONExtractionError(ValueError):
    """Raised when no JSON value can be parsed out of a piece of text."""


# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------
_FENCED_BLOCK_RE = re.compile(r"```(?:json|JSON)?\s*(.+?)```", re.DOTALL)
_LEADING_FENCE_RE = re.compile(r"^```(?:json|JSON)?\s*")
_TRAILING_FENCE_RE = re.compile(r"\s*```\s*$")
_CLOSERS = {"{": "}", "[": "]"}


def _skip_string(s: str, i: int) -> int:
    """Given s[i] == '"', return the index just past the closing quote (or len(s))."""
    i += 1
    esc = False
    while i < len(s):
        ch = s[i]
        if esc:
            esc = False
        elif ch == "\\":
            esc = True
        elif ch == '"':
            return i + 1
        i += 1
    return len(s)


def _find_matching_bracket(s: str, i: int) -> Optional[int]:
    """Given s[i] in '{[', return the index just past its matching closer, or None."""
    stack: List[str] = []
    while i < len(s):
        ch = s[i]
        if ch == '"':
            i = _skip_string(s, i)
            continue
        if ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif ch in "}]":
            if not stack or stack[-1] != ch:
                return None
            stack.pop()
            if not stack:
                return i + 1
        i += 1
    return None


# ---------------------------------------------------------------------------
# Stage 1: candidate extraction
# ---------------------------------------------------------------------------
def strip_code_fences(text: str) -> str:
    """Remove markdown code fences (```json ... ```) around a payload."""
    content = text.strip()
    if "```" not in content:
        return content
    match = _FENCED_BLOCK_RE.search(content)
    if match:
        return match.group(1).strip()
    # Unterminated fence, typically a stream that has not finished yet
    content = _LEADING_FENCE_RE.sub("", content)
    return _TRAILING_FENCE_RE.sub("", content)


def find_json_candidate(text: str, openers: str = "{") -> Optional[str]:
    """
    Return the first balanced JSON-looking substring of *text*.

    Parameters
    ----------
    text:
        Raw model output.
    openers:
        Which opening brackets may start a candidate: ``"{"`` for objects only, ``"{["`` for
        objects or arrays.  The earliest opener in the text wins.
    """
    positions = [text.find(opener) for opener in openers]
    positions = [p for p in positions if p >= 0]
    if not positions:
        return None
    start = min(positions)
    end = _find_matching_bracket(text, start)
    if end is None:
        return None
    return text[start:end]


# ---------------------------------------------------------------------------
# Stage 2: strict parse
# ---------------------------------------------------------------------------
def parse_json_candidate(candidate: str) -> Any:
    """Strictly parse *candidate*; wraps decode errors into :class:`JSONExtractionError`."""
    try:
        return json.loads(candidate)
    except (json.JSONDecodeError, TypeError) as exc:
        preview = candidate[:200]
        raise JSONExtractionError(
            f"Failed to parse JSON response: {exc}. Response: {preview}"
        ) from exc


def extract_json(text: str) -> Any:
    """
    Extract and parse the first JSON object or array in *text*.

    Falls back to parsing the whole (fence-stripped) text so bare scalars still work.

    Raises
    ------
    JSONExtractionError
        If nothing parseable is found.
    """
    cleaned = strip_code_fences(text)
    candidate = find_json_candidate(cleaned, openers="{[")
    return parse_json_candidate(candidate if candidate is not None else cleaned)


def try_parse_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Return the first balanced JSON object in *text*, or None.  Never raises."""
    candidate = find_json_candidate(text, openers="{")
    if candidate is None:
        return None
    try:
        parsed = parse_json_candidate(candidate)
    except JSONExtractionError:
        logger.debug("Discarding unparseable JSON candidate: %.80s", candidate)
        return None
    return parsed if isinstance(parsed, dict) else None


# ---------------------------------------------------------------------------
# Partial (streaming) JSON
# ---------------------------------------------------------------------------
def balance_partial_json(text: str) -> str:
    """
    Heuristically complete a truncated JSON document.

    Closes an unterminated string, drops a dangling comma, and appends the closers for every
    bracket still open.  The result is not guaranteed to be valid JSON.
    """
    cleaned = strip_code_fences(text)
    positions = [p for p in (cleaned.find("{"), cleaned.find("[")) if p >= 0]
    if not positions:
        return cleaned
    cleaned = cleaned[min(positions) :]

    stack: List[str] = []
    in_string = False
    esc = False
    for ch in cleaned:
        if in_string:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif ch in "}]" and stack and stack[-1] == ch:
            stack.pop()

    if in_string:
        cleaned += '"'
    cleaned = cleaned.rstrip()
    if cleaned.endswith(","):
        cleaned = cleaned[:-1]
    elif cleaned.endswith(":"):
        cleaned += " null"
    return cleaned + "".join(reversed(stack))


def parse_partial_json(text: str) -> Any:
    """Parse a possibly truncated JSON document; returns None when it cannot be recovered."""
    try:
        return json.loads(balance_partial_json(text))
    except (json.JSONDecodeError, TypeError):
        return None
