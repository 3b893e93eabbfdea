"""
Defensive JSON parsing for model output.

Model replies nominally contain one JSON object but routinely arrive wrapped in
markdown fences, surrounded by chatter, with unescaped quotes inside strings,
raw newlines, trailing commas or typographic quotes. Strategies are tried in
order; each candidate goes through `fix_json_string` before decoding.
"""

import json
import logging
import re
from typing import Any, Callable, List, Optional, Tuple

from ...errors import ResponseParseError

logger = logging.getLogger(__name__)

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*\n?([\s\S]+)\n?\s*```")
_CURLY_DOUBLE = re.compile(r"[“”„‟″‶]")
_CURLY_SINGLE = re.compile(r"[‘’‚‛′‵]")
_TRAILING_COMMA = re.compile(r",\s*([}\]])")

# Characters after a quote that mean the quote closes the string
_CLOSERS = {":", ",", "}", "]", "\n", "\r"}


def fix_json_string(raw: str) -> str:
    """Repair the common string-level defects of hand-written JSON.

    - a `"` inside a string that is not followed by a structural character is
      treated as content and escaped
    - raw newlines and tabs inside strings are escaped, carriage returns dropped
    - trailing commas before `}` or `]` are removed
    """
    out: List[str] = []
    in_string = False
    escaped = False
    n = len(raw)

    for i, ch in enumerate(raw):
        if escaped:
            out.append(ch)
            escaped = False
            continue

        if ch == "\\" and in_string:
            out.append(ch)
            escaped = True
            continue

        if ch == '"':
            if not in_string:
                in_string = True
                out.append(ch)
                continue
            j = i + 1
            while j < n and raw[j] in (" ", "\t"):
                j += 1
            if j >= n or raw[j] in _CLOSERS:
                in_string = False
                out.append(ch)
            else:
                out.append('\\"')
            continue

        if in_string:
            if ch == "\n":
                out.append("\\n")
                continue
            if ch == "\r":
                continue
            if ch == "\t":
                out.append("\\t")
                continue

        out.append(ch)

    return _TRAILING_COMMA.sub(r"\1", "".join(out))


def _encloses(outer: Optional[str], inner: Optional[str]) -> bool:
    return bool(outer and inner and inner in outer and len(outer) > len(inner))


def _ordered(obj_span: Optional[str], arr_span: Optional[str]) -> List[str]:
    """Object span first, unless the array span wraps it (a top-level array)."""
    ordered = [arr_span, obj_span] if _encloses(arr_span, obj_span) else [obj_span, arr_span]
    return [span for span in ordered if span]


def _outer_span(text: str, opener: str, closer: str) -> Optional[str]:
    """First `opener` to the last `closer`."""
    start = text.find(opener)
    if start == -1:
        return None
    end = text.rfind(closer)
    if end <= start:
        return None
    return text[start:end + 1]


def _outer_spans(text: str) -> List[str]:
    return _ordered(_outer_span(text, "{", "}"), _outer_span(text, "[", "]"))


def _balanced_span(text: str, start_char: str) -> Optional[str]:
    """Complete object/array starting at the first `start_char`, by bracket counting (strings respected)."""
    start_idx = text.find(start_char)
    if start_idx == -1:
        return None
    end_char = "}" if start_char == "{" else "]"

    depth = 0
    in_string = False
    escape_next = False
    for i in range(start_idx, len(text)):
        char = text[i]
        if escape_next:
            escape_next = False
            continue
        if char == "\\" and in_string:
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == start_char:
            depth += 1
        elif char == end_char:
            depth -= 1
            if depth == 0:
                return text[start_idx:i + 1]
    return None


def _fenced_candidates(text: str) -> List[str]:
    match = _FENCED_BLOCK.search(text)
    return [match.group(1).strip()] if match else []


def _bare_candidates(text: str) -> List[str]:
    balanced = _ordered(_balanced_span(text, "{"), _balanced_span(text, "["))
    candidates: List[str] = []
    for span in _outer_spans(text) + balanced:
        if span not in candidates:
            candidates.append(span)
    return candidates


def _quote_normalized_candidates(text: str) -> List[str]:
    candidates = []
    for span in _outer_spans(text):
        span = _CURLY_DOUBLE.sub('\\"', span)
        candidates.append(_CURLY_SINGLE.sub("'", span))
    return candidates


STRATEGIES: List[Tuple[str, Callable[[str], List[str]]]] = [
    ("fenced_block", _fenced_candidates),
    ("bare_braces", _bare_candidates),
    ("quote_normalized", _quote_normalized_candidates),
]


def parse_json_response(text: Optional[str]) -> Any:
    """Parse the JSON payload of a model reply.

    Raises:
        ResponseParseError: when no strategy yields valid JSON.
    """
    if not text or not isinstance(text, str):
        raise ResponseParseError("Empty model response")

    for name, strategy in STRATEGIES:
        for candidate in strategy(text):
            try:
                result = json.loads(fix_json_string(candidate))
                logger.debug(f"[JSON_REPAIR] Parsed with strategy {name}")
                return result
            except json.JSONDecodeError as e:
                logger.debug(f"[JSON_REPAIR] Strategy {name} failed: {e}")

    logger.warning(f"[JSON_REPAIR] Could not parse JSON from response. First 500 chars: {text[:500]}")
    raise ResponseParseError("Could not parse JSON from model response", preview=text)
