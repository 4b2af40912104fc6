"""Best-effort JSON extraction from model output.

Parsing never raises: a failed parse returns a ``ParseResult`` with
``success=False`` and the raw text preserved verbatim.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from src.utils.logger import get_logger

logger = get_logger(__name__)

REPARSE_TEXT_LIMIT = 2000

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


@dataclass
class ParseResult:
    """Outcome of a parse attempt."""

    success: bool
    data: Any = None
    raw: str = ""
    error: Optional[str] = None


def _loads(text: str) -> Tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return False, None


def _span(text: str, opener: str, closer: str) -> Optional[str]:
    start = text.find(opener)
    end = text.rfind(closer)
    if start == -1 or end <= start:
        return None
    return text[start : end + 1]


def extract_candidates(text: str) -> List[str]:
    """Candidate JSON substrings in priority order: fenced block, brace span, bracket span."""
    candidates: List[str] = []
    match = _FENCED_BLOCK.search(text)
    if match and match.group(1).strip():
        candidates.append(match.group(1).strip())
    for opener, closer in (("{", "}"), ("[", "]")):
        span = _span(text, opener, closer)
        if span:
            candidates.append(span)
    return candidates


def repair_json(text: str) -> str:
    """Fix the malformations models produce most often.

    Strips trailing commas, converts single quotes to double quotes when the
    text has no double quotes at all, and removes control characters other
    than newline, carriage return and tab.
    """
    repaired = _TRAILING_COMMA.sub(r"\1", text)
    if '"' not in repaired and "'" in repaired:
        repaired = repaired.replace("'", '"')
    return _CONTROL_CHARS.sub("", repaired)


def _raw_decode_first(text: str) -> Tuple[bool, Any]:
    """Decode the first JSON object or array found anywhere in text."""
    decoder = json.JSONDecoder()
    for index, char in enumerate(text):
        if char not in "{[":
            continue
        try:
            value, _ = decoder.raw_decode(text[index:])
            return True, value
        except json.JSONDecodeError:
            continue
    return False, None


class JsonParser:
    """Multi-strategy JSON extraction."""

    @staticmethod
    def parse(text: Optional[str]) -> ParseResult:
        """Parse JSON out of free text.

        Args:
            text: Model output, possibly wrapped in prose or a code fence.

        Returns:
            ParseResult with the decoded value on success.
        """
        raw = text or ""
        if not raw.strip():
            return ParseResult(success=False, raw=raw, error="Empty response")

        ok, value = _loads(raw.strip())
        if ok:
            return ParseResult(success=True, data=value, raw=raw)

        candidates = extract_candidates(raw)
        for candidate in candidates:
            ok, value = _loads(candidate)
            if ok:
                return ParseResult(success=True, data=value, raw=raw)

        for candidate in candidates or [raw]:
            ok, value = _loads(repair_json(candidate))
            if ok:
                logger.debug("json_parser.repaired", length=len(candidate))
                return ParseResult(success=True, data=value, raw=raw)

        ok, value = _raw_decode_first(raw)
        if ok:
            return ParseResult(success=True, data=value, raw=raw)

        logger.debug("json_parser.failed", preview=raw[:120])
        return ParseResult(success=False, raw=raw, error="No valid JSON found in response")

    @staticmethod
    def create_reparse_prompt(raw: str) -> str:
        """Prompt asking the model to restate a malformed reply as valid JSON."""
        excerpt = raw[:REPARSE_TEXT_LIMIT]
        return (
            "The following response could not be parsed as JSON. "
            "Return ONLY the same content as valid JSON inside a ```json code block, "
            "with no explanatory text.\n\n"
            f"{excerpt}"
        )


def extract_json_objects(text: str, start: int = 0) -> List[Tuple[int, int]]:
    """Locate complete top-level JSON objects inside text.

    Braces inside strings and escaped quotes are ignored. Scanning stops at
    a closing bracket outside any object, so starting just after an array
    opener yields the elements of that array. Unterminated objects at the
    end of text are not reported.

    Args:
        text: Text to scan.
        start: Offset to start scanning from.

    Returns:
        List of (start, end) offsets, end exclusive.
    """
    spans: List[Tuple[int, int]] = []
    depth = 0
    in_string = False
    escaped = False
    obj_start = -1
    for pos in range(start, len(text)):
        char = text[pos]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            if depth == 0:
                obj_start = pos
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                spans.append((obj_start, pos + 1))
        elif char == "]" and depth == 0:
            break
    return spans
