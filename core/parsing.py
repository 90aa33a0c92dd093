"""
ASTRYON RESILIENT PARSER - Structured Responses From Messy Text

Completion services are asked for JSON but answer with whatever they like:
markdown fences, a sentence of preamble, or raw newlines inside string
values. parse_structured() tolerates all three and otherwise refuses.

Pipeline:
    raw
     |  1. trim, strip ```json / ``` fence
     |  2. direct decode
     |  3. escape raw CR / LF / TAB inside quoted tokens only
     |  4. decode again
     |  5. largest balanced {...} span, decode (raw, then escaped)
     v
    dict  |  ParseError(raw)

Nothing is ever guessed: if no step yields a JSON object, the caller gets a
ParseError carrying the untouched raw text.
"""
import logging
import re
from typing import Any, Dict, Optional, Type, TypeVar

import msgspec

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=msgspec.Struct)

_QUOTED = re.compile(r'"((?:[^"\\]|\\.)*)"', re.DOTALL)
_LEADING_FENCE = re.compile(r"^```(?:json|JSON)?[ \t]*\r?\n?")
_TRAILING_FENCE = re.compile(r"\r?\n?```$")


class ParseError(Exception):
    """Raised when a response cannot be turned into the expected structure."""
    def __init__(self, raw: str, reason: str = "no JSON object could be recovered"):
        self.raw = raw
        self.reason = reason
        preview = raw[:80].replace("\n", " ")
        super().__init__(f"Unparseable structured response ({reason}): {preview!r}")


# =============================================================================
# STEPS
# =============================================================================

def strip_fences(text: str) -> str:
    """Trim and remove a leading/trailing markdown code fence."""
    text = text.strip()
    if text.startswith("```"):
        text = _LEADING_FENCE.sub("", text, count=1)
        text = _TRAILING_FENCE.sub("", text, count=1)
    return text.strip()


def escape_control_chars_in_strings(text: str) -> str:
    """
    Escape raw CR/LF/TAB inside double-quoted tokens.

    Characters outside quotes (structural whitespace) are left alone.
    """
    def _escape(match: "re.Match[str]") -> str:
        return (
            match.group(0)
            .replace("\r\n", "\\n")
            .replace("\n", "\\n")
            .replace("\r", "\\n")
            .replace("\t", "\\t")
        )

    return _QUOTED.sub(_escape, text)


def largest_object_span(text: str) -> Optional[str]:
    """
    The longest balanced {...} substring, ignoring braces inside strings.

    Returns None if the text holds no balanced object.
    """
    best: Optional[str] = None
    depth = 0
    start = -1
    in_string = False
    escaped = False

    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            if depth > 0:
                in_string = True
        elif ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                candidate = text[start:i + 1]
                if best is None or len(candidate) > len(best):
                    best = candidate

    return best


def _decode_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        value = msgspec.json.decode(text.encode("utf-8"))
    except msgspec.DecodeError:
        return None
    return value if isinstance(value, dict) else None


# =============================================================================
# PUBLIC API
# =============================================================================

def parse_structured(raw: str) -> Dict[str, Any]:
    """
    Recover a JSON object from a completion-service response.

    Raises:
        ParseError: If every recovery step fails
    """
    if raw is None:
        raise ParseError("", reason="empty response")

    text = strip_fences(raw)

    result = _decode_object(text)
    if result is not None:
        return result

    escaped = escape_control_chars_in_strings(text)
    result = _decode_object(escaped)
    if result is not None:
        logger.debug("Recovered structured response after escaping control characters")
        return result

    span = largest_object_span(text)
    if span is not None:
        result = _decode_object(span)
        if result is None:
            result = _decode_object(escape_control_chars_in_strings(span))
        if result is not None:
            logger.debug(f"Recovered structured response from a {len(span)}-char object span")
            return result

    logger.warning(f"Structured response unparseable ({len(raw)} chars)")
    raise ParseError(raw)


def parse_as(raw: str, schema: Type[T]) -> T:
    """
    Recover a JSON object and convert it into `schema`.

    A shape mismatch is a ParseError too; no partial structure is returned.
    """
    data = parse_structured(raw)
    try:
        return msgspec.convert(data, type=schema)
    except msgspec.ValidationError as e:
        logger.warning(f"Structured response does not match {schema.__name__}: {e}")
        raise ParseError(raw, reason=f"schema mismatch for {schema.__name__}: {e}") from e
