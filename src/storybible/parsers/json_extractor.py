"""Recover a JSON value from free-form model output.

Models are asked for bare JSON but often wrap it in commentary or code
fences. Extraction is an ordered list of strategies, each a pure function
from text to an optional result; the first strategy that decodes a value
wins.

1. Decode the trimmed text directly.
2. Decode the interior of a fenced code block (with or without a ``json`` tag).
3. Bracket-depth scan from the first ``{`` or ``[`` to its matching closer.
"""

import json
import logging
import re
from typing import Any, Callable, List, Optional, Union

from pydantic import BaseModel

from storybible.constants import RAW_EXCERPT_LENGTH

logger = logging.getLogger(__name__)

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_CLOSERS = {"{": "}", "[": "]"}


class ExtractionSuccess(BaseModel):
    """A decoded JSON value."""

    value: Any


class ExtractionFailure(BaseModel):
    """No strategy decoded a value."""

    error: str
    raw: str


ExtractionOutcome = Union[ExtractionSuccess, ExtractionFailure]
ExtractionStrategy = Callable[[str], Optional[ExtractionSuccess]]


def _decode(candidate: str) -> Optional[ExtractionSuccess]:
    try:
        return ExtractionSuccess(value=json.loads(candidate))
    except ValueError:
        return None


def parse_direct(text: str) -> Optional[ExtractionSuccess]:
    """Decode the whole trimmed text as JSON."""
    return _decode(text.strip())


def parse_fenced_block(text: str) -> Optional[ExtractionSuccess]:
    """Decode the first fenced code block whose interior is valid JSON."""
    for match in _FENCE_PATTERN.finditer(text):
        result = _decode(match.group(1).strip())
        if result is not None:
            return result
    return None


def find_balanced_span(text: str) -> Optional[str]:
    """Return the substring from the first ``{``/``[`` through its matching closer.

    Only brackets of the opener's kind move the depth counter, so a value
    like ``{"a": [1, {"b": 2}]}`` is matched as a whole.

    Args:
        text: Text to scan

    Returns:
        The balanced substring (inclusive), or None if there is no opener or
        the depth never returns to zero
    """
    starts = [i for i in (text.find("{"), text.find("[")) if i != -1]
    if not starts:
        return None

    start = min(starts)
    opener = text[start]
    closer = _CLOSERS[opener]

    depth = 0
    for index in range(start, len(text)):
        char = text[index]
        if char == opener:
            depth += 1
        elif char == closer:
            depth -= 1
        if depth == 0:
            return text[start:index + 1]
    return None


def parse_bracket_scan(text: str) -> Optional[ExtractionSuccess]:
    """Decode the bracket-balanced value starting at the first ``{`` or ``[``."""
    span = find_balanced_span(text)
    if span is None:
        return None
    return _decode(span)


EXTRACTION_STRATEGIES: List[ExtractionStrategy] = [
    parse_direct,
    parse_fenced_block,
    parse_bracket_scan,
]


def truncate_raw(text: str, limit: int = RAW_EXCERPT_LENGTH) -> str:
    """First ``limit`` characters of ``text``, with an ellipsis when cut."""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def extract_json(
    text: Optional[str],
    strategies: Optional[List[ExtractionStrategy]] = None,
) -> ExtractionOutcome:
    """Recover a single JSON value from model output.

    Args:
        text: Raw model output
        strategies: Strategies to try in order (default: EXTRACTION_STRATEGIES)

    Returns:
        ExtractionSuccess with the decoded value, or ExtractionFailure with an
        error message and a truncated excerpt of the input
    """
    text = text or ""
    for strategy in strategies or EXTRACTION_STRATEGIES:
        result = strategy(text)
        if result is not None:
            logger.debug(f"JSON extracted by {strategy.__name__}")
            return result

    return ExtractionFailure(
        error="Could not find valid JSON in response",
        raw=truncate_raw(text),
    )
