"""
MQTTWatch Numeric Extractor

Pulls a single chartable number out of a message payload.

A payload is either a bare number ("23.5") or a JSON document that contains
one. JSON objects are probed for conventional sensor field names first, then
fall back to their entries in order. No free-text scanning is attempted: a
payload like "temp is 21C" yields nothing.
"""
import json
import math
import re
from typing import Any, Optional


NUMERIC_FIELD_NAMES: tuple[str, ...] = (
    "value",
    "val",
    "data",
    "temp",
    "temperature",
    "humidity",
    "pressure",
    "reading",
)

# Plain decimal literal: ASCII digits only, no digit separators
_NUMBER_LITERAL = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?", re.ASCII)


def extract_numeric(payload: str) -> Optional[float]:
    """
    Return the numeric value carried by `payload`, or None.

    Pure function: no side effects, same input gives the same output. Never
    raises; a payload that cannot yield a finite number yields None.
    """
    text = payload.strip()
    if _NUMBER_LITERAL.fullmatch(text):
        value = float(text)
        return value if math.isfinite(value) else None

    try:
        document = json.loads(payload)
    except (ValueError, RecursionError):
        return None
    try:
        return _extract_from_json(document)
    except RecursionError:
        return None


def _extract_from_json(value: Any) -> Optional[float]:
    # bool is an int subclass; JSON true/false are not readings
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            return None
        return number if math.isfinite(number) else None
    if isinstance(value, dict):
        for key in NUMERIC_FIELD_NAMES:
            if key in value:
                number = _extract_from_json(value[key])
                if number is not None:
                    return number
        for entry in value.values():
            number = _extract_from_json(entry)
            if number is not None:
                return number
        return None
    if isinstance(value, list):
        return _extract_from_json(value[0]) if value else None
    return None
