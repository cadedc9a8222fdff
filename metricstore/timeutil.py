"""
Time Helpers

Provides:
- Duration parsing ("5m", "1h30m", "250ms")
- Seconds <-> milliseconds conversion
"""

import re
import time
from typing import Callable, Union

Clock = Callable[[], float]

_UNITS_MS = {
    "ms": 1,
    "s": 1000,
    "m": 60 * 1000,
    "h": 60 * 60 * 1000,
    "d": 24 * 60 * 60 * 1000,
    "w": 7 * 24 * 60 * 60 * 1000,
    "y": 365 * 24 * 60 * 60 * 1000,
}

_DURATION_PART = re.compile(r"(\d+)(ms|s|m|h|d|w|y)")
DURATION_RE = re.compile(r"^(?:\d+(?:ms|s|m|h|d|w|y))+$")


def parse_duration_ms(text: str) -> int:
    """Parse a duration string into milliseconds"""
    text = text.strip()
    if not DURATION_RE.match(text):
        raise ValueError(f"invalid duration: {text!r}")
    total = 0
    for amount, unit in _DURATION_PART.findall(text):
        total += int(amount) * _UNITS_MS[unit]
    if total <= 0:
        raise ValueError(f"duration must be positive: {text!r}")
    return total


def parse_duration(value: Union[str, int, float]) -> float:
    """Parse a duration (string or number of seconds) into seconds"""
    if isinstance(value, (int, float)):
        return float(value)
    return parse_duration_ms(value) / 1000.0


def to_ms(seconds: float) -> int:
    """Convert Unix seconds to integer milliseconds"""
    return int(round(seconds * 1000))


def to_seconds(ms: int) -> float:
    return ms / 1000.0


def now_ms(clock: Clock = time.time) -> int:
    return to_ms(clock())
