"""Human duration and byte-size strings."""
from __future__ import annotations

import re

MINUTE = 60
HOUR = 60 * MINUTE
DAY = 24 * HOUR
WEEK = 7 * DAY
MONTH = 30 * DAY  # fixed, not calendar-aware
YEAR = 365 * DAY

_DURATION_UNITS = {
    "": 1,
    "s": 1, "sec": 1, "second": 1, "seconds": 1,
    "m": MINUTE, "min": MINUTE, "minute": MINUTE, "minutes": MINUTE,
    "h": HOUR, "hour": HOUR, "hours": HOUR,
    "d": DAY, "day": DAY, "days": DAY,
    "w": WEEK, "week": WEEK, "weeks": WEEK,
    "mo": MONTH, "month": MONTH, "months": MONTH,
    "y": YEAR, "year": YEAR, "years": YEAR,
}

# Largest first; format_duration picks the first that fits.
_DURATION_LABELS = [
    (YEAR, "y"),
    (MONTH, "mo"),
    (WEEK, "w"),
    (DAY, "d"),
    (HOUR, "h"),
    (MINUTE, "m"),
]

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([a-z]*)\s*$", re.IGNORECASE)

_SIZE_UNITS = {
    "": 1, "B": 1,
    "K": 1024, "KB": 1024,
    "M": 1024 ** 2, "MB": 1024 ** 2,
    "G": 1024 ** 3, "GB": 1024 ** 3,
    "T": 1024 ** 4, "TB": 1024 ** 4,
}

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d*)?)\s*([a-z]*)\s*$", re.IGNORECASE)


class ParseError(ValueError):
    """Raised for a malformed duration or size string."""


def parse_duration(text: str) -> int:
    """Convert an age string such as "7d", "2w", "3mo" or "90" to seconds.

    A missing unit means seconds. The magnitude must be a non-negative
    integer. "m" is minutes; months are "mo" (fixed at 30 days) and years
    "y" (fixed at 365 days).
    """
    if text is None:
        raise ParseError("Empty duration")
    match = _DURATION_RE.match(str(text))
    if not match:
        raise ParseError(f"Invalid duration: {text!r}")
    magnitude, unit = match.groups()
    multiplier = _DURATION_UNITS.get(unit.lower())
    if multiplier is None:
        raise ParseError(f"Unknown duration unit {unit!r} in {text!r}")
    return int(magnitude) * multiplier


def format_duration(seconds: int) -> str:
    """Render seconds as a compact label, e.g. 93600 -> "1d". Lossy."""
    seconds = max(int(seconds), 0)
    for size, label in _DURATION_LABELS:
        if seconds >= size:
            return f"{seconds // size}{label}"
    return f"{seconds}s"


def exact_duration(seconds: int) -> str:
    """Render seconds with the largest unit that divides them evenly.

    Unlike format_duration the result parses back to the same value,
    e.g. 129600 -> "36h" and 45 days -> "45d".
    """
    seconds = max(int(seconds), 0)
    for size, label in _DURATION_LABELS:
        if seconds and seconds % size == 0:
            return f"{seconds // size}{label}"
    return f"{seconds}s"


def parse_size(text: str) -> int:
    """Convert "50G", "512M", "1.5T" or "4096" to bytes (binary multiples).

    Fractions are truncated before scaling, so "1.5G" is one gibibyte.
    """
    match = _SIZE_RE.match(str(text))
    if not match:
        raise ParseError(f"Invalid size: {text!r}")
    number, unit = match.groups()
    multiplier = _SIZE_UNITS.get(unit.upper())
    if multiplier is None:
        raise ParseError(f"Unknown size unit {unit!r} in {text!r}")
    return int(float(number)) * multiplier


def format_size(num_bytes: int) -> str:
    """Render bytes as "50.0G", "1.5M", "512B"."""
    num_bytes = int(num_bytes)
    for power, suffix in ((4, "T"), (3, "G"), (2, "M"), (1, "K")):
        if num_bytes >= 1024 ** power:
            return f"{num_bytes / 1024 ** power:.1f}{suffix}"
    return f"{num_bytes}B"
