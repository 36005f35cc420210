"""Tests for zfsh.units module."""
from __future__ import annotations

import pytest

from zfsh.units import (
    DAY,
    HOUR,
    MINUTE,
    MONTH,
    WEEK,
    YEAR,
    ParseError,
    exact_duration,
    format_duration,
    format_size,
    parse_duration,
    parse_size,
)


@pytest.mark.parametrize("text,expected", [
    ("90", 90),
    ("30s", 30),
    ("15m", 15 * MINUTE),
    ("15min", 15 * MINUTE),
    ("12h", 12 * HOUR),
    ("7d", 7 * DAY),
    ("7 days", 7 * DAY),
    ("2w", 2 * WEEK),
    ("3mo", 3 * MONTH),
    ("1y", YEAR),
    ("  4D ", 4 * DAY),
    ("0d", 0),
])
def test_parse_duration(text, expected):
    assert parse_duration(text) == expected


def test_m_is_minutes_not_months():
    assert parse_duration("1m") == 60
    assert parse_duration("1mo") == 30 * DAY


@pytest.mark.parametrize("text", ["", "d", "-3d", "1.5d", "7x", "7 d ago", None])
def test_parse_duration_rejects(text):
    with pytest.raises(ParseError):
        parse_duration(text)


def test_parse_error_is_value_error():
    with pytest.raises(ValueError):
        parse_duration("soon")


@pytest.mark.parametrize("seconds,expected", [
    (0, "0s"),
    (59, "59s"),
    (90, "1m"),
    (3 * HOUR, "3h"),
    (DAY + HOUR, "1d"),
    (14 * DAY, "2w"),
    (45 * DAY, "1mo"),
    (400 * DAY, "1y"),
    (-5, "0s"),
])
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected


@pytest.mark.parametrize("seconds,expected", [
    (0, "0s"),
    (90, "90s"),
    (36 * HOUR, "36h"),
    (14 * DAY, "2w"),
    (45 * DAY, "45d"),
    (60 * DAY, "2mo"),
    (YEAR, "1y"),
])
def test_exact_duration_parses_back(seconds, expected):
    assert exact_duration(seconds) == expected
    assert parse_duration(expected) == seconds


@pytest.mark.parametrize("text,expected", [
    ("4096", 4096),
    ("512B", 512),
    ("1K", 1024),
    ("10M", 10 * 1024 ** 2),
    ("50G", 50 * 1024 ** 3),
    ("50gb", 50 * 1024 ** 3),
    ("2T", 2 * 1024 ** 4),
    ("1.5G", 1024 ** 3),
])
def test_parse_size(text, expected):
    assert parse_size(text) == expected


@pytest.mark.parametrize("text", ["", "G", "10X", "-1G"])
def test_parse_size_rejects(text):
    with pytest.raises(ParseError):
        parse_size(text)


def test_format_size():
    assert format_size(512) == "512B"
    assert format_size(1536) == "1.5K"
    assert format_size(50 * 1024 ** 3) == "50.0G"
    assert format_size(3 * 1024 ** 4) == "3.0T"
