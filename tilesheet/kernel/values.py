"""
Tilesheet Kernel — Value Parsers

Lenient number / date / time recognition shared by filtering and sorting.
Cells are always strings; these helpers decide whether a string can be
compared numerically. All functions return None instead of raising.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime

NUMERIC_PATTERN = re.compile(r"^[-+]?(\d+(\.\d*)?|\.\d+)(e[-+]?\d+)?$", re.IGNORECASE)
TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")

_SLASH_DATE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{2,4})$")
_DOT_DATE = re.compile(r"^(\d{1,2})\.(\d{1,2})\.(\d{2,4})$")
_DASH_DATE = re.compile(r"^(\d{4})[-/.](\d{1,2})[-/.](\d{1,2})$")

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def _to_millis(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return (value - _EPOCH).total_seconds() * 1000


def _coerce_year(value: int) -> int | None:
    if value >= 1000:
        return value
    if 0 <= value < 100:
        return value + 2000
    return None


def _build_date(year: int, month: int, day: int) -> float | None:
    try:
        return _to_millis(datetime(year, month, day))
    except ValueError:
        return None


def try_parse_number(value: object) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return number if number == number and abs(number) != float("inf") else None
    if value is None:
        return None
    text = str(value).strip()
    if not text or not NUMERIC_PATTERN.match(text):
        return None
    try:
        number = float(text)
    except ValueError:
        return None
    if number != number or abs(number) == float("inf"):
        return None
    return number


def try_parse_date(value: object) -> float | None:
    """Return milliseconds since the epoch for a recognisable date, else None."""
    if isinstance(value, datetime):
        return _to_millis(value)
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None

    # fromisoformat is strict enough to reject bare numbers like "2024"
    if not NUMERIC_PATTERN.match(text):
        try:
            return _to_millis(datetime.fromisoformat(text.replace("Z", "+00:00")))
        except ValueError:
            pass

    match = _DASH_DATE.match(text)
    if match:
        return _build_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))

    for pattern in (_SLASH_DATE, _DOT_DATE):
        match = pattern.match(text)
        if not match:
            continue
        year = _coerce_year(int(match.group(3)))
        if year is None:
            return None
        first, second = int(match.group(1)), int(match.group(2))
        month_first = _build_date(year, first, second)
        day_first = _build_date(year, second, first)
        candidates = [c for c in (month_first, day_first) if c is not None]
        return min(candidates) if candidates else None

    return None


def try_parse_time(value: object) -> float | None:
    """Return milliseconds since midnight for HH:MM[:SS], else None."""
    if value is None:
        return None
    text = str(value).strip()
    match = TIME_PATTERN.match(text)
    if not match:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    second = int(match.group(3) or 0)
    if hour > 23 or minute > 59 or second > 59:
        return None
    return float(((hour * 60 + minute) * 60 + second) * 1000)


def try_parse_timestamp(value: object) -> float | None:
    """Number first, then date. Used for lane sort keys."""
    number = try_parse_number(value)
    if number is not None:
        return number
    return try_parse_date(value)


def format_number(value: float) -> str:
    """Integers without a decimal point, others trimmed to 6 places."""
    if value == int(value) and abs(value) < 1e15:
        return str(int(value))
    text = f"{value:.6f}".rstrip("0").rstrip(".")
    return text or "0"
