"""Shared market metadata and normalization helpers."""

from __future__ import annotations

import re
from datetime import time
from typing import Any, Iterable

# Futures contracts quote four ticks per index point (e.g. MNQ: 0.25 tick, $0.50/tick).
DEFAULT_TICKS_PER_POINT = 4
PRICE_PRECISION = 2

# Canonical timeframe aliases; values are bar lengths in minutes.
TIMEFRAME_ALIASES: dict[str, int] = {
    "1m": 1,
    "m1": 1,
    "2m": 2,
    "m2": 2,
    "3m": 3,
    "m3": 3,
    "5m": 5,
    "m5": 5,
    "10m": 10,
    "m10": 10,
    "15m": 15,
    "m15": 15,
    "30m": 30,
    "m30": 30,
    "1h": 60,
    "h1": 60,
}

WEEKDAY_ALIASES: dict[str, int] = {
    "MON": 0,
    "MONDAY": 0,
    "TUE": 1,
    "TUESDAY": 1,
    "WED": 2,
    "WEDNESDAY": 2,
    "THU": 3,
    "THURSDAY": 3,
    "FRI": 4,
    "FRIDAY": 4,
    "SAT": 5,
    "SATURDAY": 5,
    "SUN": 6,
    "SUNDAY": 6,
}

DEFAULT_NON_TRADING_WEEKDAYS: frozenset[int] = frozenset({6})

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")


def normalize_timeframe(raw: Any) -> int:
    """
    Normalize a timeframe to a whole number of minutes.

    Examples:
    - 3 -> 3
    - "5" -> 5
    - "15m" / "M15" -> 15
    """
    if isinstance(raw, bool):
        raise ValueError(f"Unsupported timeframe: {raw}")
    if isinstance(raw, int):
        minutes = raw
    else:
        text = str(raw or "").strip()
        if not text:
            raise ValueError("Timeframe is required.")
        key = text.lower()
        if key in TIMEFRAME_ALIASES:
            minutes = TIMEFRAME_ALIASES[key]
        elif key.isdigit():
            minutes = int(key)
        else:
            raise ValueError(
                f"Unsupported timeframe: {raw}. "
                "Use whole minutes or an alias such as 1m, 3m, 5m, 15m, 30m, 1h."
            )
    if minutes < 1:
        raise ValueError(f"Timeframe must be at least one minute: {raw}")
    return minutes


def normalize_weekdays(raw: Iterable[Any] | None) -> frozenset[int]:
    """Normalize weekday names or numbers (Monday=0) to a set of ``date.weekday()`` values."""
    if raw is None:
        return DEFAULT_NON_TRADING_WEEKDAYS
    result: set[int] = set()
    for item in raw:
        if isinstance(item, int) and not isinstance(item, bool):
            if not 0 <= item <= 6:
                raise ValueError(f"Weekday number out of range: {item}")
            result.add(item)
            continue
        key = str(item or "").strip().upper()
        if key not in WEEKDAY_ALIASES:
            raise ValueError(f"Unsupported weekday: {item}")
        result.add(WEEKDAY_ALIASES[key])
    return frozenset(result)


def parse_time_of_day(raw: Any) -> time:
    """Parse ``HH:MM[:SS]`` strings, ``{"hour", "minute"}`` mappings or ``time`` objects."""
    if isinstance(raw, time):
        return raw.replace(microsecond=0)
    if isinstance(raw, dict):
        try:
            return time(int(raw.get("hour", 0)), int(raw.get("minute", 0)), int(raw.get("second", 0)))
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid time of day: {raw}") from exc

    text = str(raw or "").strip()
    match = _TIME_RE.match(text)
    if not match:
        raise ValueError(f"Invalid time of day: {raw}")
    hour, minute, second = int(match.group(1)), int(match.group(2)), int(match.group(3) or 0)
    try:
        return time(hour, minute, second)
    except ValueError as exc:
        raise ValueError(f"Invalid time of day: {raw}") from exc


def shift_time_of_day(value: time, hours: float) -> time:
    """Shift a time of day by a whole/fractional hour offset, wrapping at midnight."""
    total_seconds = value.hour * 3600 + value.minute * 60 + value.second + int(round(hours * 3600))
    total_seconds %= 24 * 3600
    return time(total_seconds // 3600, (total_seconds % 3600) // 60, total_seconds % 60)


def get_point_value(price_per_tick: float, ticks_per_point: int = DEFAULT_TICKS_PER_POINT) -> float:
    """Monetary value of one full point of price movement per contract."""
    return float(price_per_tick) * int(ticks_per_point)


def round_price(value: float) -> float:
    """Round a price to the engine's display/compare precision."""
    return round(float(value), PRICE_PRECISION)


def format_price(value: float) -> str:
    return f"{float(value):,.{PRICE_PRECISION}f}"


def format_money(value: float) -> str:
    amount = float(value)
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"
