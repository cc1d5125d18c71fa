"""CSV candle loading, timeframe aggregation and per-day session splitting."""

from __future__ import annotations

import csv
import logging
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Iterable, Optional, Protocol, Sequence

import numpy as np

from core.market_metadata import DEFAULT_NON_TRADING_WEEKDAYS

from .models import Candle, CandleDataError, TradingSession

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1)
_ROW_COLUMNS = 6
_TIMESTAMP_FORMATS: tuple[str, ...] = (
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y %I:%M %p",
    "%Y%m%d %H%M%S",
)


class CandleDataProvider(Protocol):
    """Source of 1-minute candles in strictly chronological order."""

    def load(self, start: Optional[date] = None, end: Optional[date] = None) -> list[Candle]:
        ...


def parse_timestamp(raw_value: str) -> datetime:
    raw = str(raw_value or "").strip()
    if not raw:
        raise ValueError("empty timestamp")
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        parsed = None
    if parsed is None:
        for fmt in _TIMESTAMP_FORMATS:
            try:
                parsed = datetime.strptime(raw, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        raise ValueError(f"unrecognized timestamp {raw!r}")
    # Session keys and trading windows are wall-clock in the data's own timezone.
    return parsed.replace(tzinfo=None)


def _datetime_to_ns(value: datetime) -> int:
    delta = value - _EPOCH
    return ((delta.days * 86400) + delta.seconds) * 1_000_000_000 + (delta.microseconds * 1_000)


def _is_header(row: list[str]) -> bool:
    """A first row whose timestamp cell holds no digits (``timestamp``, ``Date/Time``, ...)."""
    return not any(ch.isdigit() for ch in row[0])


def parse_candle_rows(
    lines: Iterable[str],
    non_trading_weekdays: frozenset[int] = DEFAULT_NON_TRADING_WEEKDAYS,
    source: str = "<candles>",
) -> list[Candle]:
    """
    Parse raw ``timestamp,open,high,low,close,volume`` rows into candles.

    Blank lines and a leading header are skipped. Rows with the wrong shape are
    logged and skipped. An unparseable timestamp or number raises
    ``CandleDataError`` so a corrupt file never produces a partial series.
    Rows that fall on a non-trading weekday are dropped silently.
    """
    candles: list[Candle] = []
    skipped = 0
    for line_no, row in enumerate(csv.reader(lines), start=1):
        if not row or all(not cell.strip() for cell in row):
            continue
        if not candles and line_no == 1 and _is_header(row):
            continue
        # Trailing delimiters leave empty cells past the volume column.
        while len(row) > _ROW_COLUMNS and not row[-1].strip():
            row = row[:-1]
        if len(row) != _ROW_COLUMNS:
            skipped += 1
            logger.warning(
                "Skipping %s line %s: expected %s columns, got %s",
                source,
                line_no,
                _ROW_COLUMNS,
                len(row),
            )
            continue

        try:
            timestamp = parse_timestamp(row[0])
            values = np.array([float(cell) for cell in row[1:]], dtype=float)
        except ValueError as exc:
            raise CandleDataError(f"Invalid candle data in {source} line {line_no}: {exc}") from exc
        if not np.isfinite(values).all():
            raise CandleDataError(f"Invalid candle data in {source} line {line_no}: non-finite value in {row[1:]}")
        open_, high, low, close, volume = (float(value) for value in values)

        if timestamp.weekday() in non_trading_weekdays:
            continue
        candles.append(Candle(timestamp=timestamp, open=open_, high=high, low=low, close=close, volume=volume))

    if skipped:
        logger.info("Parsed %s candles from %s (%s malformed rows skipped)", len(candles), source, skipped)
    return candles


def split_into_sessions(candles: Iterable[Candle]) -> dict[date, TradingSession]:
    """Group candles by calendar date, preserving first-seen order of the dates."""
    sessions: dict[date, TradingSession] = {}
    for candle in candles:
        key = candle.trading_date
        session = sessions.get(key)
        if session is None:
            session = TradingSession(key=key)
            sessions[key] = session
        session.candles.append(candle)
    return sessions


def aggregate_candles(candles: Sequence[Candle], minutes: int) -> list[Candle]:
    """
    Roll consecutive runs of ``minutes`` candles into single bars.

    A trailing partial run is still emitted. Callers must pass one session at a
    time; use ``aggregate_sessions`` for multi-day input.
    """
    size = int(minutes)
    if size < 1:
        raise ValueError(f"Timeframe must be at least one minute: {minutes}")
    if not candles:
        return []
    if size == 1:
        return list(candles)

    highs = np.asarray([item.high for item in candles], dtype=np.float64)
    lows = np.asarray([item.low for item in candles], dtype=np.float64)
    volumes = np.asarray([item.volume for item in candles], dtype=np.float64)

    bars: list[Candle] = []
    for start in range(0, len(candles), size):
        end = min(start + size, len(candles))
        bars.append(
            Candle(
                timestamp=candles[start].timestamp,
                open=candles[start].open,
                high=float(highs[start:end].max()),
                low=float(lows[start:end].min()),
                close=candles[end - 1].close,
                volume=float(volumes[start:end].sum()),
            )
        )
    return bars


def aggregate_sessions(candles: Iterable[Candle], minutes: int) -> dict[date, TradingSession]:
    """Split into calendar-day sessions, then aggregate each session on its own."""
    sessions = split_into_sessions(candles)
    for session in sessions.values():
        session.candles = aggregate_candles(session.candles, minutes)
    return sessions


def filter_sessions_to_window(sessions: dict[date, TradingSession], window) -> dict[date, TradingSession]:
    """Keep candles whose time of day is inside ``window`` (half-open); drop emptied sessions."""
    filtered: dict[date, TradingSession] = {}
    for key, session in sessions.items():
        kept = [candle for candle in session.candles if window.contains(candle.time_of_day)]
        if kept:
            filtered[key] = TradingSession(key=key, candles=kept)
    return filtered


class CsvCandleDataProvider:
    """Load 1-minute candles from a headerless ``timestamp,open,high,low,close,volume`` file."""

    def __init__(
        self,
        path: str | Path,
        non_trading_weekdays: frozenset[int] = DEFAULT_NON_TRADING_WEEKDAYS,
    ):
        self.path = Path(path)
        self.non_trading_weekdays = frozenset(non_trading_weekdays)
        self._candles: list[Candle] | None = None
        self._time_ns: np.ndarray | None = None

    def _load_all(self) -> list[Candle]:
        if self._candles is not None:
            return self._candles
        if not self.path.exists():
            raise FileNotFoundError(f"Candle file not found: {self.path}")

        with self.path.open("r", encoding="utf-8", newline="") as handle:
            candles = parse_candle_rows(handle, self.non_trading_weekdays, source=str(self.path))

        time_ns = np.asarray([_datetime_to_ns(item.timestamp) for item in candles], dtype=np.int64)
        if time_ns.size > 1 and np.any(time_ns[1:] < time_ns[:-1]):
            raise CandleDataError(f"Candles in {self.path} are not in chronological order")

        logger.debug("Loaded candles %s rows=%s", self.path, len(candles))
        self._candles = candles
        self._time_ns = time_ns
        return candles

    def load(self, start: Optional[date] = None, end: Optional[date] = None) -> list[Candle]:
        """Return candles whose calendar date lies within the inclusive ``[start, end]`` bound."""
        candles = self._load_all()
        assert self._time_ns is not None

        left = 0
        right = len(candles)
        if start is not None:
            start_ns = _datetime_to_ns(datetime.combine(start, datetime.min.time()))
            left = int(np.searchsorted(self._time_ns, start_ns, side="left"))
        if end is not None:
            end_ns = _datetime_to_ns(datetime.combine(end + timedelta(days=1), datetime.min.time()))
            right = int(np.searchsorted(self._time_ns, end_ns, side="left"))
        if right < left:
            right = left
        return candles[left:right]


class InMemoryCandleDataProvider:
    """Candle provider over an already-parsed series."""

    def __init__(self, candles: Sequence[Candle]):
        self._candles = list(candles)

    def load(self, start: Optional[date] = None, end: Optional[date] = None) -> list[Candle]:
        return [
            candle
            for candle in self._candles
            if (start is None or candle.trading_date >= start) and (end is None or candle.trading_date <= end)
        ]
