"""Shared pytest fixtures and builders for the backtest test suite."""

import copy
import sys
from datetime import date, datetime
from pathlib import Path

import pytest

_TEST_DIR = Path(__file__).resolve().parent
_PROJECT_ROOT = _TEST_DIR.parent

if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))

from backtest.config import StrategyConfig  # noqa: E402
from backtest.models import Candle  # noqa: E402

TRADING_DAY = date(2024, 1, 2)

BASE_CONFIG = {
    "id": "cfg-1",
    "name": "Test config",
    "timeframe": 1,
    "price_per_tick": 0.5,
    "trading_window_start": "09:30",
    "trading_window_end": "16:00",
    "starting_balance": 10000,
    "max_trades_per_session": 1,
    "execution": {
        "entry_window_start": "09:30",
        "entry_window_end": "16:00",
        "contracts": 1,
        "initial_stop_loss": 20,
        "profit_targets": [{"offset": 20, "contracts": 1}],
    },
}


def make_candle(when, open_, high, low, close, volume=1.0, day=TRADING_DAY):
    """``when`` is either a datetime or an ``HH:MM`` string on ``day``."""
    if isinstance(when, str):
        hour, minute = (int(part) for part in when.split(":"))
        when = datetime(day.year, day.month, day.day, hour, minute)
    return Candle(
        timestamp=when,
        open=float(open_),
        high=float(high),
        low=float(low),
        close=float(close),
        volume=float(volume),
    )


def make_bars(rows, day=TRADING_DAY):
    """Build candles from ``(HH:MM, open, high, low, close[, volume])`` tuples."""
    return [make_candle(row[0], *row[1:], day=day) for row in rows]


def config_payload(execution=None, **overrides):
    payload = copy.deepcopy(BASE_CONFIG)
    payload.update(overrides)
    if execution:
        payload["execution"].update(execution)
    return payload


def make_config(execution=None, **overrides) -> StrategyConfig:
    return StrategyConfig.from_dict(config_payload(execution=execution, **overrides))


class ScriptedPolicy:
    """Entry policy that fires on preset timestamps and records how it was consulted."""

    def __init__(self, longs=(), shorts=()):
        self.longs = set(longs)
        self.shorts = set(shorts)
        self.long_calls = []
        self.short_calls = []
        self.reset_calls = 0
        self.loaded = []

    def load_indicators(self, candles):
        self.loaded = list(candles)

    def reset_session(self):
        self.reset_calls += 1

    def long_entry(self, candle):
        self.long_calls.append(candle.timestamp)
        return candle.timestamp in self.longs

    def short_entry(self, candle):
        self.short_calls.append(candle.timestamp)
        return candle.timestamp in self.shorts


def at(hhmm, day=TRADING_DAY):
    hour, minute = (int(part) for part in hhmm.split(":"))
    return datetime(day.year, day.month, day.day, hour, minute)


@pytest.fixture
def project_root() -> Path:
    return _PROJECT_ROOT
