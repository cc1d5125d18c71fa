"""Indicators computed over aggregated candle series."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Protocol, Sequence

from core.market_metadata import round_price

from .models import Candle, EmaPoint


class Indicator(Protocol):
    """Per-candle series keyed by timestamp, such as ``Ema``."""

    def calculate(self, candles: Sequence[Candle], period: int) -> list[EmaPoint]:
        ...


class Ema:
    """
    Exponential moving average aligned one-to-one with its input candles.

    The first point equals the first close. Later points apply
    ``m * close + (1 - m) * previous`` with ``m = 2 / (period + 1)``. The running
    value is carried unrounded and each emitted point is rounded to the price
    precision. The calculation holds no state between calls.
    """

    def calculate(self, candles: Sequence[Candle], period: int) -> list[EmaPoint]:
        period = int(period)
        if period < 1:
            raise ValueError(f"EMA period must be at least 1, got {period}")
        if not candles:
            return []

        multiplier = 2.0 / (period + 1)
        running = float(candles[0].close)
        points = [EmaPoint(timestamp=candles[0].timestamp, value=running)]
        for candle in candles[1:]:
            running = multiplier * float(candle.close) + (1.0 - multiplier) * running
            points.append(EmaPoint(timestamp=candle.timestamp, value=round_price(running)))
        return points


def ema_by_timestamp(points: Iterable[EmaPoint]) -> dict[datetime, float]:
    return {point.timestamp: point.value for point in points}


def ema_price_change(candle: Candle, ema_value: float) -> float:
    """
    Percentage distance of the candle's extreme from the EMA.

    Uses the high when the candle closed above the EMA, otherwise the low.
    """
    if not ema_value:
        return 0.0
    extreme = candle.high if candle.close > ema_value else candle.low
    return round((float(extreme) - ema_value) / ema_value * 100.0, 2)
