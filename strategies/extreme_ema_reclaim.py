"""Wait for a stretch away from the slow EMA, then enter once price reclaims the fast EMA."""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from backtest.indicators import Ema, Indicator, ema_by_timestamp, ema_price_change
from backtest.models import Candle

logger = logging.getLogger(__name__)


class ExtremeEmaReclaimPolicy:
    """
    Two-step entry keyed on a slow and a fast EMA.

    A long setup is armed when a candle stretches ``extreme_pct`` percent or
    more below the slow EMA; the entry fires on the first later (or same)
    candle that closes at least ``reclaim_points`` above the fast EMA. Shorts
    mirror this. Armed setups are discarded at the start of every session.
    """

    def __init__(
        self,
        extreme_pct: float = 0.25,
        slow_period: int = 20,
        fast_period: int = 10,
        reclaim_points: float = 5.0,
        indicator: Optional[Indicator] = None,
    ):
        if float(extreme_pct) <= 0:
            raise ValueError("extreme_pct must be positive")
        if int(slow_period) < 1 or int(fast_period) < 1:
            raise ValueError("EMA periods must be at least 1")
        if float(reclaim_points) < 0:
            raise ValueError("reclaim_points must be non-negative")
        self.extreme_pct = float(extreme_pct)
        self.slow_period = int(slow_period)
        self.fast_period = int(fast_period)
        self.reclaim_points = float(reclaim_points)
        self.indicator: Indicator = indicator or Ema()
        self.slow_ema: dict = {}
        self.fast_ema: dict = {}
        self.long_armed = False
        self.short_armed = False

    def load_indicators(self, candles: Sequence[Candle]) -> None:
        self.slow_ema = ema_by_timestamp(self.indicator.calculate(candles, self.slow_period))
        self.fast_ema = ema_by_timestamp(self.indicator.calculate(candles, self.fast_period))

    def reset_session(self) -> None:
        self.long_armed = False
        self.short_armed = False

    def long_entry(self, candle: Candle) -> bool:
        slow = self.slow_ema.get(candle.timestamp)
        fast = self.fast_ema.get(candle.timestamp)
        if slow is None or fast is None:
            return False
        if not self.long_armed and ema_price_change(candle, slow) <= -self.extreme_pct:
            self.long_armed = True
            logger.debug("Long setup armed at %s", candle.timestamp)
        if self.long_armed and candle.close - fast >= self.reclaim_points:
            self.long_armed = False
            return True
        return False

    def short_entry(self, candle: Candle) -> bool:
        slow = self.slow_ema.get(candle.timestamp)
        fast = self.fast_ema.get(candle.timestamp)
        if slow is None or fast is None:
            return False
        if not self.short_armed and ema_price_change(candle, slow) >= self.extreme_pct:
            self.short_armed = True
            logger.debug("Short setup armed at %s", candle.timestamp)
        if self.short_armed and fast - candle.close >= self.reclaim_points:
            self.short_armed = False
            return True
        return False
