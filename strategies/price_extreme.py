"""Fade stretched candles: buy when price sinks below the EMA, sell when it spikes above."""

from __future__ import annotations

from typing import Optional, Sequence

from backtest.indicators import Ema, Indicator, ema_by_timestamp, ema_price_change
from backtest.models import Candle


class PriceExtremePolicy:
    """Enter against moves that stretch ``threshold_pct`` percent or more away from the EMA."""

    def __init__(self, threshold_pct: float = 0.25, ema_period: int = 20, indicator: Optional[Indicator] = None):
        if float(threshold_pct) <= 0:
            raise ValueError("threshold_pct must be positive")
        if int(ema_period) < 1:
            raise ValueError("ema_period must be at least 1")
        self.threshold_pct = float(threshold_pct)
        self.ema_period = int(ema_period)
        self.indicator: Indicator = indicator or Ema()
        self.ema: dict = {}

    def load_indicators(self, candles: Sequence[Candle]) -> None:
        self.ema = ema_by_timestamp(self.indicator.calculate(candles, self.ema_period))

    def reset_session(self) -> None:
        pass

    def price_change(self, candle: Candle) -> float | None:
        ema_value = self.ema.get(candle.timestamp)
        if ema_value is None:
            return None
        return ema_price_change(candle, ema_value)

    def long_entry(self, candle: Candle) -> bool:
        change = self.price_change(candle)
        return change is not None and change <= -self.threshold_pct

    def short_entry(self, candle: Candle) -> bool:
        change = self.price_change(candle)
        return change is not None and change >= self.threshold_pct
