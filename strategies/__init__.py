"""Entry policies that plug into ``backtest.strategy.Strategy``."""

from .extreme_ema_reclaim import ExtremeEmaReclaimPolicy
from .price_extreme import PriceExtremePolicy

__all__ = ["PriceExtremePolicy", "ExtremeEmaReclaimPolicy"]
