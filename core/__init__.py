"""Core utilities exported by the session backtest repo."""

from .logging_setup import REPORT_LOGGER_NAME, setup_logging, setup_report_logging, teardown_logging
from .market_metadata import (
    DEFAULT_NON_TRADING_WEEKDAYS,
    DEFAULT_TICKS_PER_POINT,
    PRICE_PRECISION,
    TIMEFRAME_ALIASES,
    WEEKDAY_ALIASES,
    format_money,
    format_price,
    get_point_value,
    normalize_timeframe,
    normalize_weekdays,
    parse_time_of_day,
    round_price,
    shift_time_of_day,
)

__all__ = [
    "REPORT_LOGGER_NAME",
    "setup_logging",
    "setup_report_logging",
    "teardown_logging",
    "DEFAULT_NON_TRADING_WEEKDAYS",
    "DEFAULT_TICKS_PER_POINT",
    "PRICE_PRECISION",
    "TIMEFRAME_ALIASES",
    "WEEKDAY_ALIASES",
    "normalize_timeframe",
    "normalize_weekdays",
    "parse_time_of_day",
    "shift_time_of_day",
    "get_point_value",
    "round_price",
    "format_price",
    "format_money",
]
