"""Session backtest engine: candle replay, position state machine and reporting."""

from .candles import (
    CandleDataProvider,
    CsvCandleDataProvider,
    InMemoryCandleDataProvider,
    aggregate_candles,
    aggregate_sessions,
    filter_sessions_to_window,
    parse_candle_rows,
    split_into_sessions,
)
from .config import (
    BacktestRunConfig,
    ExecutionSettings,
    JsonStrategyConfigProvider,
    ProfitTargetSpec,
    StaticStrategyConfigProvider,
    StrategyConfig,
    TimeWindow,
    load_policy_class,
)
from .engine import BacktestEngine, RunResult, build_policy, run_backtest
from .indicators import Ema, ema_by_timestamp, ema_price_change
from .models import (
    Candle,
    CandleDataError,
    ConfigurationError,
    Direction,
    EmaPoint,
    EventType,
    Order,
    OrderRole,
    StrategyEvent,
    StrategyStatistics,
    StrategyStatus,
    Trade,
    TradeOutcome,
    TradeStateError,
    TradingSession,
    win_rate,
)
from .reporting import LedgerReporter, ListReportSink, LoggingReportSink, build_summary, trades_to_frame
from .strategy import EntryPolicy, Strategy

__all__ = [
    "BacktestEngine",
    "BacktestRunConfig",
    "Candle",
    "CandleDataError",
    "CandleDataProvider",
    "ConfigurationError",
    "CsvCandleDataProvider",
    "Direction",
    "Ema",
    "EmaPoint",
    "EntryPolicy",
    "EventType",
    "ExecutionSettings",
    "InMemoryCandleDataProvider",
    "JsonStrategyConfigProvider",
    "LedgerReporter",
    "ListReportSink",
    "LoggingReportSink",
    "Order",
    "OrderRole",
    "ProfitTargetSpec",
    "RunResult",
    "StaticStrategyConfigProvider",
    "Strategy",
    "StrategyConfig",
    "StrategyEvent",
    "StrategyStatistics",
    "StrategyStatus",
    "TimeWindow",
    "Trade",
    "TradeOutcome",
    "TradeStateError",
    "TradingSession",
    "aggregate_candles",
    "aggregate_sessions",
    "build_policy",
    "build_summary",
    "ema_by_timestamp",
    "ema_price_change",
    "filter_sessions_to_window",
    "load_policy_class",
    "parse_candle_rows",
    "run_backtest",
    "split_into_sessions",
    "trades_to_frame",
    "win_rate",
]
