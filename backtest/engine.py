"""Replay loop that drives one strategy across every configured parameter set."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Optional

import pandas as pd

from .candles import CandleDataProvider, CsvCandleDataProvider
from .config import (
    BacktestRunConfig,
    StaticStrategyConfigProvider,
    StrategyConfig,
    StrategyConfigProvider,
    load_policy_class,
)
from .models import ConfigurationError, Direction, TradingSession
from .reporting import (
    LedgerReporter,
    LoggingReportSink,
    ReportSink,
    build_equity_curve,
    build_summary,
    trades_to_frame,
    write_run_artifacts,
    write_summary,
)
from .strategy import Strategy

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    config: StrategyConfig
    summary: dict[str, Any]
    trades: pd.DataFrame
    equity_curve: pd.DataFrame
    paths: dict[str, str] = field(default_factory=dict)


class BacktestEngine:
    """
    Replays candle sessions through ``strategy`` once per loaded configuration.

    Configurations are fully loaded and validated before the first replay.
    Each replay starts from ``Strategy.load_configuration`` so no state leaks
    from one configuration into the next.
    """

    def __init__(
        self,
        strategy: Strategy,
        config_provider: StrategyConfigProvider,
        data_provider: CandleDataProvider,
        sink: Optional[ReportSink] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
        report_dir: str | Path | None = None,
    ):
        self.strategy = strategy
        self.config_provider = config_provider
        self.data_provider = data_provider
        self.sink = sink or LoggingReportSink()
        self.start = start
        self.end = end
        self.report_dir = Path(report_dir) if report_dir is not None else None

    def run(self) -> list[RunResult]:
        configs = self.config_provider.load()
        if not configs:
            raise ConfigurationError("No strategy configurations to run")
        logger.info("Running %s configuration(s)", len(configs))
        return [self._run_config(config) for config in configs]

    def _run_config(self, config: StrategyConfig) -> RunResult:
        strategy = self.strategy
        strategy.load_configuration(config)
        candles = self.data_provider.load(self.start, self.end)
        strategy.load_candles(candles)
        strategy.load_indicators()

        reporter = LedgerReporter(self.sink)
        reporter.write_header(config.name, strategy.balance)
        strategy.subscribe(reporter, *reporter.event_types)
        try:
            for session in strategy.sessions.values():
                self._run_session(session)
        finally:
            strategy.unsubscribe(reporter)

        trades_df = trades_to_frame(strategy.trades)
        equity_curve = build_equity_curve(trades_df, strategy.initial_balance)
        summary = build_summary(strategy, equity_curve)
        write_summary(self.sink, summary)
        logger.info(
            "Finished %s: trades=%s gain=%.2f win_rate=%.2f",
            config.id,
            summary["total_trades"],
            summary["account_gain"],
            summary["win_rate"],
        )

        paths: dict[str, str] = {}
        if self.report_dir is not None:
            paths = write_run_artifacts(
                self.report_dir / config.id,
                summary,
                trades_df,
                equity_curve,
                config=config.to_dict(),
            )
            logger.info("Wrote report artifacts for %s to %s", config.id, paths["report_dir"])
        return RunResult(config=config, summary=summary, trades=trades_df, equity_curve=equity_curve, paths=paths)

    def _run_session(self, session: TradingSession) -> None:
        strategy = self.strategy
        config = strategy.config
        entry_window = config.effective_entry_window
        strategy.reset_session(session.key)

        for candle in session.candles:
            if strategy.in_market:
                strategy.check_open_position(candle)

            if config.stop_after_winning and strategy.session_has_win(session.key):
                continue
            if strategy.in_market:
                continue
            if strategy.session_trade_count(session.key) >= config.max_trades_per_session:
                continue
            if not entry_window.contains(candle.time_of_day):
                continue

            if strategy.long_entry(candle):
                strategy.open_trade(Direction.LONG, candle)
            elif strategy.short_entry(candle):
                strategy.open_trade(Direction.SHORT, candle)

        if strategy.in_market and config.execution.flatten_at_session_end and session.last_candle is not None:
            strategy.flatten(session.last_candle)


def build_policy(run_config: BacktestRunConfig) -> Any:
    policy_cls = load_policy_class(run_config.policy_class, run_config.config_dir)
    try:
        return policy_cls(**run_config.policy_params)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid policy_params for {run_config.policy_class}: {exc}") from exc


def run_backtest(run_config: BacktestRunConfig, sink: Optional[ReportSink] = None) -> list[RunResult]:
    """Wire the CSV provider, strategy configs and entry policy from a run config, then replay."""
    config_provider = run_config.strategy_provider()
    configs = config_provider.load()
    policy = build_policy(run_config)

    engine = BacktestEngine(
        strategy=Strategy(policy),
        config_provider=StaticStrategyConfigProvider(configs),
        data_provider=CsvCandleDataProvider(run_config.candles_csv, run_config.non_trading_weekdays),
        sink=sink,
        start=run_config.start,
        end=run_config.end,
        report_dir=run_config.report_dir,
    )
    return engine.run()

