"""Ledger output, run summaries and report artifacts for backtest runs."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable, Optional, Protocol

import pandas as pd

from core.logging_setup import REPORT_LOGGER_NAME
from core.market_metadata import format_money, format_price

from .models import EventType, StrategyEvent, Trade, TradeOutcome, iso_time

TRADE_COLUMNS: tuple[str, ...] = (
    "trade_id",
    "session",
    "direction",
    "entry_time",
    "entry_price",
    "contracts",
    "remaining_contracts",
    "stop_price",
    "targets_filled",
    "targets_total",
    "exit_time",
    "exit_price",
    "exit_reason",
    "outcome",
    "profit",
)
EQUITY_COLUMNS: tuple[str, ...] = ("time", "trade_id", "profit", "balance", "drawdown")
LEDGER_HEADER: tuple[str, ...] = ("Id", "Date", "Direction", "Entry Price", "Closing Price", "P/L", "Outcome")
_RULE = "-" * 111


class ReportSink(Protocol):
    def write(self, line: str) -> None:
        ...


class LoggingReportSink:
    """Write report lines through the plain-text ``backtest.report`` logger."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(REPORT_LOGGER_NAME)

    def write(self, line: str) -> None:
        self.logger.info("%s", line)


class ListReportSink:
    def __init__(self) -> None:
        self.lines: list[str] = []

    def write(self, line: str) -> None:
        self.lines.append(str(line))


def _json_default(value: Any) -> Any:
    if isinstance(value, pd.Timestamp):
        return value.isoformat()
    if hasattr(value, "isoformat"):
        try:
            return value.isoformat()
        except TypeError:
            return str(value)
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


def _ledger_row(*values: Any) -> str:
    cells = ["-" if value is None else str(value) for value in values]
    return "{0:>12} | {1:>20} | {2:>12} | {3:>12} | {4:>13} | {5:>12} | {6:>12}".format(*cells)


def _format_time(value: Any) -> str:
    if value is None:
        return "-"
    if hasattr(value, "strftime"):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    return str(value)


class LedgerReporter:
    """
    Strategy event callback that prints one ledger row per lifecycle event.

    Register with ``strategy.subscribe(reporter, *reporter.event_types)``.
    """

    event_types: tuple[EventType, ...] = (
        EventType.TRADE_CREATED,
        EventType.TRADE_CLOSED,
        EventType.PROFIT_TARGET_HIT,
        EventType.STOP_LOSS_HIT,
    )

    def __init__(self, sink: ReportSink):
        self.sink = sink
        self.events: list[StrategyEvent] = []

    def write_header(self, name: str, starting_balance: float) -> None:
        self.sink.write(f"Executing Strategy: [{name}] - Starting Account Balance: [{format_money(starting_balance)}]")
        self.sink.write(_RULE)
        self.sink.write(_ledger_row(*LEDGER_HEADER))
        self.sink.write(_RULE)

    def __call__(self, event: StrategyEvent) -> None:
        self.events.append(event)
        trade = event.trade
        when = _format_time(event.time)
        if event.event_type is EventType.TRADE_CREATED:
            row = _ledger_row(
                trade.id,
                when,
                trade.direction.value,
                format_price(trade.initial_entry_price),
                format_price(trade.stop_loss.price),
                None,
                None,
            )
        elif event.event_type is EventType.PROFIT_TARGET_HIT:
            row = _ledger_row(
                trade.id,
                when,
                "TARGET",
                None,
                format_price(event.order.price) if event.order is not None else None,
                format_money(event.amount),
                None,
            )
        elif event.event_type is EventType.STOP_LOSS_HIT:
            row = _ledger_row(
                trade.id,
                when,
                "STOP",
                None,
                format_price(event.order.price) if event.order is not None else None,
                format_money(event.amount),
                event.outcome.value if event.outcome is not None else None,
            )
        else:
            row = _ledger_row(
                trade.id,
                when,
                "CLOSED",
                None,
                format_price(trade.exit_price) if trade.exit_price is not None else None,
                format_money(trade.cumulative_profit),
                trade.outcome.value,
            )
        self.sink.write(row)


def trades_to_frame(trades: Iterable[Trade]) -> pd.DataFrame:
    records = [trade.to_record() for trade in trades]
    return pd.DataFrame.from_records(records, columns=list(TRADE_COLUMNS))


def build_equity_curve(trades_df: pd.DataFrame, starting_balance: float) -> pd.DataFrame:
    """Balance after each closed trade, in exit order, with running drawdown from the peak."""
    if trades_df.empty:
        return pd.DataFrame(columns=list(EQUITY_COLUMNS))
    closed = trades_df[trades_df["outcome"] != TradeOutcome.PENDING.value].copy()
    if closed.empty:
        return pd.DataFrame(columns=list(EQUITY_COLUMNS))

    closed["_exit"] = pd.to_datetime(closed["exit_time"], errors="coerce")
    closed = closed.sort_values(["_exit", "trade_id"], kind="stable").reset_index(drop=True)
    profit = closed["profit"].astype(float)
    balance = float(starting_balance) + profit.cumsum()
    peak = pd.concat([pd.Series([float(starting_balance)]), balance], ignore_index=True).cummax().iloc[1:]
    curve = pd.DataFrame(
        {
            "time": closed["exit_time"],
            "trade_id": closed["trade_id"],
            "profit": profit,
            "balance": balance,
            "drawdown": balance.to_numpy() - peak.to_numpy(),
        }
    )
    return curve[list(EQUITY_COLUMNS)]


def _max_drawdown(curve: pd.DataFrame) -> float:
    if curve.empty:
        return 0.0
    return float(curve["drawdown"].astype(float).min())


def build_summary(strategy: Any, equity_curve: Optional[pd.DataFrame] = None) -> dict[str, Any]:
    """Account gain, outcome counts, win rate and the configured risk parameters for one run."""
    config = strategy.config
    statistics = strategy.statistics.to_dict()
    gain = float(strategy.balance) - float(strategy.initial_balance)
    gain_pct = gain / float(strategy.initial_balance) * 100.0 if strategy.initial_balance else 0.0
    open_trades = sum(1 for trade in strategy.trades if trade.is_pending)
    closed_trades = statistics["total_trades"]
    execution = config.execution

    return {
        "strategy_id": config.id,
        "name": config.name,
        "description": config.description,
        "starting_balance": float(strategy.initial_balance),
        "ending_balance": float(strategy.balance),
        "account_gain": gain,
        "account_gain_pct": gain_pct,
        "total_trades": len(strategy.trades),
        "closed_trades": closed_trades,
        "open_trades": open_trades,
        "wins": statistics["winning_trades"],
        "losses": statistics["losing_trades"],
        "breakevens": statistics["breakeven_trades"],
        "stopped_out": statistics["stopped_out_trades"],
        "win_rate": statistics["win_rate"],
        "total_profit": statistics["total_profit"],
        "total_losses": statistics["total_losses"],
        "net_profit": statistics["net_profit"],
        "max_drawdown": _max_drawdown(equity_curve) if equity_curve is not None else 0.0,
        "sessions": len(strategy.sessions),
        "risk": {
            "timeframe": int(config.timeframe),
            "price_per_tick": float(config.price_per_tick),
            "point_value": float(config.point_value),
            "contracts": int(execution.contracts),
            "initial_stop_loss": float(execution.initial_stop_loss),
            "profit_targets": [item.to_dict() for item in execution.profit_targets],
            "trail_stop_to_breakeven": bool(execution.trail_stop_to_breakeven),
            "trail_stop_to_half_stop": bool(execution.trail_stop_to_half_stop),
            "max_trades_per_session": int(config.max_trades_per_session),
            "stop_after_winning": bool(config.stop_after_winning),
            "flatten_at_session_end": bool(execution.flatten_at_session_end),
        },
    }


def format_summary_lines(summary: dict[str, Any]) -> list[str]:
    risk = summary.get("risk", {})
    targets = ", ".join(
        f"+{item['offset']:g}x{item['contracts']}" for item in risk.get("profit_targets", [])
    )
    return [
        "---------------------- STRATEGY SUMMARY STATISTICS --------------------------",
        "",
        (
            f"Gain on Account: {format_money(summary['account_gain'])} "
            f"({summary['account_gain_pct']:.2f}%) - Total Trades: {summary['total_trades']}"
        ),
        "{0:>10} | {1:>10} | {2:>10} | {3:>11} | {4:>10}".format("Wins", "Losses", "Breakeven", "Stopped Out", "Win-Rate"),
        "{0:>10} | {1:>10} | {2:>10} | {3:>11} | {4:>9.2f}%".format(
            summary["wins"], summary["losses"], summary["breakevens"], summary["stopped_out"], summary["win_rate"]
        ),
        (
            f"Risk: {risk.get('contracts')} contracts, stop {risk.get('initial_stop_loss'):g} pts, "
            f"targets [{targets}], max {risk.get('max_trades_per_session')} trades/session, "
            f"trail breakeven={risk.get('trail_stop_to_breakeven')} half-stop={risk.get('trail_stop_to_half_stop')}"
        ),
        "",
    ]


def write_summary(sink: ReportSink, summary: dict[str, Any]) -> None:
    for line in format_summary_lines(summary):
        sink.write(line)


def _md_table(rows: list[dict[str, Any]], columns: list[str]) -> str:
    if not rows:
        return "_No rows_\n"
    header = "| " + " | ".join(columns) + " |"
    sep = "| " + " | ".join(["---"] * len(columns)) + " |"
    body: list[str] = []
    for row in rows:
        values: list[str] = []
        for col in columns:
            value = row.get(col)
            if isinstance(value, float):
                values.append(f"{value:.6g}")
            elif value is None:
                values.append("")
            else:
                values.append(str(value))
        body.append("| " + " | ".join(values) + " |")
    return "\n".join([header, sep, *body]) + "\n"


def _write_markdown_report(report_path: Path, summary: dict[str, Any], trades_df: pd.DataFrame) -> None:
    sections: list[str] = [
        f"# Backtest Report: {summary.get('name')}",
        "",
        f"- Strategy id: `{summary.get('strategy_id')}`",
        f"- Sessions traded: `{summary.get('sessions')}`",
        "",
        "## Summary Metrics",
        "",
    ]
    sections.append(_md_table([
        {"metric": "Starting balance", "value": summary.get("starting_balance")},
        {"metric": "Ending balance", "value": summary.get("ending_balance")},
        {"metric": "Account gain", "value": summary.get("account_gain")},
        {"metric": "Account gain %", "value": summary.get("account_gain_pct")},
        {"metric": "Total trades", "value": summary.get("total_trades")},
        {"metric": "Wins", "value": summary.get("wins")},
        {"metric": "Losses", "value": summary.get("losses")},
        {"metric": "Breakevens", "value": summary.get("breakevens")},
        {"metric": "Stopped out", "value": summary.get("stopped_out")},
        {"metric": "Win rate %", "value": summary.get("win_rate")},
        {"metric": "Net profit", "value": summary.get("net_profit")},
        {"metric": "Max drawdown", "value": summary.get("max_drawdown")},
    ], ["metric", "value"]).rstrip())
    sections.append("")
    sections.append("## Risk Parameters")
    sections.append("")
    risk = dict(summary.get("risk", {}))
    risk["profit_targets"] = json.dumps(risk.get("profit_targets", []))
    sections.append(_md_table(
        [{"parameter": key, "value": value} for key, value in risk.items()],
        ["parameter", "value"],
    ).rstrip())
    sections.append("")
    sections.append("## Trades")
    sections.append("")
    sections.append(_md_table(
        trades_df.to_dict(orient="records"),
        ["trade_id", "direction", "entry_time", "entry_price", "exit_time", "exit_price", "outcome", "profit"],
    ).rstrip())
    sections.append("")
    report_path.write_text("\n".join(sections), encoding="utf-8")


def write_run_artifacts(
    report_dir: str | Path,
    summary: dict[str, Any],
    trades_df: pd.DataFrame,
    equity_curve: pd.DataFrame,
    config: Optional[dict[str, Any]] = None,
) -> dict[str, str]:
    """Write trades.csv, equity_curve.csv, summary.json and report.md under ``report_dir``."""
    out_dir = Path(report_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    trades_path = out_dir / "trades.csv"
    equity_path = out_dir / "equity_curve.csv"
    summary_path = out_dir / "summary.json"
    report_path = out_dir / "report.md"

    trades_df.to_csv(trades_path, index=False)
    equity_curve.to_csv(equity_path, index=False)
    payload = dict(summary)
    if config is not None:
        payload["config"] = config
    payload["generated_at"] = iso_time(pd.Timestamp.now(tz="UTC"))
    summary_path.write_text(json.dumps(payload, indent=2, default=_json_default), encoding="utf-8")
    _write_markdown_report(report_path, summary, trades_df)

    return {
        "report_dir": str(out_dir),
        "trades_csv": str(trades_path),
        "equity_curve_csv": str(equity_path),
        "summary_json": str(summary_path),
        "report_md": str(report_path),
    }
