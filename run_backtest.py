"""CLI for running and validating session backtests."""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import date
from pathlib import Path
from typing import Optional, Sequence

_HERE = Path(__file__).parent
if str(_HERE) not in sys.path:
    sys.path.insert(0, str(_HERE))

from backtest import (  # noqa: E402
    BacktestRunConfig,
    CandleDataError,
    ConfigurationError,
    build_policy,
    run_backtest,
)
from core.logging_setup import setup_logging  # noqa: E402

EXIT_OK = 0
EXIT_MISSING_FILE = 2
EXIT_CONFIG_ERROR = 3
EXIT_DATA_ERROR = 4


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Intraday session backtest CLI")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    parser.add_argument("--log-dir", default=None, help="Directory for log files (default: ./logs)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Replay candles through every configured strategy")
    run_parser.add_argument("--config", required=True, help="Path to the run JSON config")
    run_parser.add_argument("--start", help="Optional first session date (YYYY-MM-DD), overrides the config")
    run_parser.add_argument("--end", help="Optional last session date (YYYY-MM-DD), overrides the config")
    run_parser.add_argument("--report-dir", help="Write per-strategy artifacts here, overrides the config")

    validate_parser = subparsers.add_parser("validate", help="Load and validate a run config without replaying")
    validate_parser.add_argument("--config", required=True, help="Path to the run JSON config")

    return parser.parse_args(argv)


def _parse_date(date_str: str | None) -> date | None:
    if not date_str:
        return None
    try:
        return date.fromisoformat(date_str)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid date {date_str!r}, expected YYYY-MM-DD") from exc


def _load_run_config(args: argparse.Namespace) -> BacktestRunConfig:
    config = BacktestRunConfig.from_path(Path(args.config))
    start = _parse_date(getattr(args, "start", None))
    end = _parse_date(getattr(args, "end", None))
    if start is not None:
        config.start = start
    if end is not None:
        config.end = end
    if config.start is not None and config.end is not None and config.end < config.start:
        raise ConfigurationError(f"end {config.end} is before start {config.start}")
    report_dir = getattr(args, "report_dir", None)
    if report_dir:
        config.report_dir = Path(report_dir)
    return config


def _run_backtest(args: argparse.Namespace) -> int:
    logger = logging.getLogger(__name__)
    config = _load_run_config(args)
    if not config.candles_csv.exists():
        logger.error("candles_csv does not exist: %s", config.candles_csv)
        return EXIT_MISSING_FILE

    results = run_backtest(config)
    for result in results:
        summary = result.summary
        logger.info(
            "%s: trades=%s wins=%s losses=%s gain=%.2f (%.2f%%)",
            result.config.id,
            summary["total_trades"],
            summary["wins"],
            summary["losses"],
            summary["account_gain"],
            summary["account_gain_pct"],
        )
        if result.paths:
            logger.info("Report dir: %s", result.paths["report_dir"])
    return EXIT_OK


def _run_validate(args: argparse.Namespace) -> int:
    logger = logging.getLogger(__name__)
    config = _load_run_config(args)
    configs = config.strategy_provider().load()
    build_policy(config)
    if not config.candles_csv.exists():
        logger.warning("candles_csv does not exist yet: %s", config.candles_csv)
    logger.info("Config OK: %s strategy configuration(s), policy %s", len(configs), config.policy_class)
    return EXIT_OK


def _run(args: argparse.Namespace) -> int:
    logger = logging.getLogger(__name__)
    try:
        if args.command == "run":
            return _run_backtest(args)
        if args.command == "validate":
            return _run_validate(args)
    except FileNotFoundError as exc:
        logger.error(str(exc))
        return EXIT_MISSING_FILE
    except CandleDataError as exc:
        logger.error(str(exc))
        return EXIT_DATA_ERROR
    except ConfigurationError as exc:
        logger.error(str(exc))
        return EXIT_CONFIG_ERROR
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = _parse_args(argv)
    setup_logging(log_level=args.log_level, logs_dir=Path(args.log_dir) if args.log_dir else None)
    raise SystemExit(_run(args))


if __name__ == "__main__":
    main()
