"""Logging for backtest runs: a rotating run log plus a plain-text ledger/report channel."""
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

REPORT_LOGGER_NAME = 'backtest.report'

LOG_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
MAX_LOG_BYTES = 5 * 1024 * 1024
LOG_BACKUPS = 3


def teardown_logging(logger: Optional[logging.Logger] = None) -> None:
    """Flush, detach, and close all handlers from the provided logger."""
    target = logger or logging.getLogger()
    for handler in list(target.handlers):
        target.removeHandler(handler)
        try:
            handler.flush()
            handler.close()
        except Exception:
            # Best-effort cleanup; logging should never crash the app.
            pass


def _rotating_file_handler(path: Path, formatter: logging.Formatter, level: int = logging.NOTSET) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=MAX_LOG_BYTES,
        backupCount=LOG_BACKUPS,
        encoding='utf-8',
        delay=True
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _stdout_handler(formatter: logging.Formatter, level: int = logging.NOTSET) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(
    log_level: str = 'INFO',
    logs_dir: Optional[Path] = None,
    console_output: bool = True
) -> logging.Logger:
    """
    Configure the root logger and the report channel for one CLI invocation.

    Args:
        log_level: Root level (DEBUG, INFO, WARNING, ERROR)
        logs_dir: Directory for ``backtest.log`` and ``report.log``; defaults to ``./logs``
        console_output: Echo INFO+ run logs and every report line to stdout

    Returns:
        The root logger
    """
    logs_dir = Path(logs_dir) if logs_dir is not None else Path.cwd() / 'logs'
    logs_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    teardown_logging(root)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    log_file = logs_dir / 'backtest.log'
    root.addHandler(_rotating_file_handler(log_file, formatter, logging.DEBUG))
    if console_output:
        root.addHandler(_stdout_handler(formatter, logging.INFO))

    setup_report_logging(console_output=console_output, log_file=logs_dir / 'report.log')

    root.info("Logging initialized at %s level, run log %s", log_level, log_file)
    return root


def setup_report_logging(console_output: bool = True, log_file: Optional[Path] = None) -> logging.Logger:
    """
    Configure the ledger/report logger.

    Report lines are plain tables, so they get a message-only formatter and do
    not propagate to the timestamped root handlers.
    """
    report_logger = logging.getLogger(REPORT_LOGGER_NAME)
    report_logger.setLevel(logging.INFO)
    report_logger.propagate = False
    teardown_logging(report_logger)

    plain = logging.Formatter('%(message)s')
    if console_output:
        report_logger.addHandler(_stdout_handler(plain))
    if log_file is not None:
        report_logger.addHandler(_rotating_file_handler(Path(log_file), plain))
    return report_logger
