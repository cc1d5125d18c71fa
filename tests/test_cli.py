import json

import pytest

import run_backtest
from conftest import config_payload

CSV_ROWS = [
    "timestamp,open,high,low,close,volume",
    "2024-01-02 09:30:00,100,100,100,100,10",
    "2024-01-02 09:31:00,100,100.2,99.5,99.6,10",
    "2024-01-02 09:32:00,99.6,100.1,99.5,100,10",
    "2024-01-02 15:59:00,100,100.1,99.9,100,10",
]


def _write_run(tmp_path, csv_rows=CSV_ROWS, strategies=None, **overrides):
    (tmp_path / "candles.csv").write_text("\n".join(csv_rows) + "\n", encoding="utf-8")
    (tmp_path / "strategies.json").write_text(
        json.dumps(strategies if strategies is not None else [config_payload()]), encoding="utf-8"
    )
    payload = {
        "candles_csv": "candles.csv",
        "strategies": "strategies.json",
        "policy_class": "strategies.price_extreme:PriceExtremePolicy",
        "policy_params": {"threshold_pct": 0.25, "ema_period": 3},
    }
    payload.update(overrides)
    path = tmp_path / "run.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def _run(*argv):
    return run_backtest._run(run_backtest._parse_args(list(argv)))


def test_run_writes_reports_and_exits_ok(tmp_path):
    config = _write_run(tmp_path)

    code = _run("run", "--config", str(config), "--report-dir", str(tmp_path / "reports"))

    assert code == run_backtest.EXIT_OK
    summary = json.loads((tmp_path / "reports" / "cfg-1" / "summary.json").read_text(encoding="utf-8"))
    assert summary["total_trades"] == 1
    assert summary["sessions"] == 1


def test_validate_exits_ok(tmp_path):
    assert _run("validate", "--config", str(_write_run(tmp_path))) == run_backtest.EXIT_OK


def test_missing_run_config_exits_2(tmp_path):
    assert _run("run", "--config", str(tmp_path / "absent.json")) == run_backtest.EXIT_MISSING_FILE


def test_missing_candles_csv_exits_2(tmp_path):
    config = _write_run(tmp_path, candles_csv="nowhere.csv")
    assert _run("run", "--config", str(config)) == run_backtest.EXIT_MISSING_FILE


def test_invalid_strategy_config_exits_3(tmp_path):
    broken = config_payload(execution={"contracts": 2})
    config = _write_run(tmp_path, strategies=[broken])
    assert _run("run", "--config", str(config)) == run_backtest.EXIT_CONFIG_ERROR
    assert _run("validate", "--config", str(config)) == run_backtest.EXIT_CONFIG_ERROR


def test_unknown_policy_exits_3(tmp_path):
    config = _write_run(tmp_path, policy_class="strategies.price_extreme:Nope")
    assert _run("run", "--config", str(config)) == run_backtest.EXIT_CONFIG_ERROR


def test_bad_policy_params_exit_3(tmp_path):
    config = _write_run(tmp_path, policy_params={"threshold_pct": -1})
    assert _run("run", "--config", str(config)) == run_backtest.EXIT_CONFIG_ERROR


def test_bad_date_override_exits_3(tmp_path):
    config = _write_run(tmp_path)
    assert _run("run", "--config", str(config), "--start", "02/01/2024") == run_backtest.EXIT_CONFIG_ERROR
    assert (
        _run("run", "--config", str(config), "--start", "2024-02-01", "--end", "2024-01-01")
        == run_backtest.EXIT_CONFIG_ERROR
    )


def test_malformed_candle_exits_4(tmp_path):
    rows = CSV_ROWS[:2] + ["2024-01-02 09:31:00,100,abc,99,100,10"]
    config = _write_run(tmp_path, csv_rows=rows)
    assert _run("run", "--config", str(config)) == run_backtest.EXIT_DATA_ERROR


def test_main_raises_system_exit_with_code(tmp_path, monkeypatch):
    calls = []
    monkeypatch.setattr(run_backtest, "setup_logging", lambda **kwargs: calls.append(kwargs))

    with pytest.raises(SystemExit) as excinfo:
        run_backtest.main(["--log-level", "DEBUG", "validate", "--config", str(_write_run(tmp_path))])

    assert excinfo.value.code == 0
    assert calls[0]["log_level"] == "DEBUG"


def test_subcommand_is_required():
    with pytest.raises(SystemExit):
        run_backtest._parse_args([])
