import json
from datetime import date, time

import pytest

from backtest.config import (
    BacktestRunConfig,
    JsonStrategyConfigProvider,
    StrategyConfig,
    TimeWindow,
    load_policy_class,
    parse_strategy_configs,
)
from backtest.models import ConfigurationError
from conftest import config_payload, make_config


def test_example_strategies_file_loads(project_root):
    configs = JsonStrategyConfigProvider(project_root / "configs" / "strategies.example.json").load()

    assert [c.id for c in configs] == ["mnq-3m-extreme", "mnq-5m-extreme-half-stop"]
    first, second = configs
    assert first.timeframe == 3
    assert first.point_value == 2.0
    assert first.execution.trail_stop_to_breakeven is True
    assert second.trading_window == TimeWindow(time(9, 30), time(16, 0))
    assert second.execution.profit_targets[0].trailing_trigger == 4.0
    assert second.stop_after_winning is False
    assert second.execution.flatten_at_session_end is True


def test_example_run_configs_resolve_relative_paths(project_root):
    config = BacktestRunConfig.from_path(project_root / "configs" / "run.example.json")

    assert config.candles_csv == (project_root / "data" / "MNQ_1m.csv").resolve()
    assert config.strategies_path == (project_root / "configs" / "strategies.example.json").resolve()
    assert config.report_dir == (project_root / "reports").resolve()
    assert config.start == date(2023, 1, 3)
    assert config.non_trading_weekdays == frozenset({6})
    assert isinstance(config.strategy_provider(), JsonStrategyConfigProvider)


@pytest.mark.parametrize(
    "field",
    ["timeframe", "price_per_tick", "trading_window_start", "starting_balance", "max_trades_per_session", "execution"],
)
def test_missing_required_field_raises(field):
    payload = config_payload()
    del payload[field]
    with pytest.raises(ConfigurationError, match=field):
        StrategyConfig.from_dict(payload)


@pytest.mark.parametrize("field", ["entry_window_end", "contracts", "initial_stop_loss"])
def test_missing_execution_field_raises(field):
    payload = config_payload()
    del payload["execution"][field]
    with pytest.raises(ConfigurationError, match=field):
        StrategyConfig.from_dict(payload)


def test_target_contracts_must_sum_to_position_size():
    with pytest.raises(ConfigurationError, match="allocate"):
        make_config(execution={"contracts": 2, "profit_targets": [{"offset": 10, "contracts": 1}]})


@pytest.mark.parametrize(
    "overrides",
    [
        {"timeframe": "7x"},
        {"price_per_tick": 0},
        {"starting_balance": "lots"},
        {"max_trades_per_session": 0},
        {"trading_window_start": "16:00", "trading_window_end": "09:30"},
        {"stop_after_winning": "maybe"},
    ],
)
def test_invalid_values_raise(overrides):
    with pytest.raises(ConfigurationError):
        make_config(**overrides)


def test_keys_match_ignoring_case_and_underscores():
    payload = {
        "Id": "pascal",
        "Name": "Pascal case",
        "TimeFrame": "5",
        "PricePerTick": 1.25,
        "TradingWindowStart": "09:30",
        "TradingWindowEnd": "16:00",
        "StartingBalance": 25000,
        "MaxTradesPerSession": 3,
        "StopAfterWinning": "true",
        "Execution": {
            "EntryWindowStart": "09:35",
            "EntryWindowEnd": "15:00",
            "Contracts": 1,
            "InitialStopLoss": 12,
            "TrailStopToBreakEven": True,
            "ProfitTargets": [{"Offset": 6, "Contracts": 1}],
        },
    }

    config = StrategyConfig.from_dict(payload)

    assert config.timeframe == 5
    assert config.point_value == 5.0
    assert config.stop_after_winning is True
    assert config.execution.trail_stop_to_breakeven is True
    assert config.execution.entry_window.start == time(9, 35)


def test_window_offset_shifts_trading_and_entry_windows():
    config = make_config(window_offset_hours=-1)
    assert config.effective_trading_window == TimeWindow(time(8, 30), time(15, 0))
    assert config.effective_entry_window == TimeWindow(time(8, 30), time(15, 0))
    unshifted = make_config()
    assert unshifted.effective_trading_window == unshifted.trading_window


def test_time_window_is_half_open_and_handles_midnight_wrap():
    window = TimeWindow.from_raw("09:30", "16:00")
    assert window.contains(time(9, 30))
    assert window.contains(time(15, 59, 59))
    assert not window.contains(time(16, 0))
    assert not window.contains(time(9, 29))

    wrapped = TimeWindow.from_raw("20:00", "23:00").shifted(3)
    assert wrapped == TimeWindow(time(23, 0), time(2, 0))
    assert wrapped.contains(time(23, 30))
    assert wrapped.contains(time(1, 0))
    assert not wrapped.contains(time(2, 0))


def test_parse_strategy_configs_rejects_duplicates_and_empty():
    with pytest.raises(ConfigurationError, match="Duplicate"):
        parse_strategy_configs([config_payload(), config_payload()])
    with pytest.raises(ConfigurationError):
        parse_strategy_configs([])
    configs = parse_strategy_configs({"strategies": [config_payload(id="x"), config_payload(id="y")]})
    assert [c.id for c in configs] == ["x", "y"]


def test_config_round_trips_through_to_dict():
    config = make_config(execution={"trail_stop_to_half_stop": True})
    assert StrategyConfig.from_dict(config.to_dict()) == config


def test_json_provider_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        JsonStrategyConfigProvider(tmp_path / "missing.json").load()
    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        JsonStrategyConfigProvider(bad).load()


def test_run_config_validation(tmp_path):
    base = {"candles_csv": "c.csv", "policy_class": "a.b:C", "strategies": [config_payload()]}
    assert BacktestRunConfig.from_dict(base).strategies[0]["id"] == "cfg-1"

    for broken in (
        {**base, "candles_csv": ""},
        {**base, "policy_class": None},
        {**base, "strategies": []},
        {**base, "start": "2024-02-01", "end": "2024-01-01"},
        {**base, "non_trading_weekdays": ["FUNDAY"]},
        {**base, "policy_params": [1, 2]},
    ):
        with pytest.raises(ConfigurationError):
            BacktestRunConfig.from_dict(broken)

    with pytest.raises(FileNotFoundError):
        BacktestRunConfig.from_path(tmp_path / "nope.json")


def test_inline_strategies_use_static_provider(tmp_path):
    path = tmp_path / "run.json"
    path.write_text(
        json.dumps({"candles_csv": "c.csv", "policy_class": "a.b:C", "strategies": [config_payload(id="inline")]}),
        encoding="utf-8",
    )
    config = BacktestRunConfig.from_path(path)
    assert config.candles_csv == (tmp_path / "c.csv").resolve()
    assert [c.id for c in config.strategy_provider().load()] == ["inline"]


def test_load_policy_class_from_module_and_file(tmp_path):
    from strategies.price_extreme import PriceExtremePolicy

    assert load_policy_class("strategies.price_extreme:PriceExtremePolicy") is PriceExtremePolicy
    assert load_policy_class("strategies.price_extreme.PriceExtremePolicy") is PriceExtremePolicy

    (tmp_path / "my_policy.py").write_text(
        "class MyPolicy:\n    marker = 'file'\n",
        encoding="utf-8",
    )
    loaded = load_policy_class("my_policy.py:MyPolicy", tmp_path)
    assert loaded.marker == "file"


def test_load_policy_class_errors(tmp_path):
    with pytest.raises(ConfigurationError):
        load_policy_class("")
    with pytest.raises(ConfigurationError):
        load_policy_class("NoSeparator")
    with pytest.raises(ConfigurationError):
        load_policy_class("strategies.price_extreme:Missing")
    with pytest.raises(ConfigurationError):
        load_policy_class("no_such_module_xyz:Thing")
    with pytest.raises(FileNotFoundError):
        load_policy_class("absent.py:Thing", tmp_path)
