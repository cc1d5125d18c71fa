"""Strategy and run configuration: dataclasses validated from JSON payloads."""

from __future__ import annotations

import hashlib
import importlib
import importlib.util
import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time
from pathlib import Path
from typing import Any, Optional, Protocol, Sequence

from core.market_metadata import (
    DEFAULT_NON_TRADING_WEEKDAYS,
    DEFAULT_TICKS_PER_POINT,
    get_point_value,
    normalize_timeframe,
    normalize_weekdays,
    parse_time_of_day,
    shift_time_of_day,
)

from .models import ConfigurationError, iso_time

logger = logging.getLogger(__name__)

_MISSING = object()


def _key(name: str) -> str:
    return name.replace("_", "").replace("-", "").lower()


def _lookup(payload: dict[str, Any], name: str, default: Any = _MISSING) -> Any:
    """Fetch ``name`` from ``payload`` ignoring case and underscores (``price_per_tick`` == ``PricePerTick``)."""
    if name in payload:
        return payload[name]
    wanted = _key(name)
    for key, value in payload.items():
        if _key(str(key)) == wanted:
            return value
    return default


def _require(payload: dict[str, Any], name: str, context: str) -> Any:
    value = _lookup(payload, name)
    if value is _MISSING or value is None or value == "":
        raise ConfigurationError(f"{context}: {name} is required")
    return value


def _as_bool(value: Any, name: str, context: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"true", "1", "yes", "y"}:
        return True
    if text in {"false", "0", "no", "n", ""}:
        return False
    raise ConfigurationError(f"{context}: {name} must be a boolean, got {value!r}")


def _as_number(value: Any, name: str, context: str, cast=float):
    if isinstance(value, bool):
        raise ConfigurationError(f"{context}: {name} must be numeric, got {value!r}")
    try:
        return cast(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{context}: {name} must be numeric, got {value!r}") from exc


def _parse_date(value: Any | None, name: str) -> date | None:
    if value in (None, "", "None"):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an ISO date (YYYY-MM-DD), got {value!r}") from exc


@dataclass(frozen=True)
class TimeWindow:
    """Time-of-day window tested as the half-open interval ``[start, end)``."""

    start: time
    end: time

    @classmethod
    def from_raw(cls, start: Any, end: Any, context: str = "window") -> "TimeWindow":
        try:
            window = cls(start=parse_time_of_day(start), end=parse_time_of_day(end))
        except ValueError as exc:
            raise ConfigurationError(f"{context}: {exc}") from exc
        if window.end <= window.start:
            raise ConfigurationError(f"{context}: end {window.end} must be after start {window.start}")
        return window

    def shifted(self, hours: float) -> "TimeWindow":
        if not hours:
            return self
        return TimeWindow(start=shift_time_of_day(self.start, hours), end=shift_time_of_day(self.end, hours))

    def contains(self, value: time) -> bool:
        if self.start <= self.end:
            return self.start <= value < self.end
        # Shifted across midnight.
        return value >= self.start or value < self.end

    def to_dict(self) -> dict[str, Any]:
        return {"start": self.start.strftime("%H:%M:%S"), "end": self.end.strftime("%H:%M:%S")}


@dataclass(frozen=True)
class ProfitTargetSpec:
    offset: float
    contracts: int
    trailing_trigger: Optional[float] = None

    @classmethod
    def from_raw(cls, value: Any, context: str) -> "ProfitTargetSpec":
        if isinstance(value, ProfitTargetSpec):
            return value
        if not isinstance(value, dict):
            raise ConfigurationError(f"{context}: profit target must be an object with offset and contracts")
        offset = _as_number(_require(value, "offset", context), "offset", context)
        contracts = _as_number(_require(value, "contracts", context), "contracts", context, int)
        trailing_raw = _lookup(value, "trailing_trigger", None)
        trailing_trigger = None
        if trailing_raw not in (None, "", "None"):
            trailing_trigger = _as_number(trailing_raw, "trailing_trigger", context)
            if trailing_trigger <= 0:
                raise ConfigurationError(f"{context}: trailing_trigger must be positive")
        if offset <= 0:
            raise ConfigurationError(f"{context}: offset must be positive")
        if contracts < 1:
            raise ConfigurationError(f"{context}: contracts must be at least 1")
        return cls(offset=offset, contracts=contracts, trailing_trigger=trailing_trigger)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"offset": float(self.offset), "contracts": int(self.contracts)}
        if self.trailing_trigger is not None:
            data["trailing_trigger"] = float(self.trailing_trigger)
        return data


@dataclass(frozen=True)
class ExecutionSettings:
    entry_window: TimeWindow
    contracts: int
    initial_stop_loss: float
    profit_targets: tuple[ProfitTargetSpec, ...]
    trail_stop_to_breakeven: bool = False
    trail_stop_to_half_stop: bool = False
    flatten_at_session_end: bool = True

    @classmethod
    def from_dict(cls, payload: Any, context: str) -> "ExecutionSettings":
        if not isinstance(payload, dict):
            raise ConfigurationError(f"{context}: execution must be a JSON object")
        entry_window = TimeWindow.from_raw(
            _require(payload, "entry_window_start", context),
            _require(payload, "entry_window_end", context),
            context=f"{context} entry window",
        )
        contracts = _as_number(_require(payload, "contracts", context), "contracts", context, int)
        if contracts < 1:
            raise ConfigurationError(f"{context}: contracts must be at least 1")
        initial_stop_loss = _as_number(_require(payload, "initial_stop_loss", context), "initial_stop_loss", context)
        if initial_stop_loss <= 0:
            raise ConfigurationError(f"{context}: initial_stop_loss must be positive")

        targets_raw = _lookup(payload, "profit_targets", None)
        if not isinstance(targets_raw, list) or not targets_raw:
            raise ConfigurationError(f"{context}: at least one profit target is required")
        targets = tuple(
            ProfitTargetSpec.from_raw(item, f"{context} profit_targets[{idx}]") for idx, item in enumerate(targets_raw)
        )
        allocated = sum(item.contracts for item in targets)
        if allocated != contracts:
            raise ConfigurationError(
                f"{context}: profit targets allocate {allocated} contracts but contracts is {contracts}"
            )

        return cls(
            entry_window=entry_window,
            contracts=contracts,
            initial_stop_loss=initial_stop_loss,
            profit_targets=targets,
            trail_stop_to_breakeven=_as_bool(
                _lookup(payload, "trail_stop_to_breakeven", False), "trail_stop_to_breakeven", context
            ),
            trail_stop_to_half_stop=_as_bool(
                _lookup(payload, "trail_stop_to_half_stop", False), "trail_stop_to_half_stop", context
            ),
            flatten_at_session_end=_as_bool(
                _lookup(payload, "flatten_at_session_end", True), "flatten_at_session_end", context
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_window_start": self.entry_window.to_dict()["start"],
            "entry_window_end": self.entry_window.to_dict()["end"],
            "contracts": int(self.contracts),
            "initial_stop_loss": float(self.initial_stop_loss),
            "trail_stop_to_breakeven": bool(self.trail_stop_to_breakeven),
            "trail_stop_to_half_stop": bool(self.trail_stop_to_half_stop),
            "flatten_at_session_end": bool(self.flatten_at_session_end),
            "profit_targets": [item.to_dict() for item in self.profit_targets],
        }


@dataclass(frozen=True)
class StrategyConfig:
    id: str
    name: str
    timeframe: int
    price_per_tick: float
    trading_window: TimeWindow
    starting_balance: float
    max_trades_per_session: int
    execution: ExecutionSettings
    description: str = ""
    ticks_per_point: int = DEFAULT_TICKS_PER_POINT
    stop_after_winning: bool = False
    window_offset_hours: float = 0.0

    @classmethod
    def from_dict(cls, payload: Any, index: int = 0) -> "StrategyConfig":
        if not isinstance(payload, dict):
            raise ConfigurationError(f"strategies[{index}] must be a JSON object")
        config_id = str(_lookup(payload, "id", "") or "").strip()
        context = f"strategy {config_id}" if config_id else f"strategies[{index}]"
        if not config_id:
            raise ConfigurationError(f"{context}: id is required")

        try:
            timeframe = normalize_timeframe(_require(payload, "timeframe", context))
        except ValueError as exc:
            if isinstance(exc, ConfigurationError):
                raise
            raise ConfigurationError(f"{context}: {exc}") from exc

        price_per_tick = _as_number(_require(payload, "price_per_tick", context), "price_per_tick", context)
        if price_per_tick <= 0:
            raise ConfigurationError(f"{context}: price_per_tick must be positive")
        ticks_per_point = _as_number(
            _lookup(payload, "ticks_per_point", DEFAULT_TICKS_PER_POINT), "ticks_per_point", context, int
        )
        if ticks_per_point < 1:
            raise ConfigurationError(f"{context}: ticks_per_point must be at least 1")

        starting_balance = _as_number(_require(payload, "starting_balance", context), "starting_balance", context)
        if starting_balance <= 0:
            raise ConfigurationError(f"{context}: starting_balance must be positive")
        max_trades = _as_number(
            _require(payload, "max_trades_per_session", context), "max_trades_per_session", context, int
        )
        if max_trades < 1:
            raise ConfigurationError(f"{context}: max_trades_per_session must be at least 1")

        return cls(
            id=config_id,
            name=str(_lookup(payload, "name", "") or config_id),
            description=str(_lookup(payload, "description", "") or ""),
            timeframe=timeframe,
            price_per_tick=price_per_tick,
            ticks_per_point=ticks_per_point,
            trading_window=TimeWindow.from_raw(
                _require(payload, "trading_window_start", context),
                _require(payload, "trading_window_end", context),
                context=f"{context} trading window",
            ),
            starting_balance=starting_balance,
            max_trades_per_session=max_trades,
            stop_after_winning=_as_bool(
                _lookup(payload, "stop_after_winning", False), "stop_after_winning", context
            ),
            window_offset_hours=_as_number(
                _lookup(payload, "window_offset_hours", 0.0), "window_offset_hours", context
            ),
            execution=ExecutionSettings.from_dict(_require(payload, "execution", context), context),
        )

    @property
    def point_value(self) -> float:
        return get_point_value(self.price_per_tick, self.ticks_per_point)

    @property
    def effective_trading_window(self) -> TimeWindow:
        return self.trading_window.shifted(self.window_offset_hours)

    @property
    def effective_entry_window(self) -> TimeWindow:
        return self.execution.entry_window.shifted(self.window_offset_hours)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "timeframe": int(self.timeframe),
            "price_per_tick": float(self.price_per_tick),
            "ticks_per_point": int(self.ticks_per_point),
            "point_value": float(self.point_value),
            "trading_window_start": self.trading_window.to_dict()["start"],
            "trading_window_end": self.trading_window.to_dict()["end"],
            "starting_balance": float(self.starting_balance),
            "max_trades_per_session": int(self.max_trades_per_session),
            "stop_after_winning": bool(self.stop_after_winning),
            "window_offset_hours": float(self.window_offset_hours),
            "execution": self.execution.to_dict(),
        }


def parse_strategy_configs(payload: Any) -> list[StrategyConfig]:
    """Validate a list of strategy payloads, rejecting duplicate ids."""
    if isinstance(payload, dict) and "strategies" in payload:
        payload = payload["strategies"]
    if not isinstance(payload, list) or not payload:
        raise ConfigurationError("A non-empty list of strategy configurations is required")
    configs: list[StrategyConfig] = []
    seen_ids: set[str] = set()
    for index, item in enumerate(payload):
        config = StrategyConfig.from_dict(item, index)
        if config.id in seen_ids:
            raise ConfigurationError(f"Duplicate strategy id: {config.id}")
        seen_ids.add(config.id)
        configs.append(config)
    return configs


class StrategyConfigProvider(Protocol):
    def load(self) -> list[StrategyConfig]:
        ...


class JsonStrategyConfigProvider:
    """Read strategy configurations from a JSON file holding a list (or ``{"strategies": [...]}``)."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> list[StrategyConfig]:
        if not self.path.exists():
            raise FileNotFoundError(f"Strategy config file not found: {self.path}")
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Invalid JSON in {self.path}: {exc}") from exc
        configs = parse_strategy_configs(payload)
        logger.debug("Loaded %s strategy configs from %s", len(configs), self.path)
        return configs


class StaticStrategyConfigProvider:
    def __init__(self, configs: Sequence[StrategyConfig | dict[str, Any]]):
        self._raw = list(configs)

    def load(self) -> list[StrategyConfig]:
        if self._raw and all(isinstance(item, StrategyConfig) for item in self._raw):
            return list(self._raw)
        return parse_strategy_configs(
            [item.to_dict() if isinstance(item, StrategyConfig) else item for item in self._raw]
        )


@dataclass
class BacktestRunConfig:
    candles_csv: Path
    policy_class: str
    strategies: list[dict[str, Any]] = field(default_factory=list)
    strategies_path: Path | None = None
    policy_params: dict[str, Any] = field(default_factory=dict)
    start: date | None = None
    end: date | None = None
    report_dir: Path | None = None
    non_trading_weekdays: frozenset[int] = DEFAULT_NON_TRADING_WEEKDAYS
    _config_dir: Path | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any], *, config_dir: Path | None = None) -> "BacktestRunConfig":
        if not isinstance(payload, dict):
            raise ConfigurationError("Backtest config must be a JSON object")

        candles_csv = str(payload.get("candles_csv") or "").strip()
        if not candles_csv:
            raise ConfigurationError("candles_csv is required")
        policy_class = str(payload.get("policy_class") or "").strip()
        if not policy_class:
            raise ConfigurationError("policy_class is required")

        strategies_raw = payload.get("strategies")
        strategies: list[dict[str, Any]] = []
        strategies_path: Path | None = None
        if isinstance(strategies_raw, str) and strategies_raw.strip():
            strategies_path = Path(strategies_raw.strip())
        elif isinstance(strategies_raw, list) and strategies_raw:
            strategies = [dict(item) if isinstance(item, dict) else item for item in strategies_raw]
        else:
            raise ConfigurationError("strategies must be a non-empty list or a path to a strategies JSON file")

        policy_params = payload.get("policy_params") or {}
        if not isinstance(policy_params, dict):
            raise ConfigurationError("policy_params must be a JSON object")

        start = _parse_date(payload.get("start"), "start")
        end = _parse_date(payload.get("end"), "end")
        if start is not None and end is not None and end < start:
            raise ConfigurationError(f"end {end} is before start {start}")

        try:
            weekdays = normalize_weekdays(payload.get("non_trading_weekdays"))
        except ValueError as exc:
            raise ConfigurationError(f"non_trading_weekdays: {exc}") from exc

        report_dir_raw = str(payload.get("report_dir") or "").strip()
        return cls(
            candles_csv=Path(candles_csv),
            policy_class=policy_class,
            strategies=strategies,
            strategies_path=strategies_path,
            policy_params=dict(policy_params),
            start=start,
            end=end,
            report_dir=Path(report_dir_raw) if report_dir_raw else None,
            non_trading_weekdays=weekdays,
            _config_dir=config_dir,
        )

    @classmethod
    def from_path(cls, path: str | Path) -> "BacktestRunConfig":
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Run config not found: {config_path}")
        try:
            payload = json.loads(config_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Invalid JSON in {config_path}: {exc}") from exc
        config = cls.from_dict(payload, config_dir=config_path.parent)
        base = config_path.parent
        if not config.candles_csv.is_absolute():
            config.candles_csv = (base / config.candles_csv).resolve()
        if config.strategies_path is not None and not config.strategies_path.is_absolute():
            config.strategies_path = (base / config.strategies_path).resolve()
        if config.report_dir is not None and not config.report_dir.is_absolute():
            config.report_dir = (base / config.report_dir).resolve()
        return config

    @property
    def config_dir(self) -> Path | None:
        return self._config_dir

    def strategy_provider(self) -> StrategyConfigProvider:
        if self.strategies_path is not None:
            return JsonStrategyConfigProvider(self.strategies_path)
        return StaticStrategyConfigProvider(self.strategies)

    def to_dict(self) -> dict[str, Any]:
        return {
            "candles_csv": str(self.candles_csv),
            "policy_class": self.policy_class,
            "policy_params": dict(self.policy_params),
            "strategies": str(self.strategies_path) if self.strategies_path is not None else list(self.strategies),
            "start": iso_time(self.start),
            "end": iso_time(self.end),
            "report_dir": None if self.report_dir is None else str(self.report_dir),
            "non_trading_weekdays": sorted(self.non_trading_weekdays),
        }


def _sanitize_module_name(path: Path) -> str:
    digest = hashlib.sha1(str(path).encode("utf-8")).hexdigest()
    return f"_backtest_policy_{digest}"


def load_policy_class(spec: str, base_dir: Path | None = None) -> type:
    """Resolve ``"package.module:Class"`` or ``"path/to/file.py:Class"`` to a class object."""
    raw_spec = str(spec or "").strip()
    if not raw_spec:
        raise ConfigurationError("policy_class is required")

    if ":" in raw_spec:
        target, class_name = raw_spec.rsplit(":", 1)
    elif "." in raw_spec:
        target, class_name = raw_spec.rsplit(".", 1)
    else:
        raise ConfigurationError(f"Invalid policy_class spec: {spec}")

    target = target.strip()
    class_name = class_name.strip()
    if not target or not class_name:
        raise ConfigurationError(f"Invalid policy_class spec: {spec}")

    is_file_ref = target.endswith(".py") or "\\" in target or "/" in target
    if is_file_ref:
        file_path = Path(target)
        if not file_path.is_absolute():
            file_path = ((base_dir or Path.cwd()) / file_path).resolve()
        if not file_path.exists():
            raise FileNotFoundError(f"Policy module file not found: {file_path}")
        module_spec = importlib.util.spec_from_file_location(_sanitize_module_name(file_path), file_path)
        if module_spec is None or module_spec.loader is None:
            raise ConfigurationError(f"Unable to import policy module from {file_path}")
        module = importlib.util.module_from_spec(module_spec)
        module_spec.loader.exec_module(module)
    else:
        try:
            module = importlib.import_module(target)
        except ImportError as exc:
            raise ConfigurationError(f"Unable to import policy module {target}: {exc}") from exc

    policy_cls = getattr(module, class_name, None)
    if policy_cls is None:
        raise ConfigurationError(f"Policy class {class_name} not found in {target}")
    return policy_cls
