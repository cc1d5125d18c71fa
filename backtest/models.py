"""Data models for candles, orders, trades and strategy lifecycle events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Iterator, Optional

from core.market_metadata import round_price


class CandleDataError(ValueError):
    """Raw candle data could not be parsed; the whole load is aborted."""


class ConfigurationError(ValueError):
    """A strategy or run configuration is missing a required field or is invalid."""


class TradeStateError(RuntimeError):
    """A trade or order lifecycle transition was attempted from the wrong state."""


def iso_time(value: Any) -> Optional[str]:
    """Serialize datetime-like values to ISO8601 strings when possible."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if hasattr(value, "isoformat"):
        try:
            return value.isoformat()
        except TypeError:
            return str(value)
    return str(value)


class Direction(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def sign(self) -> int:
        return 1 if self is Direction.LONG else -1

    @classmethod
    def from_value(cls, value: Any) -> "Direction":
        side = str(value or "").strip().upper()
        if side in {"LONG", "BUY"}:
            return cls.LONG
        if side in {"SHORT", "SELL"}:
            return cls.SHORT
        raise ValueError(f"Unsupported side value: {value}")


class OrderRole(str, Enum):
    STOP_LOSS = "STOP_LOSS"
    PROFIT_TARGET = "PROFIT_TARGET"


class TradeOutcome(str, Enum):
    PENDING = "PENDING"
    WIN = "WIN"
    LOSS = "LOSS"
    BREAKEVEN = "BREAKEVEN"
    STOPPED_OUT = "STOPPED_OUT"


class StrategyStatus(str, Enum):
    OUT_OF_MARKET = "OUT_OF_MARKET"
    IN_MARKET = "IN_MARKET"


class EventType(str, Enum):
    TRADE_CREATED = "TRADE_CREATED"
    TRADE_CLOSED = "TRADE_CLOSED"
    PROFIT_TARGET_HIT = "PROFIT_TARGET_HIT"
    STOP_LOSS_HIT = "STOP_LOSS_HIT"


@dataclass(frozen=True)
class Candle:
    """One OHLCV bar. Timestamps are naive and expressed in the data's native timezone."""

    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float

    @property
    def trading_date(self) -> date:
        return self.timestamp.date()

    @property
    def time_of_day(self) -> time:
        return self.timestamp.time()


@dataclass
class TradingSession:
    """One calendar day's candles, in chronological order."""

    key: date
    candles: list[Candle] = field(default_factory=list)

    @property
    def last_candle(self) -> Optional[Candle]:
        return self.candles[-1] if self.candles else None

    def __len__(self) -> int:
        return len(self.candles)


@dataclass(frozen=True)
class EmaPoint:
    timestamp: datetime
    value: float


@dataclass
class Order:
    """A stop-loss or profit-target order attached to a trade."""

    id: str
    role: OrderRole
    direction: Direction
    price: float
    contracts: int
    opened_at: datetime
    closed_at: Optional[datetime] = None
    trailing_trigger: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.closed_at is None

    def close(self, at: datetime) -> None:
        if self.closed_at is not None:
            raise TradeStateError(f"Order {self.id} is already closed")
        self.closed_at = at

    def trail(self, points: float) -> None:
        """Move the order ``points`` in the trade's favor (up for longs, down for shorts)."""
        if self.closed_at is not None:
            raise TradeStateError(f"Cannot trail closed order {self.id}")
        self.price = round_price(self.price + self.direction.sign * float(points))

    def move_to(self, price: float) -> None:
        if self.closed_at is not None:
            raise TradeStateError(f"Cannot move closed order {self.id}")
        self.price = round_price(price)


@dataclass
class Trade:
    """Aggregate root for one position: its entry, stop-loss and ordered profit targets."""

    id: str
    direction: Direction
    initial_entry_price: float
    contracts: int
    opened_at: datetime
    stop_loss: Order
    profit_targets: list[Order]
    session_key: Optional[date] = None
    remaining_contracts: int = -1
    outcome: TradeOutcome = TradeOutcome.PENDING
    cumulative_profit: float = 0.0
    closed_at: Optional[datetime] = None
    exit_reason: Optional[str] = None
    exit_price: Optional[float] = None

    def __post_init__(self) -> None:
        if self.contracts <= 0:
            raise ValueError(f"Trade {self.id} requires a positive contract count")
        if not self.profit_targets:
            raise ValueError(f"Trade {self.id} requires at least one profit target")
        allocated = sum(int(order.contracts) for order in self.profit_targets)
        if allocated != self.contracts:
            raise ValueError(
                f"Profit targets for trade {self.id} allocate {allocated} contracts, expected {self.contracts}"
            )
        if self.remaining_contracts < 0:
            self.remaining_contracts = int(self.contracts)

    @property
    def is_pending(self) -> bool:
        return self.outcome is TradeOutcome.PENDING

    def open_targets(self) -> Iterator[Order]:
        for order in self.profit_targets:
            if order.is_open:
                yield order

    def reduce(self, contracts: int) -> None:
        if not self.is_pending:
            raise TradeStateError(f"Trade {self.id} is already {self.outcome.value}")
        amount = int(contracts)
        if amount < 0:
            raise ValueError("Contracts to reduce must be non-negative")
        self.remaining_contracts = max(0, self.remaining_contracts - amount)

    def add_profit(self, amount: float) -> None:
        self.cumulative_profit += float(amount)

    def finalize(
        self,
        outcome: TradeOutcome,
        at: datetime,
        reason: Optional[str] = None,
        exit_price: Optional[float] = None,
    ) -> None:
        if not self.is_pending:
            raise TradeStateError(f"Trade {self.id} is already {self.outcome.value}")
        if outcome is TradeOutcome.PENDING:
            raise TradeStateError("A trade cannot be finalized as PENDING")
        self.outcome = outcome
        self.closed_at = at
        self.exit_reason = reason
        self.exit_price = None if exit_price is None else float(exit_price)

    def to_record(self) -> dict[str, Any]:
        filled_targets = [order for order in self.profit_targets if not order.is_open]
        return {
            "trade_id": self.id,
            "session": iso_time(self.session_key),
            "direction": self.direction.value,
            "entry_time": iso_time(self.opened_at),
            "entry_price": float(self.initial_entry_price),
            "contracts": int(self.contracts),
            "remaining_contracts": int(self.remaining_contracts),
            "stop_price": float(self.stop_loss.price),
            "targets_filled": len(filled_targets),
            "targets_total": len(self.profit_targets),
            "exit_time": iso_time(self.closed_at),
            "exit_price": None if self.exit_price is None else float(self.exit_price),
            "exit_reason": self.exit_reason,
            "outcome": self.outcome.value,
            "profit": float(self.cumulative_profit),
        }


@dataclass
class StrategyStatistics:
    """Running profit/loss accumulators and outcome counts for one configuration run."""

    total_profit: float = 0.0
    total_losses: float = 0.0
    winning_trades: int = 0
    losing_trades: int = 0
    breakeven_trades: int = 0
    stopped_out_trades: int = 0

    @property
    def total_trades(self) -> int:
        return self.winning_trades + self.losing_trades + self.breakeven_trades + self.stopped_out_trades

    @property
    def net_profit(self) -> float:
        return self.total_profit + self.total_losses

    @property
    def win_rate(self) -> float:
        return win_rate(self.winning_trades, self.total_trades)

    def record_outcome(self, outcome: TradeOutcome) -> None:
        if outcome is TradeOutcome.WIN:
            self.winning_trades += 1
        elif outcome is TradeOutcome.LOSS:
            self.losing_trades += 1
        elif outcome is TradeOutcome.BREAKEVEN:
            self.breakeven_trades += 1
        elif outcome is TradeOutcome.STOPPED_OUT:
            self.stopped_out_trades += 1
        else:
            raise TradeStateError("Cannot record a PENDING outcome")

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_profit": float(self.total_profit),
            "total_losses": float(self.total_losses),
            "net_profit": float(self.net_profit),
            "winning_trades": int(self.winning_trades),
            "losing_trades": int(self.losing_trades),
            "breakeven_trades": int(self.breakeven_trades),
            "stopped_out_trades": int(self.stopped_out_trades),
            "total_trades": int(self.total_trades),
            "win_rate": float(self.win_rate),
        }


def win_rate(wins: int, total_trades: int) -> float:
    """Percentage of winning trades; zero when nothing traded."""
    if total_trades <= 0:
        return 0.0
    return float(wins) / float(total_trades) * 100.0


@dataclass(frozen=True)
class StrategyEvent:
    """Lifecycle notification published synchronously by the strategy."""

    event_type: EventType
    time: datetime
    trade: Trade
    order: Optional[Order] = None
    amount: float = 0.0
    outcome: Optional[TradeOutcome] = None
    balance: Optional[float] = None
