"""Position state machine driven candle-by-candle by the backtest engine."""

from __future__ import annotations

import logging
from datetime import date
from typing import Callable, Optional, Protocol, Sequence

from core.market_metadata import round_price

from .candles import aggregate_sessions, filter_sessions_to_window
from .config import StrategyConfig
from .models import (
    Candle,
    ConfigurationError,
    Direction,
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
)

logger = logging.getLogger(__name__)

EventCallback = Callable[[StrategyEvent], None]

EXIT_STOP_LOSS = "stop_loss"
EXIT_TARGETS = "profit_targets"
EXIT_SESSION_END = "session_end"


class EntryPolicy(Protocol):
    """
    Entry rules plugged into a ``Strategy``.

    ``long_entry``/``short_entry`` are only consulted while the strategy is out
    of the market. They may keep per-session flags, which ``reset_session``
    clears before each session's first candle.
    """

    def load_indicators(self, candles: Sequence[Candle]) -> None:
        ...

    def reset_session(self) -> None:
        ...

    def long_entry(self, candle: Candle) -> bool:
        ...

    def short_entry(self, candle: Candle) -> bool:
        ...


class Strategy:
    """
    Holds one configuration's running state: status, balance, statistics, trades.

    At most one trade is pending at a time. Balance and the profit/loss
    accumulators only change through ``_apply_pnl`` so that
    ``balance == initial_balance + total_profit + total_losses`` always holds.
    """

    def __init__(self, policy: EntryPolicy):
        self.policy = policy
        self.config: StrategyConfig | None = None
        self._subscribers: list[tuple[EventCallback, frozenset[EventType]]] = []
        self._reset_state()

    def _reset_state(self) -> None:
        self.status = StrategyStatus.OUT_OF_MARKET
        self.initial_balance = 0.0
        self.balance = 0.0
        self.statistics = StrategyStatistics()
        self.trades: list[Trade] = []
        self.candles: list[Candle] = []
        self.sessions: dict[date, TradingSession] = {}
        self.current_session: date | None = None
        self._active_trade: Trade | None = None
        self._trade_seq = 0
        self._session_trade_counts: dict[date, int] = {}
        self._session_wins: set[date] = set()

    # configuration and data

    def load_configuration(self, config: StrategyConfig) -> "Strategy":
        self._reset_state()
        self.config = config
        self.initial_balance = float(config.starting_balance)
        self.balance = float(config.starting_balance)
        logger.debug("Loaded configuration %s (%s)", config.id, config.name)
        return self

    def _require_config(self) -> StrategyConfig:
        if self.config is None:
            raise ConfigurationError("No strategy configuration loaded")
        return self.config

    def load_candles(self, candles: Sequence[Candle]) -> "Strategy":
        """Aggregate 1-minute candles per session, keep the full series and window-filter the sessions."""
        config = self._require_config()
        aggregated = aggregate_sessions(candles, config.timeframe)
        self.candles = [candle for session in aggregated.values() for candle in session.candles]
        self.sessions = filter_sessions_to_window(aggregated, config.effective_trading_window)
        logger.info(
            "Strategy %s: %s one-minute candles -> %s %sm bars, %s sessions in window",
            config.id,
            len(candles),
            len(self.candles),
            config.timeframe,
            len(self.sessions),
        )
        return self

    def load_indicators(self) -> None:
        self.policy.load_indicators(self.candles)

    def reset_session(self, session_key: Optional[date] = None) -> None:
        self.current_session = session_key
        self.policy.reset_session()

    # observers

    def subscribe(self, callback: EventCallback, *event_types: EventType) -> None:
        """Register ``callback`` for ``event_types`` (all types when none given); called in registration order."""
        types = frozenset(event_types) if event_types else frozenset(EventType)
        self._subscribers.append((callback, types))

    def unsubscribe(self, callback: EventCallback) -> None:
        self._subscribers = [item for item in self._subscribers if item[0] is not callback]

    def _emit(
        self,
        event_type: EventType,
        candle: Candle,
        trade: Trade,
        order: Order | None = None,
        amount: float = 0.0,
        outcome: TradeOutcome | None = None,
    ) -> None:
        event = StrategyEvent(
            event_type=event_type,
            time=candle.timestamp,
            trade=trade,
            order=order,
            amount=float(amount),
            outcome=outcome,
            balance=self.balance,
        )
        for callback, types in list(self._subscribers):
            if event_type in types:
                callback(event)

    # state queries

    @property
    def point_value(self) -> float:
        return self._require_config().point_value

    @property
    def active_trade(self) -> Trade | None:
        return self._active_trade

    @property
    def in_market(self) -> bool:
        return self.status is StrategyStatus.IN_MARKET

    def session_trade_count(self, session_key: date) -> int:
        return self._session_trade_counts.get(session_key, 0)

    def session_has_win(self, session_key: date) -> bool:
        return session_key in self._session_wins

    # entries

    def long_entry(self, candle: Candle) -> bool:
        if self.in_market:
            return False
        return bool(self.policy.long_entry(candle))

    def short_entry(self, candle: Candle) -> bool:
        if self.in_market:
            return False
        return bool(self.policy.short_entry(candle))

    def _next_trade_id(self) -> str:
        self._trade_seq += 1
        return f"T{self._trade_seq:06d}"

    def open_trade(self, direction: Direction, candle: Candle) -> Trade:
        """Enter at the candle close with a stop and the configured profit targets."""
        config = self._require_config()
        if self.in_market:
            raise TradeStateError(f"Cannot open a trade while {self._active_trade.id} is pending")

        execution = config.execution
        sign = direction.sign
        entry_price = float(candle.close)
        trade_id = self._next_trade_id()

        stop_loss = Order(
            id=f"{trade_id}-SL",
            role=OrderRole.STOP_LOSS,
            direction=direction,
            price=round_price(entry_price - sign * execution.initial_stop_loss),
            contracts=execution.contracts,
            opened_at=candle.timestamp,
        )
        targets = [
            Order(
                id=f"{trade_id}-PT{idx}",
                role=OrderRole.PROFIT_TARGET,
                direction=direction,
                price=round_price(entry_price + sign * spec.offset),
                contracts=spec.contracts,
                opened_at=candle.timestamp,
                trailing_trigger=spec.trailing_trigger,
            )
            for idx, spec in enumerate(execution.profit_targets, start=1)
        ]
        trade = Trade(
            id=trade_id,
            direction=direction,
            initial_entry_price=entry_price,
            contracts=execution.contracts,
            opened_at=candle.timestamp,
            stop_loss=stop_loss,
            profit_targets=targets,
            session_key=candle.trading_date,
        )

        self.trades.append(trade)
        self._active_trade = trade
        self.status = StrategyStatus.IN_MARKET
        self._session_trade_counts[trade.session_key] = self.session_trade_count(trade.session_key) + 1
        logger.debug("Opened %s %s @ %s stop=%s", trade.id, direction.value, entry_price, stop_loss.price)
        self._emit(EventType.TRADE_CREATED, candle, trade)
        return trade

    # position management

    def check_open_position(self, candle: Candle) -> None:
        """Run the stop-loss check, then (if still open) the profit-target checks."""
        trade = self._active_trade
        if trade is None:
            return
        if self._stop_triggered(trade, candle):
            self._fill_stop(trade, candle)
            return
        self._check_profit_targets(trade, candle)

    @staticmethod
    def _stop_triggered(trade: Trade, candle: Candle) -> bool:
        stop = trade.stop_loss.price
        if trade.direction is Direction.LONG:
            return candle.low <= stop or candle.close <= stop
        return candle.high >= stop or candle.close >= stop

    @staticmethod
    def _target_triggered(trade: Trade, order: Order, candle: Candle) -> bool:
        if trade.direction is Direction.LONG:
            return candle.high >= order.price or candle.close >= order.price
        return candle.low <= order.price or candle.close <= order.price

    def _fill_stop(self, trade: Trade, candle: Candle) -> None:
        stop = trade.stop_loss
        if round_price(stop.price) == round_price(trade.initial_entry_price):
            realized = 0.0
            outcome = TradeOutcome.BREAKEVEN
        else:
            realized = (
                (stop.price - trade.initial_entry_price)
                * trade.direction.sign
                * self.point_value
                * trade.remaining_contracts
            )
            outcome = TradeOutcome.LOSS if realized < 0 else TradeOutcome.STOPPED_OUT

        stop.close(candle.timestamp)
        trade.add_profit(realized)
        self._apply_pnl(realized)
        self._finalize(trade, outcome, candle, EXIT_STOP_LOSS, stop.price)
        self._emit(EventType.STOP_LOSS_HIT, candle, trade, order=stop, amount=realized, outcome=outcome)
        self._emit(EventType.TRADE_CLOSED, candle, trade, amount=trade.cumulative_profit, outcome=outcome)

    def _check_profit_targets(self, trade: Trade, candle: Candle) -> None:
        last_fill: Order | None = None
        for order in list(trade.open_targets()):
            if not self._target_triggered(trade, order, candle):
                continue
            profit = abs(order.price - trade.initial_entry_price) * self.point_value * order.contracts
            trade.reduce(order.contracts)
            trade.add_profit(profit)
            self._apply_pnl(profit)
            order.close(candle.timestamp)
            self._trail_stop(trade, order)
            last_fill = order
            self._emit(EventType.PROFIT_TARGET_HIT, candle, trade, order=order, amount=profit)

        if trade.remaining_contracts <= 0:
            exit_price = last_fill.price if last_fill is not None else None
            self._finalize(trade, TradeOutcome.WIN, candle, EXIT_TARGETS, exit_price)
            self._emit(EventType.TRADE_CLOSED, candle, trade, amount=trade.cumulative_profit, outcome=TradeOutcome.WIN)

    def _trail_stop(self, trade: Trade, filled: Order) -> None:
        """First applicable rule wins: the target's own trigger, then breakeven, then half the initial stop."""
        execution = self._require_config().execution
        stop = trade.stop_loss
        if filled.trailing_trigger is not None:
            stop.trail(filled.trailing_trigger)
        elif execution.trail_stop_to_breakeven:
            stop.move_to(trade.initial_entry_price)
        elif execution.trail_stop_to_half_stop:
            stop.trail(execution.initial_stop_loss / 2.0)
        else:
            return
        logger.debug("Trailed stop for %s to %s after %s", trade.id, stop.price, filled.id)

    def flatten(self, candle: Candle) -> Trade | None:
        """Force-close the pending trade at ``candle.close`` (end of session)."""
        trade = self._active_trade
        if trade is None:
            return None
        realized = (
            (float(candle.close) - trade.initial_entry_price)
            * trade.direction.sign
            * self.point_value
            * trade.remaining_contracts
        )
        outcome = TradeOutcome.BREAKEVEN if realized == 0 else TradeOutcome.STOPPED_OUT
        trade.add_profit(realized)
        self._apply_pnl(realized)
        self._finalize(trade, outcome, candle, EXIT_SESSION_END, candle.close)
        self._emit(EventType.TRADE_CLOSED, candle, trade, amount=trade.cumulative_profit, outcome=outcome)
        return trade

    def _finalize(
        self,
        trade: Trade,
        outcome: TradeOutcome,
        candle: Candle,
        reason: str,
        exit_price: Optional[float] = None,
    ) -> None:
        trade.finalize(outcome, candle.timestamp, reason, exit_price)
        self.statistics.record_outcome(outcome)
        if outcome is TradeOutcome.WIN and trade.session_key is not None:
            self._session_wins.add(trade.session_key)
        self._active_trade = None
        self.status = StrategyStatus.OUT_OF_MARKET
        logger.debug("Closed %s outcome=%s profit=%.2f", trade.id, outcome.value, trade.cumulative_profit)

    def _apply_pnl(self, amount: float) -> None:
        value = float(amount)
        self.balance += value
        if value > 0:
            self.statistics.total_profit += value
        elif value < 0:
            self.statistics.total_losses += value
