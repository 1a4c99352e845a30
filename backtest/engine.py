"""Signal-driven single-asset backtest loops."""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .advisors import PositionSizeAdvisor, StopLossTakeProfitAdvisor
from .assets import Asset
from .costs import LinearCostModel, TransactionCostModel
from .errors import BacktestError, DataError
from .orders import Order, OrderSide, market_order, resolve_bracket, stop_loss_order, take_profit_order
from .signals import SignalAlignment, SignalMatrix, SignalModel, align_signals
from .trades import Trade, close_trade, market_close_trade

logger = logging.getLogger(__name__)

DEFAULT_STARTING_BALANCE = 20_000.0
DEFAULT_THRESHOLD = 0.65
DEFAULT_MINORITY_CLASS = 1


def _probability_value(name: str, value: Any) -> float:
    number = float(value)
    if not 0.0 <= number <= 1.0:
        raise ValueError(f"{name} must be within [0, 1], got {value}")
    return number


@dataclass(frozen=True)
class SignalThresholds:
    """Entry/exit probability thresholds and the class index read from each model."""

    buy_entry: float = DEFAULT_THRESHOLD
    buy_exit: float = DEFAULT_THRESHOLD
    sell_entry: float = DEFAULT_THRESHOLD
    sell_exit: float = DEFAULT_THRESHOLD
    buy_class: int = DEFAULT_MINORITY_CLASS
    sell_class: int = DEFAULT_MINORITY_CLASS

    def __post_init__(self) -> None:
        for name in ("buy_entry", "buy_exit", "sell_entry", "sell_exit"):
            _probability_value(name, getattr(self, name))
        if int(self.buy_class) < 0 or int(self.sell_class) < 0:
            raise ValueError("class indices must not be negative")

    @classmethod
    def from_raw(cls, value: Any | None) -> "SignalThresholds":
        if value in (None, "", "None"):
            return cls()
        if isinstance(value, SignalThresholds):
            return value
        if not isinstance(value, dict):
            raise ValueError("thresholds must be a mapping")
        return cls(
            buy_entry=_probability_value("buy_entry", value.get("buy_entry", DEFAULT_THRESHOLD)),
            buy_exit=_probability_value("buy_exit", value.get("buy_exit", DEFAULT_THRESHOLD)),
            sell_entry=_probability_value("sell_entry", value.get("sell_entry", DEFAULT_THRESHOLD)),
            sell_exit=_probability_value("sell_exit", value.get("sell_exit", DEFAULT_THRESHOLD)),
            buy_class=int(value.get("buy_class", DEFAULT_MINORITY_CLASS)),
            sell_class=int(value.get("sell_class", DEFAULT_MINORITY_CLASS)),
        )

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


class PositionState(str, Enum):
    FLAT = "FLAT"
    LONG = "LONG"
    SHORT = "SHORT"


@dataclass
class AssetContext:
    """Everything one asset's loop reads; nothing here is shared between assets."""

    asset: Asset
    buy_model: SignalModel
    sell_model: SignalModel
    buy_signals: SignalMatrix
    sell_signals: SignalMatrix
    thresholds: SignalThresholds = field(default_factory=SignalThresholds)
    cost_model: TransactionCostModel = field(default_factory=LinearCostModel)
    stop_take: StopLossTakeProfitAdvisor | None = None

    @property
    def symbol(self) -> str:
        return self.asset.symbol

    def with_signals(self, buy_signals: SignalMatrix, sell_signals: SignalMatrix) -> "AssetContext":
        return dataclasses.replace(self, buy_signals=buy_signals, sell_signals=sell_signals)


@dataclass
class AssetBacktestResult:
    symbol: str
    starting_balance: float
    final_balance: float
    trades: list[Trade]
    state: PositionState
    open_order: Order | None
    bar_start: int
    bar_end: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "starting_balance": float(self.starting_balance),
            "final_balance": float(self.final_balance),
            "trades": len(self.trades),
            "state": self.state.value,
            "open_order": None if self.open_order is None else self.open_order.to_dict(),
            "bar_start": int(self.bar_start),
            "bar_end": int(self.bar_end),
        }


class _SignalLoop:
    def __init__(
        self,
        context: AssetContext,
        sizer: PositionSizeAdvisor,
        balance: float,
        reverse_on_close: bool,
        use_stop_take: bool,
    ):
        if use_stop_take and context.stop_take is None:
            raise DataError("Stop-loss/take-profit loop requires a stop_take advisor", asset=context.symbol)
        self.context = context
        self.sizer = sizer
        self.balance = float(balance)
        self.reverse_on_close = reverse_on_close
        self.use_stop_take = use_stop_take
        self.state = PositionState.FLAT
        self.open_order: Order | None = None
        self.stop_order: Order | None = None
        self.take_order: Order | None = None
        self.trades: list[Trade] = []
        self.alignment: SignalAlignment | None = None

    def run(self) -> AssetBacktestResult:
        ctx = self.context
        starting = self.balance
        self.alignment = align_signals(ctx.asset.bars, ctx.buy_signals, ctx.sell_signals)
        for index in range(self.alignment.bar_start, self.alignment.bar_end):
            try:
                self._step(index)
            except BacktestError as exc:
                raise exc.add_context(asset=ctx.symbol, index=index)

        if self.state is not PositionState.FLAT:
            logger.info("%s finished with an open %s position", ctx.symbol, self.state.value)
        logger.info(
            "%s backtest done: trades=%s balance %.2f -> %.2f",
            ctx.symbol,
            len(self.trades),
            starting,
            self.balance,
        )
        return AssetBacktestResult(
            symbol=ctx.symbol,
            starting_balance=starting,
            final_balance=self.balance,
            trades=self.trades,
            state=self.state,
            open_order=self.open_order,
            bar_start=self.alignment.bar_start,
            bar_end=self.alignment.bar_end,
        )

    def _probability(self, side: OrderSide, index: int) -> float:
        ctx = self.context
        if side is OrderSide.BUY:
            model, signals = ctx.buy_model, ctx.buy_signals
            row, class_index = self.alignment.buy_row(index), ctx.thresholds.buy_class
        else:
            model, signals = ctx.sell_model, ctx.sell_signals
            row, class_index = self.alignment.sell_row(index), ctx.thresholds.sell_class
        _, probs = model.classify(signals.row(row))
        if class_index >= len(probs):
            raise DataError(f"{side.value.lower()} model returned {len(probs)} probabilities; class {class_index} requested")
        return float(probs[class_index])

    def _step(self, index: int) -> None:
        thresholds = self.context.thresholds
        if self.state is PositionState.FLAT:
            if self.balance <= 0:
                return
            buy_prob = self._probability(OrderSide.BUY, index)
            sell_prob = self._probability(OrderSide.SELL, index)
            if buy_prob >= thresholds.buy_entry:
                self._open(OrderSide.BUY, index, buy_prob)
            elif sell_prob >= thresholds.sell_entry:
                self._open(OrderSide.SELL, index, sell_prob)
            return

        if self.use_stop_take and self._close_on_bracket(index):
            return

        if self.state is PositionState.LONG:
            exit_side, exit_threshold = OrderSide.SELL, thresholds.sell_exit
        else:
            exit_side, exit_threshold = OrderSide.BUY, thresholds.buy_exit
        exit_prob = self._probability(exit_side, index)
        if exit_prob < exit_threshold:
            return
        if self.use_stop_take:
            self.stop_order.cancel()
            self.take_order.cancel()
        self._record(market_close_trade(self.context.asset, self.context.cost_model, self.open_order, index, self.balance))
        if self.reverse_on_close and self.balance > 0:
            self._open(exit_side, index, exit_prob)

    def _open(self, side: OrderSide, index: int, probability: float) -> None:
        size = self.sizer.compute_position_size(self.balance)
        order = market_order(side, index, size)
        if self.use_stop_take:
            bars = self.context.asset.bars
            advisor = self.context.stop_take
            if side is OrderSide.BUY:
                stop = advisor.buy_stop_loss(bars, index, probability)
                take = advisor.buy_take_profit(bars, index, probability)
            else:
                stop = advisor.sell_stop_loss(bars, index, probability)
                take = advisor.sell_take_profit(bars, index, probability)
            self.stop_order = stop_loss_order(order, stop, bars)
            self.take_order = take_profit_order(order, take, bars)
        self.open_order = order
        self.state = PositionState.LONG if side is OrderSide.BUY else PositionState.SHORT
        logger.debug("%s opened %s size=%.2f at bar %s", self.context.symbol, self.state.value, size, index)

    def _close_on_bracket(self, index: int) -> bool:
        bar = self.context.asset.bars.bar(index)
        close_order = resolve_bracket(self.stop_order, self.take_order, bar, index)
        if close_order is None:
            return False
        reason = close_order.trigger.value
        self._record(
            close_trade(self.context.asset, self.context.cost_model, self.open_order, close_order, self.balance, exit_reason=reason)
        )
        return True

    def _record(self, trade: Trade) -> None:
        self.trades.append(trade)
        self.balance += trade.profit
        self.state = PositionState.FLAT
        self.open_order = None
        self.stop_order = None
        self.take_order = None


def run_market_order_backtest(
    context: AssetContext,
    sizer: PositionSizeAdvisor,
    balance: float = DEFAULT_STARTING_BALANCE,
    reverse_on_close: bool = True,
) -> AssetBacktestResult:
    """Open and close positions at market on signal thresholds."""
    return _SignalLoop(context, sizer, balance, reverse_on_close, use_stop_take=False).run()


def run_stop_loss_take_profit_backtest(
    context: AssetContext,
    sizer: PositionSizeAdvisor,
    balance: float = DEFAULT_STARTING_BALANCE,
) -> AssetBacktestResult:
    """Like the market loop, but a stop/take breach closes the position before the exit signal is read."""
    return _SignalLoop(context, sizer, balance, reverse_on_close=False, use_stop_take=True).run()
