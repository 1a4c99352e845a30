"""Order records, their state machine and the bar trigger rules."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from .bars import BarSeries, body_bottom, body_top
from .errors import ConstructionError, OrderStateError


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @classmethod
    def from_value(cls, value: Any) -> "OrderSide":
        side = str(value or "").strip().upper()
        if side in {"LONG", "BUY"}:
            return cls.BUY
        if side in {"SHORT", "SELL"}:
            return cls.SELL
        raise ValueError(f"Unsupported side value: {value}")

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class OrderKind(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"


class TriggerPolicy(str, Enum):
    PLAIN = "PLAIN"
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    EXECUTED = "EXECUTED"
    CANCELLED = "CANCELLED"


@dataclass
class Order:
    """Tagged order variant; bar references are indices into the asset's BarSeries."""

    side: OrderSide
    kind: OrderKind
    placed_index: int
    position_size: float
    desired_price: float | None = None
    trigger: TriggerPolicy = TriggerPolicy.PLAIN
    executed_index: int | None = None
    status: OrderStatus = OrderStatus.PENDING

    @property
    def executed(self) -> bool:
        return self.status is OrderStatus.EXECUTED

    @property
    def cancelled(self) -> bool:
        return self.status is OrderStatus.CANCELLED

    def execute(self, index: int) -> None:
        if self.status is not OrderStatus.PENDING:
            raise OrderStateError(f"Cannot execute a {self.status.value.lower()} order", index=index)
        self.executed_index = int(index)
        self.status = OrderStatus.EXECUTED

    def cancel(self) -> None:
        if self.status is not OrderStatus.PENDING:
            raise OrderStateError(f"Cannot cancel a {self.status.value.lower()} order", index=self.placed_index)
        self.status = OrderStatus.CANCELLED

    def to_dict(self) -> dict[str, Any]:
        return {
            "side": self.side.value,
            "kind": self.kind.value,
            "trigger": self.trigger.value,
            "placed_index": int(self.placed_index),
            "executed_index": None if self.executed_index is None else int(self.executed_index),
            "position_size": float(self.position_size),
            "desired_price": None if self.desired_price is None else float(self.desired_price),
            "status": self.status.value,
        }


def market_order(side: OrderSide, index: int, position_size: float) -> Order:
    """Market orders fill on the bar they are placed on."""
    order = Order(side=side, kind=OrderKind.MARKET, placed_index=int(index), position_size=float(position_size))
    order.execute(index)
    return order


def limit_order(
    side: OrderSide,
    index: int,
    price: float,
    position_size: float,
    trigger: TriggerPolicy = TriggerPolicy.PLAIN,
) -> Order:
    return Order(
        side=side,
        kind=OrderKind.LIMIT,
        placed_index=int(index),
        position_size=float(position_size),
        desired_price=float(price),
        trigger=trigger,
    )


def _entry_quote(open_order: Order, bars: BarSeries) -> tuple[int, float, float]:
    if open_order.kind is not OrderKind.MARKET or not open_order.executed:
        raise ConstructionError("Stop-loss/take-profit requires an executed market entry", index=open_order.placed_index)
    idx = int(open_order.placed_index)
    return idx, float(bars.bid[idx]), float(bars.ask[idx])


def stop_loss_order(open_order: Order, price: float, bars: BarSeries) -> Order:
    """Protective stop for an open position; must sit beyond the entry quote."""
    idx, bid, ask = _entry_quote(open_order, bars)
    price = float(price)
    if open_order.side is OrderSide.BUY and price >= bid:
        raise ConstructionError(f"Buy stop-loss {price} must be below the entry bid {bid}", asset=bars.instrument, index=idx)
    if open_order.side is OrderSide.SELL and price <= ask:
        raise ConstructionError(f"Sell stop-loss {price} must be above the entry ask {ask}", asset=bars.instrument, index=idx)
    return limit_order(open_order.side.opposite, open_order.executed_index, price, open_order.position_size, TriggerPolicy.STOP_LOSS)


def take_profit_order(open_order: Order, price: float, bars: BarSeries) -> Order:
    """Profit target for an open position; must sit on the favourable side of the entry quote."""
    idx, bid, ask = _entry_quote(open_order, bars)
    price = float(price)
    if open_order.side is OrderSide.BUY and price <= bid:
        raise ConstructionError(f"Buy take-profit {price} must be above the entry bid {bid}", asset=bars.instrument, index=idx)
    if open_order.side is OrderSide.SELL and price >= ask:
        raise ConstructionError(f"Sell take-profit {price} must be below the entry ask {ask}", asset=bars.instrument, index=idx)
    return limit_order(open_order.side.opposite, open_order.executed_index, price, open_order.position_size, TriggerPolicy.TAKE_PROFIT)


def _falls_to(bar: Any, price: float) -> bool:
    return body_bottom(bar) <= price or float(bar.low) <= price


def _rises_to(bar: Any, price: float) -> bool:
    return body_top(bar) >= price or float(bar.high) >= price


# A long position closes with SELL limits (stop below, target above); a short with BUY limits.
_TRIGGER_RULES: dict[tuple[TriggerPolicy, OrderSide], Callable[[Any, float], bool]] = {
    (TriggerPolicy.STOP_LOSS, OrderSide.SELL): _falls_to,
    (TriggerPolicy.TAKE_PROFIT, OrderSide.SELL): _rises_to,
    (TriggerPolicy.STOP_LOSS, OrderSide.BUY): _rises_to,
    (TriggerPolicy.TAKE_PROFIT, OrderSide.BUY): _falls_to,
    (TriggerPolicy.PLAIN, OrderSide.BUY): _falls_to,
    (TriggerPolicy.PLAIN, OrderSide.SELL): _rises_to,
}


def is_triggered(order: Order, bar: Any) -> bool:
    """Whether a pending limit order's price is reached within ``bar``."""
    if order.kind is OrderKind.MARKET:
        return True
    if order.desired_price is None:
        raise ConstructionError("Limit order has no desired price", index=order.placed_index)
    return _TRIGGER_RULES[(order.trigger, order.side)](bar, float(order.desired_price))


def resolve_bracket(stop_order: Order, take_order: Order, bar: Any, index: int) -> Order | None:
    """Execute whichever leg triggers on this bar and cancel the other; stop wins ties."""
    if is_triggered(stop_order, bar):
        stop_order.execute(index)
        take_order.cancel()
        return stop_order
    if is_triggered(take_order, bar):
        take_order.execute(index)
        stop_order.cancel()
        return take_order
    return None
