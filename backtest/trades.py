"""Closed-trade accounting and order reconciliation."""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from .assets import Asset
from .bars import ns_to_datetime, ns_to_day
from .costs import TransactionCostModel
from .errors import DataError
from .orders import (
    Order,
    OrderSide,
    TriggerPolicy,
    market_order,
    resolve_bracket,
    stop_loss_order,
    take_profit_order,
)

logger = logging.getLogger(__name__)


def log_return(final: float, initial: float) -> float:
    if initial <= 0:
        raise DataError(f"initial balance must be positive to compute a log return, got {initial}")
    if final <= 0:
        return float("-inf")
    return math.log(final / initial)


def log_to_percentage_return(value: float) -> float:
    """Simple return in percent; 0 maps to 0 and the transform is monotonic."""
    return (math.exp(value) - 1.0) * 100.0


@dataclass(frozen=True)
class Trade:
    symbol: str
    side: OrderSide
    open_index: int
    close_index: int
    open_time_ns: int
    close_time_ns: int
    units: float
    open_fill: float
    close_fill: float
    profit: float
    log_return: float
    percentage_return: float
    slippage: float
    exit_reason: str = "SIGNAL"

    @property
    def win(self) -> bool:
        return self.profit > 0

    @property
    def open_time_utc(self) -> datetime:
        return ns_to_datetime(self.open_time_ns)

    @property
    def close_time_utc(self) -> datetime:
        return ns_to_datetime(self.close_time_ns)

    @property
    def open_day(self) -> date:
        return ns_to_day(self.open_time_ns)

    @property
    def close_day(self) -> date:
        return ns_to_day(self.close_time_ns)

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "side": self.side.value,
            "open_time_utc": self.open_time_utc.isoformat().replace("+00:00", "Z"),
            "close_time_utc": self.close_time_utc.isoformat().replace("+00:00", "Z"),
            "units": float(self.units),
            "open_fill": float(self.open_fill),
            "close_fill": float(self.close_fill),
            "profit": float(self.profit),
            "win": bool(self.win),
            "log_return": float(self.log_return),
            "percentage_return": float(self.percentage_return),
            "slippage": float(self.slippage),
            "exit_reason": self.exit_reason,
        }


def close_trade(
    asset: Asset,
    cost_model: TransactionCostModel,
    open_order: Order,
    close_order: Order,
    balance: float,
    exit_reason: str = "SIGNAL",
) -> Trade:
    """Account for an executed opening order closed by an executed opposite order."""
    if not open_order.executed or not close_order.executed:
        raise DataError("Both orders must be executed to build a trade", asset=asset.symbol, index=close_order.placed_index)
    if open_order.side is close_order.side:
        raise DataError("Closing order must be on the opposite side", asset=asset.symbol, index=close_order.executed_index)

    open_idx = int(open_order.executed_index)
    close_idx = int(close_order.executed_index)
    units = asset.position_size_units(open_order.position_size, open_idx)
    quote = cost_model.fill_prices(units, open_order, close_order, asset.bars)
    move = quote.close_fill - quote.open_fill if open_order.side is OrderSide.BUY else quote.open_fill - quote.close_fill
    profit = (units * asset.unit_multiplier) * move * asset.quote_to_account(close_idx)
    lr = log_return(balance + profit, balance)
    trade = Trade(
        symbol=asset.symbol,
        side=open_order.side,
        open_index=open_idx,
        close_index=close_idx,
        open_time_ns=int(asset.bars.time_ns[open_idx]),
        close_time_ns=int(asset.bars.time_ns[close_idx]),
        units=units,
        open_fill=quote.open_fill,
        close_fill=quote.close_fill,
        profit=profit,
        log_return=lr,
        percentage_return=log_to_percentage_return(lr),
        slippage=quote.slippage,
        exit_reason=exit_reason,
    )
    logger.debug(
        "%s %s trade closed bars %s->%s profit=%.4f reason=%s",
        asset.symbol,
        trade.side.value,
        open_idx,
        close_idx,
        profit,
        exit_reason,
    )
    return trade


def market_close_trade(
    asset: Asset,
    cost_model: TransactionCostModel,
    open_order: Order,
    close_index: int,
    balance: float,
) -> Trade:
    close_order = market_order(open_order.side.opposite, close_index, open_order.position_size)
    return close_trade(asset, cost_model, open_order, close_order, balance)


def bracket_trade(
    asset: Asset,
    cost_model: TransactionCostModel,
    open_order: Order,
    stop_price: float,
    take_price: float,
    balance: float,
    start_index: int | None = None,
) -> Trade:
    """Close at whichever of stop/take triggers first, scanning from the bar after entry."""
    stop_order = stop_loss_order(open_order, stop_price, asset.bars)
    take_order = take_profit_order(open_order, take_price, asset.bars)
    first = int(open_order.executed_index) + 1
    if start_index is not None:
        first = max(first, int(start_index))
    for index in range(first, asset.bars.rows):
        close_order = resolve_bracket(stop_order, take_order, asset.bars.bar(index), index)
        if close_order is not None:
            reason = "STOP_LOSS" if close_order.trigger is TriggerPolicy.STOP_LOSS else "TAKE_PROFIT"
            return close_trade(asset, cost_model, open_order, close_order, balance, exit_reason=reason)
    raise DataError("Neither stop-loss nor take-profit triggered before the end of the series", asset=asset.symbol, index=first)


def partial_close_trade(
    asset: Asset,
    cost_model: TransactionCostModel,
    buy: Order,
    sell: Order,
    balance: float,
) -> Trade:
    """Close the overlapping size of a buy/sell pair and shrink both orders by it.

    The earlier-executed order is treated as the opening leg.
    """
    matched = min(buy.position_size, sell.position_size)
    if buy.executed_index is None or sell.executed_index is None:
        raise DataError("Both orders must be executed to reconcile them", asset=asset.symbol)
    buy_first = asset.bars.time_ns[buy.executed_index] < asset.bars.time_ns[sell.executed_index]
    if buy_first:
        opening = market_order(OrderSide.BUY, buy.executed_index, matched)
        closing = market_order(OrderSide.SELL, sell.executed_index, matched)
    else:
        opening = market_order(OrderSide.SELL, sell.executed_index, matched)
        closing = market_order(OrderSide.BUY, buy.executed_index, matched)
    trade = close_trade(asset, cost_model, opening, closing, balance, exit_reason="RECONCILE")
    buy.position_size -= matched
    sell.position_size -= matched
    return trade


def reconcile_orders(
    asset: Asset,
    cost_model: TransactionCostModel,
    buy_orders: deque[Order],
    sell_orders: deque[Order],
    balance: float,
) -> list[Trade]:
    """Match FIFO buy/sell queues into partial-close trades until one side is empty.

    Fully matched orders are popped; a partially matched head stays queued with its
    reduced size. Each trade's return is measured against the running balance.
    """
    trades: list[Trade] = []
    running = float(balance)
    while buy_orders and sell_orders:
        trade = partial_close_trade(asset, cost_model, buy_orders[0], sell_orders[0], running)
        trades.append(trade)
        running += trade.profit
        if buy_orders[0].position_size <= 0:
            buy_orders.popleft()
        if sell_orders[0].position_size <= 0:
            sell_orders.popleft()
    return trades
