from __future__ import annotations

import pytest

from backtest.bars import PriceBar
from backtest.errors import ConstructionError, OrderStateError
from backtest.orders import (
    OrderKind,
    OrderSide,
    OrderStatus,
    TriggerPolicy,
    is_triggered,
    limit_order,
    market_order,
    resolve_bracket,
    stop_loss_order,
    take_profit_order,
)


def _bar(open_, high, low, close):
    return PriceBar(time_ns=0, open=open_, high=high, low=low, close=close, volume=1.0, bid=close, ask=close)


def test_market_order_executes_on_placement():
    order = market_order(OrderSide.BUY, 3, 500.0)
    assert order.executed
    assert order.executed_index == 3
    assert order.kind is OrderKind.MARKET


def test_order_cannot_execute_or_cancel_twice():
    order = limit_order(OrderSide.SELL, 0, 1.2, 10.0)
    assert order.status is OrderStatus.PENDING
    order.execute(2)
    with pytest.raises(OrderStateError):
        order.execute(3)
    with pytest.raises(OrderStateError):
        order.cancel()


def test_buy_stop_loss_must_sit_below_entry_bid(quote_bars):
    entry = market_order(OrderSide.BUY, 0, 100.0)
    with pytest.raises(ConstructionError):
        stop_loss_order(entry, 102.0, quote_bars)

    stop = stop_loss_order(entry, 99.0, quote_bars)
    assert stop.side is OrderSide.SELL
    assert stop.kind is OrderKind.LIMIT
    assert stop.trigger is TriggerPolicy.STOP_LOSS
    assert stop.position_size == 100.0
    assert not stop.executed


def test_take_profit_bounds_follow_entry_quote(quote_bars):
    buy = market_order(OrderSide.BUY, 0, 100.0)
    with pytest.raises(ConstructionError):
        take_profit_order(buy, 99.5, quote_bars)
    assert take_profit_order(buy, 103.0, quote_bars).trigger is TriggerPolicy.TAKE_PROFIT

    sell = market_order(OrderSide.SELL, 0, 100.0)
    with pytest.raises(ConstructionError):
        stop_loss_order(sell, 100.5, quote_bars)
    with pytest.raises(ConstructionError):
        take_profit_order(sell, 101.5, quote_bars)
    assert stop_loss_order(sell, 102.0, quote_bars).side is OrderSide.BUY
    assert take_profit_order(sell, 99.0, quote_bars).side is OrderSide.BUY


def test_protective_orders_require_executed_market_entry(quote_bars):
    pending = limit_order(OrderSide.BUY, 0, 99.0, 100.0)
    with pytest.raises(ConstructionError):
        stop_loss_order(pending, 98.0, quote_bars)


def test_trigger_rules_by_policy_and_side():
    bar = _bar(100.0, 101.0, 99.0, 100.5)
    # Long position exits: SELL stop below, SELL target above.
    assert is_triggered(limit_order(OrderSide.SELL, 0, 99.5, 1.0, TriggerPolicy.STOP_LOSS), bar)
    assert not is_triggered(limit_order(OrderSide.SELL, 0, 98.0, 1.0, TriggerPolicy.STOP_LOSS), bar)
    assert is_triggered(limit_order(OrderSide.SELL, 0, 100.8, 1.0, TriggerPolicy.TAKE_PROFIT), bar)
    assert not is_triggered(limit_order(OrderSide.SELL, 0, 102.0, 1.0, TriggerPolicy.TAKE_PROFIT), bar)
    # Short position exits: BUY stop above, BUY target below.
    assert is_triggered(limit_order(OrderSide.BUY, 0, 101.0, 1.0, TriggerPolicy.STOP_LOSS), bar)
    assert not is_triggered(limit_order(OrderSide.BUY, 0, 101.5, 1.0, TriggerPolicy.STOP_LOSS), bar)
    assert is_triggered(limit_order(OrderSide.BUY, 0, 99.0, 1.0, TriggerPolicy.TAKE_PROFIT), bar)
    # Plain limits: buy on a fall, sell on a rise.
    assert is_triggered(limit_order(OrderSide.BUY, 0, 100.0, 1.0), bar)
    assert not is_triggered(limit_order(OrderSide.BUY, 0, 98.5, 1.0), bar)
    assert is_triggered(limit_order(OrderSide.SELL, 0, 100.5, 1.0), bar)


def test_body_reaching_price_triggers_without_wick():
    bar = _bar(100.0, 100.0, 100.0, 100.0)
    assert is_triggered(limit_order(OrderSide.SELL, 0, 100.0, 1.0, TriggerPolicy.STOP_LOSS), bar)


def test_bracket_stop_wins_when_both_legs_trigger():
    stop = limit_order(OrderSide.SELL, 0, 99.5, 1.0, TriggerPolicy.STOP_LOSS)
    take = limit_order(OrderSide.SELL, 0, 100.8, 1.0, TriggerPolicy.TAKE_PROFIT)
    chosen = resolve_bracket(stop, take, _bar(100.0, 101.0, 99.0, 100.5), 4)
    assert chosen is stop
    assert stop.executed and stop.executed_index == 4
    assert take.cancelled


def test_bracket_untouched_bar_leaves_both_pending():
    stop = limit_order(OrderSide.SELL, 0, 95.0, 1.0, TriggerPolicy.STOP_LOSS)
    take = limit_order(OrderSide.SELL, 0, 105.0, 1.0, TriggerPolicy.TAKE_PROFIT)
    assert resolve_bracket(stop, take, _bar(100.0, 101.0, 99.0, 100.5), 1) is None
    assert stop.status is OrderStatus.PENDING
    assert take.status is OrderStatus.PENDING


def test_side_from_value_accepts_position_words():
    assert OrderSide.from_value("long") is OrderSide.BUY
    assert OrderSide.from_value("SHORT") is OrderSide.SELL
    with pytest.raises(ValueError):
        OrderSide.from_value("flat")
