from __future__ import annotations

import pytest

from backtest.advisors import BalanceProportionSizer
from backtest.assets import Asset
from backtest.engine import (
    AssetContext,
    PositionState,
    SignalThresholds,
    run_market_order_backtest,
    run_stop_loss_take_profit_backtest,
)
from backtest.errors import DataError, SynchronizationError
from backtest.orders import OrderSide
from backtest.signals import ProbabilityColumnsModel

BUY_THEN_QUIET = [[0.2, 0.8], [0.9, 0.1], [0.9, 0.1]]
SELL_ON_SECOND = [[0.9, 0.1], [0.2, 0.8], [0.9, 0.1]]
SELL_ON_THIRD = [[0.9, 0.1], [0.9, 0.1], [0.2, 0.8]]
QUIET = [[0.9, 0.1], [0.9, 0.1], [0.9, 0.1]]


class _FixedLevels:
    def __init__(self, stop, take):
        self.stop = stop
        self.take = take

    def buy_stop_loss(self, bars, index, probability):
        return self.stop

    def buy_take_profit(self, bars, index, probability):
        return self.take

    def sell_stop_loss(self, bars, index, probability):
        return self.stop

    def sell_take_profit(self, bars, index, probability):
        return self.take


@pytest.fixture
def context_for(eurusd_bars, make_signals):
    def _build(buy_probs, sell_probs, stop_take=None):
        model = ProbabilityColumnsModel()
        return AssetContext(
            asset=Asset(bars=eurusd_bars),
            buy_model=model,
            sell_model=model,
            buy_signals=make_signals(eurusd_bars, buy_probs),
            sell_signals=make_signals(eurusd_bars, sell_probs),
            stop_take=stop_take,
        )

    return _build


def test_buy_then_sell_signal_records_one_trade(context_for):
    result = run_market_order_backtest(
        context_for(BUY_THEN_QUIET, SELL_ON_THIRD), BalanceProportionSizer(), 20_000.0, reverse_on_close=False
    )
    assert len(result.trades) == 1
    trade = result.trades[0]
    assert trade.side is OrderSide.BUY
    assert (trade.open_index, trade.close_index) == (0, 2)
    assert trade.units == pytest.approx(2_000.0 / 1.1 / 100_000)
    assert result.final_balance == pytest.approx(20_000.0 + trade.profit)
    assert result.state is PositionState.FLAT
    assert result.open_order is None


def test_reverse_on_close_opens_opposite_position(context_for):
    result = run_market_order_backtest(context_for(BUY_THEN_QUIET, SELL_ON_SECOND), BalanceProportionSizer(), 20_000.0)
    assert len(result.trades) == 1
    assert result.state is PositionState.SHORT
    assert result.open_order.side is OrderSide.SELL
    assert result.open_order.executed_index == 1
    # Reopened size follows the balance after the first trade.
    assert result.open_order.position_size == pytest.approx(0.1 * result.final_balance)


def test_no_signal_above_threshold_leaves_balance_untouched(context_for):
    result = run_market_order_backtest(context_for(QUIET, QUIET), BalanceProportionSizer(), 20_000.0)
    assert result.trades == []
    assert result.final_balance == 20_000.0
    assert result.state is PositionState.FLAT


def test_thresholds_control_entry(context_for):
    ctx = context_for(BUY_THEN_QUIET, SELL_ON_SECOND)
    ctx.thresholds = SignalThresholds(buy_entry=0.85, sell_entry=0.85)
    result = run_market_order_backtest(ctx, BalanceProportionSizer(), 20_000.0)
    assert result.trades == []


def test_stop_take_loop_closes_on_take_profit(context_for):
    ctx = context_for(BUY_THEN_QUIET, QUIET, stop_take=_FixedLevels(stop=1.05, take=1.115))
    result = run_stop_loss_take_profit_backtest(ctx, BalanceProportionSizer(), 20_000.0)
    assert len(result.trades) == 1
    trade = result.trades[0]
    assert trade.exit_reason == "TAKE_PROFIT"
    assert trade.close_index == 1
    assert trade.close_fill == pytest.approx(1.115, abs=1e-6)
    assert result.state is PositionState.FLAT
    assert result.final_balance == pytest.approx(20_000.0 + trade.profit)


def test_stop_take_loop_requires_advisor(context_for):
    with pytest.raises(DataError):
        run_stop_loss_take_profit_backtest(context_for(BUY_THEN_QUIET, QUIET), BalanceProportionSizer())


def test_misaligned_signals_report_asset(context_for, make_signals, eurusd_bars):
    ctx = context_for(BUY_THEN_QUIET, QUIET)
    shifted = make_signals(eurusd_bars, QUIET)
    ctx.sell_signals = type(shifted)(time_ns=shifted.time_ns[[0, 2]].copy(), features=shifted.features[[0, 2]].copy())
    with pytest.raises(SynchronizationError) as exc:
        run_market_order_backtest(ctx, BalanceProportionSizer())
    assert exc.value.asset == "EUR_USD"


def test_stop_take_loop_falls_back_to_exit_signal(context_for):
    ctx = context_for(BUY_THEN_QUIET, SELL_ON_THIRD, stop_take=_FixedLevels(stop=1.05, take=1.5))
    result = run_stop_loss_take_profit_backtest(ctx, BalanceProportionSizer(), 20_000.0)
    assert [trade.exit_reason for trade in result.trades] == ["SIGNAL"]
    assert result.trades[0].close_index == 2
    assert result.state is PositionState.FLAT


def test_collapsed_fill_reports_asset_and_bar(make_bars, make_signals):
    bars = make_bars("AAPL_USD", [(10.0, 10.2, 9.8, 10.0, 1.0, 9.9, 10.1)] * 3)
    model = ProbabilityColumnsModel()
    ctx = AssetContext(
        asset=Asset(bars=bars, instrument_class="EQUITY"),
        buy_model=model,
        sell_model=model,
        buy_signals=make_signals(bars, BUY_THEN_QUIET),
        sell_signals=make_signals(bars, SELL_ON_THIRD),
    )
    # 200 shares against a volume of 1 pushes the closing sell below zero.
    with pytest.raises(DataError) as exc:
        run_market_order_backtest(ctx, BalanceProportionSizer(), 20_000.0, reverse_on_close=False)
    assert exc.value.asset == "AAPL_USD"
    assert exc.value.index == 2


def test_wiped_out_balance_stops_new_positions(context_for):
    # Short into the rally at 100x leverage loses more than the whole balance.
    buy = [[0.9, 0.1], [0.2, 0.8], [0.2, 0.8]]
    sell = [[0.2, 0.8], [0.9, 0.1], [0.2, 0.8]]
    result = run_market_order_backtest(
        context_for(buy, sell), BalanceProportionSizer(proportion=1.0, leverage=100.0), 20_000.0
    )
    assert len(result.trades) == 1
    trade = result.trades[0]
    assert trade.side is OrderSide.SELL
    assert trade.close_index == 1
    assert result.final_balance <= 0
    assert result.final_balance == pytest.approx(20_000.0 + trade.profit)
    assert result.state is PositionState.FLAT
    assert result.open_order is None
