from __future__ import annotations

import pytest

from backtest.advisors import ATRStopTakeAdvisor, BalanceProportionSizer, average_true_range
from backtest.errors import ConstructionError


@pytest.fixture
def atr_bars(make_bars):
    return make_bars(
        "EUR_USD",
        [
            (1.2, 2.0, 1.0, 1.5, 10.0, 1.45, 1.55),
            (2.2, 3.0, 2.0, 2.5, 10.0, 2.45, 2.55),
            (2.5, 2.6, 2.4, 2.5, 10.0, 2.45, 2.55),
        ],
    )


def test_sizer_is_linear_in_balance():
    sizer = BalanceProportionSizer(proportion=0.1, leverage=2.0)
    assert sizer.compute_position_size(10_000.0) == pytest.approx(2_000.0)
    assert sizer.compute_position_size(20_000.0) == pytest.approx(2 * sizer.compute_position_size(10_000.0))
    assert sizer.compute_position_size(0.0) == 0.0


def test_sizer_rejects_negative_balance_and_bad_parameters():
    with pytest.raises(ConstructionError):
        BalanceProportionSizer().compute_position_size(-1.0)
    with pytest.raises(ConstructionError):
        BalanceProportionSizer(proportion=0.0)
    with pytest.raises(ConstructionError):
        BalanceProportionSizer(leverage=-1.0)


def test_average_true_range_uses_available_history(atr_bars):
    assert average_true_range(atr_bars, 0, 15) == pytest.approx(1.0)
    assert average_true_range(atr_bars, 2, 3) == pytest.approx((1.0 + 1.5 + 0.2) / 3)
    assert average_true_range(atr_bars, 2, 2) == pytest.approx((1.5 + 0.2) / 2)


def test_atr_levels_bracket_the_quote(atr_bars):
    advisor = ATRStopTakeAdvisor(lookback=2, stop_multiple=1.5, take_multiple=3.0)
    atr = (1.5 + 0.2) / 2
    assert advisor.buy_stop_loss(atr_bars, 2, 0.9) == pytest.approx(2.45 - 1.5 * atr)
    assert advisor.buy_take_profit(atr_bars, 2, 0.9) == pytest.approx(2.55 + 3.0 * atr)
    assert advisor.sell_stop_loss(atr_bars, 2, 0.9) == pytest.approx(2.55 + 1.5 * atr)
    assert advisor.sell_take_profit(atr_bars, 2, 0.9) == pytest.approx(2.45 - 3.0 * atr)


def test_atr_advisor_validates_parameters():
    with pytest.raises(ConstructionError):
        ATRStopTakeAdvisor(lookback=0)
    with pytest.raises(ConstructionError):
        ATRStopTakeAdvisor(take_multiple=0.0)
