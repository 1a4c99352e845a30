"""Position-size and stop-loss/take-profit advisors."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Protocol

import numpy as np

from .bars import BarSeries
from .errors import ConstructionError, DataError


class PositionSizeAdvisor(Protocol):
    def compute_position_size(self, balance: float) -> float:
        ...


class StopLossTakeProfitAdvisor(Protocol):
    def buy_stop_loss(self, bars: BarSeries, index: int, probability: float) -> float:
        ...

    def buy_take_profit(self, bars: BarSeries, index: int, probability: float) -> float:
        ...

    def sell_stop_loss(self, bars: BarSeries, index: int, probability: float) -> float:
        ...

    def sell_take_profit(self, bars: BarSeries, index: int, probability: float) -> float:
        ...


def _require_positive(name: str, value: float) -> float:
    value = float(value)
    if not math.isfinite(value) or value <= 0:
        raise ConstructionError(f"{name} must be positive, got {value}")
    return value


@dataclass(frozen=True)
class BalanceProportionSizer:
    """Risk a fixed, leveraged share of the current balance."""

    proportion: float = 0.1
    leverage: float = 1.0

    def __post_init__(self) -> None:
        _require_positive("proportion", self.proportion)
        _require_positive("leverage", self.leverage)

    def compute_position_size(self, balance: float) -> float:
        if balance < 0:
            raise ConstructionError(f"balance must not be negative, got {balance}")
        return float(balance) * self.leverage * self.proportion

    def to_dict(self) -> dict[str, Any]:
        return {"proportion": float(self.proportion), "leverage": float(self.leverage)}


def average_true_range(bars: BarSeries, index: int, lookback: int) -> float:
    """Mean true range over the ``lookback`` bars ending at ``index``.

    Early bars use whatever history exists; the very first bar's range is high - low.
    """
    if index < 0 or index >= bars.rows:
        raise DataError(f"ATR index {index} out of range", asset=bars.instrument, index=index)
    start = max(0, index - lookback + 1)
    high = bars.high[start : index + 1]
    low = bars.low[start : index + 1]
    ranges = high - low
    first = 0 if start > 0 else 1
    prev_close = bars.close[start - 1 + first : index]
    gaps = np.maximum(np.abs(high[first:] - prev_close), np.abs(low[first:] - prev_close))
    ranges[first:] = np.maximum(ranges[first:], gaps)
    return float(np.mean(ranges))


@dataclass(frozen=True)
class ATRStopTakeAdvisor:
    """Levels at fixed multiples of the average true range; ignores signal strength."""

    lookback: int = 15
    stop_multiple: float = 1.5
    take_multiple: float = 3.0

    def __post_init__(self) -> None:
        if int(self.lookback) < 1:
            raise ConstructionError(f"lookback must be positive, got {self.lookback}")
        _require_positive("stop_multiple", self.stop_multiple)
        _require_positive("take_multiple", self.take_multiple)

    def _atr(self, bars: BarSeries, index: int) -> float:
        return average_true_range(bars, index, int(self.lookback))

    def buy_stop_loss(self, bars: BarSeries, index: int, probability: float) -> float:
        return float(bars.bid[index]) - self.stop_multiple * self._atr(bars, index)

    def buy_take_profit(self, bars: BarSeries, index: int, probability: float) -> float:
        return float(bars.ask[index]) + self.take_multiple * self._atr(bars, index)

    def sell_stop_loss(self, bars: BarSeries, index: int, probability: float) -> float:
        return float(bars.ask[index]) + self.stop_multiple * self._atr(bars, index)

    def sell_take_profit(self, bars: BarSeries, index: int, probability: float) -> float:
        return float(bars.bid[index]) - self.take_multiple * self._atr(bars, index)

    def to_dict(self) -> dict[str, Any]:
        return {
            "lookback": int(self.lookback),
            "stop_multiple": float(self.stop_multiple),
            "take_multiple": float(self.take_multiple),
        }
