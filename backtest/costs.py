"""Fill-price and slippage models."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Protocol

from .bars import BarSeries
from .errors import ConstructionError, DataError
from .orders import Order, OrderKind, OrderSide

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FillQuote:
    open_fill: float
    close_fill: float
    slippage: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "open_fill": float(self.open_fill),
            "close_fill": float(self.close_fill),
            "slippage": float(self.slippage),
        }


class TransactionCostModel(Protocol):
    def fill_prices(self, units: float, open_order: Order, close_order: Order, bars: BarSeries) -> FillQuote:
        ...


@dataclass(frozen=True)
class LinearCostModel:
    """Spread-scaled impact: factor x (units / previous-bar volume) x (ask - bid).

    Market legs are pushed away from the live quote, limit legs away from their
    desired price. Slippage is the summed log distance of both legs.
    """

    factor: float = 2.0

    def __post_init__(self) -> None:
        if not math.isfinite(self.factor) or self.factor <= 0:
            raise ConstructionError(f"cost factor must be positive, got {self.factor}")

    def _adjustment(self, units: float, index: int, bars: BarSeries) -> float:
        # First bar has no predecessor; its own volume stands in.
        prev_volume = float(bars.volume[index - 1] if index > 0 else bars.volume[index])
        if prev_volume <= 0:
            logger.debug("Zero volume before bar %s of %s; no impact applied", index, bars.instrument)
            return 0.0
        spread = float(bars.ask[index]) - float(bars.bid[index])
        return self.factor * (abs(units) / prev_volume) * spread

    def _leg(self, units: float, order: Order, bars: BarSeries) -> tuple[float, float]:
        if order.executed_index is None:
            raise DataError("Cannot price an order that has not executed", asset=bars.instrument, index=order.placed_index)
        index = int(order.executed_index)
        adj = self._adjustment(units, index, bars)
        if order.kind is OrderKind.MARKET:
            reference = float(bars.ask[index] if order.side is OrderSide.BUY else bars.bid[index])
        else:
            reference = float(order.desired_price)
        fill = reference + adj if order.side is OrderSide.BUY else reference - adj
        # Impact larger than the sell reference would leave nothing to fill at.
        if fill <= 0 or reference <= 0:
            raise DataError(
                f"{order.side.value} fill collapsed to {fill:.6f} (reference {reference:.6f}, impact {adj:.6f})",
                asset=bars.instrument,
                index=index,
            )
        if order.side is OrderSide.BUY:
            return fill, math.log(fill / reference)
        return fill, math.log(reference / fill)

    def fill_prices(self, units: float, open_order: Order, close_order: Order, bars: BarSeries) -> FillQuote:
        open_fill, open_slip = self._leg(units, open_order, bars)
        close_fill, close_slip = self._leg(units, close_order, bars)
        return FillQuote(open_fill=open_fill, close_fill=close_fill, slippage=open_slip + close_slip)
