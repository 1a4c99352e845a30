"""Tradable assets and their account-currency conversions."""

from __future__ import annotations

from dataclasses import dataclass, field

from core.market_metadata import (
    ACCOUNT_CURRENCY,
    get_instrument_class,
    get_trading_days,
    get_unit_multiplier,
    is_forex_class,
    normalize_instrument_class,
    split_instrument,
)

from .bars import BarSeries
from .errors import ConstructionError, DataError


@dataclass(frozen=True)
class Asset:
    """Bar series plus the constants and conversions the accounting needs.

    Cross pairs (neither leg in the account currency) require conversion series
    quoted as USD/base or base/USD and USD/quote or quote/USD.
    """

    bars: BarSeries
    instrument_class: str = ""
    base_conversion: BarSeries | None = None
    quote_conversion: BarSeries | None = None
    base: str = field(init=False)
    quote: str = field(init=False)

    def __post_init__(self) -> None:
        base, quote = split_instrument(self.bars.instrument)
        object.__setattr__(self, "base", base)
        object.__setattr__(self, "quote", quote)
        raw_class = self.instrument_class or get_instrument_class(self.bars.instrument)
        object.__setattr__(self, "instrument_class", normalize_instrument_class(raw_class))
        if ACCOUNT_CURRENCY not in (base, quote) and is_forex_class(self.instrument_class):
            for name, series in (("base_conversion", self.base_conversion), ("quote_conversion", self.quote_conversion)):
                if series is None:
                    raise ConstructionError(
                        f"{name} series is required for cross pair {self.symbol}", asset=self.symbol
                    )
        self._check_conversion(self.base_conversion, base, "base_conversion")
        self._check_conversion(self.quote_conversion, quote, "quote_conversion")

    @property
    def symbol(self) -> str:
        return self.bars.instrument

    @property
    def n_trading_days(self) -> int:
        return get_trading_days(self.instrument_class)

    @property
    def unit_multiplier(self) -> int:
        return get_unit_multiplier(self.instrument_class)

    def _check_conversion(self, series: BarSeries | None, currency: str, name: str) -> None:
        if series is None:
            return
        legs = split_instrument(series.instrument)
        if set(legs) != {ACCOUNT_CURRENCY, currency}:
            raise ConstructionError(
                f"{name} must be quoted as {ACCOUNT_CURRENCY}/{currency} or {currency}/{ACCOUNT_CURRENCY}, "
                f"got {series.instrument}",
                asset=self.symbol,
            )

    def _conversion_mid(self, series: BarSeries, index: int) -> tuple[float, bool]:
        """Mid rate of the conversion bar sharing the timestamp of bar ``index``."""
        time_ns = int(self.bars.time_ns[index])
        conv_idx = series.index_of(time_ns)
        if conv_idx is None:
            raise DataError(
                f"No {series.instrument} conversion bar at the bar timestamp",
                asset=self.symbol,
                index=index,
            )
        return series.mid(conv_idx), split_instrument(series.instrument)[0] == ACCOUNT_CURRENCY

    def base_per_account(self, index: int) -> float:
        """Units of the base currency bought by one unit of account currency."""
        if self.base == ACCOUNT_CURRENCY:
            return 1.0
        if self.quote == ACCOUNT_CURRENCY:
            return 2.0 / (float(self.bars.bid[index]) + float(self.bars.ask[index]))
        if self.base_conversion is None:
            raise DataError(f"No base conversion available for {self.symbol}", asset=self.symbol, index=index)
        mid, account_is_base = self._conversion_mid(self.base_conversion, index)
        return mid if account_is_base else 1.0 / mid

    def quote_to_account(self, index: int) -> float:
        """Account-currency value of one unit of the quote currency."""
        if self.quote == ACCOUNT_CURRENCY:
            return 1.0
        if self.base == ACCOUNT_CURRENCY:
            return 2.0 / (float(self.bars.bid[index]) + float(self.bars.ask[index]))
        if self.quote_conversion is None:
            raise DataError(f"No quote conversion available for {self.symbol}", asset=self.symbol, index=index)
        mid, account_is_base = self._conversion_mid(self.quote_conversion, index)
        return 1.0 / mid if account_is_base else mid

    def position_size_units(self, amount: float, index: int) -> float:
        """Convert an account-currency amount into position units (lots for FX)."""
        if is_forex_class(self.instrument_class):
            return (float(amount) * self.base_per_account(index)) / self.unit_multiplier
        price = self.bars.mid(index) * self.quote_to_account(index)
        if price <= 0:
            raise DataError("Mid price must be positive to size a position", asset=self.symbol, index=index)
        return float(amount) / (price * self.unit_multiplier)
