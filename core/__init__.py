"""Core utilities shared by the backtest engine and CLI."""

from .logging_setup import setup_logging, teardown_logging
from .market_metadata import (
    ACCOUNT_CURRENCY,
    INSTRUMENT_ALIASES,
    get_instrument_class,
    get_trading_days,
    get_unit_multiplier,
    is_forex_class,
    normalize_instrument,
    normalize_instrument_class,
    resolve_instrument_alias,
    split_instrument,
)

__all__ = [
    "setup_logging",
    "teardown_logging",
    "ACCOUNT_CURRENCY",
    "INSTRUMENT_ALIASES",
    "resolve_instrument_alias",
    "normalize_instrument",
    "normalize_instrument_class",
    "split_instrument",
    "get_instrument_class",
    "get_trading_days",
    "get_unit_multiplier",
    "is_forex_class",
]
