"""Shared instrument metadata and normalization helpers."""

from __future__ import annotations

import re

ACCOUNT_CURRENCY = "USD"

# User-facing aliases for common symbols.
INSTRUMENT_ALIASES: dict[str, str] = {
    "GOLD": "XAU_USD",
    "SILVER": "XAG_USD",
    "OIL": "WTICO_USD",
    "BTC": "BTC_USD",
    "ETH": "ETH_USD",
}

# Trading days per year and contract units per lot for each instrument class.
_CLASS_TRADING_DAYS: dict[str, int] = {
    "FX": 313,
    "JPY": 313,
    "METAL": 252,
    "ENERGY": 252,
    "EQUITY": 252,
    "CRYPTO": 365,
}
_CLASS_UNIT_MULTIPLIER: dict[str, int] = {
    "FX": 100_000,
    "JPY": 100_000,
    "METAL": 1,
    "ENERGY": 1,
    "EQUITY": 1,
    "CRYPTO": 1,
}
FOREX_CLASSES = frozenset({"FX", "JPY"})

_PAIR_RE = re.compile(r"^[A-Z0-9]{3,}_[A-Z0-9]{3,}$")


def resolve_instrument_alias(raw: str) -> str:
    """Resolve user alias to canonical instrument if available."""
    key = raw.strip().upper()
    return INSTRUMENT_ALIASES.get(key, key)


def normalize_instrument(raw: str, *, allow_aliases: bool = True) -> str:
    """
    Normalize user input to canonical BASE_QUOTE instrument format.

    Examples:
    - eurusd -> EUR_USD
    - eur/usd -> EUR_USD
    - gold -> XAU_USD
    """
    if not raw or not raw.strip():
        raise ValueError("Instrument is required.")

    normalized = raw.strip().upper().replace("/", "_").replace("-", "_")
    normalized = normalized.replace(" ", "")

    if allow_aliases:
        normalized = resolve_instrument_alias(normalized)

    if "_" not in normalized and len(normalized) == 6 and normalized.isalnum():
        normalized = f"{normalized[:3]}_{normalized[3:]}"

    if not _PAIR_RE.match(normalized):
        raise ValueError(f"Invalid instrument format: {raw}")

    return normalized


def split_instrument(instrument: str) -> tuple[str, str]:
    """Return (base, quote) currency codes."""
    base, quote = normalize_instrument(instrument).split("_", 1)
    return base, quote


def get_instrument_class(instrument: str) -> str:
    """Classify instrument for unit and calendar policies."""
    inst = normalize_instrument(instrument, allow_aliases=True)
    if inst.endswith("_JPY"):
        return "JPY"
    if inst.startswith("XAU_") or inst.startswith("XAG_"):
        return "METAL"
    if inst.startswith("WTICO_") or inst.startswith("BRENT_"):
        return "ENERGY"
    if inst.startswith("BTC_") or inst.startswith("ETH_"):
        return "CRYPTO"
    return "FX"


def normalize_instrument_class(raw: str) -> str:
    value = str(raw or "").strip().upper()
    if value not in _CLASS_TRADING_DAYS:
        raise ValueError(f"Unsupported instrument class: {raw}")
    return value


def get_trading_days(instrument_class: str) -> int:
    """Trading days per year used to de-annualize rates."""
    return _CLASS_TRADING_DAYS[normalize_instrument_class(instrument_class)]


def get_unit_multiplier(instrument_class: str) -> int:
    """Units of the underlying per quoted position unit (100000 per FX lot)."""
    return _CLASS_UNIT_MULTIPLIER[normalize_instrument_class(instrument_class)]


def is_forex_class(instrument_class: str) -> bool:
    return normalize_instrument_class(instrument_class) in FOREX_CLASSES
