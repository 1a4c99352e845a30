"""Run configuration models."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from core.market_metadata import normalize_instrument, normalize_instrument_class

from .engine import DEFAULT_STARTING_BALANCE, SignalThresholds


def iso_utc(value: Any) -> Optional[str]:
    """Serialize datetime-like values to ISO8601 UTC string when possible."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if hasattr(value, "isoformat"):
        return value.isoformat().replace("+00:00", "Z")
    return str(value)


class RunMode(str, Enum):
    SINGLE = "SINGLE"
    SILOED = "SILOED"
    OPTIMAL = "OPTIMAL"

    @classmethod
    def from_value(cls, value: Any) -> "RunMode":
        try:
            return cls(str(value).strip().upper())
        except ValueError as exc:
            raise ValueError(f"Unsupported mode: {value}") from exc


class StrategyKind(str, Enum):
    MARKET = "MARKET"
    STOP_TAKE = "STOP_TAKE"

    @classmethod
    def from_value(cls, value: Any) -> "StrategyKind":
        try:
            return cls(str(value).strip().upper())
        except ValueError as exc:
            raise ValueError(f"Unsupported strategy: {value}") from exc


def _positive(payload: dict[str, Any], key: str, default: float) -> float:
    value = float(payload.get(key, default))
    if value <= 0:
        raise ValueError(f"{key} must be positive")
    return value


def _flag(payload: dict[str, Any], key: str, default: bool) -> bool:
    value = payload.get(key, default)
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "1", "yes", "on"):
        return True
    if text in ("false", "0", "no", "off"):
        return False
    raise ValueError(f"{key} must be a boolean, got {value!r}")


def _section(payload: dict[str, Any], key: str) -> dict[str, Any]:
    value = payload.get(key) or {}
    if not isinstance(value, dict):
        raise ValueError(f"{key} must be a mapping")
    return value


def _optional_path(value: Any) -> Path | None:
    if value in (None, "", "None"):
        return None
    return Path(value)


@dataclass
class AssetConfig:
    symbol: str
    bars_csv: Path
    buy_signals_csv: Path
    sell_signals_csv: Path
    instrument_class: str = ""
    balance: float | None = None
    thresholds: SignalThresholds = field(default_factory=SignalThresholds)
    base_conversion_csv: Path | None = None
    quote_conversion_csv: Path | None = None
    base_conversion_symbol: str | None = None
    quote_conversion_symbol: str | None = None

    def __post_init__(self) -> None:
        self.symbol = normalize_instrument(self.symbol)
        if self.instrument_class:
            self.instrument_class = normalize_instrument_class(self.instrument_class)
        if self.balance is not None and self.balance <= 0:
            raise ValueError(f"balance must be positive for {self.symbol}")
        for key in ("base", "quote"):
            csv_path = getattr(self, f"{key}_conversion_csv")
            symbol = getattr(self, f"{key}_conversion_symbol")
            if (csv_path is None) != (symbol is None):
                raise ValueError(f"{key}_conversion_csv and {key}_conversion_symbol must be given together for {self.symbol}")
            if symbol is not None:
                setattr(self, f"{key}_conversion_symbol", normalize_instrument(symbol))

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "AssetConfig":
        if not isinstance(payload, dict):
            raise ValueError("Each asset entry must be a JSON object")
        for key in ("symbol", "bars_csv", "buy_signals_csv", "sell_signals_csv"):
            if not str(payload.get(key) or "").strip():
                raise ValueError(f"{key} is required for every asset")
        balance = payload.get("balance")
        return cls(
            symbol=str(payload["symbol"]),
            bars_csv=Path(payload["bars_csv"]),
            buy_signals_csv=Path(payload["buy_signals_csv"]),
            sell_signals_csv=Path(payload["sell_signals_csv"]),
            instrument_class=str(payload.get("asset_class") or payload.get("instrument_class") or ""),
            balance=None if balance in (None, "") else float(balance),
            thresholds=SignalThresholds.from_raw(payload.get("thresholds")),
            base_conversion_csv=_optional_path(payload.get("base_conversion_csv")),
            quote_conversion_csv=_optional_path(payload.get("quote_conversion_csv")),
            base_conversion_symbol=payload.get("base_conversion_symbol") or None,
            quote_conversion_symbol=payload.get("quote_conversion_symbol") or None,
        )

    def resolve_paths(self, base_dir: Path) -> None:
        for name in ("bars_csv", "buy_signals_csv", "sell_signals_csv", "base_conversion_csv", "quote_conversion_csv"):
            value = getattr(self, name)
            if value is not None and not value.is_absolute():
                setattr(self, name, (base_dir / value).resolve())

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "bars_csv": str(self.bars_csv),
            "buy_signals_csv": str(self.buy_signals_csv),
            "sell_signals_csv": str(self.sell_signals_csv),
            "asset_class": self.instrument_class or None,
            "balance": self.balance,
            "thresholds": self.thresholds.to_dict(),
            "base_conversion_csv": None if self.base_conversion_csv is None else str(self.base_conversion_csv),
            "quote_conversion_csv": None if self.quote_conversion_csv is None else str(self.quote_conversion_csv),
            "base_conversion_symbol": self.base_conversion_symbol,
            "quote_conversion_symbol": self.quote_conversion_symbol,
        }


@dataclass
class SizingConfig:
    proportion: float = 0.1
    leverage: float = 1.0

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "SizingConfig":
        return cls(
            proportion=_positive(payload, "proportion", 0.1),
            leverage=_positive(payload, "leverage", 1.0),
        )


@dataclass
class StopTakeConfig:
    lookback: int = 15
    stop_multiple: float = 1.5
    take_multiple: float = 3.0

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "StopTakeConfig":
        return cls(
            lookback=int(_positive(payload, "lookback", 15)),
            stop_multiple=_positive(payload, "stop_multiple", 1.5),
            take_multiple=_positive(payload, "take_multiple", 3.0),
        )


@dataclass
class RebalanceConfig:
    periods: int = 1
    target_return: float = 0.0005
    negative_exposure_weight: float = 0.15

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "RebalanceConfig":
        return cls(
            periods=int(_positive(payload, "periods", 1)),
            target_return=float(payload.get("target_return", 0.0005)),
            negative_exposure_weight=_positive(payload, "negative_exposure_weight", 0.15),
        )


@dataclass
class AnalyticsConfig:
    annual_risk_free_rate: float = 2.5
    target_daily_log_return: float = 0.0025
    n_shuffles: int = 5_000
    seed: int | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "AnalyticsConfig":
        seed = payload.get("seed")
        return cls(
            annual_risk_free_rate=float(payload.get("annual_risk_free_rate", 2.5)),
            target_daily_log_return=float(payload.get("target_daily_log_return", 0.0025)),
            n_shuffles=int(_positive(payload, "n_shuffles", 5_000)),
            seed=None if seed in (None, "") else int(seed),
        )


@dataclass
class BacktestRunConfig:
    report_dir: Path
    assets: list[AssetConfig]
    mode: RunMode = RunMode.SINGLE
    strategy: StrategyKind = StrategyKind.MARKET
    starting_balance: float = DEFAULT_STARTING_BALANCE
    reverse_on_close: bool = True
    cost_factor: float = 2.0
    sizing: SizingConfig = field(default_factory=SizingConfig)
    stop_take: StopTakeConfig = field(default_factory=StopTakeConfig)
    rebalance: RebalanceConfig = field(default_factory=RebalanceConfig)
    analytics: AnalyticsConfig = field(default_factory=AnalyticsConfig)
    max_workers: int = 4

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "BacktestRunConfig":
        if not isinstance(payload, dict):
            raise ValueError("Backtest config must be a JSON object")
        assets_raw = payload.get("assets")
        if not isinstance(assets_raw, list) or not assets_raw:
            raise ValueError("Backtest config requires a non-empty assets list")
        assets = [AssetConfig.from_dict(item) for item in assets_raw]
        symbols = [item.symbol for item in assets]
        if len(set(symbols)) != len(symbols):
            raise ValueError(f"Duplicate asset symbols: {symbols}")

        mode = RunMode.from_value(payload.get("mode", "single"))
        if mode is RunMode.SINGLE and len(assets) != 1:
            raise ValueError("single mode expects exactly one asset")

        report_dir = Path(payload.get("report_dir") or "")
        if not str(report_dir) or str(report_dir) == ".":
            raise ValueError("report_dir is required")

        return cls(
            report_dir=report_dir,
            assets=assets,
            mode=mode,
            strategy=StrategyKind.from_value(payload.get("strategy", "market")),
            starting_balance=_positive(payload, "starting_balance", DEFAULT_STARTING_BALANCE),
            reverse_on_close=_flag(payload, "reverse_on_close", True),
            cost_factor=_positive(payload, "cost_factor", 2.0),
            sizing=SizingConfig.from_dict(_section(payload, "sizing")),
            stop_take=StopTakeConfig.from_dict(_section(payload, "stop_take")),
            rebalance=RebalanceConfig.from_dict(_section(payload, "rebalance")),
            analytics=AnalyticsConfig.from_dict(_section(payload, "analytics")),
            max_workers=max(1, int(payload.get("max_workers", 4))),
        )

    @classmethod
    def from_path(cls, path: str | Path) -> "BacktestRunConfig":
        config_path = Path(path)
        payload = json.loads(config_path.read_text(encoding="utf-8"))
        config = cls.from_dict(payload)
        if not config.report_dir.is_absolute():
            config.report_dir = (config_path.parent / config.report_dir).resolve()
        for asset in config.assets:
            asset.resolve_paths(config_path.parent)
        return config

    def asset_balances(self) -> list[float]:
        """Explicit per-asset balances, else an even split of the starting balance."""
        even = self.starting_balance / len(self.assets)
        return [even if item.balance is None else float(item.balance) for item in self.assets]

    def to_dict(self) -> dict[str, Any]:
        return {
            "report_dir": str(self.report_dir),
            "mode": self.mode.value,
            "strategy": self.strategy.value,
            "starting_balance": float(self.starting_balance),
            "reverse_on_close": bool(self.reverse_on_close),
            "cost_factor": float(self.cost_factor),
            "sizing": {"proportion": self.sizing.proportion, "leverage": self.sizing.leverage},
            "stop_take": {
                "lookback": self.stop_take.lookback,
                "stop_multiple": self.stop_take.stop_multiple,
                "take_multiple": self.stop_take.take_multiple,
            },
            "rebalance": {
                "periods": self.rebalance.periods,
                "target_return": self.rebalance.target_return,
                "negative_exposure_weight": self.rebalance.negative_exposure_weight,
            },
            "analytics": {
                "annual_risk_free_rate": self.analytics.annual_risk_free_rate,
                "target_daily_log_return": self.analytics.target_daily_log_return,
                "n_shuffles": self.analytics.n_shuffles,
                "seed": self.analytics.seed,
            },
            "max_workers": int(self.max_workers),
            "assets": [item.to_dict() for item in self.assets],
        }
