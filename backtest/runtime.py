"""Config-driven backtest runs: load data, dispatch on mode, write artifacts."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .advisors import ATRStopTakeAdvisor, BalanceProportionSizer
from .assets import Asset
from .bars import BarSeries, read_bars_csv
from .costs import LinearCostModel
from .engine import AssetContext
from .models import AssetConfig, BacktestRunConfig, RunMode, StrategyKind
from .portfolio import (
    OptimalPortfolioResult,
    RebalanceEvent,
    SiloedBacktestResult,
    run_optimal_portfolio_backtest,
    run_siloed_backtest,
)
from .reporting import write_run_artifacts
from .signals import ProbabilityColumnsModel, read_signal_csv
from .trades import Trade

logger = logging.getLogger(__name__)


@dataclass
class BacktestArtifacts:
    symbols: list[str]
    trade_logs: list[list[Trade]]
    starting_balances: list[float]
    final_balances: list[float]
    rebalances: list[RebalanceEvent] = field(default_factory=list)
    summaries: dict[str, dict[str, Any]] = field(default_factory=dict)
    paths: dict[str, str] = field(default_factory=dict)

    @property
    def total_trades(self) -> int:
        return sum(len(log) for log in self.trade_logs)


def _load_conversion(path: Path | None, symbol: str | None) -> BarSeries | None:
    if path is None or symbol is None:
        return None
    return read_bars_csv(path, symbol)


def load_asset_context(item: AssetConfig, config: BacktestRunConfig) -> AssetContext:
    """Read one asset's bars, conversions and signals into a runnable context."""
    bars = read_bars_csv(item.bars_csv, item.symbol)
    asset = Asset(
        bars=bars,
        instrument_class=item.instrument_class,
        base_conversion=_load_conversion(item.base_conversion_csv, item.base_conversion_symbol),
        quote_conversion=_load_conversion(item.quote_conversion_csv, item.quote_conversion_symbol),
    )
    stop_take = None
    if config.strategy is StrategyKind.STOP_TAKE:
        stop_take = ATRStopTakeAdvisor(
            lookback=config.stop_take.lookback,
            stop_multiple=config.stop_take.stop_multiple,
            take_multiple=config.stop_take.take_multiple,
        )
    model = ProbabilityColumnsModel()
    return AssetContext(
        asset=asset,
        buy_model=model,
        sell_model=model,
        buy_signals=read_signal_csv(item.buy_signals_csv),
        sell_signals=read_signal_csv(item.sell_signals_csv),
        thresholds=item.thresholds,
        cost_model=LinearCostModel(factor=config.cost_factor),
        stop_take=stop_take,
    )


def _from_siloed(result: SiloedBacktestResult) -> BacktestArtifacts:
    return BacktestArtifacts(
        symbols=result.symbols,
        trade_logs=result.trade_logs,
        starting_balances=result.starting_balances.tolist(),
        final_balances=result.final_balances.tolist(),
    )


def _from_optimal(result: OptimalPortfolioResult) -> BacktestArtifacts:
    return BacktestArtifacts(
        symbols=list(result.symbols),
        trade_logs=result.trade_logs,
        starting_balances=list(result.starting_balances),
        final_balances=list(result.final_balances),
        rebalances=list(result.rebalances),
    )


def run_backtest(config: BacktestRunConfig) -> BacktestArtifacts:
    """Run the configured backtest and write its artifacts to ``config.report_dir``."""
    logger.info(
        "Backtest mode=%s strategy=%s assets=%s",
        config.mode.value,
        config.strategy.value,
        [item.symbol for item in config.assets],
    )
    contexts = [load_asset_context(item, config) for item in config.assets]
    sizer = BalanceProportionSizer(proportion=config.sizing.proportion, leverage=config.sizing.leverage)

    if config.mode is RunMode.OPTIMAL:
        optimal = run_optimal_portfolio_backtest(
            contexts,
            sizer,
            periods=config.rebalance.periods,
            balance=config.starting_balance,
            strategy=config.strategy,
            reverse_on_close=config.reverse_on_close,
            target_return=config.rebalance.target_return,
            negative_exposure_weight=config.rebalance.negative_exposure_weight,
            max_workers=config.max_workers,
        )
        artifacts = _from_optimal(optimal)
    else:
        siloed = run_siloed_backtest(
            contexts,
            sizer,
            config.asset_balances(),
            strategy=config.strategy,
            reverse_on_close=config.reverse_on_close,
            max_workers=config.max_workers,
        )
        artifacts = _from_siloed(siloed)

    trading_days = {ctx.symbol: ctx.asset.n_trading_days for ctx in contexts}
    artifacts.summaries, artifacts.paths = write_run_artifacts(
        config,
        artifacts.symbols,
        artifacts.trade_logs,
        artifacts.starting_balances,
        trading_days,
        rebalances=artifacts.rebalances,
    )
    return artifacts
