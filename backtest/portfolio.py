"""Multi-asset runners: siloed fan-out and periodic optimal-portfolio rebalancing."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, Sequence

import numpy as np
from scipy.optimize import minimize

from .advisors import PositionSizeAdvisor
from .bars import ns_to_datetime
from .engine import (
    DEFAULT_STARTING_BALANCE,
    AssetBacktestResult,
    AssetContext,
    run_market_order_backtest,
    run_stop_loss_take_profit_backtest,
)
from .errors import BacktestError, DataError
from .metrics import daily_log_return_matrix
from .models import StrategyKind
from .signals import split_signal_matrix
from .trades import Trade

logger = logging.getLogger(__name__)

DEFAULT_TARGET_RETURN = 0.0005
DEFAULT_NEGATIVE_EXPOSURE_WEIGHT = 0.15
_WEIGHT_TOLERANCE = 1e-6


@dataclass(frozen=True)
class RebalanceEvent:
    time_ns: int
    weights: tuple[float, ...]
    balances: tuple[float, ...]

    @property
    def time_utc(self) -> datetime:
        return ns_to_datetime(self.time_ns)

    def to_dict(self) -> dict[str, Any]:
        return {
            "time_utc": self.time_utc.isoformat().replace("+00:00", "Z"),
            "weights": [float(item) for item in self.weights],
            "balances": [float(item) for item in self.balances],
        }


class PortfolioOptimizer(Protocol):
    def optimize(self, returns: np.ndarray, initial_weights: np.ndarray) -> np.ndarray:
        """Weights for an assets x days return matrix."""
        ...

    def reset_target(self, target_return: float) -> None:
        ...


class MinimumVarianceOptimizer:
    """Long-only minimum-variance weights subject to a floor on expected daily return.

    Expected returns are the row-wise median of the return matrix. When no asset has a
    positive expectation every asset gets ``negative_exposure_weight`` (rescaled to sum
    to one); when the target is out of reach it is lowered to the mean of the positive
    expectations until ``reset_target`` is called.
    """

    def __init__(
        self,
        target_return: float = DEFAULT_TARGET_RETURN,
        negative_exposure_weight: float = DEFAULT_NEGATIVE_EXPOSURE_WEIGHT,
    ):
        if negative_exposure_weight <= 0:
            raise ValueError("negative_exposure_weight must be positive")
        self.target_return = float(target_return)
        self.negative_exposure_weight = float(negative_exposure_weight)

    def reset_target(self, target_return: float) -> None:
        self.target_return = float(target_return)

    def optimize(self, returns: np.ndarray, initial_weights: np.ndarray) -> np.ndarray:
        returns = np.atleast_2d(np.asarray(returns, dtype=np.float64))
        n_assets = returns.shape[0]
        if n_assets == 1:
            return np.ones(1)
        expected = np.median(returns, axis=1)
        best = float(expected.max())
        if best <= 0:
            logger.info("No asset has a positive expected return; using negative-exposure weights")
            weights = np.full(n_assets, self.negative_exposure_weight)
            return weights / weights.sum()
        if best <= self.target_return:
            self.target_return = float(expected[expected > 0].mean())
            logger.info("Target return lowered to %.6f", self.target_return)

        covariance = np.atleast_2d(np.cov(returns)) if returns.shape[1] > 1 else np.zeros((n_assets, n_assets))
        target = self.target_return
        result = minimize(
            lambda w: float(w @ covariance @ w),
            np.asarray(initial_weights, dtype=np.float64),
            jac=lambda w: 2.0 * covariance @ w,
            method="SLSQP",
            bounds=[(0.0, 1.0)] * n_assets,
            constraints=[
                {"type": "eq", "fun": lambda w: float(np.sum(w) - 1.0)},
                {"type": "ineq", "fun": lambda w: float(w @ expected - target)},
            ],
        )
        if not result.success:
            logger.warning("Weight optimization did not converge (%s); keeping initial weights", result.message)
            weights = np.asarray(initial_weights, dtype=np.float64)
        else:
            weights = np.clip(result.x, 0.0, None)
        return weights / weights.sum()


def optimal_balances(total_balance: float, weights: np.ndarray) -> np.ndarray:
    return np.asarray(weights, dtype=np.float64) * float(total_balance)


def floor_balances(balances: Sequence[float]) -> np.ndarray:
    return np.maximum(np.asarray(balances, dtype=np.float64), 0.0)


def optimal_weights_from_trade_logs(
    trade_logs: Sequence[Sequence[Trade]],
    symbols: Sequence[str],
    optimizer: PortfolioOptimizer,
) -> np.ndarray:
    """Optimizer weights from cumulative trade logs, starting from an equal-weight guess."""
    n_assets = len(symbols)
    initial = np.full(n_assets, 1.0 / n_assets)
    matrix = daily_log_return_matrix(trade_logs, symbols)
    if matrix.shape[1] == 0:
        logger.warning("No trades yet; keeping equal weights")
        return initial
    weights = np.asarray(optimizer.optimize(matrix.to_numpy(), initial), dtype=np.float64)
    if weights.shape != (n_assets,) or np.any(weights < -_WEIGHT_TOLERANCE) or abs(weights.sum() - 1.0) > _WEIGHT_TOLERANCE:
        raise DataError(f"Optimizer returned invalid weights {weights.tolist()}")
    return weights


@dataclass
class SiloedBacktestResult:
    results: list[AssetBacktestResult]

    @property
    def symbols(self) -> list[str]:
        return [item.symbol for item in self.results]

    @property
    def trade_logs(self) -> list[list[Trade]]:
        return [item.trades for item in self.results]

    @property
    def starting_balances(self) -> np.ndarray:
        return np.asarray([item.starting_balance for item in self.results], dtype=np.float64)

    @property
    def final_balances(self) -> np.ndarray:
        """Per-asset end balances, floored at zero."""
        return floor_balances([item.final_balance for item in self.results])

    def to_dict(self) -> dict[str, Any]:
        return {"assets": [item.to_dict() for item in self.results]}


def _run_asset(
    context: AssetContext,
    sizer: PositionSizeAdvisor,
    balance: float,
    strategy: StrategyKind,
    reverse_on_close: bool,
) -> AssetBacktestResult:
    if strategy is StrategyKind.STOP_TAKE:
        return run_stop_loss_take_profit_backtest(context, sizer, balance)
    return run_market_order_backtest(context, sizer, balance, reverse_on_close)


def run_siloed_backtest(
    contexts: Sequence[AssetContext],
    sizer: PositionSizeAdvisor,
    balances: Sequence[float],
    strategy: StrategyKind = StrategyKind.MARKET,
    reverse_on_close: bool = True,
    max_workers: int = 4,
) -> SiloedBacktestResult:
    """Run every asset's loop independently with its own starting balance."""
    if not contexts:
        raise ValueError("At least one asset is required")
    if len(balances) != len(contexts):
        raise ValueError(f"Expected {len(contexts)} balances, got {len(balances)}")
    symbols = [ctx.symbol for ctx in contexts]
    if len(set(symbols)) != len(symbols):
        raise ValueError(f"Duplicate asset symbols: {symbols}")

    workers = max(1, min(int(max_workers), len(contexts)))
    ordered: list[AssetBacktestResult | None] = [None] * len(contexts)
    with ThreadPoolExecutor(max_workers=workers) as pool:
        future_map = {
            pool.submit(_run_asset, ctx, sizer, float(balance), strategy, reverse_on_close): idx
            for idx, (ctx, balance) in enumerate(zip(contexts, balances))
        }
        for future in as_completed(future_map):
            ordered[future_map[future]] = future.result()
    return SiloedBacktestResult(results=[item for item in ordered if item is not None])


@dataclass
class OptimalPortfolioResult:
    symbols: list[str]
    trade_logs: list[list[Trade]]
    rebalances: list[RebalanceEvent] = field(default_factory=list)
    segments: list[SiloedBacktestResult] = field(default_factory=list)

    @property
    def starting_balances(self) -> tuple[float, ...]:
        return self.rebalances[0].balances

    @property
    def final_balances(self) -> tuple[float, ...]:
        return self.rebalances[-1].balances

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbols": list(self.symbols),
            "rebalances": [item.to_dict() for item in self.rebalances],
            "segments": [item.to_dict() for item in self.segments],
        }


def run_optimal_portfolio_backtest(
    contexts: Sequence[AssetContext],
    sizer: PositionSizeAdvisor,
    periods: int,
    balance: float = DEFAULT_STARTING_BALANCE,
    strategy: StrategyKind = StrategyKind.MARKET,
    reverse_on_close: bool = True,
    target_return: float = DEFAULT_TARGET_RETURN,
    negative_exposure_weight: float = DEFAULT_NEGATIVE_EXPOSURE_WEIGHT,
    optimizer: PortfolioOptimizer | None = None,
    max_workers: int = 4,
) -> OptimalPortfolioResult:
    """Siloed runs over ``periods`` consecutive segments, re-weighting balances after each.

    Segments run sequentially; assets inside a segment run in parallel.
    """
    if periods < 1:
        raise ValueError("periods must be positive")
    if balance <= 0:
        raise ValueError("balance must be positive")
    optimizer = optimizer or MinimumVarianceOptimizer(target_return, negative_exposure_weight)
    symbols = [ctx.symbol for ctx in contexts]
    n_assets = len(contexts)
    if n_assets == 0:
        raise ValueError("At least one asset is required")

    weights = np.full(n_assets, 1.0 / n_assets)
    balances = optimal_balances(balance, weights)
    splits = [
        (split_signal_matrix(ctx.buy_signals, periods), split_signal_matrix(ctx.sell_signals, periods))
        for ctx in contexts
    ]
    start_ns = min(int(buy[0].time_ns[0]) for buy, _ in splits)
    result = OptimalPortfolioResult(symbols=symbols, trade_logs=[[] for _ in contexts])
    result.rebalances.append(RebalanceEvent(start_ns, tuple(weights.tolist()), tuple(balances.tolist())))

    for segment in range(periods):
        segment_contexts = [ctx.with_signals(buy[segment], sell[segment]) for ctx, (buy, sell) in zip(contexts, splits)]
        logger.info("Rebalancing segment %s/%s balances=%s", segment + 1, periods, np.round(balances, 2).tolist())
        try:
            siloed = run_siloed_backtest(
                segment_contexts,
                sizer,
                balances.tolist(),
                strategy=strategy,
                reverse_on_close=reverse_on_close,
                max_workers=max_workers,
            )
            for log, item in zip(result.trade_logs, siloed.results):
                log.extend(item.trades)
            weights = optimal_weights_from_trade_logs(result.trade_logs, symbols, optimizer)
        except BacktestError as exc:
            raise exc.add_context(segment=segment)
        finally:
            optimizer.reset_target(target_return)

        total = float(siloed.final_balances.sum())
        balances = optimal_balances(total, weights)
        end_ns = max(
            int(ctx.asset.bars.time_ns[item.bar_end - 1]) for ctx, item in zip(segment_contexts, siloed.results)
        )
        result.segments.append(siloed)
        result.rebalances.append(RebalanceEvent(end_ns, tuple(weights.tolist()), tuple(balances.tolist())))
        logger.info("Segment %s weights=%s total=%.2f", segment + 1, np.round(weights, 4).tolist(), total)

    return result
