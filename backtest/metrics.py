"""Performance analytics over trade logs."""

from __future__ import annotations

import logging
import math
import sys
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass
from datetime import date
from typing import Any, Sequence

import numpy as np
import pandas as pd

from .errors import DataError
from .trades import Trade

logger = logging.getLogger(__name__)

DEFAULT_ANNUAL_RISK_FREE_RATE = 2.5
DEFAULT_TARGET_DAILY_LOG_RETURN = 0.0025
DEFAULT_SHUFFLES = 5_000
RATIO_SENTINEL = sys.float_info.max


def _require_trades(trades: Sequence[Trade], metric: str) -> None:
    if not trades:
        raise DataError(f"{metric} requires at least one trade")


def _trade_days(trade: Trade) -> pd.DatetimeIndex:
    return pd.date_range(trade.open_day, trade.close_day, freq="D")


def daily_log_returns(
    trades: Sequence[Trade],
    start_day: date | None = None,
    end_day: date | None = None,
) -> pd.Series:
    """Spread each trade's log return evenly over the calendar days it spans.

    The result is dense: every day from ``start_day`` (default: earliest open) to
    ``end_day`` (default: latest close) is present, zero when nothing was open.
    """
    if not trades and (start_day is None or end_day is None):
        return pd.Series(dtype=np.float64, name="daily_log_return")
    first = start_day or min(trade.open_day for trade in trades)
    last = end_day or max(trade.close_day for trade in trades)
    index = pd.date_range(first, last, freq="D")
    values = pd.Series(0.0, index=index, name="daily_log_return")
    for trade in trades:
        days = _trade_days(trade)
        if days[0] < index[0] or days[-1] > index[-1]:
            raise DataError("Trade falls outside the requested day range", asset=trade.symbol, index=trade.open_index)
        values.loc[days] += trade.log_return / len(days)
    return values


def daily_log_return_matrix(trade_logs: Sequence[Sequence[Trade]], symbols: Sequence[str]) -> pd.DataFrame:
    """Assets x days matrix over the common earliest-open to latest-close range."""
    if len(trade_logs) != len(symbols):
        raise ValueError("trade_logs and symbols must have the same length")
    populated = [trade for log in trade_logs for trade in log]
    if not populated:
        return pd.DataFrame(index=list(symbols), dtype=np.float64)
    first = min(trade.open_day for trade in populated)
    last = max(trade.close_day for trade in populated)
    rows = [daily_log_returns(log, first, last) for log in trade_logs]
    return pd.DataFrame([row.to_numpy() for row in rows], index=list(symbols), columns=rows[0].index)


def daily_risk_free_log_return(annual_rate_pct: float, trading_days: int) -> float:
    return math.log(1.0 + annual_rate_pct / 100.0) / trading_days


def _ratio(mean: float, std: float) -> float:
    if not math.isfinite(std) or std == 0:
        return RATIO_SENTINEL
    return mean / std


def sharpe_sortino(
    trades: Sequence[Trade],
    trading_days: int,
    annual_risk_free_rate: float = DEFAULT_ANNUAL_RISK_FREE_RATE,
    target_daily_log_return: float = DEFAULT_TARGET_DAILY_LOG_RETURN,
) -> tuple[float, float]:
    """Daily Sharpe and Sortino ratios; a zero or undefined deviation yields RATIO_SENTINEL."""
    _require_trades(trades, "Sharpe/Sortino")
    daily = daily_log_returns(trades).to_numpy()
    excess = daily - daily_risk_free_log_return(annual_risk_free_rate, trading_days)
    sharpe = _ratio(float(np.mean(excess)), float(np.std(excess, ddof=1)) if excess.size > 1 else 0.0)

    target_excess = daily - target_daily_log_return
    downside = target_excess[target_excess < 0]
    downside_std = float(np.std(downside, ddof=1)) if downside.size > 1 else 0.0
    sortino = _ratio(float(np.mean(target_excess)), downside_std)
    return sharpe, sortino


def _max_drawdown_from_returns(returns: np.ndarray, wins: np.ndarray) -> float:
    worst = 0.0
    running = 0.0
    for value, win in zip(returns, wins):
        if win:
            running = 0.0
            continue
        running += value
        worst = min(worst, running)
    return float(worst)


def max_drawdown(trades: Sequence[Trade]) -> float:
    """Most negative summed log return over a run of consecutive non-winning trades."""
    returns = np.asarray([trade.log_return for trade in trades], dtype=np.float64)
    wins = np.asarray([trade.win for trade in trades], dtype=bool)
    return _max_drawdown_from_returns(returns, wins)


def _shuffled_drawdowns(returns: np.ndarray, wins: np.ndarray, seeds: Sequence[np.random.SeedSequence]) -> list[float]:
    results: list[float] = []
    for seed in seeds:
        order = np.random.default_rng(seed).permutation(returns.size)
        results.append(_max_drawdown_from_returns(returns[order], wins[order]))
    return results


def reshuffled_max_drawdown(
    trades: Sequence[Trade],
    n_shuffles: int = DEFAULT_SHUFFLES,
    seed: int | None = None,
    max_workers: int = 4,
) -> tuple[float, float]:
    """10th/90th percentile of max drawdown over random reorderings of the log.

    Each shuffle draws from its own child seed, so results do not depend on scheduling.
    """
    _require_trades(trades, "Bootstrap drawdown")
    if n_shuffles < 1:
        raise ValueError("n_shuffles must be positive")
    returns = np.asarray([trade.log_return for trade in trades], dtype=np.float64)
    wins = np.asarray([trade.win for trade in trades], dtype=bool)
    seeds = np.random.SeedSequence(seed).spawn(n_shuffles)

    workers = max(1, min(int(max_workers), n_shuffles))
    chunk = math.ceil(n_shuffles / workers)
    ordered: list[list[float] | None] = [None] * workers
    with ThreadPoolExecutor(max_workers=workers) as pool:
        future_map = {
            pool.submit(_shuffled_drawdowns, returns, wins, seeds[i * chunk : (i + 1) * chunk]): i
            for i in range(workers)
        }
        for future in as_completed(future_map):
            ordered[future_map[future]] = future.result()

    drawdowns = np.asarray([value for part in ordered if part for value in part], dtype=np.float64)
    low, high = np.quantile(drawdowns, [0.1, 0.9])
    return float(low), float(high)


@dataclass(frozen=True)
class BasicMetrics:
    """Summary counts and averages; averages over an empty win/loss set are 0.0."""

    n_trades: int
    starting_balance: float
    final_balance: float
    total_log_return: float
    total_percentage_return: float
    win_percentage: float
    average_win: float
    average_loss: float
    average_win_log_return: float
    average_loss_log_return: float
    average_log_return: float
    average_percentage_return: float

    def as_tuple(self) -> tuple:
        return (
            self.n_trades,
            self.starting_balance,
            self.final_balance,
            self.total_log_return,
            self.total_percentage_return,
            self.win_percentage,
            self.average_win,
            self.average_loss,
            self.average_win_log_return,
            self.average_loss_log_return,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _mean_or_zero(values: list[float]) -> float:
    return float(np.mean(values)) if values else 0.0


def basic_performance_metrics(trades: Sequence[Trade], starting_balance: float) -> BasicMetrics:
    _require_trades(trades, "Basic metrics")
    if starting_balance <= 0:
        raise DataError(f"starting balance must be positive, got {starting_balance}")
    wins = [trade for trade in trades if trade.win]
    losses = [trade for trade in trades if not trade.win]
    final_balance = float(starting_balance) + sum(trade.profit for trade in trades)
    total_lr = math.log(final_balance / starting_balance) if final_balance > 0 else float("-inf")
    n_trades = len(trades)
    avg_lr = total_lr / n_trades
    return BasicMetrics(
        n_trades=n_trades,
        starting_balance=float(starting_balance),
        final_balance=final_balance,
        total_log_return=total_lr,
        total_percentage_return=(math.exp(total_lr) - 1.0) * 100.0,
        win_percentage=len(wins) / n_trades * 100.0,
        average_win=_mean_or_zero([trade.profit for trade in wins]),
        average_loss=_mean_or_zero([trade.profit for trade in losses]),
        average_win_log_return=_mean_or_zero([trade.log_return for trade in wins]),
        average_loss_log_return=_mean_or_zero([trade.log_return for trade in losses]),
        average_log_return=avg_lr,
        average_percentage_return=(math.exp(avg_lr) - 1.0) * 100.0,
    )


def trades_to_frame(trades: Sequence[Trade]) -> pd.DataFrame:
    columns = [
        "symbol",
        "side",
        "open_time_utc",
        "close_time_utc",
        "units",
        "open_fill",
        "close_fill",
        "profit",
        "win",
        "log_return",
        "percentage_return",
        "slippage",
        "exit_reason",
    ]
    return pd.DataFrame([trade.to_dict() for trade in trades], columns=columns)


def summarize_trade_log(
    trades: Sequence[Trade],
    starting_balance: float,
    trading_days: int,
    annual_risk_free_rate: float = DEFAULT_ANNUAL_RISK_FREE_RATE,
    target_daily_log_return: float = DEFAULT_TARGET_DAILY_LOG_RETURN,
    n_shuffles: int = DEFAULT_SHUFFLES,
    seed: int | None = None,
) -> dict[str, Any]:
    """All metrics for one log; an empty log yields only the trade count."""
    if not trades:
        logger.warning("No trades to summarize; metrics omitted")
        return {"n_trades": 0, "starting_balance": float(starting_balance)}
    sharpe, sortino = sharpe_sortino(trades, trading_days, annual_risk_free_rate, target_daily_log_return)
    low, high = reshuffled_max_drawdown(trades, n_shuffles=n_shuffles, seed=seed)
    return {
        **basic_performance_metrics(trades, starting_balance).to_dict(),
        "sharpe_ratio": sharpe,
        "sortino_ratio": sortino,
        "max_drawdown": max_drawdown(trades),
        "bootstrap_max_drawdown_p10": low,
        "bootstrap_max_drawdown_p90": high,
    }
