"""Signal-driven backtesting: bars, orders, trades, loops, portfolios and analytics."""

from .advisors import ATRStopTakeAdvisor, BalanceProportionSizer, average_true_range
from .assets import Asset
from .bars import BarSeries, PriceBar, read_bars_csv
from .costs import FillQuote, LinearCostModel
from .engine import (
    AssetBacktestResult,
    AssetContext,
    PositionState,
    SignalThresholds,
    run_market_order_backtest,
    run_stop_loss_take_profit_backtest,
)
from .errors import BacktestError, ConstructionError, DataError, OrderStateError, SynchronizationError
from .metrics import (
    BasicMetrics,
    basic_performance_metrics,
    daily_log_returns,
    max_drawdown,
    reshuffled_max_drawdown,
    sharpe_sortino,
    summarize_trade_log,
)
from .models import BacktestRunConfig, RunMode, StrategyKind
from .orders import Order, OrderKind, OrderSide, TriggerPolicy
from .portfolio import (
    MinimumVarianceOptimizer,
    RebalanceEvent,
    run_optimal_portfolio_backtest,
    run_siloed_backtest,
)
from .runtime import BacktestArtifacts, run_backtest
from .signals import EstimatorSignalModel, ProbabilityColumnsModel, SignalMatrix, read_signal_csv
from .trades import Trade, reconcile_orders

__all__ = [
    "Asset",
    "BarSeries",
    "PriceBar",
    "read_bars_csv",
    "Order",
    "OrderKind",
    "OrderSide",
    "TriggerPolicy",
    "FillQuote",
    "LinearCostModel",
    "BalanceProportionSizer",
    "ATRStopTakeAdvisor",
    "average_true_range",
    "Trade",
    "reconcile_orders",
    "SignalMatrix",
    "ProbabilityColumnsModel",
    "EstimatorSignalModel",
    "read_signal_csv",
    "SignalThresholds",
    "PositionState",
    "AssetContext",
    "AssetBacktestResult",
    "run_market_order_backtest",
    "run_stop_loss_take_profit_backtest",
    "RebalanceEvent",
    "MinimumVarianceOptimizer",
    "run_siloed_backtest",
    "run_optimal_portfolio_backtest",
    "BasicMetrics",
    "basic_performance_metrics",
    "daily_log_returns",
    "sharpe_sortino",
    "max_drawdown",
    "reshuffled_max_drawdown",
    "summarize_trade_log",
    "BacktestRunConfig",
    "RunMode",
    "StrategyKind",
    "BacktestArtifacts",
    "run_backtest",
    "BacktestError",
    "ConstructionError",
    "DataError",
    "SynchronizationError",
    "OrderStateError",
]
