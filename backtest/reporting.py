"""Plain-file artifacts for completed backtest runs."""

from __future__ import annotations

import json
import logging
import math
from pathlib import Path
from typing import Any, Optional, Sequence

import pandas as pd

from .metrics import summarize_trade_log, trades_to_frame
from .models import BacktestRunConfig, iso_utc
from .portfolio import RebalanceEvent
from .trades import Trade

logger = logging.getLogger(__name__)


def _json_default(value: Any) -> Any:
    if isinstance(value, pd.Timestamp):
        return value.isoformat().replace("+00:00", "Z")
    if hasattr(value, "isoformat"):
        return iso_utc(value)
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (set, tuple)):
        return list(value)
    if hasattr(value, "item"):
        return value.item()
    return str(value)


def _finite_or_none(value: Any) -> Any:
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def _write_json(path: Path, payload: dict[str, Any]) -> None:
    cleaned = {key: _finite_or_none(value) for key, value in payload.items()}
    path.write_text(json.dumps(cleaned, indent=2, default=_json_default), encoding="utf-8")


def rebalances_to_frame(symbols: Sequence[str], rebalances: Sequence[RebalanceEvent]) -> pd.DataFrame:
    """One row per rebalance: timestamp, then a weight and balance column per asset."""
    columns = ["time_utc"] + [f"weight_{s}" for s in symbols] + [f"balance_{s}" for s in symbols]
    rows = [
        [iso_utc(event.time_utc), *event.weights, *event.balances]
        for event in rebalances
    ]
    return pd.DataFrame(rows, columns=columns)


def write_run_artifacts(
    config: BacktestRunConfig,
    symbols: Sequence[str],
    trade_logs: Sequence[Sequence[Trade]],
    starting_balances: Sequence[float],
    trading_days: dict[str, int],
    rebalances: Optional[Sequence[RebalanceEvent]] = None,
) -> tuple[dict[str, dict[str, Any]], dict[str, str]]:
    """Write per-asset trades/summary files plus the run config and rebalance history."""
    out_dir = Path(config.report_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    analytics = config.analytics
    summaries: dict[str, dict[str, Any]] = {}
    paths: dict[str, str] = {"report_dir": str(out_dir)}
    for symbol, trades, balance in zip(symbols, trade_logs, starting_balances):
        asset_dir = out_dir / symbol
        asset_dir.mkdir(parents=True, exist_ok=True)
        summary = summarize_trade_log(
            trades,
            starting_balance=balance,
            trading_days=trading_days[symbol],
            annual_risk_free_rate=analytics.annual_risk_free_rate,
            target_daily_log_return=analytics.target_daily_log_return,
            n_shuffles=analytics.n_shuffles,
            seed=analytics.seed,
        )
        summaries[symbol] = summary

        trades_path = asset_dir / "trades.csv"
        summary_path = asset_dir / "summary.json"
        trades_to_frame(trades).to_csv(trades_path, index=False)
        _write_json(summary_path, {"symbol": symbol, **summary})
        paths[f"{symbol}_trades_csv"] = str(trades_path)
        paths[f"{symbol}_summary_json"] = str(summary_path)

    if rebalances:
        rebalances_path = out_dir / "rebalances.csv"
        rebalances_to_frame(symbols, rebalances).to_csv(rebalances_path, index=False)
        paths["rebalances_csv"] = str(rebalances_path)

    run_cfg_path = out_dir / "run_config.json"
    run_cfg_path.write_text(json.dumps(config.to_dict(), indent=2, default=_json_default), encoding="utf-8")
    paths["run_config_json"] = str(run_cfg_path)

    logger.info("Wrote artifacts for %s assets to %s", len(symbols), out_dir)
    return summaries, paths
