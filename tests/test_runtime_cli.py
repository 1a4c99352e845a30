from __future__ import annotations

import json
from pathlib import Path

import pandas as pd
import pytest

import run_backtest
from backtest.models import BacktestRunConfig, RunMode, StrategyKind
from backtest.runtime import run_backtest as run_from_config
from core.logging_setup import teardown_logging


def _write_inputs(folder: Path, symbol: str, closes: list[float]) -> dict[str, str]:
    folder.mkdir(parents=True, exist_ok=True)
    times = pd.date_range("2024-01-01", periods=len(closes), freq="D", tz="UTC")
    bars = pd.DataFrame(
        {
            "time": times.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "open": closes,
            "high": [c + 0.005 for c in closes],
            "low": [c - 0.005 for c in closes],
            "close": closes,
            "volume": [1000.0] * len(closes),
            "bid": [c - 0.0001 for c in closes],
            "ask": [c + 0.0001 for c in closes],
        }
    )
    buy = pd.DataFrame({"time": bars["time"], "p0": 0.9, "p1": 0.1})
    sell = pd.DataFrame({"time": bars["time"], "p0": 0.9, "p1": 0.1})
    even = bars.index % 2 == 0
    buy.loc[even, "p0"], buy.loc[even, "p1"] = 0.2, 0.8
    sell.loc[~even, "p0"], sell.loc[~even, "p1"] = 0.2, 0.8

    paths = {
        "bars_csv": f"{symbol}_bars.csv",
        "buy_signals_csv": f"{symbol}_buy.csv",
        "sell_signals_csv": f"{symbol}_sell.csv",
    }
    bars.to_csv(folder / paths["bars_csv"], index=False)
    buy.to_csv(folder / paths["buy_signals_csv"], index=False)
    sell.to_csv(folder / paths["sell_signals_csv"], index=False)
    return {"symbol": symbol, **paths}


def _config(tmp_path: Path, **overrides) -> Path:
    assets = [_write_inputs(tmp_path, "EUR_USD", [1.10 + 0.01 * i for i in range(6)])]
    payload = {
        "mode": "single",
        "report_dir": "reports/run",
        "assets": assets,
        "analytics": {"n_shuffles": 50, "seed": 3},
        **overrides,
    }
    path = tmp_path / "config.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def test_config_defaults_and_relative_paths(tmp_path):
    config = BacktestRunConfig.from_path(_config(tmp_path))
    assert config.mode is RunMode.SINGLE
    assert config.strategy is StrategyKind.MARKET
    assert config.starting_balance == 20_000.0
    assert config.cost_factor == 2.0
    assert config.sizing.proportion == 0.1
    assert config.stop_take.lookback == 15
    assert config.rebalance.negative_exposure_weight == 0.15
    assert config.report_dir == (tmp_path / "reports" / "run").resolve()
    assert config.assets[0].bars_csv == (tmp_path / "EUR_USD_bars.csv").resolve()
    assert config.assets[0].thresholds.buy_entry == 0.65
    assert config.asset_balances() == [20_000.0]


def test_config_rejects_bad_values(tmp_path):
    base = {"report_dir": "out", "assets": [{"symbol": "EUR_USD", "bars_csv": "b", "buy_signals_csv": "x", "sell_signals_csv": "y"}]}
    with pytest.raises(ValueError):
        BacktestRunConfig.from_dict({**base, "mode": "sideways"})
    with pytest.raises(ValueError):
        BacktestRunConfig.from_dict({**base, "starting_balance": 0})
    with pytest.raises(ValueError):
        BacktestRunConfig.from_dict({**base, "assets": base["assets"] * 2, "mode": "siloed"})
    with pytest.raises(ValueError):
        BacktestRunConfig.from_dict({**base, "assets": [{**base["assets"][0], "thresholds": {"buy_entry": 1.5}}]})
    assert BacktestRunConfig.from_dict({**base, "strategy": "stop_take"}).strategy is StrategyKind.STOP_TAKE


def test_reverse_on_close_accepts_only_boolean_values():
    base = {"report_dir": "out", "assets": [{"symbol": "EUR_USD", "bars_csv": "b", "buy_signals_csv": "x", "sell_signals_csv": "y"}]}
    assert BacktestRunConfig.from_dict(base).reverse_on_close is True
    assert BacktestRunConfig.from_dict({**base, "reverse_on_close": False}).reverse_on_close is False
    assert BacktestRunConfig.from_dict({**base, "reverse_on_close": "false"}).reverse_on_close is False
    with pytest.raises(ValueError):
        BacktestRunConfig.from_dict({**base, "reverse_on_close": "sometimes"})


def test_single_run_writes_artifacts(tmp_path):
    config = BacktestRunConfig.from_path(_config(tmp_path))
    artifacts = run_from_config(config)
    assert artifacts.symbols == ["EUR_USD"]
    assert artifacts.total_trades == 5
    report_dir = Path(artifacts.paths["report_dir"])
    trades = pd.read_csv(report_dir / "EUR_USD" / "trades.csv")
    assert len(trades) == 5
    summary = json.loads((report_dir / "EUR_USD" / "summary.json").read_text(encoding="utf-8"))
    assert summary["n_trades"] == 5
    assert summary["final_balance"] == pytest.approx(artifacts.final_balances[0])
    echoed = json.loads((report_dir / "run_config.json").read_text(encoding="utf-8"))
    assert echoed["mode"] == "SINGLE"
    assert not (report_dir / "rebalances.csv").exists()


def test_optimal_run_writes_rebalance_history(tmp_path):
    second = _write_inputs(tmp_path, "GBP_USD", [1.30 - 0.005 * i for i in range(6)])
    path = _config(tmp_path, mode="optimal", rebalance={"periods": 2})
    payload = json.loads(path.read_text(encoding="utf-8"))
    payload["assets"].append(second)
    path.write_text(json.dumps(payload), encoding="utf-8")

    artifacts = run_from_config(BacktestRunConfig.from_path(path))
    assert len(artifacts.rebalances) == 3
    frame = pd.read_csv(artifacts.paths["rebalances_csv"])
    assert list(frame.columns) == [
        "time_utc",
        "weight_EUR_USD",
        "weight_GBP_USD",
        "balance_EUR_USD",
        "balance_GBP_USD",
    ]
    assert len(frame) == 3


def test_cli_run_exit_codes(tmp_path):
    try:
        with pytest.raises(SystemExit) as exc:
            run_backtest.main(["--logs-dir", str(tmp_path / "logs"), "run", "--config", str(_config(tmp_path))])
        assert exc.value.code == 0
        assert (tmp_path / "reports" / "run" / "EUR_USD" / "summary.json").exists()

        with pytest.raises(SystemExit) as exc:
            run_backtest.main(["--logs-dir", str(tmp_path / "logs"), "run", "--config", str(tmp_path / "missing.json")])
        assert exc.value.code == 2
    finally:
        teardown_logging()
