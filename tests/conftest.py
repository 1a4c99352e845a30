import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Repository root on sys.path so tests import the top-level packages directly.
ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from backtest.bars import NS_PER_DAY, BarSeries  # noqa: E402
from backtest.signals import SignalMatrix  # noqa: E402

START_NS = int(pd.Timestamp("2024-01-01", tz="UTC").value)


def _bar_series(instrument: str, rows: list[tuple[float, ...]], step_ns: int = NS_PER_DAY) -> BarSeries:
    data = np.asarray(rows, dtype=np.float64)
    times = START_NS + np.arange(len(rows), dtype=np.int64) * step_ns
    return BarSeries(
        instrument=instrument,
        time_ns=times,
        open=data[:, 0].copy(),
        high=data[:, 1].copy(),
        low=data[:, 2].copy(),
        close=data[:, 3].copy(),
        volume=data[:, 4].copy(),
        bid=data[:, 5].copy(),
        ask=data[:, 6].copy(),
    )


@pytest.fixture
def make_bars():
    """Factory: rows of (open, high, low, close, volume, bid, ask), one bar per day from 2024-01-01."""
    return _bar_series


@pytest.fixture
def make_signals():
    """Factory: probability rows stamped with the times of the given bars."""

    def _make(bars: BarSeries, probabilities: list[list[float]]) -> SignalMatrix:
        return SignalMatrix(
            time_ns=bars.time_ns.copy(),
            features=np.asarray(probabilities, dtype=np.float64),
        )

    return _make


@pytest.fixture
def eurusd_bars():
    """Three-bar EUR_USD series that rallies after the first bar."""
    return _bar_series(
        "EUR_USD",
        [
            (1.1000, 1.1100, 1.0900, 1.1000, 1000.0, 1.0999, 1.1001),
            (1.1000, 1.1300, 1.1000, 1.1200, 1000.0, 1.1199, 1.1201),
            (1.1200, 1.1300, 1.1100, 1.1200, 1000.0, 1.1199, 1.1201),
        ],
    )


@pytest.fixture
def quote_bars():
    """Two bars quoted 100/101 then 100.5/101 for order and cost checks."""
    return _bar_series(
        "EUR_USD",
        [
            (100.5, 102.0, 99.0, 100.5, 1000.0, 100.0, 101.0),
            (100.5, 103.0, 98.0, 101.0, 2000.0, 100.5, 101.0),
        ],
    )
