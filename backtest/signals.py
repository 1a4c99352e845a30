"""Signal matrices, classifier adapters and bar/signal alignment."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import numpy as np
import pandas as pd

from .bars import BarSeries
from .errors import DataError, SynchronizationError

logger = logging.getLogger(__name__)


class SignalModel(Protocol):
    def classify(self, features: np.ndarray) -> tuple[int, np.ndarray]:
        """Return the predicted class and the class-probability vector for one bar."""
        ...


@dataclass(frozen=True)
class SignalMatrix:
    """Per-bar feature rows keyed by the bar timestamp they were computed for."""

    time_ns: np.ndarray
    features: np.ndarray

    def __post_init__(self) -> None:
        if self.features.ndim != 2 or self.features.shape[0] != self.time_ns.size:
            raise DataError(
                f"Signal features must be 2-D with one row per timestamp, got shape {self.features.shape}"
            )
        if self.rows > 1 and np.any(np.diff(self.time_ns) <= 0):
            raise DataError("Signal timestamps must be strictly increasing")
        self.time_ns.setflags(write=False)
        self.features.setflags(write=False)

    @property
    def rows(self) -> int:
        return int(self.time_ns.size)

    def row(self, index: int) -> np.ndarray:
        return self.features[index]

    def slice_by_index(self, start_idx: int, end_idx: int) -> SignalMatrix:
        start = max(0, int(start_idx))
        end = max(start, min(self.rows, int(end_idx)))
        return SignalMatrix(time_ns=self.time_ns[start:end], features=self.features[start:end])

    @classmethod
    def from_dataframe(cls, frame: pd.DataFrame, time_column: str = "time") -> SignalMatrix:
        if time_column not in frame.columns:
            raise DataError(f"Signal frame is missing the {time_column} column")
        times = pd.DatetimeIndex(pd.to_datetime(frame[time_column], utc=True)).as_unit("ns")
        feature_frame = frame.drop(columns=[time_column])
        if feature_frame.shape[1] == 0:
            raise DataError("Signal frame has no feature columns")
        try:
            features = feature_frame.to_numpy(dtype=np.float64, copy=True)
        except (TypeError, ValueError) as exc:
            raise DataError(f"Invalid numeric value in signal frame: {exc}") from exc
        order = np.argsort(times.asi8, kind="mergesort")
        return cls(time_ns=times.asi8[order].copy(), features=features[order])


def read_signal_csv(path: str | Path) -> SignalMatrix:
    """Load a signal CSV: a ``time`` column followed by feature/probability columns."""
    csv_path = Path(path)
    if not csv_path.exists():
        raise FileNotFoundError(f"Signal file not found: {csv_path}")
    matrix = SignalMatrix.from_dataframe(pd.read_csv(csv_path))
    logger.debug("Loaded signals rows=%s from %s", matrix.rows, csv_path)
    return matrix


@dataclass(frozen=True)
class ProbabilityColumnsModel:
    """Treats each feature row as an already-computed class-probability vector."""

    def classify(self, features: np.ndarray) -> tuple[int, np.ndarray]:
        probs = np.asarray(features, dtype=np.float64)
        return int(np.argmax(probs)), probs


class EstimatorSignalModel:
    """Adapter for fitted estimators exposing ``predict_proba`` (scikit-learn style)."""

    def __init__(self, estimator: Any):
        if not hasattr(estimator, "predict_proba"):
            raise TypeError("estimator must implement predict_proba")
        self.estimator = estimator

    def classify(self, features: np.ndarray) -> tuple[int, np.ndarray]:
        probs = np.asarray(self.estimator.predict_proba(np.asarray(features).reshape(1, -1)))[0]
        return int(np.argmax(probs)), probs


@dataclass(frozen=True)
class SignalAlignment:
    """Shared bar window [bar_start, bar_end) and the row offsets of each signal matrix."""

    bar_start: int
    bar_end: int
    buy_offset: int
    sell_offset: int

    @property
    def rows(self) -> int:
        return self.bar_end - self.bar_start

    def buy_row(self, bar_index: int) -> int:
        return bar_index - self.bar_start + self.buy_offset

    def sell_row(self, bar_index: int) -> int:
        return bar_index - self.bar_start + self.sell_offset


def align_signals(bars: BarSeries, buy: SignalMatrix, sell: SignalMatrix) -> SignalAlignment:
    """Map bars and both signal matrices onto their common time window, once.

    Inside the window every bar must have exactly one row in each matrix.
    """
    if bars.rows == 0 or buy.rows == 0 or sell.rows == 0:
        raise SynchronizationError("Cannot align empty bar or signal series", asset=bars.instrument)
    start_ns = max(int(bars.time_ns[0]), int(buy.time_ns[0]), int(sell.time_ns[0]))
    end_ns = min(int(bars.time_ns[-1]), int(buy.time_ns[-1]), int(sell.time_ns[-1]))
    if start_ns > end_ns:
        raise SynchronizationError("Bar and signal series do not overlap", asset=bars.instrument)

    bar_start = int(np.searchsorted(bars.time_ns, start_ns, side="left"))
    bar_end = int(np.searchsorted(bars.time_ns, end_ns, side="right"))
    window = bars.time_ns[bar_start:bar_end]

    offsets: list[int] = []
    for name, matrix in (("buy", buy), ("sell", sell)):
        row_start = int(np.searchsorted(matrix.time_ns, start_ns, side="left"))
        row_end = int(np.searchsorted(matrix.time_ns, end_ns, side="right"))
        rows = matrix.time_ns[row_start:row_end]
        if rows.size != window.size or not np.array_equal(rows, window):
            mismatch = bar_start + _first_mismatch(window, rows)
            raise SynchronizationError(
                f"{name} signal rows do not line up with bars ({rows.size} rows vs {window.size} bars)",
                asset=bars.instrument,
                index=mismatch,
            )
        offsets.append(row_start)

    logger.debug(
        "Aligned %s bars [%s, %s) buy_offset=%s sell_offset=%s",
        bars.instrument,
        bar_start,
        bar_end,
        offsets[0],
        offsets[1],
    )
    return SignalAlignment(bar_start=bar_start, bar_end=bar_end, buy_offset=offsets[0], sell_offset=offsets[1])


def _first_mismatch(expected: np.ndarray, actual: np.ndarray) -> int:
    size = min(expected.size, actual.size)
    diff = np.flatnonzero(expected[:size] != actual[:size])
    return int(diff[0]) if diff.size else size


def split_signal_matrix(matrix: SignalMatrix, periods: int) -> list[SignalMatrix]:
    """Contiguous split into ``periods`` pieces; the last piece takes the remainder."""
    if periods < 1:
        raise ValueError("periods must be positive")
    step = matrix.rows // periods
    if step == 0:
        raise DataError(f"Cannot split {matrix.rows} signal rows into {periods} periods")
    bounds = [i * step for i in range(periods)] + [matrix.rows]
    return [matrix.slice_by_index(bounds[i], bounds[i + 1]) for i in range(periods)]
