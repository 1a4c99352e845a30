"""Immutable columnar price bars with index-range views."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd

from core.market_metadata import normalize_instrument

from .errors import DataError

logger = logging.getLogger(__name__)

NS_PER_DAY = 86_400_000_000_000
_EPOCH_UTC = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ARRAY_COLUMNS: tuple[str, ...] = ("open", "high", "low", "close", "volume", "bid", "ask")
REQUIRED_BAR_COLUMNS: tuple[str, ...] = ("time", *_ARRAY_COLUMNS)


def coerce_time_ns(value: Any | None) -> int | None:
    """Convert ints, datetimes and ISO strings to UTC epoch nanoseconds."""
    if value is None:
        return None
    if isinstance(value, (int, np.integer)):
        return int(value)
    if isinstance(value, datetime):
        dt_value = value.astimezone(timezone.utc) if value.tzinfo else value.replace(tzinfo=timezone.utc)
        delta = dt_value - _EPOCH_UTC
        return ((delta.days * 86400) + delta.seconds) * 1_000_000_000 + (delta.microseconds * 1_000)
    stamp = pd.Timestamp(str(value).strip())
    stamp = stamp.tz_localize("UTC") if stamp.tzinfo is None else stamp.tz_convert("UTC")
    return int(stamp.as_unit("ns").value)


def ns_to_datetime(value: int) -> datetime:
    return pd.Timestamp(int(value), tz="UTC").to_pydatetime()


def ns_to_day(value: int) -> date:
    """Calendar day (UTC) of an epoch-nanosecond timestamp."""
    return ns_to_datetime(value).date()


def body_top(bar: Any) -> float:
    return max(float(bar.open), float(bar.close))


def body_bottom(bar: Any) -> float:
    return min(float(bar.open), float(bar.close))


@dataclass(frozen=True)
class PriceBar:
    """Single bar record; any object exposing these fields can drive the trigger rules."""

    time_ns: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    bid: float
    ask: float

    @property
    def time_utc(self) -> datetime:
        return ns_to_datetime(self.time_ns)

    @property
    def day(self) -> date:
        return ns_to_day(self.time_ns)

    @property
    def mid(self) -> float:
        return (self.bid + self.ask) / 2.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "time_utc": self.time_utc.isoformat().replace("+00:00", "Z"),
            "open": float(self.open),
            "high": float(self.high),
            "low": float(self.low),
            "close": float(self.close),
            "volume": float(self.volume),
            "bid": float(self.bid),
            "ask": float(self.ask),
        }


@dataclass(frozen=True)
class BarSeries:
    """Read-only columnar bar arena; slices share the parent's buffers."""

    instrument: str
    time_ns: np.ndarray
    open: np.ndarray
    high: np.ndarray
    low: np.ndarray
    close: np.ndarray
    volume: np.ndarray
    bid: np.ndarray
    ask: np.ndarray

    def __post_init__(self) -> None:
        rows = int(self.time_ns.size)
        for name in ("time_ns", *_ARRAY_COLUMNS):
            column = getattr(self, name)
            if column.ndim != 1 or column.size != rows:
                raise DataError(f"Bar column {name} must be one-dimensional with {rows} rows", asset=self.instrument)
            column.setflags(write=False)
        if rows > 1 and np.any(np.diff(self.time_ns) <= 0):
            raise DataError("Bar timestamps must be strictly increasing", asset=self.instrument)

    @property
    def rows(self) -> int:
        return int(self.time_ns.size)

    def __len__(self) -> int:
        return self.rows

    @property
    def start_time_utc(self) -> datetime | None:
        if self.rows == 0:
            return None
        return ns_to_datetime(int(self.time_ns[0]))

    @property
    def end_time_utc(self) -> datetime | None:
        if self.rows == 0:
            return None
        return ns_to_datetime(int(self.time_ns[-1]))

    def bar(self, index: int) -> PriceBar:
        if index < 0 or index >= self.rows:
            raise IndexError(f"Bar index {index} out of range for {self.instrument} ({self.rows} rows)")
        return PriceBar(
            time_ns=int(self.time_ns[index]),
            open=float(self.open[index]),
            high=float(self.high[index]),
            low=float(self.low[index]),
            close=float(self.close[index]),
            volume=float(self.volume[index]),
            bid=float(self.bid[index]),
            ask=float(self.ask[index]),
        )

    def day(self, index: int) -> date:
        return ns_to_day(int(self.time_ns[index]))

    def mid(self, index: int) -> float:
        return (float(self.bid[index]) + float(self.ask[index])) / 2.0

    def index_of(self, time_ns: int) -> int | None:
        """Exact position of a timestamp, or None when the series has no such bar."""
        idx = int(np.searchsorted(self.time_ns, time_ns, side="left"))
        if idx < self.rows and int(self.time_ns[idx]) == int(time_ns):
            return idx
        return None

    def slice_by_index(self, start_idx: int, end_idx: int) -> BarSeries:
        start = max(0, int(start_idx))
        end = min(self.rows, int(end_idx))
        if end < start:
            end = start
        return BarSeries(
            instrument=self.instrument,
            time_ns=self.time_ns[start:end],
            open=self.open[start:end],
            high=self.high[start:end],
            low=self.low[start:end],
            close=self.close[start:end],
            volume=self.volume[start:end],
            bid=self.bid[start:end],
            ask=self.ask[start:end],
        )

    def slice_by_time(self, start_utc: Any | None = None, end_utc: Any | None = None) -> BarSeries:
        start_ns = coerce_time_ns(start_utc)
        end_ns = coerce_time_ns(end_utc)
        left = 0 if start_ns is None else int(np.searchsorted(self.time_ns, start_ns, side="left"))
        right = self.rows if end_ns is None else int(np.searchsorted(self.time_ns, end_ns, side="right"))
        return self.slice_by_index(left, right)

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "time": pd.to_datetime(self.time_ns, utc=True),
                "open": self.open,
                "high": self.high,
                "low": self.low,
                "close": self.close,
                "volume": self.volume,
                "bid": self.bid,
                "ask": self.ask,
            }
        )

    @classmethod
    def from_dataframe(cls, frame: pd.DataFrame, instrument: str) -> BarSeries:
        """Build a validated series from a frame with time/OHLCV/bid/ask columns."""
        inst = normalize_instrument(instrument)
        missing = [col for col in REQUIRED_BAR_COLUMNS if col not in frame.columns]
        if missing:
            raise DataError(f"Bar schema validation failed: missing columns {missing}", asset=inst)
        if frame.empty:
            raise DataError("Bar frame has no rows", asset=inst)

        times = pd.DatetimeIndex(pd.to_datetime(frame["time"], utc=True)).as_unit("ns")
        ordered = frame.assign(_time_ns=times.asi8).sort_values("_time_ns", kind="mergesort")
        ordered = ordered.drop_duplicates(subset="_time_ns", keep="last")

        try:
            columns = {name: ordered[name].to_numpy(dtype=np.float64, copy=True) for name in _ARRAY_COLUMNS}
        except (TypeError, ValueError) as exc:
            raise DataError(f"Invalid numeric value in bars: {exc}", asset=inst) from exc
        if np.isnan(np.column_stack(list(columns.values()))).any():
            raise DataError("Bar columns contain missing values", asset=inst)
        _validate_bar_shape(inst, columns)

        return cls(
            instrument=inst,
            time_ns=ordered["_time_ns"].to_numpy(dtype=np.int64, copy=True),
            **columns,
        )


def _validate_bar_shape(instrument: str, columns: dict[str, np.ndarray]) -> None:
    body_high = np.maximum(columns["open"], columns["close"])
    body_low = np.minimum(columns["open"], columns["close"])
    bad = np.flatnonzero(
        (columns["high"] < body_high) | (columns["low"] > body_low) | (columns["volume"] < 0)
    )
    if bad.size:
        raise DataError(
            "Bar violates high/low/volume bounds",
            asset=instrument,
            index=int(bad[0]),
        )


def read_bars_csv(path: str | Path, instrument: str) -> BarSeries:
    """Load a bar CSV (time, open, high, low, close, volume, bid, ask)."""
    csv_path = Path(path)
    if not csv_path.exists():
        raise FileNotFoundError(f"Bar file not found: {csv_path}")
    frame = pd.read_csv(csv_path)
    series = BarSeries.from_dataframe(frame, instrument)
    logger.debug("Loaded bars %s rows=%s from %s", series.instrument, series.rows, csv_path)
    return series
