"""Error kinds raised by the simulation and accounting engine."""

from __future__ import annotations

from typing import Any


class BacktestError(Exception):
    """Base error carrying the asset/bar/segment that was being processed."""

    def __init__(
        self,
        message: str,
        *,
        asset: str | None = None,
        index: int | None = None,
        segment: int | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.asset = asset
        self.index = index
        self.segment = segment

    def add_context(
        self,
        *,
        asset: str | None = None,
        index: int | None = None,
        segment: int | None = None,
    ) -> "BacktestError":
        """Fill context fields that are still unset and return self for re-raising."""
        if self.asset is None and asset is not None:
            self.asset = asset
        if self.index is None and index is not None:
            self.index = int(index)
        if self.segment is None and segment is not None:
            self.segment = int(segment)
        return self

    def context(self) -> dict[str, Any]:
        return {
            key: value
            for key, value in (("asset", self.asset), ("bar", self.index), ("segment", self.segment))
            if value is not None
        }

    def __str__(self) -> str:
        ctx = self.context()
        if not ctx:
            return self.message
        rendered = " ".join(f"{key}={value}" for key, value in ctx.items())
        return f"{self.message} [{rendered}]"


class ConstructionError(BacktestError, ValueError):
    """Invalid order placement or advisor/cost-model parameters."""


class DataError(BacktestError, ValueError):
    """Inputs cannot support the requested computation (e.g. an empty trade log)."""


class SynchronizationError(BacktestError, RuntimeError):
    """Signal matrices cannot be aligned with the bar series."""


class OrderStateError(BacktestError, RuntimeError):
    """Illegal order state transition."""
