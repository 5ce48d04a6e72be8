"""Core type definitions shared across the fusion pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Literal
import numpy as np


VolatilityRegime = Literal["low", "medium", "high"]
TrendDirection = Literal["bullish", "bearish", "neutral"]
DataStatus = Literal["ok", "degraded", "unavailable"]


class Action(Enum):
    """Fusion-level recommendation ladder."""
    STRONG_BUY = "STRONG_BUY"
    BUY = "BUY"
    HOLD = "HOLD"
    SELL = "SELL"
    STRONG_SELL = "STRONG_SELL"

    @property
    def is_bullish(self) -> bool:
        return self in (Action.STRONG_BUY, Action.BUY)

    @property
    def is_bearish(self) -> bool:
        return self in (Action.STRONG_SELL, Action.SELL)


class RiskLevel(Enum):
    """Overall risk bucket."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


@dataclass(frozen=True)
class OHLCV:
    """One price/volume bar."""
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float
    symbol: str = ""

    def to_array(self) -> np.ndarray:
        return np.array([self.open, self.high, self.low, self.close, self.volume])

    @property
    def typical_price(self) -> float:
        return (self.high + self.low + self.close) / 3

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
            "symbol": self.symbol,
        }
