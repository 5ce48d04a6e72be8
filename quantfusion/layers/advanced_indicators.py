"""
Advanced indicators: trend stability, breakout probability, volatility
clustering and the bounded normalizers used by the composite score.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence
import numpy as np
from scipy import stats


# Minimum bars per estimator; each reflects its own statistical requirement
TREND_STABILITY_MIN_BARS = 20
TREND_STABILITY_LOOKBACK = 50
BREAKOUT_MIN_BARS = 40
VOLATILITY_CLUSTER_MIN_BARS = 30
VOLUME_SURGE_MIN_BARS = 20


@dataclass(frozen=True)
class AdvancedIndicatorSet:
    trend_stability: float = 0.5
    breakout_probability: float = 0.5
    volatility_cluster: bool = False
    indicator_confidence: float = 0.0

    def to_dict(self) -> dict:
        return {
            "trend_stability": self.trend_stability,
            "breakout_probability": self.breakout_probability,
            "volatility_cluster": self.volatility_cluster,
            "indicator_confidence": self.indicator_confidence,
        }


def trend_stability(closes: Sequence[float]) -> float:
    """
    R² of a straight-line fit over the last 50 closes.

    Close to 1 means a clean trend, close to 0 means chop. 0.5 when there is
    too little data or the series is flat.
    """
    if len(closes) < TREND_STABILITY_MIN_BARS:
        return 0.5

    y = np.asarray(closes[-TREND_STABILITY_LOOKBACK:], dtype=float)
    if np.ptp(y) == 0:
        return 0.5

    x = np.arange(len(y), dtype=float)
    fit = stats.linregress(x, y)
    r_squared = fit.rvalue ** 2
    if not np.isfinite(r_squared):
        return 0.5
    return float(min(1.0, max(0.0, r_squared)))


def _bandwidth(window: np.ndarray, num_std: float = 2.0) -> float:
    sma = window.mean()
    if sma == 0:
        return 0.0
    std = window.std()
    return (2 * num_std * std) / sma


def breakout_probability(
    closes: Sequence[float],
    highs: Sequence[float],
    lows: Sequence[float],
    period: int = 20,
) -> float:
    """Likelihood of a range break from Bollinger bandwidth expansion, in [0, 1]."""
    n = len(closes)
    if n < BREAKOUT_MIN_BARS:
        return 0.5

    prices = np.asarray(closes, dtype=float)
    recent = prices[-period:]
    sma = recent.mean()
    std = recent.std()
    if sma == 0:
        return 0.5

    upper = sma + 2 * std
    lower = sma - 2 * std
    bandwidth = (upper - lower) / sma

    # Bandwidths of the windows leading up to the current one
    history = [
        _bandwidth(prices[end - period:end])
        for end in range(n - period, n)
        if end - period >= 0
    ]
    if not history:
        return 0.5
    avg_bandwidth = float(np.mean(history))
    expansion = (bandwidth - avg_bandwidth) / avg_bandwidth if avg_bandwidth > 0 else 0.0

    current = prices[-1]
    near_band = False
    if std > 0:
        upper_proximity = abs(current - upper) / (upper - sma)
        lower_proximity = abs(current - lower) / (sma - lower)
        near_band = min(upper_proximity, lower_proximity) < 0.3

    probability = math.tanh(expansion * 5)
    if near_band:
        probability += 0.2
    if _range_surge(highs):
        probability += 0.15

    return float(min(1.0, max(0.0, probability)))


def _range_surge(highs: Sequence[float]) -> bool:
    """Recent 5 highs average more than 1.3x the 15 before them."""
    if len(highs) < VOLUME_SURGE_MIN_BARS:
        return False
    h = np.asarray(highs, dtype=float)
    recent_avg = h[-5:].mean()
    historical_avg = h[-20:-5].mean()
    return bool(historical_avg > 0 and recent_avg / historical_avg > 1.3)


def detect_volatility_cluster(closes: Sequence[float], window: int = 5) -> bool:
    """True when the last three rolling-volatility windows run 1.5x above the rest."""
    if len(closes) < VOLATILITY_CLUSTER_MIN_BARS:
        return False

    prices = np.asarray(closes, dtype=float)
    prev = prices[:-1]
    with np.errstate(divide="ignore", invalid="ignore"):
        returns = np.where(prev != 0, np.diff(prices) / prev, 0.0)

    vols = np.array([
        returns[i:i + window].std()
        for i in range(len(returns) - window + 1)
    ])
    if len(vols) < 2:
        return False

    recent_avg = vols[-3:].mean()
    historical = vols[:-3]
    historical_avg = historical.mean() if len(historical) else recent_avg
    return bool(recent_avg > historical_avg * 1.5)


def indicator_confidence(closes: Sequence[float], volumes: Sequence[float]) -> float:
    """Blend of data quantity, return calmness and volume presence, in [0, 1]."""
    n = len(closes)
    data_confidence = min(1.0, n / 200)

    prices = np.asarray(closes[:50], dtype=float)
    if len(prices) > 1:
        prev = prices[:-1]
        with np.errstate(divide="ignore", invalid="ignore"):
            abs_returns = np.where(prev != 0, np.abs(np.diff(prices) / prev), 0.0)
        avg_return = float(abs_returns.mean())
    else:
        avg_return = 0.0
    consistency_confidence = 1 - min(1.0, avg_return * 10)

    avg_volume = float(np.mean(volumes)) if len(volumes) else 1.0
    volume_confidence = 1.0 if avg_volume > 0 else 0.5

    return (data_confidence + consistency_confidence + volume_confidence) / 3


# =============================================================================
# NORMALIZERS
# =============================================================================

def normalize(value: float, scale: float = 1.0) -> float:
    """Smoothly squash any value into [-1, 1]."""
    if scale == 0:
        return 0.0
    return math.tanh(value / scale)


def normalize_rsi(rsi: float) -> float:
    return (rsi - 50) / 50


def normalize_macd(macd: float, signal: float, avg_price: float) -> float:
    """MACD histogram relative to 1% of price."""
    scale = avg_price * 0.01
    return math.tanh((macd - signal) / scale) if scale > 0 else 0.0


def normalize_adx(adx: float) -> float:
    return min(1.0, adx / 100)


def normalize_volatility(volatility: float) -> float:
    """Annualized volatility of 100% maps to 1."""
    return min(1.0, volatility / 1.0)


def compute_advanced(
    closes: Sequence[float],
    highs: Sequence[float],
    lows: Sequence[float],
    volumes: Sequence[float],
) -> AdvancedIndicatorSet:
    return AdvancedIndicatorSet(
        trend_stability=trend_stability(closes),
        breakout_probability=breakout_probability(closes, highs, lows),
        volatility_cluster=detect_volatility_cluster(closes),
        indicator_confidence=indicator_confidence(closes, volumes),
    )
