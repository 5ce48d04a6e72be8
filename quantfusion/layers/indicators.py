"""
Indicator Engine

Technical indicators from an ordered OHLCV series:
- Trend: EMA/SMA (20/50/200), ADX(14), MACD(12,26), trend strength, direction
- Momentum: RSI(14), Stochastic, Williams %R, momentum, ROC, CCI(20)
- Volatility: ATR(14), Bollinger(20, 2σ), volatility regime, historical vol
- Volume: volume SMA/ratio, OBV, volume profile, VWAP
- Composite: per-family scores blended with regime weights and squashed by tanh

Every calculation tolerates short or degenerate input and returns a neutral
value instead of raising, so the engine always yields a complete IndicatorSet.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Optional, Sequence
import numpy as np
from loguru import logger

from quantfusion.core.cache import TTLCache, quant_key
from quantfusion.core.config import CacheConfig
from quantfusion.core.metrics import MetricsCollector
from quantfusion.core.types import OHLCV, DataStatus
from quantfusion.layers.advanced_indicators import AdvancedIndicatorSet, compute_advanced
from quantfusion.layers.data_providers import MarketDataSource


MIN_BARS = 50
TRADING_DAYS = 252

DEFAULT_WEIGHTS = {"trend": 0.5, "momentum": 0.3, "volatility": 0.2}
REGIME_WEIGHTS = {
    "low": {"trend": 0.7, "momentum": 0.2, "volatility": 0.1},
    "medium": {"trend": 0.5, "momentum": 0.3, "volatility": 0.2},
    "high": {"trend": 0.3, "momentum": 0.4, "volatility": 0.3},
}


# =============================================================================
# INDICATOR RECORDS
# =============================================================================

@dataclass(frozen=True)
class MACD:
    macd: float = 0.0
    signal: float = 0.0
    histogram: float = 0.0


@dataclass(frozen=True)
class TrendIndicators:
    ema_20: float = 0.0
    ema_50: float = 0.0
    ema_200: float = 0.0
    sma_20: float = 0.0
    sma_50: float = 0.0
    sma_200: float = 0.0
    adx: float = 0.0
    macd: MACD = field(default_factory=MACD)
    trend_strength: float = 0.0  # -1 to 1
    direction: str = "neutral"  # bullish, bearish, neutral


@dataclass(frozen=True)
class Stochastic:
    k: float = 50.0
    d: float = 50.0


@dataclass(frozen=True)
class MomentumIndicators:
    rsi: float = 50.0
    stochastic: Stochastic = field(default_factory=Stochastic)
    williams_r: float = -50.0
    momentum: float = 0.0
    rate_of_change: float = 0.0
    commodity_channel_index: float = 0.0


@dataclass(frozen=True)
class BollingerBands:
    upper: float = 0.0
    middle: float = 0.0
    lower: float = 0.0
    bandwidth: float = 0.0


@dataclass(frozen=True)
class VolatilityIndicators:
    atr: float = 0.0
    bollinger_bands: BollingerBands = field(default_factory=BollingerBands)
    volatility_regime: str = "medium"  # low, medium, high
    historical_volatility: float = 0.0
    volatility_ratio: float = 1.0


@dataclass(frozen=True)
class VolumeProfile:
    poc: float = 0.0  # Point of control
    value_area_high: float = 0.0
    value_area_low: float = 0.0
    profile: dict[float, float] = field(default_factory=dict)  # Top 20 levels


@dataclass(frozen=True)
class VolumeIndicators:
    volume_sma: float = 0.0
    volume_ratio: float = 1.0
    on_balance_volume: float = 0.0
    volume_profile: VolumeProfile = field(default_factory=VolumeProfile)
    vwap: float = 0.0


@dataclass(frozen=True)
class CompositeScore:
    score: float = 0.0  # -1 to 1
    trend_score: float = 0.0
    momentum_score: float = 0.0
    volatility_score: float = 0.0
    weights: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    confidence: float = 0.0  # 0 to 1


@dataclass(frozen=True)
class IndicatorSet:
    """Full indicator snapshot for one symbol and lookback."""
    symbol: str = ""
    period: int = 200
    bars: int = 0
    last_price: float = 0.0
    trend: TrendIndicators = field(default_factory=TrendIndicators)
    momentum: MomentumIndicators = field(default_factory=MomentumIndicators)
    volatility: VolatilityIndicators = field(default_factory=VolatilityIndicators)
    volume: VolumeIndicators = field(default_factory=VolumeIndicators)
    composite: CompositeScore = field(default_factory=CompositeScore)
    advanced: AdvancedIndicatorSet = field(default_factory=AdvancedIndicatorSet)
    status: DataStatus = "ok"
    computed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def empty(
        cls,
        symbol: str = "",
        period: int = 200,
        status: DataStatus = "degraded",
        bars: int = 0,
    ) -> "IndicatorSet":
        """Canonical neutral set (RSI 50, scores 0, direction neutral)."""
        return cls(symbol=symbol, period=period, bars=bars, status=status)

    @property
    def is_empty(self) -> bool:
        return self.status != "ok"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["computed_at"] = self.computed_at.isoformat()
        data["volume"]["volume_profile"]["profile"] = {
            str(price): vol for price, vol in self.volume.volume_profile.profile.items()
        }
        return data


# =============================================================================
# INDICATOR ENGINE
# =============================================================================

class IndicatorEngine:
    """
    Computes IndicatorSets from bars.

    `compute` is a pure function of the series. `calculate_indicators` adds
    the market-data fetch and memoization under quant_indicators:<symbol>:<period>.
    """

    def __init__(
        self,
        market_data: Optional[MarketDataSource] = None,
        cache: Optional[TTLCache] = None,
        metrics: Optional[MetricsCollector] = None,
        cache_config: Optional[CacheConfig] = None,
    ):
        self._market_data = market_data
        self._metrics = metrics or MetricsCollector()
        self._cache = cache
        self._cache_config = cache_config or CacheConfig()

    async def calculate_indicators(self, symbol: str, period: int = 200) -> IndicatorSet:
        """Indicators for symbol over the last `period` bars (memoized)."""
        if self._cache is None:
            return await self._fetch_and_compute(symbol, period)
        return await self._cache.remember(
            quant_key(symbol, period),
            self._cache_config.quant_ttl,
            lambda: self._fetch_and_compute(symbol, period),
            cache_if=lambda result: result.status != "unavailable",
        )

    async def _fetch_and_compute(self, symbol: str, period: int) -> IndicatorSet:
        if self._market_data is None:
            logger.warning(f"No market data source configured for {symbol}")
            return IndicatorSet.empty(symbol, period, status="unavailable")

        try:
            bars = await self._market_data.get_bars(symbol, period)
        except Exception as e:
            logger.warning(f"Market data fetch failed for {symbol}: {e}")
            self._metrics.increment("source.market.failure")
            return IndicatorSet.empty(symbol, period, status="unavailable")

        if not bars:
            return IndicatorSet.empty(symbol, period, status="unavailable")

        with self._metrics.timed("indicators.compute"):
            return await asyncio.to_thread(self.compute, bars, symbol, period)

    def compute(self, bars: Sequence[OHLCV], symbol: str = "", period: int = 200) -> IndicatorSet:
        """Pure indicator computation. Never raises for numeric edge cases."""
        if len(bars) < MIN_BARS:
            logger.debug(f"{symbol}: only {len(bars)} bars, returning neutral indicators")
            return IndicatorSet.empty(symbol, period, status="degraded", bars=len(bars))

        try:
            highs = np.array([b.high for b in bars], dtype=float)
            lows = np.array([b.low for b in bars], dtype=float)
            closes = np.array([b.close for b in bars], dtype=float)
            volumes = np.array([b.volume for b in bars], dtype=float)

            if not all(np.isfinite(series).all() for series in (highs, lows, closes, volumes)):
                logger.warning(f"{symbol}: non-finite values in bars, returning neutral indicators")
                return IndicatorSet.empty(symbol, period, status="degraded", bars=len(bars))

            trend = self._trend_indicators(highs, lows, closes)
            momentum = self._momentum_indicators(highs, lows, closes)
            volatility = self._volatility_indicators(highs, lows, closes)
            volume = self._volume_indicators(highs, lows, closes, volumes)
            composite = self._composite_score(trend, momentum, volatility, volumes)
            if not (math.isfinite(composite.score) and math.isfinite(composite.confidence)):
                logger.warning(f"{symbol}: composite score is not finite, returning neutral indicators")
                return IndicatorSet.empty(symbol, period, status="degraded", bars=len(bars))

            advanced = compute_advanced(closes, highs, lows, volumes)

            return IndicatorSet(
                symbol=symbol,
                period=period,
                bars=len(bars),
                last_price=float(closes[-1]),
                trend=trend,
                momentum=momentum,
                volatility=volatility,
                volume=volume,
                composite=composite,
                advanced=advanced,
                status="ok",
            )
        except Exception as e:
            logger.error(f"Indicator computation failed for {symbol}: {e}")
            return IndicatorSet.empty(symbol, period, status="degraded", bars=len(bars))

    # =========================================================================
    # FAMILIES
    # =========================================================================

    def _trend_indicators(self, highs: np.ndarray, lows: np.ndarray, closes: np.ndarray) -> TrendIndicators:
        return TrendIndicators(
            ema_20=self._ema(closes, 20),
            ema_50=self._ema(closes, 50),
            ema_200=self._ema(closes, 200),
            sma_20=self._sma(closes, 20),
            sma_50=self._sma(closes, 50),
            sma_200=self._sma(closes, 200),
            adx=self._adx(highs, lows, closes, 14),
            macd=self._macd(closes),
            trend_strength=self._trend_strength(closes),
            direction=self._trend_direction(closes),
        )

    def _momentum_indicators(self, highs: np.ndarray, lows: np.ndarray, closes: np.ndarray) -> MomentumIndicators:
        return MomentumIndicators(
            rsi=self._rsi(closes, 14),
            stochastic=self._stochastic(highs, lows, closes, 14),
            williams_r=self._williams_r(highs, lows, closes, 14),
            momentum=self._momentum(closes, 10),
            rate_of_change=self._momentum(closes, 12),
            commodity_channel_index=self._cci(highs, lows, closes, 20),
        )

    def _volatility_indicators(self, highs: np.ndarray, lows: np.ndarray, closes: np.ndarray) -> VolatilityIndicators:
        return VolatilityIndicators(
            atr=self._atr(highs, lows, closes, 14),
            bollinger_bands=self._bollinger(closes, 20, 2.0),
            volatility_regime=self.classify_volatility_regime(closes),
            historical_volatility=self._historical_volatility(closes, 30),
            volatility_ratio=self._volatility_ratio(closes),
        )

    def _volume_indicators(
        self,
        highs: np.ndarray,
        lows: np.ndarray,
        closes: np.ndarray,
        volumes: np.ndarray,
    ) -> VolumeIndicators:
        return VolumeIndicators(
            volume_sma=self._sma(volumes, 20),
            volume_ratio=self._volume_ratio(volumes),
            on_balance_volume=self._obv(closes, volumes),
            volume_profile=self._volume_profile(closes, volumes),
            vwap=self._vwap(highs, lows, closes, volumes),
        )

    # =========================================================================
    # MOVING AVERAGES
    # =========================================================================

    @staticmethod
    def _ema(values: np.ndarray, period: int) -> float:
        """EMA seeded with the SMA of the first `period` values."""
        if len(values) == 0:
            return 0.0
        if len(values) < period:
            return float(values[-1])

        multiplier = 2 / (period + 1)
        ema = float(np.mean(values[:period]))
        for value in values[period:]:
            ema = value * multiplier + ema * (1 - multiplier)
        return float(ema)

    @staticmethod
    def _sma(values: np.ndarray, period: int) -> float:
        if len(values) < period:
            return 0.0
        return float(np.mean(values[-period:]))

    # =========================================================================
    # TREND
    # =========================================================================

    @staticmethod
    def _true_range(highs: np.ndarray, lows: np.ndarray, closes: np.ndarray) -> np.ndarray:
        prev_close = closes[:-1]
        hl = highs[1:] - lows[1:]
        hc = np.abs(highs[1:] - prev_close)
        lc = np.abs(lows[1:] - prev_close)
        return np.maximum(hl, np.maximum(hc, lc))

    def _adx(self, highs: np.ndarray, lows: np.ndarray, closes: np.ndarray, period: int = 14) -> float:
        if len(closes) < period + 1:
            return 0.0

        tr = self._true_range(highs, lows, closes)
        up_move = highs[1:] - highs[:-1]
        down_move = lows[:-1] - lows[1:]
        plus_dm = np.where((up_move > down_move) & (up_move > 0), up_move, 0.0)
        minus_dm = np.where((down_move > up_move) & (down_move > 0), down_move, 0.0)

        atr = self._ema(tr, period)
        if atr == 0:
            return 0.0
        plus_di = self._ema(plus_dm, period) / atr * 100
        minus_di = self._ema(minus_dm, period) / atr * 100
        if plus_di + minus_di == 0:
            return 0.0
        dx = abs(plus_di - minus_di) / (plus_di + minus_di) * 100
        # Single DX reading, not a smoothed ADX
        return float(dx)

    def _macd(self, closes: np.ndarray, fast: int = 12, slow: int = 26) -> MACD:
        """MACD line with signal/histogram as fixed fractions of it."""
        line = self._ema(closes, fast) - self._ema(closes, slow)
        return MACD(macd=line, signal=line * 0.9, histogram=line * 0.1)

    def _trend_strength(self, closes: np.ndarray) -> float:
        if len(closes) < MIN_BARS:
            return 0.0
        ema20 = self._ema(closes, 20)
        ema50 = self._ema(closes, 50)
        current = float(closes[-1])
        if ema20 == 0:
            return 0.0

        if current > ema20 > ema50:
            return min(1.0, (current - ema20) / ema20 * 10)
        if current < ema20 < ema50:
            return max(-1.0, (current - ema20) / ema20 * 10)
        return 0.0

    def _trend_direction(self, closes: np.ndarray) -> str:
        if len(closes) < MIN_BARS:
            return "neutral"
        ema20 = self._ema(closes, 20)
        ema50 = self._ema(closes, 50)
        current = float(closes[-1])

        if current > ema20 > ema50:
            return "bullish"
        if current < ema20 < ema50:
            return "bearish"
        return "neutral"

    # =========================================================================
    # MOMENTUM
    # =========================================================================

    @staticmethod
    def _rsi(closes: np.ndarray, period: int = 14) -> float:
        if len(closes) < period + 1:
            return 50.0
        changes = np.diff(closes)
        gains = np.where(changes > 0, changes, 0.0)
        losses = np.where(changes < 0, -changes, 0.0)
        avg_gain = gains[-period:].sum() / period
        avg_loss = losses[-period:].sum() / period
        if avg_loss == 0:
            return 100.0
        rs = avg_gain / avg_loss
        return float(100 - 100 / (1 + rs))

    @staticmethod
    def _stochastic(highs: np.ndarray, lows: np.ndarray, closes: np.ndarray, period: int = 14) -> Stochastic:
        if len(closes) < period:
            return Stochastic()
        highest = highs[-period:].max()
        lowest = lows[-period:].min()
        if highest == lowest:
            return Stochastic()
        k = (closes[-1] - lowest) / (highest - lowest) * 100
        return Stochastic(k=float(k), d=float(k * 0.9))

    @staticmethod
    def _williams_r(highs: np.ndarray, lows: np.ndarray, closes: np.ndarray, period: int = 14) -> float:
        if len(closes) < period:
            return -50.0
        highest = highs[-period:].max()
        lowest = lows[-period:].min()
        if highest == lowest:
            return -50.0
        return float((highest - closes[-1]) / (highest - lowest) * -100)

    @staticmethod
    def _momentum(closes: np.ndarray, period: int = 10) -> float:
        """Percent change over `period` bars (also used as ROC)."""
        if len(closes) < period + 1:
            return 0.0
        past = closes[-period - 1]
        if past == 0:
            return 0.0
        return float((closes[-1] - past) / past * 100)

    @staticmethod
    def _cci(highs: np.ndarray, lows: np.ndarray, closes: np.ndarray, period: int = 20) -> float:
        if len(closes) < period:
            return 0.0
        typical = (highs[-period:] + lows[-period:] + closes[-period:]) / 3
        sma = typical.mean()
        mean_deviation = np.abs(typical - sma).mean()
        if mean_deviation == 0:
            return 0.0
        return float((typical[-1] - sma) / (0.015 * mean_deviation))

    # =========================================================================
    # VOLATILITY
    # =========================================================================

    def _atr(self, highs: np.ndarray, lows: np.ndarray, closes: np.ndarray, period: int = 14) -> float:
        if len(closes) < period + 1:
            return 0.0
        return self._ema(self._true_range(highs, lows, closes), period)

    @staticmethod
    def _bollinger(closes: np.ndarray, period: int = 20, num_std: float = 2.0) -> BollingerBands:
        if len(closes) < period:
            return BollingerBands()
        recent = closes[-period:]
        sma = float(recent.mean())
        std = float(recent.std())  # population
        upper = sma + std * num_std
        lower = sma - std * num_std
        bandwidth = (upper - lower) / sma * 100 if sma != 0 else 0.0
        return BollingerBands(upper=upper, middle=sma, lower=lower, bandwidth=bandwidth)

    @staticmethod
    def _returns(closes: np.ndarray) -> np.ndarray:
        prev = closes[:-1]
        with np.errstate(divide="ignore", invalid="ignore"):
            return np.where(prev != 0, np.diff(closes) / prev, 0.0)

    def classify_volatility_regime(self, closes: np.ndarray) -> str:
        """Annualized RMS return: <15% low, <30% medium, else high."""
        if len(closes) < MIN_BARS:
            return "medium"
        returns = self._returns(closes)
        volatility = math.sqrt(float(np.mean(returns ** 2))) * math.sqrt(TRADING_DAYS)
        if volatility < 0.15:
            return "low"
        if volatility < 0.30:
            return "medium"
        return "high"

    def _historical_volatility(self, closes: np.ndarray, period: int = 30) -> float:
        if len(closes) < period + 1:
            return 0.0
        returns = self._returns(closes[-(period + 1):])
        return float(returns.std() * math.sqrt(TRADING_DAYS))

    def _volatility_ratio(self, closes: np.ndarray) -> float:
        """Short (10) over long (20) historical volatility."""
        if len(closes) < 21:
            return 1.0
        short_vol = self._historical_volatility(closes[-11:], 10)
        long_vol = self._historical_volatility(closes[-21:], 20)
        return short_vol / long_vol if long_vol > 0 else 1.0

    # =========================================================================
    # VOLUME
    # =========================================================================

    @staticmethod
    def _volume_ratio(volumes: np.ndarray) -> float:
        if len(volumes) < 20:
            return 1.0
        average = volumes[-20:].mean()
        return float(volumes[-1] / average) if average > 0 else 1.0

    @staticmethod
    def _obv(closes: np.ndarray, volumes: np.ndarray) -> float:
        direction = np.sign(np.diff(closes))
        return float((direction * volumes[1:]).sum())

    @staticmethod
    def _volume_profile(closes: np.ndarray, volumes: np.ndarray) -> VolumeProfile:
        buckets: dict[float, float] = {}
        for price, volume in zip(closes, volumes):
            level = round(float(price), 2)
            buckets[level] = buckets.get(level, 0.0) + float(volume)
        if not buckets:
            return VolumeProfile()

        # sorted() is stable, so equal volumes keep first-seen order
        ranked = sorted(buckets.items(), key=lambda kv: kv[1], reverse=True)
        poc = ranked[0][0]

        target = float(volumes.sum()) * 0.7
        running = 0.0
        value_area: list[float] = []
        for level, volume in ranked:
            running += volume
            value_area.append(level)
            if running >= target:
                break

        return VolumeProfile(
            poc=poc,
            value_area_high=max(value_area),
            value_area_low=min(value_area),
            profile=dict(ranked[:20]),
        )

    @staticmethod
    def _vwap(highs: np.ndarray, lows: np.ndarray, closes: np.ndarray, volumes: np.ndarray) -> float:
        total_volume = volumes.sum()
        if total_volume <= 0:
            return 0.0
        typical = (highs + lows + closes) / 3
        return float((typical * volumes).sum() / total_volume)

    # =========================================================================
    # COMPOSITE
    # =========================================================================

    @staticmethod
    def _trend_score(trend: TrendIndicators) -> float:
        weight = 1 / 6
        score = 0.0

        if trend.ema_20 > trend.ema_50 > trend.ema_200:
            score += weight
        elif trend.ema_20 < trend.ema_50 < trend.ema_200:
            score -= weight

        score += trend.adx / 100 * weight
        score += weight if trend.macd.macd > trend.macd.signal else -weight
        score += trend.trend_strength * weight
        score += {"bullish": weight, "bearish": -weight}.get(trend.direction, 0.0)
        return score

    @staticmethod
    def _momentum_score(momentum: MomentumIndicators) -> float:
        weight = 1 / 6
        score = 0.0

        rsi = momentum.rsi
        if rsi > 70:
            score += weight
        elif rsi < 30:
            score -= weight
        else:
            score += (rsi - 50) / 50 * weight

        score += (momentum.stochastic.k - 50) / 50 * weight
        score += (momentum.williams_r + 50) / 100 * weight
        score += math.tanh(momentum.momentum / 10) * weight
        score += math.tanh(momentum.rate_of_change / 10) * weight
        score += math.tanh(momentum.commodity_channel_index / 200) * weight
        return score

    @staticmethod
    def _volatility_score(volatility: VolatilityIndicators) -> float:
        weight = 1 / 3
        score = {"low": weight * 0.5, "high": -weight * 0.5}.get(volatility.volatility_regime, 0.0)

        bb = volatility.bollinger_bands
        if bb.middle != 0:
            width_ratio = (bb.upper - bb.lower) / bb.middle
            score += math.tanh(width_ratio - 1) * weight

        score += math.tanh(volatility.volatility_ratio - 1) * weight
        return score

    @staticmethod
    def dynamic_weights(volatility_regime: str) -> dict[str, float]:
        """Family weights shift toward momentum and volatility as vol rises."""
        return dict(REGIME_WEIGHTS.get(volatility_regime, DEFAULT_WEIGHTS))

    @staticmethod
    def _confidence(bars: int, volumes: np.ndarray) -> float:
        data_quality = min(1.0, bars / 200)
        mean_volume = float(volumes.mean()) if len(volumes) else 0.0
        if mean_volume > 0:
            volume_consistency = 1 - min(1.0, float(volumes.std()) / mean_volume)
        else:
            volume_consistency = 0.0
        return (data_quality + volume_consistency) / 2

    def _composite_score(
        self,
        trend: TrendIndicators,
        momentum: MomentumIndicators,
        volatility: VolatilityIndicators,
        volumes: np.ndarray,
    ) -> CompositeScore:
        trend_score = self._trend_score(trend)
        momentum_score = self._momentum_score(momentum)
        volatility_score = self._volatility_score(volatility)
        weights = self.dynamic_weights(volatility.volatility_regime)

        raw = (
            weights["trend"] * trend_score
            + weights["momentum"] * momentum_score
            + weights["volatility"] * volatility_score
        )

        return CompositeScore(
            score=math.tanh(raw),
            trend_score=trend_score,
            momentum_score=momentum_score,
            volatility_score=volatility_score,
            weights=weights,
            confidence=min(1.0, max(0.0, self._confidence(len(volumes), volumes))),
        )
