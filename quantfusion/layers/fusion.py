"""
Fusion Engine

Blends the quantitative composite with the sentiment snapshot:

1. Fetch indicators and sentiment concurrently (sequential fallback)
2. Dynamic alpha from the volatility regime (0.8 / 0.6 / 0.4)
3. Confidence-weighted fusion score
4. Recommendation from a regime- and confidence-scaled threshold ladder
5. Fusion confidence, top drivers, risk, position sizing, time horizon

The whole pipeline is guarded: any failure returns the canonical empty
analysis (HOLD, score 0) instead of raising.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Optional
from loguru import logger

from quantfusion.core.cache import TTLCache, fusion_key
from quantfusion.core.config import CacheConfig, FusionConfig
from quantfusion.core.metrics import MetricsCollector
from quantfusion.core.types import Action, RiskLevel
from quantfusion.layers.indicators import IndicatorEngine, IndicatorSet
from quantfusion.layers.regime import MarketRegime, RegimeClassifier
from quantfusion.layers.sentiment import SentimentEngine, SentimentSnapshot


REGIME_THRESHOLD_MULTIPLIER = {"low": 0.8, "medium": 1.0, "high": 1.2}

VOLATILITY_RISK = {"low": 0.2, "medium": 0.5, "high": 0.8}

MITIGATIONS = {
    "volatility": "Use smaller position sizes and wider stop losses",
    "trend_weakness": "Wait for clearer trend confirmation",
    "sentiment_divergence": "Monitor for sentiment resolution before entering",
    "data_quality": "Seek additional confirmation sources",
    "volume_anomaly": "Investigate cause of unusual volume activity",
}

MAX_DRIVERS = 5


def _clamp(value: float, low: float = -1.0, high: float = 1.0) -> float:
    # NaN compares false both ways and would land on a bound
    if not math.isfinite(value):
        return 0.0
    return max(low, min(high, value))


# =============================================================================
# FUSION RECORDS
# =============================================================================

@dataclass
class Recommendation:
    action: Action
    rationale: str
    strength: str  # strong, moderate, neutral

    def to_dict(self) -> dict:
        return {"action": self.action.value, "rationale": self.rationale, "strength": self.strength}


@dataclass
class Driver:
    name: str
    value: float
    category: str  # quant, sentiment
    weighted_impact: float


@dataclass
class RiskFactor:
    factor: str
    score: float


@dataclass
class RiskAssessment:
    overall_risk: float = 0.5
    risk_level: RiskLevel = RiskLevel.MEDIUM
    risk_factors: list[RiskFactor] = field(default_factory=list)
    mitigation_strategies: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "overall_risk": self.overall_risk,
            "risk_level": self.risk_level.value,
            "risk_factors": [asdict(f) for f in self.risk_factors],
            "mitigation_strategies": list(self.mitigation_strategies),
        }


@dataclass
class PositionSizing:
    recommended_size_percent: float
    risk_level: RiskLevel
    rationale: str

    def to_dict(self) -> dict:
        return {
            "recommended_size_percent": self.recommended_size_percent,
            "risk_level": self.risk_level.value,
            "rationale": self.rationale,
        }


@dataclass
class TimeHorizon:
    horizon: str  # short_term, medium_term, long_term
    timeframe: str
    rationale: str


@dataclass
class KeyLevels:
    resistance_immediate: float
    resistance_significant: float
    support_immediate: float
    support_significant: float
    pivot: float
    breakout_upside: float
    breakout_downside: float

    def to_dict(self) -> dict:
        return {
            "resistance": {
                "immediate": self.resistance_immediate,
                "significant": self.resistance_significant,
            },
            "support": {
                "immediate": self.support_immediate,
                "significant": self.support_significant,
            },
            "pivot": self.pivot,
            "breakout_levels": {
                "upside": self.breakout_upside,
                "downside": self.breakout_downside,
            },
        }


@dataclass
class Catalyst:
    type: str  # technical, sentiment, fundamental
    description: str
    impact: str  # high, medium, low


@dataclass
class QuantSummary:
    trend_status: str
    trend_strength: float
    momentum_status: str  # overbought, oversold, neutral
    volatility_status: str
    volume_status: str  # elevated, normal
    resistance: float
    support: float
    pivot: float
    current_price: float
    composite_score: float
    confidence: float
    rsi: float
    adx: float
    trend_stability: float
    breakout_probability: float
    volatility_cluster: bool


@dataclass
class SentimentSummary:
    overall_sentiment: str  # positive, negative, neutral
    sentiment_trend: str
    news_coverage: str  # high, low
    social_engagement: str  # high, low
    analyst_consensus: str  # bullish, bearish, neutral
    overall_score: float
    confidence: float


@dataclass
class MarketConditions:
    regime: str
    trend_phase: str
    sentiment_cycle: str
    market_efficiency: str
    liquidity_status: str


@dataclass(frozen=True)
class FusionResult:
    """Fused view of one IndicatorSet and one SentimentSnapshot."""
    symbol: str
    fusion_score: float  # -1 to 1
    recommendation: Recommendation
    confidence: float  # 0 to 1
    alpha: float
    top_drivers: list[Driver]
    risk_assessment: RiskAssessment
    position_sizing: PositionSizing
    time_horizon: TimeHorizon
    quant_summary: Optional[QuantSummary] = None
    sentiment_summary: Optional[SentimentSummary] = None
    market_conditions: Optional[MarketConditions] = None
    key_levels: Optional[KeyLevels] = None
    catalysts: list[Catalyst] = field(default_factory=list)
    quant_score: float = 0.0
    sentiment_score: float = 0.0
    regime: Optional[MarketRegime] = None
    is_empty: bool = False
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def empty(cls, symbol: str = "") -> "FusionResult":
        return cls(
            symbol=symbol,
            fusion_score=0.0,
            recommendation=Recommendation(Action.HOLD, "Insufficient data for analysis", "neutral"),
            confidence=0.0,
            alpha=0.6,
            top_drivers=[],
            risk_assessment=RiskAssessment(),
            position_sizing=PositionSizing(0.0, RiskLevel.HIGH, "Insufficient data"),
            time_horizon=TimeHorizon(
                "short_term", "1-4 weeks", "Conservative approach due to limited data"
            ),
            is_empty=True,
        )

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "fusion_score": self.fusion_score,
            "recommendation": self.recommendation.to_dict(),
            "confidence": self.confidence,
            "alpha": self.alpha,
            "top_drivers": [asdict(d) for d in self.top_drivers],
            "risk_assessment": self.risk_assessment.to_dict(),
            "quant_summary": asdict(self.quant_summary) if self.quant_summary else {},
            "sentiment_summary": asdict(self.sentiment_summary) if self.sentiment_summary else {},
            "market_conditions": asdict(self.market_conditions) if self.market_conditions else {},
            "position_sizing": self.position_sizing.to_dict(),
            "time_horizon": asdict(self.time_horizon),
            "key_levels": self.key_levels.to_dict() if self.key_levels else {},
            "catalysts": [asdict(c) for c in self.catalysts],
            "quant_score": self.quant_score,
            "sentiment_score": self.sentiment_score,
            "regime": self.regime.to_dict() if self.regime else None,
            "is_empty": self.is_empty,
            "generated_at": self.generated_at.isoformat(),
        }


# =============================================================================
# FUSION ENGINE
# =============================================================================

class FusionEngine:
    """
    Quant/sentiment fusion.

    `fuse` is a pure function of its two inputs. `generate_fusion_analysis`
    adds fetching and memoization under fusion_analysis:<symbol>.
    """

    def __init__(
        self,
        indicator_engine: IndicatorEngine,
        sentiment_engine: SentimentEngine,
        regime_classifier: Optional[RegimeClassifier] = None,
        cache: Optional[TTLCache] = None,
        metrics: Optional[MetricsCollector] = None,
        config: Optional[FusionConfig] = None,
        cache_config: Optional[CacheConfig] = None,
        period: int = 200,
    ):
        self._indicators = indicator_engine
        self._sentiment = sentiment_engine
        self._regimes = regime_classifier or RegimeClassifier()
        self._cache = cache
        self._metrics = metrics or MetricsCollector()
        self.config = config or FusionConfig()
        self._cache_config = cache_config or CacheConfig()
        self.period = period

    async def generate_fusion_analysis(self, symbol: str) -> FusionResult:
        if self._cache is None:
            return await self._generate(symbol)
        return await self._cache.remember(
            fusion_key(symbol),
            self._cache_config.fusion_ttl,
            lambda: self._generate(symbol),
            cache_if=lambda result: not result.is_empty,
        )

    async def _generate(self, symbol: str) -> FusionResult:
        try:
            with self._metrics.timed("fusion.generate"):
                quant, sentiment = await self.fetch_inputs(symbol)
                return self.fuse(symbol, quant, sentiment)
        except Exception as e:
            logger.error(f"Fusion analysis failed for {symbol}: {e}")
            return FusionResult.empty(symbol)

    # =========================================================================
    # STEP 1: FETCH
    # =========================================================================

    async def fetch_inputs(self, symbol: str) -> tuple[IndicatorSet, SentimentSnapshot]:
        """Indicators and sentiment, concurrently when enabled."""
        if not self.config.parallel_fetch:
            return await self._fetch_sequential(symbol)

        self._metrics.increment("fusion.fetch.parallel")
        quant, sentiment = await asyncio.gather(
            self._indicators.calculate_indicators(symbol, self.period),
            self._sentiment.analyze_sentiment(symbol),
            return_exceptions=True,
        )

        if isinstance(quant, BaseException) or isinstance(sentiment, BaseException):
            failed = quant if isinstance(quant, BaseException) else sentiment
            logger.warning(
                f"Parallel execution incomplete for {symbol}, retrying sequentially: {failed}"
            )
            return await self._fetch_sequential(symbol)

        return quant, sentiment

    async def _fetch_sequential(self, symbol: str) -> tuple[IndicatorSet, SentimentSnapshot]:
        self._metrics.increment("fusion.fetch.sequential")
        quant = await self._indicators.calculate_indicators(symbol, self.period)
        sentiment = await self._sentiment.analyze_sentiment(symbol)
        return quant, sentiment

    # =========================================================================
    # FUSION
    # =========================================================================

    def fuse(self, symbol: str, quant: IndicatorSet, sentiment: SentimentSnapshot) -> FusionResult:
        try:
            if not self._has_data(quant, sentiment):
                logger.warning(f"No usable quant or sentiment data for {symbol}")
                return FusionResult.empty(symbol)

            volatility_regime = quant.volatility.volatility_regime
            alpha = self.dynamic_alpha(volatility_regime)
            score = self.fusion_score(quant, sentiment, alpha)
            confidence = self.fusion_confidence(quant, sentiment)
            risk = self.assess_risk(quant, sentiment)

            result = FusionResult(
                symbol=symbol,
                fusion_score=score,
                recommendation=self.recommend(score, quant, sentiment),
                confidence=confidence,
                alpha=alpha,
                top_drivers=self.top_drivers(quant, sentiment, alpha),
                risk_assessment=risk,
                position_sizing=self.position_sizing(score, risk, confidence),
                time_horizon=self.time_horizon(quant, sentiment),
                quant_summary=self.summarize_quant(quant),
                sentiment_summary=self.summarize_sentiment(sentiment),
                market_conditions=self.market_conditions(quant, sentiment),
                key_levels=self.key_levels(quant),
                catalysts=self.catalysts(quant, sentiment),
                quant_score=quant.composite.score,
                sentiment_score=sentiment.overall_score,
                regime=self._regimes.classify(quant, sentiment),
            )
            logger.info(
                f"Fusion {symbol}: score={score:.3f} alpha={alpha} "
                f"action={result.recommendation.action.value} conf={confidence:.2f}"
            )
            return result
        except Exception as e:
            logger.error(f"Fusion failed for {symbol}: {e}")
            return FusionResult.empty(symbol)

    @staticmethod
    def _has_data(quant: IndicatorSet, sentiment: SentimentSnapshot) -> bool:
        quant_ok = quant.status == "ok"
        sentiment_ok = sentiment.status != "unavailable" and sentiment.confidence > 0
        return quant_ok or sentiment_ok

    def dynamic_alpha(self, volatility_regime: str) -> float:
        """Weight on the quant side; falls as volatility rises."""
        return {
            "low": self.config.alpha_low,
            "medium": self.config.alpha_medium,
            "high": self.config.alpha_high,
        }.get(volatility_regime, self.config.alpha_medium)

    @staticmethod
    def fusion_score(quant: IndicatorSet, sentiment: SentimentSnapshot, alpha: float) -> float:
        quant_conf = quant.composite.confidence
        sent_conf = sentiment.confidence

        denominator = alpha * quant_conf + (1 - alpha) * sent_conf
        if denominator == 0:
            return 0.0

        numerator = (
            alpha * quant.composite.score * quant_conf
            + (1 - alpha) * sentiment.overall_score * sent_conf
        )
        return _clamp(numerator / denominator)

    def thresholds(self, quant: IndicatorSet, sentiment: SentimentSnapshot) -> dict[str, float]:
        """Base ladder scaled by volatility regime and average confidence."""
        regime_multiplier = REGIME_THRESHOLD_MULTIPLIER.get(quant.volatility.volatility_regime, 1.0)
        average_confidence = (quant.composite.confidence + sentiment.confidence) / 2
        multiplier = regime_multiplier * (0.5 + 0.5 * average_confidence)
        return {
            "strong_buy": self.config.strong_buy_threshold * multiplier,
            "buy": self.config.buy_threshold * multiplier,
            "hold": self.config.hold_threshold * multiplier,
            "sell": self.config.sell_threshold * multiplier,
        }

    def recommend(self, score: float, quant: IndicatorSet, sentiment: SentimentSnapshot) -> Recommendation:
        t = self.thresholds(quant, sentiment)
        if score > t["strong_buy"]:
            return Recommendation(
                Action.STRONG_BUY,
                "Strong quantitative and/or sentiment signals with high confidence",
                "strong",
            )
        if score > t["buy"]:
            return Recommendation(Action.BUY, "Positive signals with moderate confidence", "moderate")
        if score > t["hold"]:
            return Recommendation(Action.HOLD, "Mixed or neutral signals", "neutral")
        if score > t["sell"]:
            return Recommendation(Action.SELL, "Negative signals with moderate confidence", "moderate")
        return Recommendation(Action.STRONG_SELL, "Strong negative signals with high confidence", "strong")

    # =========================================================================
    # CONFIDENCE
    # =========================================================================

    def fusion_confidence(self, quant: IndicatorSet, sentiment: SentimentSnapshot) -> float:
        confidence = (
            quant.composite.confidence
            + sentiment.confidence
            + self.data_quality(quant, sentiment)
            + self.signal_consistency(quant, sentiment)
        ) / 4
        return _clamp(confidence, 0.0, 1.0)

    @staticmethod
    def data_quality(quant: IndicatorSet, sentiment: SentimentSnapshot) -> float:
        score = 0.0
        if quant.composite.confidence > 0.7:
            score += 0.3

        sources = sentiment.sources
        if sources.news_count + sources.social_mentions + sources.analyst_ratings > 10:
            score += 0.3
        if sources.news_count > 0:
            score += 0.2
        if sources.social_mentions > 100:
            score += 0.2
        return min(1.0, score)

    @staticmethod
    def signal_consistency(quant: IndicatorSet, sentiment: SentimentSnapshot) -> float:
        alignment = 1 - min(1.0, abs(quant.composite.score - sentiment.overall_score))
        trend_momentum = 1 - min(
            1.0, abs(quant.composite.trend_score - quant.composite.momentum_score)
        )
        news_social = 1 - min(
            1.0, abs(sentiment.news_sentiment.score - sentiment.social_sentiment.score)
        )
        return _clamp((alignment + trend_momentum + news_social) / 3, 0.0, 1.0)

    # =========================================================================
    # DRIVERS AND RISK
    # =========================================================================

    @staticmethod
    def top_drivers(quant: IndicatorSet, sentiment: SentimentSnapshot, alpha: float) -> list[Driver]:
        quant_drivers = {
            "trend_strength": quant.trend.trend_strength,
            "rsi": (quant.momentum.rsi - 50) / 50,
            "adx": quant.trend.adx / 100,
            "volatility_regime": {"low": -0.3, "high": 0.3}.get(quant.volatility.volatility_regime, 0.0),
            "volume_anomaly": 0.5 if quant.volume.volume_ratio > 2 else 0.0,
        }
        sentiment_drivers = {
            "news_sentiment": sentiment.news_sentiment.score,
            "social_sentiment": sentiment.social_sentiment.score,
            "analyst_consensus": sentiment.analyst_sentiment.score,
            "sentiment_trend": {"improving": 0.3, "declining": -0.3}.get(sentiment.trend.direction, 0.0),
            "evidence_strength": min(1.0, len(sentiment.evidence) / 5),
        }

        drivers = [
            Driver(name, value, "quant", value * alpha)
            for name, value in quant_drivers.items()
        ] + [
            Driver(name, value, "sentiment", value * (1 - alpha))
            for name, value in sentiment_drivers.items()
        ]
        drivers.sort(key=lambda d: abs(d.weighted_impact), reverse=True)
        return drivers[:MAX_DRIVERS]

    def assess_risk(self, quant: IndicatorSet, sentiment: SentimentSnapshot) -> RiskAssessment:
        divergence = abs(sentiment.news_sentiment.score - sentiment.social_sentiment.score)
        factors = [
            RiskFactor("volatility", VOLATILITY_RISK.get(quant.volatility.volatility_regime, 0.5)),
            RiskFactor("trend_weakness", 0.6 if abs(quant.trend.trend_strength) < 0.3 else 0.2),
            RiskFactor("sentiment_divergence", 0.7 if divergence > 0.5 else 0.2),
            RiskFactor("data_quality", 1 - self.data_quality(quant, sentiment)),
            RiskFactor("volume_anomaly", 0.6 if quant.volume.volume_ratio > 3 else 0.1),
        ]

        overall = min(1.0, sum(f.score for f in factors) / len(factors))
        if overall > 0.7:
            level = RiskLevel.HIGH
        elif overall > 0.4:
            level = RiskLevel.MEDIUM
        else:
            level = RiskLevel.LOW

        mitigations: list[str] = []
        for f in factors:
            strategy = MITIGATIONS[f.factor]
            if f.score > 0.5 and strategy not in mitigations:
                mitigations.append(strategy)

        return RiskAssessment(overall, level, factors, mitigations)

    # =========================================================================
    # SIZING AND HORIZON
    # =========================================================================

    def position_sizing(self, score: float, risk: RiskAssessment, confidence: float) -> PositionSizing:
        magnitude = abs(score)
        if magnitude > 0.6:
            signal_multiplier = 1.5
        elif magnitude > 0.3:
            signal_multiplier = 1.0
        else:
            signal_multiplier = 0.5

        risk_multiplier = {RiskLevel.LOW: 1.2, RiskLevel.MEDIUM: 1.0, RiskLevel.HIGH: 0.6}[risk.risk_level]
        confidence_multiplier = 0.5 + confidence * 0.5

        size = self.config.base_position_size * signal_multiplier * risk_multiplier * confidence_multiplier
        size = min(self.config.max_position_size, max(self.config.min_position_size, size))

        return PositionSizing(
            recommended_size_percent=round(size * 100, 1),
            risk_level=risk.risk_level,
            rationale=(
                f"Based on signal strength ({signal_multiplier}x), risk level ({risk_multiplier}x), "
                f"and confidence ({round(confidence_multiplier, 2)}x)"
            ),
        )

    @staticmethod
    def time_horizon(quant: IndicatorSet, sentiment: SentimentSnapshot) -> TimeHorizon:
        trend_strength = abs(quant.trend.trend_strength)
        stability = 1 - abs(sentiment.trend.change_24h)

        if trend_strength > 0.6 and quant.volatility.volatility_regime == "low" and stability > 0.8:
            return TimeHorizon("long_term", "3-12 months", "Strong, stable trend with low volatility")
        if trend_strength > 0.3 and stability > 0.5:
            return TimeHorizon("medium_term", "1-3 months", "Moderate trend with reasonable stability")
        return TimeHorizon("short_term", "1-4 weeks", "Weak or unstable conditions favor shorter positions")

    # =========================================================================
    # SUMMARIES
    # =========================================================================

    @staticmethod
    def summarize_quant(quant: IndicatorSet) -> QuantSummary:
        rsi = quant.momentum.rsi
        if rsi > 70:
            momentum_status = "overbought"
        elif rsi < 30:
            momentum_status = "oversold"
        else:
            momentum_status = "neutral"

        bb = quant.volatility.bollinger_bands
        return QuantSummary(
            trend_status=quant.trend.direction,
            trend_strength=quant.trend.trend_strength,
            momentum_status=momentum_status,
            volatility_status=quant.volatility.volatility_regime,
            volume_status="elevated" if quant.volume.volume_ratio > 1.5 else "normal",
            resistance=bb.upper,
            support=bb.lower,
            pivot=bb.middle,
            current_price=quant.last_price,
            composite_score=quant.composite.score,
            confidence=quant.composite.confidence,
            rsi=rsi,
            adx=quant.trend.adx,
            trend_stability=quant.advanced.trend_stability,
            breakout_probability=quant.advanced.breakout_probability,
            volatility_cluster=quant.advanced.volatility_cluster,
        )

    @staticmethod
    def summarize_sentiment(sentiment: SentimentSnapshot) -> SentimentSummary:
        overall = sentiment.overall_score
        analyst = sentiment.analyst_sentiment.score
        return SentimentSummary(
            overall_sentiment="positive" if overall > 0.2 else "negative" if overall < -0.2 else "neutral",
            sentiment_trend=sentiment.trend.direction,
            news_coverage="high" if sentiment.sources.news_count > 5 else "low",
            social_engagement="high" if sentiment.sources.social_mentions > 500 else "low",
            analyst_consensus="bullish" if analyst > 0.3 else "bearish" if analyst < -0.3 else "neutral",
            overall_score=overall,
            confidence=sentiment.confidence,
        )

    @staticmethod
    def market_conditions(quant: IndicatorSet, sentiment: SentimentSnapshot) -> MarketConditions:
        alignment = 1 - abs(quant.composite.score - sentiment.overall_score)
        if alignment > 0.8:
            efficiency = "efficient"
        elif alignment > 0.5:
            efficiency = "moderately_efficient"
        else:
            efficiency = "inefficient"

        return MarketConditions(
            regime=f"{quant.volatility.volatility_regime}_volatility",
            trend_phase=f"{quant.trend.direction}_trend",
            sentiment_cycle=f"{sentiment.trend.direction}_sentiment",
            market_efficiency=efficiency,
            liquidity_status="high" if quant.volume.volume_ratio > 1.2 else "normal",
        )

    @staticmethod
    def key_levels(quant: IndicatorSet) -> KeyLevels:
        bb = quant.volatility.bollinger_bands
        return KeyLevels(
            resistance_immediate=bb.upper,
            resistance_significant=bb.upper * 1.05,
            support_immediate=bb.lower,
            support_significant=bb.lower * 0.95,
            pivot=bb.middle,
            breakout_upside=bb.upper * 1.02,
            breakout_downside=bb.lower * 0.98,
        )

    @staticmethod
    def catalysts(quant: IndicatorSet, sentiment: SentimentSnapshot) -> list[Catalyst]:
        catalysts: list[Catalyst] = []
        if quant.volume.volume_ratio > 2:
            catalysts.append(Catalyst(
                "technical", "Unusual volume activity suggests potential price movement", "high"
            ))
        if abs(quant.trend.trend_strength) > 0.7:
            catalysts.append(Catalyst("technical", "Strong trend momentum continues", "medium"))
        if sentiment.trend.direction == "improving":
            catalysts.append(Catalyst("sentiment", "Improving sentiment trend", "medium"))
        if sentiment.sources.analyst_ratings > 3:
            catalysts.append(Catalyst(
                "fundamental", "Multiple analyst coverage provides visibility", "low"
            ))
        return catalysts
