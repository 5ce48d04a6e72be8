"""
Market regime classification (bull / bear / neutral) with phase.

Each candidate label is scored from trend direction, RSI zone, sentiment sign
and ADX; the best-scoring label wins and its score is the regime strength.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from loguru import logger

from quantfusion.layers.indicators import IndicatorSet
from quantfusion.layers.sentiment import SentimentSnapshot


# IndicatorSet direction -> trend vocabulary used by the scorers
DIRECTION_MAP = {"bullish": "up", "bearish": "down", "neutral": "neutral"}

# Sentiment trend vocabulary -> phase-table vocabulary
SENTIMENT_TREND_MAP = {"declining": "weakening"}

VOLATILITY_CONFIDENCE = {"ultra_low": 0.2, "low": 0.2, "medium": 0.15, "high": 0.1}


@dataclass(frozen=True)
class MarketRegime:
    regime: str  # bull, bear, neutral
    strength: float  # 0-1
    phase: str  # accumulation, markup, distribution, markdown, consolidation, ranging
    characteristics: list[str] = field(default_factory=list)
    confidence: float = 0.5

    @classmethod
    def fallback(cls) -> "MarketRegime":
        return cls("neutral", 0.5, "unknown", ["Unable to classify market regime"], 0.3)

    @property
    def is_bullish(self) -> bool:
        return self.regime == "bull"

    @property
    def is_bearish(self) -> bool:
        return self.regime == "bear"

    @property
    def is_neutral(self) -> bool:
        return self.regime in ("neutral", "consolidation")

    @property
    def label(self) -> str:
        return {
            "bull": "Bullish",
            "bear": "Bearish",
            "neutral": "Neutral",
            "consolidation": "Consolidating",
        }.get(self.regime, "Unknown")

    @property
    def strength_label(self) -> str:
        if self.strength > 0.7:
            return "Strong"
        if self.strength > 0.4:
            return "Moderate"
        return "Weak"

    def to_dict(self) -> dict:
        return {
            "regime": self.regime,
            "strength": round(self.strength, 3),
            "phase": self.phase,
            "characteristics": list(self.characteristics),
            "confidence": round(self.confidence, 3),
            "label": self.label,
            "strength_label": self.strength_label,
        }


def _bounded(score: float) -> float:
    return min(1.0, max(0.0, score))


class RegimeClassifier:
    """Stateless classifier; any internal error yields MarketRegime.fallback()."""

    def classify(self, quant: IndicatorSet, sentiment: SentimentSnapshot) -> MarketRegime:
        try:
            direction = DIRECTION_MAP.get(quant.trend.direction, "neutral")
            trend_strength = abs(quant.trend.trend_strength)
            adx = quant.trend.adx
            rsi = quant.momentum.rsi
            volatility_regime = quant.volatility.volatility_regime

            sentiment_score = sentiment.overall_score
            sentiment_trend = SENTIMENT_TREND_MAP.get(
                sentiment.trend.direction, sentiment.trend.direction
            )

            bull = self.bull_score(direction, rsi, sentiment_score, adx)
            bear = self.bear_score(direction, rsi, sentiment_score, adx)
            neutral = self.neutral_score(adx, volatility_regime, abs(sentiment_score))

            # Ties resolve in this order
            scores = [("bull", bull), ("bear", bear), ("neutral", neutral)]
            regime, strength = max(scores, key=lambda kv: kv[1])

            return MarketRegime(
                regime=regime,
                strength=strength,
                phase=self.determine_phase(regime, trend_strength, rsi, sentiment_trend),
                characteristics=self.characteristics(
                    regime, quant.trend.direction, adx, rsi, volatility_regime, sentiment_score
                ),
                confidence=self.confidence(
                    adx, abs(bull - bear), volatility_regime, sentiment.confidence
                ),
            )
        except Exception as e:
            logger.error(f"Regime classification failed: {e}")
            return MarketRegime.fallback()

    # =========================================================================
    # CANDIDATE SCORES
    # =========================================================================

    @staticmethod
    def bull_score(direction: str, rsi: float, sentiment: float, adx: float) -> float:
        score = 0.0
        if direction == "up":
            score += 0.4
        elif direction == "neutral":
            score += 0.2
        if rsi > 50:
            score += 0.3 * ((rsi - 50) / 50)
        if sentiment > 0:
            score += 0.2 * sentiment
        if adx > 25:
            score += 0.1 * min(1.0, (adx - 25) / 50)
        return _bounded(score)

    @staticmethod
    def bear_score(direction: str, rsi: float, sentiment: float, adx: float) -> float:
        score = 0.0
        if direction == "down":
            score += 0.4
        elif direction == "neutral":
            score += 0.2
        if rsi < 50:
            score += 0.3 * ((50 - rsi) / 50)
        if sentiment < 0:
            score += 0.2 * abs(sentiment)
        if adx > 25:
            score += 0.1 * min(1.0, (adx - 25) / 50)
        return _bounded(score)

    @staticmethod
    def neutral_score(adx: float, volatility_regime: str, abs_sentiment: float) -> float:
        score = 0.0
        if adx < 25:
            score += 0.5 * (1 - adx / 25)
        if volatility_regime in ("low", "ultra_low"):
            score += 0.3
        elif volatility_regime == "medium":
            score += 0.15
        if abs_sentiment < 0.3:
            score += 0.2 * (1 - abs_sentiment / 0.3)
        return _bounded(score)

    # =========================================================================
    # PHASE, CHARACTERISTICS, CONFIDENCE
    # =========================================================================

    @staticmethod
    def determine_phase(regime: str, trend_strength: float, rsi: float, sentiment_trend: str) -> str:
        if regime == "bull":
            if rsi < 40 and sentiment_trend == "improving":
                return "accumulation"
            if 40 <= rsi <= 70 and trend_strength > 0.5:
                return "markup"
            if rsi > 70 or sentiment_trend == "weakening":
                return "distribution"
            return "markup"

        if regime == "bear":
            if rsi > 60 and sentiment_trend == "weakening":
                return "distribution"
            if 30 <= rsi <= 60 and trend_strength > 0.5:
                return "markdown"
            if rsi < 30 or sentiment_trend == "improving":
                return "accumulation"
            return "markdown"

        if trend_strength < 0.3:
            return "consolidation"
        if rsi < 45:
            return "accumulation"
        if rsi > 55:
            return "distribution"
        return "ranging"

    @staticmethod
    def characteristics(
        regime: str,
        direction: str,
        adx: float,
        rsi: float,
        volatility_regime: str,
        sentiment: float,
    ) -> list[str]:
        items = [
            f"Trend: {direction.capitalize()}",
            f"Trend Strength (ADX): {round(adx, 1)}",
        ]

        if rsi > 70:
            items.append(f"Overbought conditions (RSI: {round(rsi, 1)})")
        elif rsi < 30:
            items.append(f"Oversold conditions (RSI: {round(rsi, 1)})")
        else:
            items.append(f"Neutral momentum (RSI: {round(rsi, 1)})")

        items.append(f"Volatility: {volatility_regime.capitalize()}")

        if sentiment > 0.3:
            items.append("Positive market sentiment")
        elif sentiment < -0.3:
            items.append("Negative market sentiment")
        else:
            items.append("Mixed market sentiment")

        if regime == "bull":
            items += ["Favorable for long positions", "Watch for distribution signals"]
        elif regime == "bear":
            items += ["Favorable for short positions", "Watch for capitulation signs"]
        else:
            items += ["Range-bound market", "Await directional breakout"]
        return items

    @staticmethod
    def confidence(adx: float, score_gap: float, volatility_regime: str, sentiment_confidence: float) -> float:
        confidence = 0.3 * min(1.0, adx / 50) if adx > 25 else 0.1
        confidence += 0.3 * min(1.0, score_gap)
        confidence += VOLATILITY_CONFIDENCE.get(volatility_regime, 0.05)
        confidence += 0.2 * sentiment_confidence
        return _bounded(confidence)


def actionable_insights(regime: MarketRegime) -> list[dict]:
    """Trading guidance for a classified regime."""
    insights: list[dict] = []

    if regime.is_bullish:
        insights.append({
            "type": "opportunity",
            "message": "Consider long positions or holding existing longs",
            "priority": "high",
        })
        if regime.strength > 0.7:
            insights.append({
                "type": "warning",
                "message": "Strong bullish momentum - watch for exhaustion signals",
                "priority": "medium",
            })
    elif regime.is_bearish:
        insights.append({
            "type": "risk",
            "message": "Consider protective stops or reducing long exposure",
            "priority": "high",
        })
        if regime.strength > 0.7:
            insights.append({
                "type": "opportunity",
                "message": "Strong bearish momentum - potential short opportunities",
                "priority": "medium",
            })
    else:
        insights.append({
            "type": "neutral",
            "message": "Range-bound market - trade the range or wait for breakout",
            "priority": "medium",
        })
        insights.append({
            "type": "strategy",
            "message": "Consider range trading strategies or wait for clearer trend",
            "priority": "low",
        })

    if regime.confidence < 0.5:
        insights.append({
            "type": "warning",
            "message": "Low classification confidence - use smaller position sizes",
            "priority": "high",
        })

    return insights
