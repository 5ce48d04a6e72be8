"""
Recommendation Orchestrator

Turns a FusionResult into a persisted FinalAnalysis:

1. Build a structured prompt from the fusion summary
2. Call the external reasoner (escalating temperature, bounded attempts)
3. Validate: schema -> correction pass -> business rules
4. After the last failed attempt, fall back to a deterministic recommendation

A known symbol always yields a FinalAnalysis; only an unknown symbol raises.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional
from loguru import logger

from quantfusion.core.circuit_breaker import CircuitBreaker
from quantfusion.core.config import LLMConfig
from quantfusion.core.exceptions import ValidationFailure
from quantfusion.core.metrics import MetricsCollector
from quantfusion.layers.data_providers import InstrumentRegistry
from quantfusion.layers.fusion import FusionEngine, FusionResult
from quantfusion.layers.reasoner import Reasoner, extract_json
from quantfusion.layers.validation import (
    AnalysisPayload,
    CatalystItem,
    DriverItem,
    KeyLevelsPayload,
    PositionSizeRecommendation,
    PriceTargets,
    ResponseValidator,
    validate_response_quality,
)

if TYPE_CHECKING:
    from quantfusion.storage.analysis_store import AnalysisStore


FALLBACK_CONFIDENCE = 0.5
FALLBACK_THRESHOLD = 0.3

FALLBACK_POSITION_SIZE = {"LOW": 15.0, "MEDIUM": 10.0, "HIGH": 5.0}

LOW_VOLATILITY = ("LOW", "VERY_LOW", "ULTRA_LOW")
HIGH_VOLATILITY = ("HIGH", "VERY_HIGH", "EXTREME")

FALLBACK_EXPLANATION = (
    "This analysis was generated using a deterministic fallback algorithm due to "
    "LLM unavailability. It is based on quantitative indicators and sentiment data "
    "but lacks the nuanced interpretation of the AI model. Use with increased caution."
)
FALLBACK_RISK_NOTES = (
    "IMPORTANT: Fallback analysis has lower confidence. Consider waiting for full "
    "AI analysis or consult additional sources."
)


# =============================================================================
# RECORDS
# =============================================================================

@dataclass
class RecommendationAttempt:
    """One pass through the attempt/validate loop."""
    attempt_number: int
    temperature: float
    raw_response: Optional[str] = None
    validation_errors: list[str] = field(default_factory=list)
    outcome: str = ""  # accepted, corrected, rejected, failed


@dataclass(frozen=True)
class FinalAnalysis:
    """The persisted outcome of one pipeline run for a symbol."""
    symbol: str
    final_score: float
    recommendation: str  # BUY, SELL, HOLD
    confidence: float
    time_horizon: str
    risk_level: str
    position_size_recommendation: PositionSizeRecommendation
    price_targets: PriceTargets
    top_drivers: list[DriverItem]
    evidence_sentences: list[str]
    explainability_text: str
    risk_notes: str
    key_levels: KeyLevelsPayload
    catalysts: list[CatalystItem]
    technical_summary: str
    fundamental_summary: str
    sentiment_summary: str
    fusion_data: dict = field(default_factory=dict)
    metadata: dict = field(default_factory=dict)
    user_id: Optional[int] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_payload(
        cls,
        payload: AnalysisPayload,
        symbol: str,
        user_id: Optional[int] = None,
        fusion_data: Optional[dict] = None,
        metadata: Optional[dict] = None,
    ) -> "FinalAnalysis":
        return cls(
            symbol=symbol,
            final_score=payload.final_score,
            recommendation=payload.recommendation,
            confidence=payload.confidence,
            time_horizon=payload.time_horizon,
            risk_level=payload.risk_level,
            position_size_recommendation=payload.position_size_recommendation,
            price_targets=payload.price_targets,
            top_drivers=list(payload.top_drivers),
            evidence_sentences=list(payload.evidence_sentences),
            explainability_text=payload.explainability_text,
            risk_notes=payload.risk_notes,
            key_levels=payload.key_levels,
            catalysts=list(payload.catalysts),
            technical_summary=payload.technical_summary,
            fundamental_summary=payload.fundamental_summary,
            sentiment_summary=payload.sentiment_summary,
            fusion_data=fusion_data or {},
            metadata=metadata or {},
            user_id=user_id,
        )

    @property
    def is_fallback(self) -> bool:
        return bool(self.metadata.get("fallback"))

    def payload_dict(self) -> dict:
        """The analysis fields alone, in reasoner schema shape."""
        return {
            "final_score": self.final_score,
            "recommendation": self.recommendation,
            "confidence": self.confidence,
            "time_horizon": self.time_horizon,
            "risk_level": self.risk_level,
            "position_size_recommendation": self.position_size_recommendation.model_dump(),
            "price_targets": self.price_targets.model_dump(),
            "top_drivers": [d.model_dump() for d in self.top_drivers],
            "evidence_sentences": list(self.evidence_sentences),
            "explainability_text": self.explainability_text,
            "risk_notes": self.risk_notes,
            "key_levels": self.key_levels.model_dump(),
            "catalysts": [c.model_dump() for c in self.catalysts],
            "technical_summary": self.technical_summary,
            "fundamental_summary": self.fundamental_summary,
            "sentiment_summary": self.sentiment_summary,
        }

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "user_id": self.user_id,
            **self.payload_dict(),
            "fusion_data": self.fusion_data,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FinalAnalysis":
        payload = AnalysisPayload.model_validate(
            {k: v for k, v in data.items() if k in AnalysisPayload.model_fields}
        )
        record = cls.from_payload(
            payload,
            symbol=data["symbol"],
            user_id=data.get("user_id"),
            fusion_data=data.get("fusion_data") or {},
            metadata=data.get("metadata") or {},
        )
        created = data.get("created_at")
        if created:
            record = replace(record, created_at=datetime.fromisoformat(created))
        return record


# =============================================================================
# FALLBACK
# =============================================================================

def fallback_risk_level(volatility_status: str) -> str:
    status = (volatility_status or "MEDIUM").upper()
    if status in LOW_VOLATILITY:
        return "LOW"
    if status in HIGH_VOLATILITY:
        return "HIGH"
    return "MEDIUM"


def fallback_payload(fusion: FusionResult, current_price: float) -> dict:
    """Deterministic, schema-valid analysis built from the fusion result alone."""
    score = max(-1.0, min(1.0, fusion.fusion_score))
    if score > FALLBACK_THRESHOLD:
        recommendation = "BUY"
    elif score < -FALLBACK_THRESHOLD:
        recommendation = "SELL"
    else:
        recommendation = "HOLD"

    volatility = fusion.quant_summary.volatility_status if fusion.quant_summary else "MEDIUM"
    risk_level = fallback_risk_level(volatility)

    is_buy = recommendation == "BUY"
    price = max(0.0, current_price)
    bias = {"BUY": "bullish", "SELL": "bearish"}.get(recommendation, "neutral")

    sentiment_score = fusion.sentiment_score
    if sentiment_score > 0:
        tone = "positive sentiment"
    elif sentiment_score < 0:
        tone = "negative sentiment"
    else:
        tone = "neutral sentiment"

    return {
        "final_score": round(score, 3),
        "recommendation": recommendation,
        "confidence": FALLBACK_CONFIDENCE,
        "time_horizon": "medium_term",
        "risk_level": risk_level,
        "position_size_recommendation": {
            "risk_level": "CONSERVATIVE",
            "size_percent": FALLBACK_POSITION_SIZE[risk_level],
            "rationale": "Conservative sizing due to fallback analysis mode",
        },
        "price_targets": {
            "near_term": price * (1.05 if is_buy else 0.95),
            "medium_term": price * (1.10 if is_buy else 0.90),
            "long_term": price * (1.20 if is_buy else 0.85),
            "stop_loss": price * (0.95 if is_buy else 1.05),
        },
        "top_drivers": [
            {"factor": "Quantitative Score", "impact": "Moderate", "weight": abs(fusion.quant_score)},
            {"factor": "Sentiment Score", "impact": "Moderate", "weight": abs(sentiment_score)},
        ],
        "evidence_sentences": [
            "Analysis generated using deterministic fallback algorithm",
            "LLM analysis temporarily unavailable",
        ],
        "explainability_text": FALLBACK_EXPLANATION,
        "risk_notes": FALLBACK_RISK_NOTES,
        "key_levels": {
            "resistance": [price * 1.05, price * 1.10],
            "support": [price * 0.95, price * 0.90],
        },
        "catalysts": [{
            "type": "Technical",
            "description": "Key level breakout",
            "timeline": "Short-term",
            "probability": "MEDIUM",
        }],
        "technical_summary": f"Technical indicators show {bias} bias with score of {score:.2f}",
        "fundamental_summary": "Fundamental analysis unavailable in fallback mode",
        "sentiment_summary": f"Sentiment analysis shows {tone} with score of {sentiment_score:.2f}",
    }


# =============================================================================
# PROMPT
# =============================================================================

def build_prompt(symbol: str, fusion: FusionResult, current_price: float) -> str:
    data = fusion.to_dict()
    quant = data["quant_summary"]
    sentiment = data["sentiment_summary"]
    conditions = data["market_conditions"]
    levels = data["key_levels"]
    risk = data["risk_assessment"]

    drivers = "\n".join(
        f"- {d['name']}: {d['value']} ({d['category']})" for d in data["top_drivers"]
    ) or "- none"
    catalysts = "\n".join(
        f"- {c['type']}: {c['description']} (Impact: {c['impact']})" for c in data["catalysts"]
    ) or "- none"
    risk_factors = "\n".join(
        f"- {r['factor']}: Risk score {r['score']}" for r in risk["risk_factors"]
    ) or "- none"

    return f"""Analyze the provided market data and generate a comprehensive investment recommendation.

SYMBOL: {symbol}
CURRENT PRICE: {current_price}
ANALYSIS TIMESTAMP: {datetime.now(timezone.utc).isoformat()}

QUANTITATIVE ANALYSIS:
- Trend Status: {quant.get('trend_status', 'unknown')}
- Trend Strength: {quant.get('trend_strength', 0)}
- Momentum Status: {quant.get('momentum_status', 'unknown')}
- Volatility Status: {quant.get('volatility_status', 'unknown')}
- Volume Status: {quant.get('volume_status', 'unknown')}
- Key Resistance: {levels.get('resistance', {}).get('immediate', 'n/a')}
- Key Support: {levels.get('support', {}).get('immediate', 'n/a')}

SENTIMENT ANALYSIS:
- Overall Sentiment: {sentiment.get('overall_sentiment', 'unknown')}
- Sentiment Trend: {sentiment.get('sentiment_trend', 'unknown')}
- News Coverage: {sentiment.get('news_coverage', 'unknown')}
- Social Engagement: {sentiment.get('social_engagement', 'unknown')}
- Analyst Consensus: {sentiment.get('analyst_consensus', 'unknown')}

FUSION ANALYSIS:
- Fusion Score: {data['fusion_score']}
- Recommendation: {data['recommendation']['action']}
- Confidence: {data['confidence']}
- Risk Level: {risk['risk_level']}

MARKET CONDITIONS:
- Volatility Regime: {conditions.get('regime', 'unknown')}
- Trend Phase: {conditions.get('trend_phase', 'unknown')}
- Market Efficiency: {conditions.get('market_efficiency', 'unknown')}

TOP DRIVERS:
{drivers}

KEY CATALYSTS:
{catalysts}

RISK FACTORS:
{risk_factors}

Based on the analysis above, respond with a JSON object using this schema:

{{
  "final_score": float (-1.0 to 1.0),
  "recommendation": "BUY" | "SELL" | "HOLD",
  "confidence": float (0.0 to 1.0),
  "time_horizon": "short_term" | "medium_term" | "long_term",
  "risk_level": "LOW" | "MEDIUM" | "HIGH",
  "position_size_recommendation": {{
    "risk_level": "CONSERVATIVE" | "MODERATE" | "AGGRESSIVE",
    "size_percent": float (1.0 to 25.0),
    "rationale": "string"
  }},
  "price_targets": {{"near_term": float, "medium_term": float, "long_term": float, "stop_loss": float}},
  "top_drivers": [{{"factor": "string", "impact": "string", "weight": float}}],
  "evidence_sentences": ["string"],
  "explainability_text": "string",
  "risk_notes": "string",
  "key_levels": {{"resistance": [float], "support": [float]}},
  "catalysts": [{{"type": "string", "description": "string", "timeline": "string", "probability": "HIGH" | "MEDIUM" | "LOW"}}],
  "technical_summary": "string",
  "fundamental_summary": "string",
  "sentiment_summary": "string"
}}

REQUIREMENTS:
1. Output valid JSON only, with no additional text
2. All numeric values must be within the stated ranges
3. Recommendation must align with the fusion score direction
4. Confidence should reflect data quality and signal consistency
5. Risk level must match the volatility regime and risk factors
6. Position size should be inversely proportional to risk level
7. Price targets must be realistic and on the right side of the current price
8. Evidence sentences must be supported by the provided data
"""


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class RecommendationOrchestrator:
    """
    Bounded attempt/validate/retry loop around the external reasoner.

    Attempts run strictly one after another with `retry_delay_seconds`
    between them and temperature rising by `temperature_step` each time.
    With no reasoner configured the deterministic fallback is used directly.
    """

    def __init__(
        self,
        fusion_engine: FusionEngine,
        registry: InstrumentRegistry,
        reasoner: Optional[Reasoner] = None,
        config: Optional[LLMConfig] = None,
        store: Optional["AnalysisStore"] = None,
        metrics: Optional[MetricsCollector] = None,
        breaker: Optional[CircuitBreaker] = None,
        validator: Optional[ResponseValidator] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._fusion = fusion_engine
        self._registry = registry
        self._reasoner = reasoner
        self.config = config or LLMConfig()
        self._store = store
        self._metrics = metrics or MetricsCollector()
        self._breaker = breaker or CircuitBreaker(
            "reasoner", failure_threshold=5, success_threshold=2, timeout_seconds=60.0
        )
        self._validator = validator or ResponseValidator()
        self._sleep = sleep

    @property
    def max_attempts(self) -> int:
        return self.config.max_retries + 1

    async def generate_analysis(self, symbol: str, user_id: Optional[int] = None) -> FinalAnalysis:
        """Raises SymbolNotFoundError for unknown symbols; otherwise always returns."""
        self._registry.require(symbol)
        start = time.monotonic()

        try:
            fusion = await self._fusion.generate_fusion_analysis(symbol)
        except Exception as e:
            logger.error(f"Fusion failed for {symbol}, continuing with empty analysis: {e}")
            fusion = FusionResult.empty(symbol)

        price = self._current_price(symbol, fusion)
        defaults = fallback_payload(fusion, price)

        payload: Optional[AnalysisPayload] = None
        attempts: list[RecommendationAttempt] = []
        fallback_reason = ""

        if self._reasoner is None:
            fallback_reason = "no reasoner configured"
        else:
            try:
                prompt = build_prompt(symbol, fusion, price)
                payload, attempts = await self.run_attempts(symbol, prompt, price, defaults)
            except Exception as e:
                logger.error(f"Reasoner pipeline failed for {symbol}: {e}")
                fallback_reason = str(e)
            if payload is None and not fallback_reason:
                last = attempts[-1].validation_errors if attempts else []
                fallback_reason = (
                    f"failed after {len(attempts)} attempts"
                    + (f". Last error: {last[0]}" if last else "")
                )

        is_fallback = payload is None
        if is_fallback:
            logger.warning(f"Generating fallback analysis for {symbol}: {fallback_reason}")
            self._metrics.increment("llm.fallbacks")
            payload = AnalysisPayload.model_validate(defaults)

        analysis = FinalAnalysis.from_payload(
            payload,
            symbol=symbol,
            user_id=user_id,
            fusion_data=fusion.to_dict(),
            metadata=self._metadata(payload, attempts, is_fallback, fallback_reason, start),
        )
        self._persist(analysis)
        return analysis

    async def run_attempts(
        self,
        symbol: str,
        prompt: str,
        current_price: float,
        defaults: dict,
    ) -> tuple[Optional[AnalysisPayload], list[RecommendationAttempt]]:
        """The retry state machine. Returns (None, trail) when every attempt failed."""
        temperature = self.config.base_temperature
        trail: list[RecommendationAttempt] = []

        for number in range(1, self.max_attempts + 1):
            attempt = RecommendationAttempt(number, round(temperature, 2))
            trail.append(attempt)
            self._metrics.increment("llm.attempts")
            logger.info(f"LLM attempt {number} for {symbol} with temperature {attempt.temperature}")

            try:
                with self._metrics.timed("llm.call"):
                    text = await self._breaker.call(
                        self._reasoner.complete, prompt, temperature=attempt.temperature
                    )
                attempt.raw_response = text
                payload, corrected = self._validate(extract_json(text), current_price, defaults)
            except ValidationFailure as e:
                attempt.validation_errors = list(e.errors)
                attempt.outcome = "rejected"
                logger.warning(
                    f"LLM attempt {number} rejected for {symbol} "
                    f"(temperature {attempt.temperature}, {e.stage}): {'; '.join(e.errors)}"
                )
            except Exception as e:
                attempt.validation_errors = [str(e)]
                attempt.outcome = "failed"
                logger.warning(
                    f"LLM attempt {number} failed for {symbol} "
                    f"(temperature {attempt.temperature}): {e}"
                )
            else:
                attempt.outcome = "corrected" if corrected else "accepted"
                logger.info(f"LLM analysis {attempt.outcome} for {symbol} on attempt {number}")
                return payload, trail

            temperature += self.config.temperature_step
            if number < self.max_attempts:
                await self._sleep(self.config.retry_delay_seconds)

        return None, trail

    def _validate(self, data: Any, current_price: float, defaults: dict) -> tuple[AnalysisPayload, bool]:
        corrected = False
        try:
            payload = self._validator.validate_schema(data)
        except ValidationFailure as e:
            if not isinstance(data, dict):
                raise
            logger.info(f"Schema validation failed, applying corrections: {'; '.join(e.errors[:3])}")
            payload = self._validator.correct(data, defaults)
            corrected = True
            self._metrics.increment("llm.corrections")

        self._validator.check_business_rules(payload, current_price)
        return payload, corrected

    def _current_price(self, symbol: str, fusion: FusionResult) -> float:
        price = self._registry.current_price(symbol)
        if price <= 0 and fusion.quant_summary is not None:
            price = fusion.quant_summary.current_price
        return price

    def _metadata(
        self,
        payload: AnalysisPayload,
        attempts: list[RecommendationAttempt],
        is_fallback: bool,
        fallback_reason: str,
        start: float,
    ) -> dict:
        payload_data = payload.model_dump()
        quality = validate_response_quality(payload_data)

        cost = 0.0
        if not is_fallback:
            cost = self.estimate_cost(payload_data)
            self._metrics.add_cost(cost)

        return {
            "provider": getattr(self._reasoner, "provider", None),
            "model": getattr(self._reasoner, "model", None),
            "attempts": len(attempts),
            "temperature": attempts[-1].temperature if attempts else self.config.base_temperature,
            "corrected": bool(attempts) and attempts[-1].outcome == "corrected",
            "fallback": is_fallback,
            "fallback_reason": fallback_reason or None,
            "duration_seconds": round(time.monotonic() - start, 3),
            "cost": cost,
            "quality_score": quality.quality_score,
            "quality_level": quality.quality_level,
            "max_tokens": self.config.max_output_tokens,
            "generated_at": datetime.now(timezone.utc).isoformat(),
        }

    def estimate_cost(self, payload_data: dict) -> float:
        """Roughly 4 characters per token."""
        tokens = len(json.dumps(payload_data)) / 4
        return round(tokens / 1000 * self.config.cost_per_1k_tokens, 4)

    def _persist(self, analysis: FinalAnalysis) -> None:
        if self._store is None:
            return
        try:
            self._store.append(analysis)
        except Exception as e:
            logger.error(f"Failed to store analysis for {analysis.symbol}: {e}")

    async def generate_batch_analysis(self, symbols: list[str], user_id: Optional[int] = None) -> dict:
        results: dict[str, FinalAnalysis] = {}
        errors: dict[str, str] = {}

        for symbol in symbols:
            try:
                results[symbol] = await self.generate_analysis(symbol, user_id)
            except Exception as e:
                errors[symbol] = str(e)
                logger.error(f"Batch analysis failed for {symbol}: {e}")

        return {
            "successful": results,
            "failed": errors,
            "summary": {
                "total": len(symbols),
                "successful": len(results),
                "failed": len(errors),
            },
        }
