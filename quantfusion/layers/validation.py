"""
Reasoner output validation.

Two tiers:
1. Schema: pydantic models with range-bounded fields and literal enums
2. Business rules: direction/score alignment, price-target direction,
   position size under HIGH risk

A schema failure can be passed through `ResponseValidator.correct`, which
clamps numerics, derives defaults for broken enums from the score, checks the
reduced core schema and fills any remaining broken section from defaults.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Literal, Optional
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from quantfusion.core.exceptions import ValidationFailure


Recommendation = Literal["BUY", "SELL", "HOLD"]
Horizon = Literal["short_term", "medium_term", "long_term"]
Risk = Literal["LOW", "MEDIUM", "HIGH"]
SizingProfile = Literal["CONSERVATIVE", "MODERATE", "AGGRESSIVE"]

VALID_RECOMMENDATIONS = ("BUY", "SELL", "HOLD")
VALID_HORIZONS = ("short_term", "medium_term", "long_term")
VALID_RISK_LEVELS = ("LOW", "MEDIUM", "HIGH")

ALIGNMENT_THRESHOLD = 0.3
CORRECTION_THRESHOLD = 0.2
HIGH_RISK_MAX_SIZE = 15.0

CORE_FIELDS = ("final_score", "recommendation", "confidence", "time_horizon", "risk_level")

QUALITY_FIELDS = (
    "final_score", "recommendation", "confidence", "time_horizon",
    "risk_level", "position_size_recommendation", "price_targets",
    "top_drivers", "evidence_sentences", "explainability_text",
)


# =============================================================================
# SCHEMA
# =============================================================================

class PositionSizeRecommendation(BaseModel):
    model_config = ConfigDict(frozen=True)

    risk_level: SizingProfile
    size_percent: float = Field(ge=1.0, le=25.0)
    rationale: str


class PriceTargets(BaseModel):
    model_config = ConfigDict(frozen=True)

    near_term: float = Field(ge=0.0)
    medium_term: float = Field(ge=0.0)
    long_term: float = Field(ge=0.0)
    stop_loss: float = Field(ge=0.0)


class DriverItem(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    factor: str
    impact: str = ""
    weight: float = 0.0


class KeyLevelsPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    resistance: list[float] = Field(max_length=3)
    support: list[float] = Field(max_length=3)


class CatalystItem(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    type: str = ""
    description: str = ""
    timeline: str = ""
    probability: str = "MEDIUM"


class CorePayload(BaseModel):
    """Reduced schema re-checked after correction."""
    model_config = ConfigDict(frozen=True)

    final_score: float = Field(ge=-1.0, le=1.0)
    recommendation: Recommendation
    confidence: float = Field(ge=0.0, le=1.0)
    time_horizon: Horizon
    risk_level: Risk


class AnalysisPayload(CorePayload):
    """Full structured analysis expected from the reasoner."""

    position_size_recommendation: PositionSizeRecommendation
    price_targets: PriceTargets
    top_drivers: list[DriverItem] = Field(max_length=5)
    evidence_sentences: list[str] = Field(max_length=10)
    explainability_text: str = Field(max_length=1000)
    risk_notes: str = Field(max_length=500)
    key_levels: KeyLevelsPayload
    catalysts: list[CatalystItem] = Field(max_length=5)
    technical_summary: str = Field(max_length=500)
    fundamental_summary: str = Field(max_length=500)
    sentiment_summary: str = Field(max_length=500)


def format_errors(error: ValidationError) -> list[str]:
    return [
        f"{'.'.join(str(part) for part in e['loc']) or 'payload'}: {e['msg']}"
        for e in error.errors()
    ]


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


# =============================================================================
# VALIDATOR
# =============================================================================

class ResponseValidator:
    """Schema, business-rule and correction passes over reasoner payloads."""

    def validate_schema(self, data: Any) -> AnalysisPayload:
        if not isinstance(data, dict):
            raise ValidationFailure([f"expected a JSON object, got {type(data).__name__}"], stage="schema")
        try:
            return AnalysisPayload.model_validate(data)
        except ValidationError as e:
            raise ValidationFailure(format_errors(e), stage="schema") from e

    def check_business_rules(self, payload: AnalysisPayload, current_price: float = 0.0) -> None:
        """Raises ValidationFailure(stage="business") on the first broken rule set."""
        errors: list[str] = []
        score = payload.final_score
        recommendation = payload.recommendation

        if score > ALIGNMENT_THRESHOLD and recommendation == "SELL":
            errors.append("Recommendation misalignment: positive score but SELL recommendation")
        if score < -ALIGNMENT_THRESHOLD and recommendation == "BUY":
            errors.append("Recommendation misalignment: negative score but BUY recommendation")

        # Without a known price the target direction cannot be judged
        if current_price > 0:
            near_term = payload.price_targets.near_term
            if recommendation == "BUY" and near_term <= current_price:
                errors.append("Price target logic error: BUY recommendation but target <= current price")
            if recommendation == "SELL" and near_term >= current_price:
                errors.append("Price target logic error: SELL recommendation but target >= current price")

        size = payload.position_size_recommendation.size_percent
        if payload.risk_level == "HIGH" and size > HIGH_RISK_MAX_SIZE:
            errors.append("Risk management error: HIGH risk but large position size")
        if payload.risk_level == "LOW" and size < 5:
            logger.warning(f"Unusual: LOW risk but very small position size ({size}%)")

        if errors:
            raise ValidationFailure(errors, stage="business")

    def correct(self, data: Any, defaults: dict) -> AnalysisPayload:
        """
        Best-effort repair of a payload that failed schema validation.

        Raises ValidationFailure(stage="correction") when the core fields
        still do not validate.
        """
        raw = dict(data) if isinstance(data, dict) else {}
        corrected = dict(raw)

        score = _as_float(raw.get("final_score"))
        score = 0.0 if score is None else max(-1.0, min(1.0, score))
        corrected["final_score"] = score

        if raw.get("recommendation") not in VALID_RECOMMENDATIONS:
            if score > CORRECTION_THRESHOLD:
                corrected["recommendation"] = "BUY"
            elif score < -CORRECTION_THRESHOLD:
                corrected["recommendation"] = "SELL"
            else:
                corrected["recommendation"] = "HOLD"

        confidence = _as_float(raw.get("confidence"))
        if confidence is None or not 0.0 <= confidence <= 1.0:
            corrected["confidence"] = 0.6

        if raw.get("risk_level") not in VALID_RISK_LEVELS:
            corrected["risk_level"] = "MEDIUM"

        if raw.get("time_horizon") not in VALID_HORIZONS:
            corrected["time_horizon"] = "medium_term"

        sizing = raw.get("position_size_recommendation")
        sizing = dict(sizing) if isinstance(sizing, dict) else {}
        size = _as_float(sizing.get("size_percent"))
        sizing["size_percent"] = max(1.0, min(25.0, 10.0 if size is None else size))
        corrected["position_size_recommendation"] = {
            **defaults.get("position_size_recommendation", {}),
            **sizing,
        }

        try:
            CorePayload.model_validate({k: corrected.get(k) for k in CORE_FIELDS})
        except ValidationError as e:
            raise ValidationFailure(format_errors(e), stage="correction") from e

        # Sections that are still broken are replaced wholesale
        try:
            return AnalysisPayload.model_validate(corrected)
        except ValidationError as e:
            broken = {str(err["loc"][0]) for err in e.errors() if err["loc"]}
            for name in broken:
                if name in defaults:
                    corrected[name] = defaults[name]
            logger.debug(f"Filled sections from defaults: {sorted(broken)}")

        try:
            return AnalysisPayload.model_validate(corrected)
        except ValidationError as e:
            raise ValidationFailure(format_errors(e), stage="correction") from e


# =============================================================================
# QUALITY
# =============================================================================

@dataclass
class QualityReport:
    quality_score: int
    quality_level: str  # EXCELLENT, GOOD, FAIR, POOR
    issues: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "quality_score": self.quality_score,
            "quality_level": self.quality_level,
            "issues": list(self.issues),
            "recommendations": list(self.recommendations),
        }


def validate_response_quality(response: dict) -> QualityReport:
    """Score a payload for completeness and internal consistency (0-100)."""
    score = 0
    issues: list[str] = []

    for name in QUALITY_FIELDS:
        if response.get(name) is None:
            issues.append(f"Missing required field: {name}")
        else:
            score += 10

    final_score = _as_float(response.get("final_score"))
    recommendation = response.get("recommendation")
    if final_score is not None and recommendation is not None:
        if (final_score > ALIGNMENT_THRESHOLD and recommendation == "SELL") or (
            final_score < -ALIGNMENT_THRESHOLD and recommendation == "BUY"
        ):
            issues.append("Score and recommendation misalignment")
            score -= 20

    confidence = _as_float(response.get("confidence"))
    evidence = response.get("evidence_sentences")
    if confidence is not None and isinstance(evidence, list):
        if confidence > 0.8 and len(evidence) < 3:
            issues.append("High confidence with insufficient evidence")
            score -= 15

    sizing = response.get("position_size_recommendation")
    size = _as_float(sizing.get("size_percent")) if isinstance(sizing, dict) else None
    if response.get("risk_level") == "HIGH" and size is not None and size > HIGH_RISK_MAX_SIZE:
        issues.append("High risk with excessive position size")
        score -= 25

    if score >= 80:
        level = "EXCELLENT"
    elif score >= 60:
        level = "GOOD"
    elif score >= 40:
        level = "FAIR"
    else:
        level = "POOR"

    return QualityReport(
        quality_score=max(0, min(100, score)),
        quality_level=level,
        issues=issues,
        recommendations=_improvements(issues),
    )


def _improvements(issues: list[str]) -> list[str]:
    advice: list[str] = []
    for issue in issues:
        if "Missing" in issue:
            tip = "Ensure all required fields are populated"
        elif "misalignment" in issue:
            tip = "Align recommendation with quantitative score"
        elif "evidence" in issue:
            tip = "Provide more supporting evidence for high confidence"
        elif "position size" in issue:
            tip = "Adjust position size based on risk level"
        else:
            continue
        if tip not in advice:
            advice.append(tip)
    return advice
