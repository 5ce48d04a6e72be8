"""Tests for the fusion engine."""

from __future__ import annotations

import json
from dataclasses import FrozenInstanceError, replace
from typing import Optional

import pytest

from quantfusion.core.cache import fusion_key
from quantfusion.core.config import FusionConfig
from quantfusion.core.types import Action, RiskLevel
from quantfusion.layers.fusion import FusionEngine, FusionResult, RiskAssessment
from quantfusion.layers.indicators import IndicatorEngine, IndicatorSet
from quantfusion.layers.sentiment import (
    NewsSentiment,
    SentimentEngine,
    SentimentSnapshot,
    SentimentSources,
    SentimentTrend,
    SocialSentiment,
)

from tests.conftest import SYMBOL, FailingSource, quant_set, sentiment_snapshot


class StubIndicators:
    """Returns a fixed IndicatorSet; raises for the first `failures` calls."""

    def __init__(self, result: IndicatorSet, failures: int = 0):
        self.result = result
        self.failures = failures
        self.calls = 0

    async def calculate_indicators(self, symbol: str, period: int = 200) -> IndicatorSet:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("indicator backend hiccup")
        return self.result


class StubSentiment:
    def __init__(self, result: SentimentSnapshot):
        self.result = result
        self.calls = 0

    async def analyze_sentiment(self, symbol: str) -> SentimentSnapshot:
        self.calls += 1
        return self.result


def make_engine(
    quant: IndicatorSet,
    sentiment: SentimentSnapshot,
    failures: int = 0,
    cache=None,
    metrics=None,
    config: Optional[FusionConfig] = None,
) -> FusionEngine:
    return FusionEngine(
        StubIndicators(quant, failures),
        StubSentiment(sentiment),
        cache=cache,
        metrics=metrics,
        config=config,
    )


@pytest.fixture
def engine() -> FusionEngine:
    return FusionEngine(IndicatorEngine(), SentimentEngine())


class TestScenarios:
    def test_aligned_bullish_inputs(self, engine):
        result = engine.fuse(SYMBOL, quant_set(0.8, 0.9), sentiment_snapshot(0.7, 0.8))
        assert result.alpha == 0.8
        # (0.8*0.8*0.9 + 0.2*0.7*0.8) / (0.8*0.9 + 0.2*0.8)
        assert result.fusion_score == pytest.approx(0.688 / 0.88)
        assert result.fusion_score > 0.5
        assert result.recommendation.action in (Action.STRONG_BUY, Action.BUY)
        assert not result.is_empty

    def test_aligned_bearish_inputs(self, engine):
        result = engine.fuse(SYMBOL, quant_set(-0.8, 0.9), sentiment_snapshot(-0.7, 0.8))
        assert result.fusion_score < -0.5
        assert result.recommendation.action in (Action.STRONG_SELL, Action.SELL)

    @pytest.mark.asyncio
    async def test_both_engines_fail(self, registry, metrics, cache):
        failing = FailingSource()
        engine = FusionEngine(
            IndicatorEngine(failing, metrics=metrics),
            SentimentEngine(registry, failing, failing, failing, metrics=metrics),
            cache=cache,
            metrics=metrics,
        )
        result = await engine.generate_fusion_analysis(SYMBOL)
        assert result.is_empty
        assert result.fusion_score == 0.0
        assert result.recommendation.action == Action.HOLD
        assert not cache.has(fusion_key(SYMBOL))

    def test_short_series_gives_neutral_indicators(self, short_bars):
        quant = IndicatorEngine().compute(short_bars, SYMBOL)
        assert quant.composite.score == 0.0
        assert quant.momentum.rsi == 50.0

    @pytest.mark.asyncio
    async def test_real_engines_on_uptrend(self, indicator_engine, sentiment_engine, cache, metrics):
        engine = FusionEngine(indicator_engine, sentiment_engine, cache=cache, metrics=metrics)
        result = await engine.generate_fusion_analysis(SYMBOL)
        assert not result.is_empty
        assert result.fusion_score > 0
        assert result.quant_summary.trend_status == "bullish"
        assert result.regime is not None
        json.dumps(result.to_dict())


class TestScoring:
    def test_alpha_falls_as_volatility_rises(self, engine):
        alphas = [engine.dynamic_alpha(r) for r in ("low", "medium", "high")]
        assert alphas == [0.8, 0.6, 0.4]
        assert engine.dynamic_alpha("unknown") == 0.6

    @pytest.mark.parametrize("quant_score,quant_conf,sent_score,sent_conf", [
        (1.0, 1.0, 1.0, 1.0),
        (-1.0, 1.0, -1.0, 1.0),
        (1.0, 1.0, -1.0, 0.0),
        (0.3, 0.0, -0.9, 0.2),
    ])
    def test_fusion_score_is_bounded(self, quant_score, quant_conf, sent_score, sent_conf):
        score = FusionEngine.fusion_score(
            quant_set(quant_score, quant_conf), sentiment_snapshot(sent_score, sent_conf), 0.6
        )
        assert -1.0 <= score <= 1.0

    def test_zero_confidence_scores_zero(self):
        assert FusionEngine.fusion_score(quant_set(0.9, 0.0), sentiment_snapshot(0.9, 0.0), 0.6) == 0.0

    def test_non_finite_input_scores_zero(self):
        nan = float("nan")
        assert FusionEngine.fusion_score(quant_set(nan, 0.8), sentiment_snapshot(-0.5, 0.5), 0.6) == 0.0
        assert FusionEngine.fusion_score(quant_set(0.5, 0.8), sentiment_snapshot(nan, 0.5), 0.6) == 0.0

    def test_confident_side_dominates(self):
        score = FusionEngine.fusion_score(quant_set(1.0, 1.0), sentiment_snapshot(-1.0, 0.0), 0.6)
        assert score == pytest.approx(1.0)

    def test_thresholds_scale_with_regime_and_confidence(self, engine):
        low = engine.thresholds(quant_set(0.0, 1.0, regime="low"), sentiment_snapshot(0.0, 1.0))
        high = engine.thresholds(quant_set(0.0, 1.0, regime="high"), sentiment_snapshot(0.0, 1.0))
        assert low["buy"] == pytest.approx(0.3 * 0.8)
        assert high["buy"] == pytest.approx(0.3 * 1.2)
        unsure = engine.thresholds(quant_set(0.0, 0.0, regime="medium"), sentiment_snapshot(0.0, 0.0))
        assert unsure["strong_buy"] == pytest.approx(0.3)

    @pytest.mark.parametrize("score,action", [
        (0.5, Action.STRONG_BUY),
        (0.2, Action.BUY),
        (0.0, Action.HOLD),
        (-0.1, Action.SELL),
        (-0.5, Action.STRONG_SELL),
    ])
    def test_recommendation_ladder(self, engine, score, action):
        # Zero confidence halves the ladder: 0.3 / 0.15 / -0.05 / -0.2
        quant = quant_set(0.0, 0.0, regime="medium")
        sentiment = sentiment_snapshot(0.0, 0.0)
        assert engine.recommend(score, quant, sentiment).action == action


class TestConfidenceAndRisk:
    def test_signal_consistency_is_bounded(self):
        sentiment = replace(
            sentiment_snapshot(-1.0, 0.5),
            news_sentiment=NewsSentiment(score=1.0),
            social_sentiment=SocialSentiment(score=-1.0),
        )
        consistency = FusionEngine.signal_consistency(quant_set(1.0, 0.5), sentiment)
        assert 0.0 <= consistency <= 1.0

    def test_fusion_confidence_is_bounded(self, engine):
        confidence = engine.fusion_confidence(quant_set(0.5, 1.0), sentiment_snapshot(0.5, 1.0))
        assert 0.0 <= confidence <= 1.0

    def test_data_quality(self):
        sentiment = replace(
            sentiment_snapshot(0.0, 0.5),
            sources=SentimentSources(news_count=3, social_mentions=600),
        )
        assert FusionEngine.data_quality(quant_set(0.0, 0.9), sentiment) == pytest.approx(1.0)
        assert FusionEngine.data_quality(quant_set(0.0, 0.5), sentiment_snapshot(0.0, 0.5)) == 0.0

    def test_low_risk_assessment(self, engine):
        risk = engine.assess_risk(quant_set(0.0, 0.9, regime="low"), sentiment_snapshot(0.0, 0.5))
        assert risk.overall_risk == pytest.approx((0.2 + 0.6 + 0.2 + 0.7 + 0.1) / 5)
        assert risk.risk_level == RiskLevel.LOW
        assert risk.mitigation_strategies == [
            "Wait for clearer trend confirmation",
            "Seek additional confirmation sources",
        ]

    def test_top_drivers_are_ranked_and_capped(self, engine):
        drivers = engine.top_drivers(
            quant_set(0.5, 0.8, trend_strength=0.9), sentiment_snapshot(0.4, 0.6), 0.8
        )
        assert len(drivers) == 5
        impacts = [abs(d.weighted_impact) for d in drivers]
        assert impacts == sorted(impacts, reverse=True)
        assert drivers[0].name == "trend_strength"
        assert drivers[0].weighted_impact == pytest.approx(0.72)


class TestSizingAndHorizon:
    def test_strong_signal_low_risk(self, engine):
        sizing = engine.position_sizing(0.7, RiskAssessment(risk_level=RiskLevel.LOW), 1.0)
        assert sizing.recommended_size_percent == 18.0
        assert sizing.risk_level == RiskLevel.LOW

    def test_weak_signal_is_floored(self, engine):
        sizing = engine.position_sizing(0.1, RiskAssessment(risk_level=RiskLevel.HIGH), 0.0)
        assert sizing.recommended_size_percent == 2.0

    def test_size_is_capped(self):
        engine = FusionEngine(IndicatorEngine(), SentimentEngine(), config=FusionConfig(base_position_size=0.5))
        sizing = engine.position_sizing(0.9, RiskAssessment(risk_level=RiskLevel.LOW), 1.0)
        assert sizing.recommended_size_percent == 25.0

    def test_horizons(self):
        steady = sentiment_snapshot(0.3, 0.5)
        assert FusionEngine.time_horizon(quant_set(0.5, 0.8, trend_strength=0.7), steady).horizon == "long_term"
        assert FusionEngine.time_horizon(
            quant_set(0.5, 0.8, regime="high", trend_strength=0.7), steady
        ).horizon == "medium_term"
        shaky = SentimentSnapshot(symbol=SYMBOL, trend=SentimentTrend("improving", 0.6, 0.6))
        assert FusionEngine.time_horizon(quant_set(0.5, 0.8, trend_strength=0.7), shaky).horizon == "short_term"


class TestGenerate:
    @pytest.mark.asyncio
    async def test_result_is_memoized(self, cache, metrics):
        engine = make_engine(quant_set(0.5, 0.8), sentiment_snapshot(0.4, 0.6), cache=cache, metrics=metrics)
        first = await engine.generate_fusion_analysis(SYMBOL)
        second = await engine.generate_fusion_analysis(SYMBOL)
        assert first is second
        assert engine._indicators.calls == 1
        assert metrics.count("cache.fusion_analysis.hit") == 1

    @pytest.mark.asyncio
    async def test_parallel_failure_retries_sequentially(self, metrics):
        engine = make_engine(quant_set(0.5, 0.8), sentiment_snapshot(0.4, 0.6), failures=1, metrics=metrics)
        result = await engine.generate_fusion_analysis(SYMBOL)
        assert not result.is_empty
        assert engine._indicators.calls == 2
        assert metrics.count("fusion.fetch.parallel") == 1
        assert metrics.count("fusion.fetch.sequential") == 1

    @pytest.mark.asyncio
    async def test_sequential_only_when_parallel_disabled(self, metrics):
        engine = make_engine(
            quant_set(0.5, 0.8), sentiment_snapshot(0.4, 0.6),
            metrics=metrics, config=FusionConfig(parallel_fetch=False),
        )
        await engine.generate_fusion_analysis(SYMBOL)
        assert metrics.count("fusion.fetch.parallel") == 0
        assert metrics.count("fusion.fetch.sequential") == 1

    @pytest.mark.asyncio
    async def test_sequential_failure_gives_empty_result(self):
        engine = make_engine(quant_set(0.5, 0.8), sentiment_snapshot(0.4, 0.6), failures=2)
        result = await engine.generate_fusion_analysis(SYMBOL)
        assert result.is_empty

    @pytest.mark.asyncio
    async def test_sentiment_alone_is_enough(self):
        engine = make_engine(IndicatorSet.empty(SYMBOL, status="unavailable"), sentiment_snapshot(0.6, 0.7))
        result = await engine.generate_fusion_analysis(SYMBOL)
        assert not result.is_empty
        assert result.fusion_score == pytest.approx(0.6)


class TestFusionResult:
    def test_empty(self):
        empty = FusionResult.empty(SYMBOL)
        assert empty.fusion_score == 0.0
        assert empty.recommendation.action == Action.HOLD
        assert empty.confidence == 0.0
        assert empty.alpha == 0.6
        assert empty.position_sizing.recommended_size_percent == 0.0
        assert empty.position_sizing.risk_level == RiskLevel.HIGH
        assert empty.is_empty

    def test_to_dict_nests_key_levels(self, engine, uptrend_bars):
        quant = IndicatorEngine().compute(uptrend_bars, SYMBOL)
        data = engine.fuse(SYMBOL, quant, sentiment_snapshot(0.3, 0.6)).to_dict()
        levels = data["key_levels"]
        assert set(levels) == {"resistance", "support", "pivot", "breakout_levels"}
        assert levels["resistance"]["significant"] == pytest.approx(levels["resistance"]["immediate"] * 1.05)
        assert data["recommendation"]["action"] in {a.value for a in Action}
        json.dumps(data)

    def test_result_is_frozen(self):
        empty = FusionResult.empty(SYMBOL)
        with pytest.raises(FrozenInstanceError):
            empty.fusion_score = 1.0
