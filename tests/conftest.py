"""
Shared pytest fixtures for the QuantFusion test suite.

Provides:
  - Synthetic bar series (trending up, trending down, flat, short)
  - Hand-built IndicatorSet / SentimentSnapshot factories
  - Static sentiment sources and a scripted fake reasoner
  - A no-op sleep so retry tests run instantly
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

import pytest

from quantfusion.core.cache import TTLCache
from quantfusion.core.metrics import MetricsCollector
from quantfusion.core.types import OHLCV
from quantfusion.layers.data_providers import (
    AnalystRating,
    InMemoryMarketData,
    Instrument,
    InstrumentRegistry,
    NewsArticle,
    SocialAggregate,
    SocialMention,
    StaticAnalystSource,
    StaticNewsSource,
    StaticSocialSource,
)
from quantfusion.layers.indicators import CompositeScore, IndicatorSet, TrendIndicators, VolatilityIndicators
from quantfusion.layers.sentiment import SentimentEngine, SentimentSnapshot
from quantfusion.layers.indicators import IndicatorEngine


SYMBOL = "TEST"
START = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_bars(closes: list[float], symbol: str = SYMBOL, volume: float = 1_000.0) -> list[OHLCV]:
    """Daily bars around the given closes with a 1% high/low envelope."""
    bars = []
    previous = closes[0]
    for i, close in enumerate(closes):
        bars.append(OHLCV(
            timestamp=START + timedelta(days=i),
            open=previous,
            high=max(previous, close) * 1.01,
            low=min(previous, close) * 0.99,
            close=close,
            volume=volume,
            symbol=symbol,
        ))
        previous = close
    return bars


def geometric(start: float, rate: float, n: int) -> list[float]:
    return [start * (1 + rate) ** i for i in range(n)]


# ── Bar series ────────────────────────────────────────────────────────────────

@pytest.fixture
def uptrend_bars() -> list[OHLCV]:
    """120 bars rising 0.5% a day (low volatility regime)."""
    return make_bars(geometric(100.0, 0.005, 120))


@pytest.fixture
def downtrend_bars() -> list[OHLCV]:
    """120 bars falling 0.5% a day."""
    return make_bars(geometric(100.0, -0.005, 120))


@pytest.fixture
def flat_bars() -> list[OHLCV]:
    return make_bars([100.0] * 120)


@pytest.fixture
def short_bars() -> list[OHLCV]:
    """30 bars, below the indicator minimum."""
    return make_bars(geometric(100.0, 0.01, 30))


# ── Hand-built engine outputs ─────────────────────────────────────────────────

def quant_set(
    score: float,
    confidence: float,
    regime: str = "low",
    direction: str = "neutral",
    trend_strength: float = 0.0,
    last_price: float = 100.0,
) -> IndicatorSet:
    return IndicatorSet(
        symbol=SYMBOL,
        bars=200,
        last_price=last_price,
        trend=TrendIndicators(direction=direction, trend_strength=trend_strength, adx=30.0),
        volatility=VolatilityIndicators(volatility_regime=regime),
        composite=CompositeScore(score=score, confidence=confidence),
        status="ok",
    )


def sentiment_snapshot(score: float, confidence: float) -> SentimentSnapshot:
    return SentimentSnapshot(symbol=SYMBOL, overall_score=score, confidence=confidence, status="ok")


# ── Sources ───────────────────────────────────────────────────────────────────

POSITIVE_ARTICLES = [
    NewsArticle("Strong growth and a bullish rally", source="Wire", published_at=START),
    NewsArticle("Analysts optimistic as momentum builds", source="Daily", published_at=START),
    NewsArticle("Quarterly update", description="Results in line", source="Daily", published_at=START),
]


@pytest.fixture
def registry() -> InstrumentRegistry:
    return InstrumentRegistry([Instrument(SYMBOL, name="Test Corp", price=100.0)])


@pytest.fixture
def news_source() -> StaticNewsSource:
    return StaticNewsSource({SYMBOL: POSITIVE_ARTICLES})


@pytest.fixture
def social_source() -> StaticSocialSource:
    return StaticSocialSource({
        SYMBOL: SocialAggregate(
            mention_count=600,
            positive_mentions=50,
            negative_mentions=20,
            neutral_mentions=30,
            sentiment_score=0.3,
            top_mentions=[
                SocialMention("Bullish on TEST!", 0.7),
                SocialMention("TEST looks weak", -0.5),
                SocialMention("TEST volatility this week", 0.1),
            ],
        )
    })


@pytest.fixture
def analyst_source() -> StaticAnalystSource:
    return StaticAnalystSource(default=[
        AnalystRating("Goldman Sachs", "BUY", 150.0, 0.8),
        AnalystRating("Morgan Stanley", "HOLD", 135.0, 0.6),
        AnalystRating("JP Morgan", "BUY", 145.0, 0.7),
    ])


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def cache(metrics) -> TTLCache:
    return TTLCache(metrics=metrics)


@pytest.fixture
def sentiment_engine(registry, news_source, social_source, analyst_source, cache, metrics) -> SentimentEngine:
    return SentimentEngine(
        registry=registry,
        news_source=news_source,
        social_source=social_source,
        analyst_source=analyst_source,
        cache=cache,
        metrics=metrics,
    )


@pytest.fixture
def indicator_engine(uptrend_bars, cache, metrics) -> IndicatorEngine:
    return IndicatorEngine(InMemoryMarketData({SYMBOL: uptrend_bars}), cache=cache, metrics=metrics)


class FailingSource:
    """Every fetch raises."""

    def __init__(self, error: Optional[Exception] = None):
        self.error = error or ConnectionError("source down")
        self.calls = 0

    async def _fail(self, *args, **kwargs):
        self.calls += 1
        raise self.error

    get_bars = fetch_news = fetch_social = fetch_ratings = _fail


# ── Reasoner ──────────────────────────────────────────────────────────────────

class FakeReasoner:
    """Replays scripted responses; an Exception entry is raised instead."""

    provider = "fake"
    model = "fake-1"

    def __init__(self, responses: list[Union[str, Exception]]):
        self.responses = list(responses)
        self.calls: list[tuple[str, float]] = []
        self.closed = False

    async def complete(self, prompt: str, temperature: float) -> str:
        self.calls.append((prompt, temperature))
        index = min(len(self.calls) - 1, len(self.responses) - 1)
        response = self.responses[index]
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self) -> None:
        self.closed = True

    @property
    def temperatures(self) -> list[float]:
        return [t for _, t in self.calls]


def valid_payload(**overrides) -> dict:
    payload = {
        "final_score": 0.6,
        "recommendation": "BUY",
        "confidence": 0.75,
        "time_horizon": "medium_term",
        "risk_level": "MEDIUM",
        "position_size_recommendation": {
            "risk_level": "MODERATE",
            "size_percent": 10.0,
            "rationale": "Trend and sentiment agree",
        },
        "price_targets": {
            "near_term": 110.0,
            "medium_term": 120.0,
            "long_term": 135.0,
            "stop_loss": 95.0,
        },
        "top_drivers": [
            {"factor": "Trend", "impact": "High", "weight": 0.5},
            {"factor": "News", "impact": "Moderate", "weight": 0.3},
        ],
        "evidence_sentences": [
            "Price is above the 20 and 50 day averages",
            "News flow is positive",
            "Analyst consensus is bullish",
        ],
        "explainability_text": "Quantitative trend and sentiment both point higher.",
        "risk_notes": "Watch the 95 support level.",
        "key_levels": {"resistance": [110.0, 120.0], "support": [95.0, 90.0]},
        "catalysts": [
            {"type": "Technical", "description": "Breakout", "timeline": "Short-term", "probability": "MEDIUM"},
        ],
        "technical_summary": "Bullish trend with healthy momentum.",
        "fundamental_summary": "No fundamental data.",
        "sentiment_summary": "Positive news and social tone.",
    }
    payload.update(overrides)
    return payload


def as_response(payload: dict) -> str:
    return "```json\n" + json.dumps(payload) + "\n```"


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def no_sleep() -> SleepRecorder:
    return SleepRecorder()
