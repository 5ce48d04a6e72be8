"""Tests for the sentiment engine."""

from __future__ import annotations

import math
import random
from dataclasses import FrozenInstanceError

import pytest

from quantfusion.core.cache import sentiment_key
from quantfusion.layers.data_providers import (
    AnalystRating,
    NewsArticle,
    SentimentHistoryStore,
    SimulatedSocialSource,
    SocialAggregate,
)
from quantfusion.layers.sentiment import (
    SentimentEngine,
    SentimentSnapshot,
    score_distribution,
    source_weights,
    text_sentiment,
)

from tests.conftest import POSITIVE_ARTICLES, SYMBOL, FailingSource


class TestTextSentiment:
    def test_positive_words(self):
        assert text_sentiment("Strong growth and a bullish rally") == pytest.approx(2.0)

    def test_negative_word(self):
        assert text_sentiment("Markets crash") == pytest.approx(-1.0)

    def test_mixed_words_cancel(self):
        assert text_sentiment("bullish start, weak finish") == 0.0

    def test_no_keywords(self):
        assert text_sentiment("Quarterly update") == 0.0

    def test_case_and_punctuation_ignored(self):
        assert text_sentiment("BULLISH!!!") == pytest.approx(1.0)


class TestHelpers:
    def test_score_distribution_buckets(self):
        distribution = score_distribution([0.9, 0.3, 0.0, -0.3, -0.9, 0.05])
        assert distribution == {
            "very_positive": 1,
            "positive": 1,
            "neutral": 2,
            "negative": 1,
            "very_negative": 1,
        }

    def test_source_weights_normalize_confidence(self):
        weights = source_weights(0.5, 0.25, 0.25)
        assert weights == {"news": 0.5, "social": 0.25, "analyst": 0.25}

    def test_source_weights_fall_back_to_defaults(self):
        assert source_weights(0.0, 0.0, 0.0) == {"news": 0.4, "social": 0.3, "analyst": 0.3}


class TestPerSourceAnalysis:
    def test_news(self):
        engine = SentimentEngine()
        articles = [NewsArticle(a.title, a.description) for a in POSITIVE_ARTICLES]
        news = engine.analyze_news(articles)
        assert news.articles_analyzed == 3
        assert news.positive_articles == 2
        assert news.neutral_articles == 1
        # Mean of 2.0, sqrt(2) and 0 exceeds 1
        assert news.score == 1.0
        assert news.confidence == pytest.approx(0.5)
        evidence = SentimentEngine.extract_evidence(articles, SocialAggregate())
        assert [e.sentiment for e in evidence] == pytest.approx([2.0, math.sqrt(2)])

    def test_news_with_single_article_of_no_polarity(self):
        news = SentimentEngine().analyze_news([NewsArticle("Quarterly update")])
        assert news.score == 0.0
        assert news.confidence == 0.5

    def test_no_news(self):
        news = SentimentEngine().analyze_news([])
        assert news.score == 0.0
        assert news.confidence == 0.0

    def test_analysts(self):
        ratings = [
            AnalystRating("Goldman Sachs", "BUY", 150.0, 0.8),
            AnalystRating("Morgan Stanley", "HOLD", 135.0, 0.6),
            AnalystRating("JP Morgan", "BUY", 145.0, 0.7),
        ]
        analysts = SentimentEngine.analyze_analysts(ratings)
        assert analysts.score == pytest.approx(0.4667, abs=1e-4)
        assert analysts.confidence == pytest.approx(0.7)
        assert analysts.buy_ratings == 2
        assert analysts.hold_ratings == 1
        assert analysts.average_price_target == pytest.approx(143.3333, abs=1e-4)
        assert analysts.price_target_range == {"min": 135.0, "max": 150.0}

    def test_unanimous_sell(self):
        ratings = [AnalystRating("A", "SELL", None, 1.0), AnalystRating("B", "Strong Sell", None, 1.0)]
        assert SentimentEngine.analyze_analysts(ratings).score == -1.0

    def test_social(self, social_source):
        social = SocialAggregate(mention_count=250, positive_mentions=100, negative_mentions=50,
                                 neutral_mentions=100, sentiment_score=0.2)
        result = SentimentEngine(social_source=social_source).analyze_social(social)
        assert result.confidence == pytest.approx(0.5)
        assert result.sentiment_distribution["positive"] == pytest.approx(0.4)
        assert result.engagement_rate == 0.0

    def test_social_engagement_from_simulated_feed(self):
        source = SimulatedSocialSource(rng=random.Random(7))
        result = SentimentEngine(social_source=source).analyze_social(SocialAggregate(mention_count=100))
        assert 0.01 <= result.engagement_rate <= 0.10

    def test_snapshot_confidence(self):
        news = [NewsArticle("a")] * 3
        social = SocialAggregate(mention_count=600)
        ratings = [AnalystRating("A", "BUY")] * 3
        confidence = SentimentEngine.snapshot_confidence(news, social, ratings)
        assert confidence == pytest.approx((0.3 + 1.0 + 0.6) / 3)


class TestAnalyzeSentiment:
    @pytest.mark.asyncio
    async def test_full_snapshot(self, sentiment_engine):
        snapshot = await sentiment_engine.analyze_sentiment(SYMBOL)
        assert snapshot.status == "ok"
        assert -1.0 <= snapshot.overall_score <= 1.0
        assert 0.0 <= snapshot.confidence <= 1.0

        # Confidence-weighted: news 0.5, social 1.0, analysts 0.7
        expected = (0.5 * 1.0 + 1.0 * 0.3 + 0.7 * (0.7 * 2 / 3)) / 2.2
        assert snapshot.overall_score == pytest.approx(expected)
        assert snapshot.confidence == pytest.approx(1.9 / 3)
        assert snapshot.sources.news_count == 3
        assert snapshot.sources.social_mentions == 600
        assert snapshot.sources.analyst_ratings == 3

    @pytest.mark.asyncio
    async def test_evidence_keeps_material_items(self, sentiment_engine):
        snapshot = await sentiment_engine.analyze_sentiment(SYMBOL)
        kinds = [(e.type, e.text) for e in snapshot.evidence]
        assert kinds == [
            ("news", "Strong growth and a bullish rally"),
            ("news", "Analysts optimistic as momentum builds"),
            ("social", "Bullish on TEST!"),
            ("social", "TEST looks weak"),
        ]
        assert all(abs(e.sentiment) > 0.2 for e in snapshot.evidence)

    @pytest.mark.asyncio
    async def test_unknown_symbol_is_unavailable(self, sentiment_engine, cache):
        snapshot = await sentiment_engine.analyze_sentiment("NOPE")
        assert snapshot.status == "unavailable"
        assert snapshot.is_empty
        assert snapshot.overall_score == 0.0
        assert not cache.has(sentiment_key("NOPE"))

    @pytest.mark.asyncio
    async def test_failing_news_degrades(self, registry, social_source, analyst_source, metrics):
        engine = SentimentEngine(
            registry=registry,
            news_source=FailingSource(),
            social_source=social_source,
            analyst_source=analyst_source,
            metrics=metrics,
        )
        snapshot = await engine.analyze_sentiment(SYMBOL)
        assert snapshot.status == "degraded"
        assert snapshot.news_sentiment.confidence == 0.0
        assert snapshot.sources.news_count == 0
        assert metrics.count("source.news.failure") == 1
        expected = (1.0 * 0.3 + 0.7 * (0.7 * 2 / 3)) / 1.7
        assert snapshot.overall_score == pytest.approx(expected)

    @pytest.mark.asyncio
    async def test_all_sources_failing_still_returns_snapshot(self, registry, metrics):
        failing = FailingSource()
        engine = SentimentEngine(registry, failing, failing, failing, metrics=metrics)
        snapshot = await engine.analyze_sentiment(SYMBOL)
        assert snapshot.status == "degraded"
        assert snapshot.overall_score == 0.0
        assert snapshot.confidence == 0.0
        assert failing.calls == 3

    @pytest.mark.asyncio
    async def test_snapshot_is_memoized(self, sentiment_engine, metrics):
        first = await sentiment_engine.analyze_sentiment(SYMBOL)
        second = await sentiment_engine.analyze_sentiment(SYMBOL)
        assert first is second
        assert metrics.count("cache.sentiment_analysis.hit") == 1

    @pytest.mark.asyncio
    async def test_cached_snapshot_is_frozen(self, sentiment_engine):
        snapshot = await sentiment_engine.analyze_sentiment(SYMBOL)
        score = snapshot.overall_score

        with pytest.raises(FrozenInstanceError):
            snapshot.overall_score = 1.0
        with pytest.raises(FrozenInstanceError):
            snapshot.news_sentiment.score = -1.0
        with pytest.raises(FrozenInstanceError):
            snapshot.evidence[0].sentiment = 0.0

        again = await sentiment_engine.analyze_sentiment(SYMBOL)
        assert again is snapshot
        assert again.overall_score == score


class TestTrend:
    @pytest.mark.asyncio
    async def test_no_history_is_neutral(self, sentiment_engine):
        snapshot = await sentiment_engine.analyze_sentiment(SYMBOL)
        assert snapshot.trend.direction == "neutral"

    @pytest.mark.asyncio
    async def test_rising_score_is_improving(self, sentiment_engine, cache):
        SentimentHistoryStore(cache).append(SYMBOL, 0.1)
        snapshot = await sentiment_engine.analyze_sentiment(SYMBOL)
        assert snapshot.trend.direction == "improving"
        assert snapshot.trend.change_24h == pytest.approx(snapshot.overall_score - 0.1)
        assert snapshot.trend.change_7d == 0.0

    def test_small_change_is_stable(self, sentiment_engine, cache):
        SentimentHistoryStore(cache).append(SYMBOL, 0.30)
        assert sentiment_engine.analyze_trend(SYMBOL, 0.32).direction == "stable"

    def test_falling_score_is_declining(self, sentiment_engine, cache):
        store = SentimentHistoryStore(cache)
        for score in (0.5, 0.4, 0.3, 0.3, 0.2, 0.2):
            store.append(SYMBOL, score)
        trend = sentiment_engine.analyze_trend(SYMBOL, 0.0)
        assert trend.direction == "declining"
        assert trend.change_7d == pytest.approx(-0.5)

    def test_store_snapshot_appends_and_skips_unavailable(self, sentiment_engine, cache):
        sentiment_engine.store_snapshot(SYMBOL, SentimentSnapshot(symbol=SYMBOL, overall_score=0.4))
        sentiment_engine.store_snapshot(SYMBOL, SentimentSnapshot.empty(SYMBOL))
        assert SentimentHistoryStore(cache).get(SYMBOL) == [0.4]

    def test_history_window_is_bounded(self, cache):
        store = SentimentHistoryStore(cache)
        for i in range(10):
            history = store.append(SYMBOL, i / 10)
        assert len(history) == 7
        assert history[0] == pytest.approx(0.3)
        assert math.isclose(history[-1], 0.9)
