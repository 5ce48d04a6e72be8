"""
Sentiment Engine

Builds a SentimentSnapshot for a symbol from three pluggable sources:
- News: lexicon polarity per article, consistency-based confidence
- Social: pre-aggregated mention counts, confidence scales with volume
- Analysts: buy/hold/sell tally weighted by analyst confidence

Sources are combined with weights proportional to each source's own
confidence, so reliable sources dominate automatically. A failing source
contributes nothing and lowers confidence; it never fails the snapshot.
"""

from __future__ import annotations

import asyncio
import math
import re
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Optional
from loguru import logger

from quantfusion.core.cache import TTLCache, sentiment_key
from quantfusion.core.config import CacheConfig
from quantfusion.core.metrics import MetricsCollector
from quantfusion.core.types import DataStatus
from quantfusion.layers.data_providers import (
    AnalystRating,
    AnalystSource,
    InstrumentRegistry,
    NewsArticle,
    NewsSource,
    SentimentHistoryStore,
    SocialAggregate,
    SocialSource,
)


POSITIVE_WORDS = frozenset({
    "bullish", "uptrend", "growth", "rally", "surge", "boom", "expansion",
    "strong", "positive", "optimistic", "confident", "breakout", "momentum",
    "rallying", "soaring", "climbing", "advancing", "gaining", "outperforming",
    "excellent", "outstanding", "remarkable", "exceptional", "favorable",
})

NEGATIVE_WORDS = frozenset({
    "bearish", "downtrend", "decline", "crash", "slump", "recession", "contraction",
    "weak", "negative", "pessimistic", "concern", "concerning", "worry", "drop",
    "falling", "declining", "plunging", "tumbling", "collapsing", "underperforming",
    "terrible", "awful", "disastrous", "devastating", "unfavorable",
})

BUY_RATINGS = {"BUY", "STRONG BUY", "OUTPERFORM"}
SELL_RATINGS = {"SELL", "STRONG SELL", "UNDERPERFORM"}
HOLD_RATINGS = {"HOLD", "NEUTRAL", "MARKET PERFORM"}

DEFAULT_SOURCE_WEIGHTS = {"news": 0.4, "social": 0.3, "analyst": 0.3}

EVIDENCE_THRESHOLD = 0.2
EVIDENCE_NEWS_LIMIT = 3
TREND_THRESHOLD = 0.05

_WORD_RE = re.compile(r"[a-z]+(?:['-][a-z]+)*")


def _clamp(value: float, low: float = -1.0, high: float = 1.0) -> float:
    if not math.isfinite(value):
        return 0.0
    return max(low, min(high, value))


# =============================================================================
# SNAPSHOT RECORDS
# =============================================================================

@dataclass(frozen=True)
class NewsSentiment:
    score: float = 0.0
    confidence: float = 0.0
    articles_analyzed: int = 0
    positive_articles: int = 0
    negative_articles: int = 0
    neutral_articles: int = 0
    score_distribution: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class SocialSentiment:
    score: float = 0.0
    confidence: float = 0.0
    mention_count: int = 0
    sentiment_distribution: dict[str, float] = field(
        default_factory=lambda: {"positive": 0.0, "negative": 0.0, "neutral": 0.0}
    )
    engagement_rate: float = 0.0


@dataclass(frozen=True)
class AnalystSentiment:
    score: float = 0.0
    confidence: float = 0.0
    buy_ratings: int = 0
    hold_ratings: int = 0
    sell_ratings: int = 0
    average_price_target: float = 0.0
    price_target_range: dict[str, float] = field(
        default_factory=lambda: {"min": 0.0, "max": 0.0}
    )


@dataclass(frozen=True)
class EvidenceItem:
    """A single news headline or social mention material enough to cite."""
    type: str  # news, social
    text: str
    sentiment: float
    source: str = ""
    timestamp: str = ""


@dataclass(frozen=True)
class SentimentTrend:
    direction: str = "neutral"  # improving, declining, stable, neutral
    strength: float = 0.0
    change_24h: float = 0.0
    change_7d: float = 0.0


@dataclass(frozen=True)
class SentimentSources:
    news_count: int = 0
    social_mentions: int = 0
    analyst_ratings: int = 0


@dataclass(frozen=True)
class SentimentSnapshot:
    """Combined sentiment for one symbol."""
    symbol: str = ""
    overall_score: float = 0.0  # -1 to 1
    news_sentiment: NewsSentiment = field(default_factory=NewsSentiment)
    social_sentiment: SocialSentiment = field(default_factory=SocialSentiment)
    analyst_sentiment: AnalystSentiment = field(default_factory=AnalystSentiment)
    evidence: list[EvidenceItem] = field(default_factory=list)
    confidence: float = 0.0  # 0 to 1
    trend: SentimentTrend = field(default_factory=SentimentTrend)
    sources: SentimentSources = field(default_factory=SentimentSources)
    status: DataStatus = "ok"
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def empty(cls, symbol: str = "", status: DataStatus = "unavailable") -> "SentimentSnapshot":
        return cls(symbol=symbol, status=status)

    @property
    def is_empty(self) -> bool:
        return self.status == "unavailable"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["generated_at"] = self.generated_at.isoformat()
        return data


# =============================================================================
# SCORING HELPERS
# =============================================================================

def text_sentiment(text: str) -> float:
    """
    Lexicon polarity: (positive - negative) / sqrt(positive + negative).

    The square root damps the swing a single word has on short texts.
    """
    positive = 0
    negative = 0
    for word in _WORD_RE.findall(text.lower()):
        if word in POSITIVE_WORDS:
            positive += 1
        elif word in NEGATIVE_WORDS:
            negative += 1

    total = positive + negative
    if total == 0:
        return 0.0
    return (positive - negative) / math.sqrt(total)


def score_distribution(scores: list[float]) -> dict[str, int]:
    distribution = {
        "very_positive": 0,
        "positive": 0,
        "neutral": 0,
        "negative": 0,
        "very_negative": 0,
    }
    for score in scores:
        if score > 0.5:
            distribution["very_positive"] += 1
        elif score > 0.1:
            distribution["positive"] += 1
        elif score > -0.1:
            distribution["neutral"] += 1
        elif score > -0.5:
            distribution["negative"] += 1
        else:
            distribution["very_negative"] += 1
    return distribution


def source_weights(news_confidence: float, social_confidence: float, analyst_confidence: float) -> dict[str, float]:
    """Each source's confidence normalized to sum to 1."""
    total = news_confidence + social_confidence + analyst_confidence
    if total <= 0:
        return dict(DEFAULT_SOURCE_WEIGHTS)
    return {
        "news": news_confidence / total,
        "social": social_confidence / total,
        "analyst": analyst_confidence / total,
    }


# =============================================================================
# SENTIMENT ENGINE
# =============================================================================

class SentimentEngine:
    """
    Per-symbol sentiment analysis over pluggable sources.

    Any source may be None (treated as absent) or may raise; both cases give
    that source zero weight.
    """

    def __init__(
        self,
        registry: Optional[InstrumentRegistry] = None,
        news_source: Optional[NewsSource] = None,
        social_source: Optional[SocialSource] = None,
        analyst_source: Optional[AnalystSource] = None,
        history: Optional[SentimentHistoryStore] = None,
        cache: Optional[TTLCache] = None,
        metrics: Optional[MetricsCollector] = None,
        cache_config: Optional[CacheConfig] = None,
    ):
        self._registry = registry
        self._news = news_source
        self._social = social_source
        self._analysts = analyst_source
        self._cache = cache
        self._cache_config = cache_config or CacheConfig()
        self._history = history
        if self._history is None and cache is not None:
            self._history = SentimentHistoryStore(cache, self._cache_config)
        self._metrics = metrics or MetricsCollector()

    async def analyze_sentiment(self, symbol: str) -> SentimentSnapshot:
        """Sentiment snapshot for symbol (memoized under sentiment_analysis:<symbol>)."""
        if self._cache is None:
            return await self._analyze(symbol)
        return await self._cache.remember(
            sentiment_key(symbol),
            self._cache_config.sentiment_ttl,
            lambda: self._analyze(symbol),
            cache_if=lambda snap: snap.status != "unavailable",
        )

    async def _analyze(self, symbol: str) -> SentimentSnapshot:
        if self._registry is not None and symbol not in self._registry:
            logger.warning(f"Sentiment requested for unknown instrument {symbol}")
            return SentimentSnapshot.empty(symbol)

        try:
            with self._metrics.timed("sentiment.analyze"):
                return await self._build_snapshot(symbol)
        except Exception as e:
            logger.error(f"Sentiment analysis failed for {symbol}: {e}")
            return SentimentSnapshot.empty(symbol)

    async def _build_snapshot(self, symbol: str) -> SentimentSnapshot:
        news_result, social_result, analyst_result = await asyncio.gather(
            self._fetch(self._news, "fetch_news", symbol),
            self._fetch(self._social, "fetch_social", symbol),
            self._fetch(self._analysts, "fetch_ratings", symbol),
            return_exceptions=True,
        )

        failures = 0
        news: list[NewsArticle] = []
        social = SocialAggregate()
        ratings: list[AnalystRating] = []

        if isinstance(news_result, BaseException):
            failures += self._source_failed("news", symbol, news_result)
        elif news_result is not None:
            news = list(news_result)

        if isinstance(social_result, BaseException):
            failures += self._source_failed("social", symbol, social_result)
        elif social_result is not None:
            social = social_result

        if isinstance(analyst_result, BaseException):
            failures += self._source_failed("analyst", symbol, analyst_result)
        elif analyst_result is not None:
            ratings = list(analyst_result)

        article_scores = [text_sentiment(article.text) for article in news]
        news_sentiment = self.analyze_news(news, article_scores)
        social_sentiment = self.analyze_social(social)
        analyst_sentiment = self.analyze_analysts(ratings)

        weights = source_weights(
            news_sentiment.confidence,
            social_sentiment.confidence,
            analyst_sentiment.confidence,
        )
        overall = _clamp(
            weights["news"] * news_sentiment.score
            + weights["social"] * social_sentiment.score
            + weights["analyst"] * analyst_sentiment.score
        )

        trend = self.analyze_trend(symbol, overall)
        status: DataStatus = "degraded" if failures else "ok"

        snapshot = SentimentSnapshot(
            symbol=symbol,
            overall_score=overall,
            news_sentiment=news_sentiment,
            social_sentiment=social_sentiment,
            analyst_sentiment=analyst_sentiment,
            evidence=self.extract_evidence(news, social, article_scores),
            confidence=self.snapshot_confidence(news, social, ratings),
            trend=trend,
            sources=SentimentSources(
                news_count=len(news),
                social_mentions=social.mention_count,
                analyst_ratings=len(ratings),
            ),
            status=status,
        )

        logger.debug(
            f"Sentiment {symbol}: overall={overall:.3f} conf={snapshot.confidence:.2f} "
            f"weights={weights} status={status}"
        )
        return snapshot

    @staticmethod
    async def _fetch(source: Any, method: str, symbol: str) -> Any:
        if source is None:
            return None
        return await getattr(source, method)(symbol)

    def _source_failed(self, name: str, symbol: str, error: BaseException) -> int:
        logger.warning(f"Sentiment source '{name}' failed for {symbol}: {error}")
        self._metrics.increment(f"source.{name}.failure")
        return 1

    # =========================================================================
    # PER-SOURCE ANALYSIS
    # =========================================================================

    def analyze_news(self, news: list[NewsArticle], scores: Optional[list[float]] = None) -> NewsSentiment:
        if not news:
            return NewsSentiment()

        if scores is None:
            scores = [text_sentiment(article.text) for article in news]
        positive = negative = neutral = 0
        for score in scores:
            if score > 0.1:
                positive += 1
            elif score < -0.1:
                negative += 1
            else:
                neutral += 1

        average = sum(scores) / len(scores)
        high, low = max(scores), min(scores)
        abs_max = max(abs(high), abs(low))
        confidence = 1 - (high - low) / (2 * abs_max) if abs_max > 0 else 0.5

        return NewsSentiment(
            score=_clamp(average),
            confidence=_clamp(confidence, 0.0, 1.0),
            articles_analyzed=len(news),
            positive_articles=positive,
            negative_articles=negative,
            neutral_articles=neutral,
            score_distribution=score_distribution(scores),
        )

    def analyze_social(self, social: SocialAggregate) -> SocialSentiment:
        total = social.mention_count
        if total <= 0:
            return SocialSentiment()

        engagement = getattr(self._social, "engagement_rate", None)
        return SocialSentiment(
            score=_clamp(social.sentiment_score),
            confidence=min(1.0, total / 500),
            mention_count=total,
            sentiment_distribution={
                "positive": social.positive_mentions / total,
                "negative": social.negative_mentions / total,
                "neutral": social.neutral_mentions / total,
            },
            engagement_rate=engagement() if callable(engagement) else 0.0,
        )

    @staticmethod
    def analyze_analysts(ratings: list[AnalystRating]) -> AnalystSentiment:
        if not ratings:
            return AnalystSentiment()

        buy = hold = sell = 0
        total_confidence = 0.0
        targets: list[float] = []
        for rating in ratings:
            label = rating.rating.upper()
            if label in BUY_RATINGS:
                buy += 1
            elif label in SELL_RATINGS:
                sell += 1
            elif label in HOLD_RATINGS:
                hold += 1
            total_confidence += rating.confidence if rating.confidence is not None else 0.5
            if rating.price_target is not None:
                targets.append(rating.price_target)

        n = len(ratings)
        mean_confidence = total_confidence / n
        return AnalystSentiment(
            score=_clamp((buy - sell) / n * mean_confidence),
            confidence=_clamp(mean_confidence, 0.0, 1.0),
            buy_ratings=buy,
            hold_ratings=hold,
            sell_ratings=sell,
            average_price_target=sum(targets) / len(targets) if targets else 0.0,
            price_target_range={
                "min": min(targets) if targets else 0.0,
                "max": max(targets) if targets else 0.0,
            },
        )

    # =========================================================================
    # EVIDENCE, CONFIDENCE, TREND
    # =========================================================================

    @staticmethod
    def extract_evidence(
        news: list[NewsArticle],
        social: SocialAggregate,
        scores: Optional[list[float]] = None,
    ) -> list[EvidenceItem]:
        """Material headlines and mentions. `scores` are the per-article polarities, aligned with `news`."""
        evidence: list[EvidenceItem] = []
        if scores is None:
            scores = [text_sentiment(article.text) for article in news[:EVIDENCE_NEWS_LIMIT]]

        for article, score in zip(news[:EVIDENCE_NEWS_LIMIT], scores):
            if abs(score) > EVIDENCE_THRESHOLD:
                published = article.published_at
                evidence.append(EvidenceItem(
                    type="news",
                    text=article.title,
                    sentiment=score,
                    source=article.source,
                    timestamp=published.isoformat() if isinstance(published, datetime) else str(published),
                ))

        now = datetime.now(timezone.utc).isoformat()
        for mention in social.top_mentions:
            if abs(mention.sentiment) > EVIDENCE_THRESHOLD:
                evidence.append(EvidenceItem(
                    type="social",
                    text=mention.text,
                    sentiment=mention.sentiment,
                    timestamp=now,
                ))

        return evidence

    @staticmethod
    def snapshot_confidence(
        news: list[NewsArticle],
        social: SocialAggregate,
        ratings: list[AnalystRating],
    ) -> float:
        news_conf = min(1.0, len(news) / 10) if news else 0.0
        social_conf = min(1.0, social.mention_count / 500) if social.mention_count > 0 else 0.0
        analyst_conf = min(1.0, len(ratings) / 5) if ratings else 0.0
        return (news_conf + social_conf + analyst_conf) / 3

    def analyze_trend(self, symbol: str, current: float) -> SentimentTrend:
        """Compare the current score with the rolling history (oldest first)."""
        history = self._history.get(symbol) if self._history is not None else []
        if not history:
            return SentimentTrend()

        series = history + [current]
        change = current - history[-1]
        if change > TREND_THRESHOLD:
            direction = "improving"
        elif change < -TREND_THRESHOLD:
            direction = "declining"
        else:
            direction = "stable"

        return SentimentTrend(
            direction=direction,
            strength=abs(change),
            change_24h=change,
            change_7d=current - series[0] if len(series) >= 7 else 0.0,
        )

    def store_snapshot(self, symbol: str, snapshot: SentimentSnapshot) -> None:
        """Record the snapshot's overall score in the rolling history."""
        if self._history is None or snapshot.status == "unavailable":
            return
        history = self._history.append(symbol, snapshot.overall_score)
        logger.debug(f"Sentiment history for {symbol}: {len(history)} points")
