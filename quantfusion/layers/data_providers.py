"""
Data Providers for the fusion pipeline

Boundary collaborators the engines read from:
- Market bars (in-memory or CSV on disk)
- Instrument registry (known symbols and last price)
- News (NewsAPI)
- Social aggregates (simulated, seedable)
- Analyst ratings (static panel)
- Rolling sentiment history
"""

from __future__ import annotations

import asyncio
import aiohttp
import random
from datetime import datetime, timezone
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol, Union
import pandas as pd
from loguru import logger

from quantfusion.core.cache import TTLCache, news_key, sentiment_history_key
from quantfusion.core.config import CacheConfig, DataConfig
from quantfusion.core.exceptions import SourceUnavailableError, SymbolNotFoundError
from quantfusion.core.types import OHLCV


# Search aliases for news queries
SYMBOL_ALIASES: dict[str, str] = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "BTCUSDT": "Bitcoin",
    "ETHUSDT": "Ethereum",
    "BNBUSDT": "Binance Coin",
    "AAPL": "apple",
    "GOOGL": "google alphabet",
    "TSLA": "Tesla",
    "MSFT": "Microsoft",
    "AMZN": "Amazon",
}


def symbol_alias(symbol: str) -> str:
    return SYMBOL_ALIASES.get(symbol.upper(), symbol)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class Instrument:
    """A tradable instrument known to the pipeline."""
    symbol: str
    name: str = ""
    asset_type: str = "equity"
    price: float = 0.0
    is_active: bool = True


@dataclass(frozen=True)
class NewsArticle:
    """Single news article."""
    title: str
    description: str = ""
    content: str = ""
    source: str = "Unknown"
    published_at: Union[datetime, str] = field(default_factory=lambda: datetime.now(timezone.utc))
    url: str = ""

    @property
    def text(self) -> str:
        return f"{self.title} {self.description} {self.content}"


@dataclass
class SocialMention:
    text: str
    sentiment: float


@dataclass
class SocialAggregate:
    """Pre-aggregated social media activity for a symbol."""
    mention_count: int = 0
    positive_mentions: int = 0
    negative_mentions: int = 0
    neutral_mentions: int = 0
    sentiment_score: float = 0.0
    top_mentions: list[SocialMention] = field(default_factory=list)


@dataclass
class AnalystRating:
    analyst: str
    rating: str
    price_target: Optional[float] = None
    confidence: float = 0.5


# =============================================================================
# SOURCE PROTOCOLS
# =============================================================================

class MarketDataSource(Protocol):
    async def get_bars(self, symbol: str, limit: int) -> list[OHLCV]:
        """Most recent `limit` bars, oldest first."""
        ...


class NewsSource(Protocol):
    async def fetch_news(self, symbol: str) -> list[NewsArticle]:
        ...


class SocialSource(Protocol):
    async def fetch_social(self, symbol: str) -> SocialAggregate:
        ...


class AnalystSource(Protocol):
    async def fetch_ratings(self, symbol: str) -> list[AnalystRating]:
        ...


# =============================================================================
# MARKET DATA
# =============================================================================

class InMemoryMarketData:
    """Bars held in memory, keyed by symbol."""

    def __init__(self, bars: Optional[dict[str, list[OHLCV]]] = None):
        self._bars: dict[str, list[OHLCV]] = {}
        for symbol, series in (bars or {}).items():
            self.set_bars(symbol, series)

    def set_bars(self, symbol: str, bars: list[OHLCV]) -> None:
        self._bars[symbol] = sorted(bars, key=lambda b: b.timestamp)

    def append(self, symbol: str, bar: OHLCV) -> None:
        self._bars.setdefault(symbol, []).append(bar)

    async def get_bars(self, symbol: str, limit: int) -> list[OHLCV]:
        bars = self._bars.get(symbol, [])
        return list(bars[-limit:]) if limit > 0 else []


class CsvMarketData:
    """
    Reads `<data_dir>/<SYMBOL>.csv` with columns
    timestamp, open, high, low, close, volume.
    """

    REQUIRED_COLUMNS = ("timestamp", "open", "high", "low", "close", "volume")

    def __init__(self, data_dir: Union[str, Path]):
        self.data_dir = Path(data_dir)

    def path_for(self, symbol: str) -> Path:
        return self.data_dir / f"{symbol}.csv"

    def available_symbols(self) -> list[str]:
        if not self.data_dir.exists():
            return []
        return sorted(p.stem for p in self.data_dir.glob("*.csv"))

    def _load(self, symbol: str, limit: int) -> list[OHLCV]:
        path = self.path_for(symbol)
        if not path.exists():
            raise SourceUnavailableError("csv", f"no bar file at {path}")

        df = pd.read_csv(path)
        missing = [c for c in self.REQUIRED_COLUMNS if c not in df.columns]
        if missing:
            raise SourceUnavailableError("csv", f"{path.name} missing columns {missing}")

        df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
        df = df.dropna(subset=list(self.REQUIRED_COLUMNS)).sort_values("timestamp").tail(limit)

        return [
            OHLCV(
                timestamp=row.timestamp.to_pydatetime(),
                open=float(row.open),
                high=float(row.high),
                low=float(row.low),
                close=float(row.close),
                volume=float(row.volume),
                symbol=symbol,
            )
            for row in df.itertuples(index=False)
        ]

    async def get_bars(self, symbol: str, limit: int) -> list[OHLCV]:
        return await asyncio.to_thread(self._load, symbol, limit)


# =============================================================================
# INSTRUMENTS
# =============================================================================

class InstrumentRegistry:
    """Known instruments; the precondition check for every pipeline run."""

    def __init__(self, instruments: Optional[list[Instrument]] = None):
        self._instruments: dict[str, Instrument] = {}
        for instrument in instruments or []:
            self.register(instrument)

    def register(self, instrument: Instrument) -> None:
        self._instruments[instrument.symbol] = instrument

    def get(self, symbol: str) -> Optional[Instrument]:
        instrument = self._instruments.get(symbol)
        if instrument is None or not instrument.is_active:
            return None
        return instrument

    def require(self, symbol: str) -> Instrument:
        instrument = self.get(symbol)
        if instrument is None:
            raise SymbolNotFoundError(symbol)
        return instrument

    def current_price(self, symbol: str) -> float:
        instrument = self.get(symbol)
        return instrument.price if instrument else 0.0

    def update_price(self, symbol: str, price: float) -> None:
        instrument = self._instruments.get(symbol)
        if instrument is not None:
            instrument.price = price

    def symbols(self) -> list[str]:
        return [s for s, i in self._instruments.items() if i.is_active]

    def __contains__(self, symbol: str) -> bool:
        return self.get(symbol) is not None


# =============================================================================
# NEWS
# =============================================================================

class NewsApiSource:
    """
    NewsAPI `everything` endpoint.

    Non-200 answers and transport errors raise SourceUnavailableError; the
    sentiment engine turns that into a zero-confidence news input.
    """

    def __init__(
        self,
        config: DataConfig,
        cache: Optional[TTLCache] = None,
        cache_ttl: int = 1800,
    ):
        self.config = config
        self._cache = cache
        self._cache_ttl = cache_ttl
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.http_timeout_seconds)
            self._session = aiohttp.ClientSession(
                timeout=timeout,
                headers={"User-Agent": "QuantFusion/1.0"},
            )
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def fetch_news(self, symbol: str) -> list[NewsArticle]:
        if not self.config.newsapi_key:
            raise SourceUnavailableError("newsapi", "no API key configured")

        if self._cache is not None:
            return await self._cache.remember(
                news_key(symbol), self._cache_ttl, lambda: self._request(symbol)
            )
        return await self._request(symbol)

    async def _request(self, symbol: str) -> list[NewsArticle]:
        params = {
            "q": f"{symbol} OR {symbol_alias(symbol)}",
            "language": "en",
            "sortBy": "publishedAt",
            "pageSize": str(self.config.news_page_size),
            "apiKey": self.config.newsapi_key,
        }
        session = await self._get_session()

        try:
            async with session.get(self.config.newsapi_url, params=params) as resp:
                if resp.status != 200:
                    logger.warning(f"Failed to fetch news for {symbol}: {resp.status}")
                    raise SourceUnavailableError("newsapi", f"HTTP {resp.status}")
                data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SourceUnavailableError("newsapi", str(e)) from e

        articles = [self._parse_article(a) for a in data.get("articles", [])]
        logger.debug(f"NewsAPI returned {len(articles)} articles for {symbol}")
        return articles

    @staticmethod
    def _parse_article(article: dict) -> NewsArticle:
        published = article.get("publishedAt") or ""
        try:
            ts: Union[datetime, str] = datetime.fromisoformat(published.replace("Z", "+00:00"))
        except ValueError:
            ts = datetime.now(timezone.utc)

        return NewsArticle(
            title=article.get("title") or "",
            description=article.get("description") or "",
            content=article.get("content") or "",
            source=(article.get("source") or {}).get("name") or "Unknown",
            published_at=ts,
            url=article.get("url") or "",
        )


class StaticNewsSource:
    """Fixed articles per symbol (offline runs, tests)."""

    def __init__(self, articles: Optional[dict[str, list[NewsArticle]]] = None):
        self._articles = articles or {}

    async def fetch_news(self, symbol: str) -> list[NewsArticle]:
        return list(self._articles.get(symbol, []))


# =============================================================================
# SOCIAL
# =============================================================================

class SimulatedSocialSource:
    """
    Stand-in social feed until a real Twitter/Reddit integration exists.

    Uses its own random.Random so runs are reproducible given a seed.
    """

    def __init__(self, seed: Optional[int] = None, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random(seed)

    async def fetch_social(self, symbol: str) -> SocialAggregate:
        rng = self._rng
        return SocialAggregate(
            mention_count=rng.randint(100, 1000),
            positive_mentions=rng.randint(30, 60),
            negative_mentions=rng.randint(20, 40),
            neutral_mentions=rng.randint(10, 30),
            sentiment_score=rng.randint(-30, 40) / 100,
            top_mentions=[
                SocialMention(f"Bullish on {symbol}! Technical analysis looks strong.", 0.7),
                SocialMention(f"{symbol} showing signs of weakness, be careful.", -0.5),
                SocialMention(f"{symbol} volatility expected this week.", 0.1),
            ],
        )

    def engagement_rate(self) -> float:
        return self._rng.randint(1, 10) / 100


class StaticSocialSource:
    """Fixed social aggregates per symbol."""

    def __init__(self, aggregates: Optional[dict[str, SocialAggregate]] = None):
        self._aggregates = aggregates or {}

    async def fetch_social(self, symbol: str) -> SocialAggregate:
        return self._aggregates.get(symbol, SocialAggregate())


# =============================================================================
# ANALYSTS
# =============================================================================

DEFAULT_ANALYST_PANEL: list[AnalystRating] = [
    AnalystRating("Goldman Sachs", "BUY", 150.0, 0.8),
    AnalystRating("Morgan Stanley", "HOLD", 135.0, 0.6),
    AnalystRating("JP Morgan", "BUY", 145.0, 0.7),
]


class StaticAnalystSource:
    """Analyst ratings from a fixed panel, optionally per symbol."""

    def __init__(
        self,
        ratings: Optional[dict[str, list[AnalystRating]]] = None,
        default: Optional[list[AnalystRating]] = None,
    ):
        self._ratings = ratings or {}
        self._default = DEFAULT_ANALYST_PANEL if default is None else default

    async def fetch_ratings(self, symbol: str) -> list[AnalystRating]:
        return list(self._ratings.get(symbol, self._default))


# =============================================================================
# SENTIMENT HISTORY
# =============================================================================

class SentimentHistoryStore:
    """Rolling per-symbol list of overall sentiment scores, oldest first."""

    def __init__(self, cache: TTLCache, config: Optional[CacheConfig] = None):
        self._cache = cache
        self._config = config or CacheConfig()

    def get(self, symbol: str) -> list[float]:
        return list(self._cache.get(sentiment_history_key(symbol), []))

    def append(self, symbol: str, score: float) -> list[float]:
        history = self.get(symbol)
        history.append(float(score))
        window = self._config.sentiment_history_window
        if len(history) > window:
            history = history[-window:]
        self._cache.set(
            sentiment_history_key(symbol), history, self._config.sentiment_history_ttl
        )
        return history

    def clear(self, symbol: str) -> None:
        self._cache.delete(sentiment_history_key(symbol))
