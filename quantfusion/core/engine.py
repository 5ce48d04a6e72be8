"""QuantFusion Core Engine - wires and runs the pipeline."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional
from loguru import logger

from quantfusion.core.cache import TTLCache
from quantfusion.core.circuit_breaker import CircuitBreaker
from quantfusion.core.config import QuantFusionConfig
from quantfusion.core.metrics import MetricsCollector


class QuantFusionEngine:
    """
    QuantFusion pipeline facade.

    Owns one cache and one metrics collector and hands them to every
    component:
    1. IndicatorEngine and SentimentEngine
    2. RegimeClassifier
    3. FusionEngine
    4. RecommendationOrchestrator (+ analysis store)

    Unknown symbols raise SymbolNotFoundError before any computation.
    """

    def __init__(
        self,
        config: Optional[QuantFusionConfig] = None,
        market_data: Any = None,
        registry: Any = None,
        news_source: Any = None,
        social_source: Any = None,
        analyst_source: Any = None,
        reasoner: Any = None,
        store: Any = None,
        metrics: Optional[MetricsCollector] = None,
        cache: Optional[TTLCache] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        # Import here to avoid circular imports
        from quantfusion.layers.data_providers import (
            CsvMarketData,
            Instrument,
            InstrumentRegistry,
            NewsApiSource,
            SentimentHistoryStore,
            SimulatedSocialSource,
            StaticAnalystSource,
            StaticNewsSource,
        )
        from quantfusion.layers.fusion import FusionEngine
        from quantfusion.layers.indicators import IndicatorEngine
        from quantfusion.layers.orchestrator import RecommendationOrchestrator
        from quantfusion.layers.reasoner import create_reasoner
        from quantfusion.layers.regime import RegimeClassifier
        from quantfusion.layers.sentiment import SentimentEngine
        from quantfusion.storage.analysis_store import JsonlAnalysisStore

        self.config = config or QuantFusionConfig.load()
        self.metrics = metrics or MetricsCollector()
        self.cache = cache or TTLCache(metrics=self.metrics)

        self.market_data = market_data or CsvMarketData(self.config.data.data_dir)
        if registry is None:
            symbols = self.market_data.available_symbols() if hasattr(self.market_data, "available_symbols") else []
            registry = InstrumentRegistry([Instrument(symbol) for symbol in symbols])
        self.registry = registry

        if news_source is None:
            if self.config.data.newsapi_key:
                news_source = NewsApiSource(self.config.data, self.cache, self.config.cache.news_ttl)
            else:
                logger.info("NEWSAPI_KEY not set - news sentiment disabled")
                news_source = StaticNewsSource()
        self._news = news_source

        self.indicator_engine = IndicatorEngine(
            self.market_data, self.cache, self.metrics, self.config.cache
        )
        self.sentiment_engine = SentimentEngine(
            registry=self.registry,
            news_source=news_source,
            social_source=social_source or SimulatedSocialSource(self.config.data.social_seed),
            analyst_source=analyst_source or StaticAnalystSource(),
            history=SentimentHistoryStore(self.cache, self.config.cache),
            cache=self.cache,
            metrics=self.metrics,
            cache_config=self.config.cache,
        )
        self.regime_classifier = RegimeClassifier()
        self.fusion_engine = FusionEngine(
            self.indicator_engine,
            self.sentiment_engine,
            regime_classifier=self.regime_classifier,
            cache=self.cache,
            metrics=self.metrics,
            config=self.config.fusion,
            cache_config=self.config.cache,
            period=self.config.data.default_period,
        )

        self.reasoner = reasoner if reasoner is not None else create_reasoner(self.config.llm)
        self.store = store if store is not None else JsonlAnalysisStore(
            self.config.system.analysis_store_path
        )
        self.orchestrator = RecommendationOrchestrator(
            self.fusion_engine,
            self.registry,
            reasoner=self.reasoner,
            config=self.config.llm,
            store=self.store,
            metrics=self.metrics,
            breaker=CircuitBreaker("reasoner", failure_threshold=5, success_threshold=2, timeout_seconds=60.0),
            sleep=sleep,
        )

        logger.info("QuantFusion Engine initialized")

    async def _prepare(self, symbol: str) -> None:
        """Precondition check plus a last-price refresh from the newest bar."""
        self.registry.require(symbol)
        try:
            bars = await self.market_data.get_bars(symbol, 1)
        except Exception as e:
            logger.warning(f"Could not refresh price for {symbol}: {e}")
            return
        if bars:
            self.registry.update_price(symbol, bars[-1].close)

    async def analyze(self, symbol: str, user_id: Optional[int] = None):
        """Full pipeline run; returns the stored FinalAnalysis."""
        await self._prepare(symbol)
        analysis = await self.orchestrator.generate_analysis(symbol, user_id)
        await self._store_sentiment(symbol)

        logger.info(
            f"{symbol}: {analysis.recommendation} score={analysis.final_score:+.3f} "
            f"confidence={analysis.confidence:.2f} fallback={analysis.is_fallback}"
        )
        return analysis

    async def analyze_batch(self, symbols: list[str], user_id: Optional[int] = None) -> dict:
        for symbol in symbols:
            if symbol in self.registry:
                await self._prepare(symbol)
        results = await self.orchestrator.generate_batch_analysis(symbols, user_id)

        for symbol in results["successful"]:
            await self._store_sentiment(symbol)
        return results

    async def _store_sentiment(self, symbol: str) -> None:
        # Hits the cached snapshot from the fusion run
        snapshot = await self.sentiment_engine.analyze_sentiment(symbol)
        self.sentiment_engine.store_snapshot(symbol, snapshot)

    async def indicators(self, symbol: str, period: Optional[int] = None):
        await self._prepare(symbol)
        return await self.indicator_engine.calculate_indicators(
            symbol, period or self.config.data.default_period
        )

    async def sentiment(self, symbol: str):
        await self._prepare(symbol)
        return await self.sentiment_engine.analyze_sentiment(symbol)

    async def fusion(self, symbol: str):
        await self._prepare(symbol)
        return await self.fusion_engine.generate_fusion_analysis(symbol)

    async def regime(self, symbol: str):
        await self._prepare(symbol)
        quant, sentiment = await self.fusion_engine.fetch_inputs(symbol)
        return self.regime_classifier.classify(quant, sentiment)

    def get_status(self) -> dict:
        return {
            "symbols": self.registry.symbols(),
            "reasoner": getattr(self.reasoner, "provider", None),
            "metrics": self.metrics.snapshot(),
        }

    async def close(self) -> None:
        for resource in (self._news, self.reasoner):
            close = getattr(resource, "close", None)
            if close is not None:
                await close()
        logger.info("QuantFusion Engine closed")
