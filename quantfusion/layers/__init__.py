"""QuantFusion pipeline layers."""

from quantfusion.layers.data_providers import (
    InstrumentRegistry,
    Instrument,
    InMemoryMarketData,
    CsvMarketData,
    NewsApiSource,
    StaticNewsSource,
    SimulatedSocialSource,
    StaticAnalystSource,
    SentimentHistoryStore,
)
from quantfusion.layers.indicators import IndicatorEngine, IndicatorSet
from quantfusion.layers.sentiment import SentimentEngine, SentimentSnapshot
from quantfusion.layers.regime import RegimeClassifier, MarketRegime, actionable_insights
from quantfusion.layers.fusion import FusionEngine, FusionResult
from quantfusion.layers.reasoner import create_reasoner
from quantfusion.layers.validation import ResponseValidator, AnalysisPayload
from quantfusion.layers.orchestrator import RecommendationOrchestrator, FinalAnalysis

__all__ = [
    # Data
    "InstrumentRegistry",
    "Instrument",
    "InMemoryMarketData",
    "CsvMarketData",
    "NewsApiSource",
    "StaticNewsSource",
    "SimulatedSocialSource",
    "StaticAnalystSource",
    "SentimentHistoryStore",
    # Engines
    "IndicatorEngine",
    "IndicatorSet",
    "SentimentEngine",
    "SentimentSnapshot",
    "RegimeClassifier",
    "MarketRegime",
    "actionable_insights",
    "FusionEngine",
    "FusionResult",
    # Reasoning
    "create_reasoner",
    "ResponseValidator",
    "AnalysisPayload",
    "RecommendationOrchestrator",
    "FinalAnalysis",
]
