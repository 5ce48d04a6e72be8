"""
QuantFusion - Quantitative / Sentiment Fusion Recommendations

Turns price history and market sentiment into a validated trade
recommendation:

Architecture:
    IndicatorEngine: technical indicators and composite score
    SentimentEngine: news, social and analyst sentiment
    RegimeClassifier: bull / bear / neutral with phase
    FusionEngine: volatility-weighted blend of both branches
    RecommendationOrchestrator: LLM reasoning with validation, retry and fallback
"""

__version__ = "1.0.0"

from quantfusion.core.engine import QuantFusionEngine
from quantfusion.core.config import QuantFusionConfig

__all__ = ["QuantFusionEngine", "QuantFusionConfig", "__version__"]
