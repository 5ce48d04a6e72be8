"""Core QuantFusion components."""

from quantfusion.core.config import QuantFusionConfig
from quantfusion.core.exceptions import (
    QuantFusionError,
    SymbolNotFoundError,
    SourceUnavailableError,
    ReasonerError,
    ValidationFailure,
    CircuitOpenError,
)
from quantfusion.core.types import Action, RiskLevel, OHLCV
from quantfusion.core.cache import TTLCache
from quantfusion.core.metrics import MetricsCollector
from quantfusion.core.circuit_breaker import CircuitBreaker, CircuitState
from quantfusion.core.engine import QuantFusionEngine

__all__ = [
    "QuantFusionConfig",
    "QuantFusionError",
    "SymbolNotFoundError",
    "SourceUnavailableError",
    "ReasonerError",
    "ValidationFailure",
    "CircuitOpenError",
    "Action",
    "RiskLevel",
    "OHLCV",
    "TTLCache",
    "MetricsCollector",
    "CircuitBreaker",
    "CircuitState",
    "QuantFusionEngine",
]
