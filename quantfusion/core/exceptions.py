"""Error taxonomy for the fusion pipeline."""

from __future__ import annotations


class QuantFusionError(Exception):
    """Base class for all pipeline errors."""


class SymbolNotFoundError(QuantFusionError):
    """Requested instrument is not registered."""

    def __init__(self, symbol: str):
        super().__init__(f"Instrument not found: {symbol}")
        self.symbol = symbol


class SourceUnavailableError(QuantFusionError):
    """A market or sentiment source could not be reached."""

    def __init__(self, source: str, reason: str = ""):
        message = f"Source '{source}' unavailable"
        if reason:
            message += f": {reason}"
        super().__init__(message)
        self.source = source
        self.reason = reason


class ReasonerError(QuantFusionError):
    """External reasoning service failed or returned unusable output."""


class ValidationFailure(QuantFusionError):
    """Structured reasoner output violated the schema or a business rule."""

    def __init__(self, errors: list[str], stage: str = "schema"):
        super().__init__(f"{stage} validation failed: {'; '.join(errors)}")
        self.errors = errors
        self.stage = stage


class CircuitOpenError(QuantFusionError):
    """Circuit breaker refused the call."""

    def __init__(self, service: str):
        super().__init__(f"Service '{service}' is currently unavailable (circuit breaker OPEN)")
        self.service = service
