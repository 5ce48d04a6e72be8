"""Analysis record persistence."""

from quantfusion.storage.analysis_store import (
    AnalysisStore,
    FinalAnalysis,
    InMemoryAnalysisStore,
    JsonlAnalysisStore,
)

__all__ = [
    "AnalysisStore",
    "FinalAnalysis",
    "InMemoryAnalysisStore",
    "JsonlAnalysisStore",
]
