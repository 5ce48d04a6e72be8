"""
Append-only persistence for FinalAnalysis records.

Records are frozen once created; stores only ever append and read.
"""

from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Protocol, Union
from loguru import logger

from quantfusion.layers.orchestrator import FinalAnalysis


class AnalysisStore(Protocol):
    def append(self, analysis: FinalAnalysis) -> None:
        ...

    def list(
        self,
        symbol: Optional[str] = None,
        user_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> list[FinalAnalysis]:
        ...

    def latest(self, symbol: str) -> Optional[FinalAnalysis]:
        ...


def _select(
    records: list[FinalAnalysis],
    symbol: Optional[str],
    user_id: Optional[int],
    limit: Optional[int],
) -> list[FinalAnalysis]:
    """Filter and order newest first."""
    selected = [
        r for r in reversed(records)
        if (symbol is None or r.symbol == symbol)
        and (user_id is None or r.user_id == user_id)
    ]
    return selected[:limit] if limit is not None else selected


class InMemoryAnalysisStore:
    def __init__(self):
        self._records: list[FinalAnalysis] = []
        self._lock = threading.Lock()

    def append(self, analysis: FinalAnalysis) -> None:
        with self._lock:
            self._records.append(analysis)

    def list(
        self,
        symbol: Optional[str] = None,
        user_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> list[FinalAnalysis]:
        with self._lock:
            records = self._records.copy()
        return _select(records, symbol, user_id, limit)

    def latest(self, symbol: str) -> Optional[FinalAnalysis]:
        found = self.list(symbol=symbol, limit=1)
        return found[0] if found else None

    def __len__(self) -> int:
        return len(self._records)


class JsonlAnalysisStore:
    """One JSON object per line; the file is only ever written by appending."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = threading.Lock()

    def append(self, analysis: FinalAnalysis) -> None:
        line = json.dumps(analysis.to_dict(), default=_json_default)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        logger.debug(f"Stored analysis for {analysis.symbol} in {self.path}")

    def _load(self) -> list[FinalAnalysis]:
        if not self.path.exists():
            return []
        records: list[FinalAnalysis] = []
        with self._lock, self.path.open("r", encoding="utf-8") as f:
            for number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(FinalAnalysis.from_dict(json.loads(line)))
                except (ValueError, KeyError) as e:
                    logger.warning(f"Skipping unreadable analysis record {self.path}:{number}: {e}")
        return records

    def list(
        self,
        symbol: Optional[str] = None,
        user_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> list[FinalAnalysis]:
        return _select(self._load(), symbol, user_id, limit)

    def latest(self, symbol: str) -> Optional[FinalAnalysis]:
        found = self.list(symbol=symbol, limit=1)
        return found[0] if found else None


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "model_dump"):
        return value.model_dump()
    if hasattr(value, "value"):
        return value.value
    return str(value)
