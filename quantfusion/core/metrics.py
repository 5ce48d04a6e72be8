"""Injected metrics collector (counters, timings, estimated spend)."""

from __future__ import annotations

import threading
import time
from collections import Counter
from contextlib import contextmanager
from typing import Iterator


class MetricsCollector:
    """
    Per-context metrics sink.

    One instance is created by whoever owns the pipeline and passed to every
    component, so two pipelines never share counters.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Counter[str] = Counter()
        self._timings: dict[str, list[float]] = {}
        self._cost = 0.0

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] += amount

    def record_cache(self, namespace: str, hit: bool) -> None:
        self.increment(f"cache.{namespace}.{'hit' if hit else 'miss'}")

    def observe(self, name: str, seconds: float) -> None:
        with self._lock:
            self._timings.setdefault(name, []).append(seconds)

    @contextmanager
    def timed(self, name: str) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe(name, time.perf_counter() - start)

    def add_cost(self, amount: float) -> None:
        with self._lock:
            self._cost += amount

    def count(self, name: str) -> int:
        with self._lock:
            return self._counters[name]

    @property
    def total_cost(self) -> float:
        with self._lock:
            return self._cost

    def cache_hit_rate(self, namespace: str) -> float:
        hits = self.count(f"cache.{namespace}.hit")
        misses = self.count(f"cache.{namespace}.miss")
        total = hits + misses
        return hits / total if total else 0.0

    def snapshot(self) -> dict:
        with self._lock:
            timings = {
                name: {
                    "count": len(values),
                    "avg": sum(values) / len(values),
                    "max": max(values),
                }
                for name, values in self._timings.items()
                if values
            }
            return {
                "counters": dict(self._counters),
                "timings": timings,
                "total_cost": round(self._cost, 4),
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._timings.clear()
            self._cost = 0.0
