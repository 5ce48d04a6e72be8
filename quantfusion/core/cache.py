"""In-memory TTL cache with single-flight memoization."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone, timedelta
from typing import Any, Awaitable, Callable, Optional, TypeVar
from loguru import logger

from quantfusion.core.metrics import MetricsCollector

T = TypeVar("T")


def quant_key(symbol: str, period: int) -> str:
    return f"quant_indicators:{symbol}:{period}"


def sentiment_key(symbol: str) -> str:
    return f"sentiment_analysis:{symbol}"


def fusion_key(symbol: str) -> str:
    return f"fusion_analysis:{symbol}"


def sentiment_history_key(symbol: str) -> str:
    return f"sentiment_history:{symbol}"


def news_key(symbol: str) -> str:
    return f"news:{symbol}"


class TTLCache:
    """
    Key/value store with per-entry expiry.

    Entries are kept as (expires_at, value). `remember` takes a per-key lock so
    concurrent callers for the same key wait for the first computation instead
    of all running the factory.
    """

    def __init__(
        self,
        metrics: Optional[MetricsCollector] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._data: dict[str, tuple[datetime, Any]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._metrics = metrics
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._data.get(key)
        if entry is None:
            return default
        expires_at, value = entry
        if self._now() >= expires_at:
            del self._data[key]
            return default
        return value

    def has(self, key: str) -> bool:
        sentinel = object()
        return self.get(key, sentinel) is not sentinel

    def set(self, key: str, value: Any, ttl: float) -> None:
        self._data[key] = (self._now() + timedelta(seconds=ttl), value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()

    def invalidate_prefix(self, prefix: str) -> int:
        keys = [k for k in self._data if k.startswith(prefix)]
        for k in keys:
            del self._data[k]
        return len(keys)

    def __len__(self) -> int:
        return len(self._data)

    async def remember(
        self,
        key: str,
        ttl: float,
        factory: Callable[[], Awaitable[T]],
        cache_if: Optional[Callable[[T], bool]] = None,
    ) -> T:
        """Return the cached value for key, computing and storing it on a miss."""
        namespace = key.split(":", 1)[0]
        sentinel = object()

        cached = self.get(key, sentinel)
        if cached is not sentinel:
            self._record(namespace, hit=True)
            logger.debug(f"Cache hit: {key}")
            return cached

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            # Another caller may have filled it while we waited
            cached = self.get(key, sentinel)
            if cached is not sentinel:
                self._record(namespace, hit=True)
                return cached

            self._record(namespace, hit=False)
            value = await factory()
            if cache_if is None or cache_if(value):
                self.set(key, value, ttl)
            return value

    def _record(self, namespace: str, hit: bool) -> None:
        if self._metrics is not None:
            self._metrics.record_cache(namespace, hit)
