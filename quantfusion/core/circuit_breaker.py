"""Circuit breaker around calls to flaky external services."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional
from loguru import logger

from quantfusion.core.exceptions import CircuitOpenError


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Fail-fast guard for an external dependency.

    CLOSED -> OPEN after `failure_threshold` failures inside `window_seconds`.
    OPEN -> HALF_OPEN once `timeout_seconds` have passed since opening.
    HALF_OPEN -> CLOSED after `success_threshold` successes, or back to OPEN on
    the first failure.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        success_threshold: int = 2,
        timeout_seconds: float = 60.0,
        window_seconds: float = 10.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.timeout_seconds = timeout_seconds
        self.window_seconds = window_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._state = CircuitState.CLOSED
        self._failures: list[datetime] = []
        self._successes = 0
        self._opened_at: Optional[datetime] = None
        self._last_failure_at: Optional[datetime] = None
        self._last_success_at: Optional[datetime] = None

    @property
    def state(self) -> CircuitState:
        self._check_timeout()
        return self._state

    def _failure_count(self) -> int:
        now = self._clock()
        self._failures = [
            t for t in self._failures
            if (now - t).total_seconds() < self.window_seconds
        ]
        return len(self._failures)

    def _check_timeout(self) -> None:
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return
        if (self._clock() - self._opened_at).total_seconds() >= self.timeout_seconds:
            self._state = CircuitState.HALF_OPEN
            self._successes = 0
            logger.info(f"Circuit breaker transitioned to HALF_OPEN for {self.name}")

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()

    async def call(
        self,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        fallback: Optional[Callable[[], Any]] = None,
        **kwargs: Any,
    ) -> Any:
        """Run func through the breaker. Raises CircuitOpenError when open and no fallback."""
        if self.state == CircuitState.OPEN:
            logger.warning(f"Circuit breaker OPEN for {self.name}, failing fast")
            if fallback is not None:
                return fallback()
            raise CircuitOpenError(self.name)

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            self.record_failure()
            logger.error(
                f"Circuit breaker recorded failure for {self.name}: {e} "
                f"(failures: {self._failure_count()})"
            )
            if fallback is not None:
                return fallback()
            raise

        self.record_success()
        return result

    def record_success(self) -> None:
        self._last_success_at = self._clock()
        state = self.state

        if state == CircuitState.HALF_OPEN:
            self._successes += 1
            if self._successes >= self.success_threshold:
                self._state = CircuitState.CLOSED
                self._failures.clear()
                self._successes = 0
                self._opened_at = None
                logger.info(f"Circuit breaker transitioned to CLOSED for {self.name}")
        elif state == CircuitState.CLOSED and self._failure_count() > 0:
            # A success in CLOSED forgives one recent failure
            self._failures.pop(0)

    def record_failure(self) -> None:
        now = self._clock()
        self._last_failure_at = now
        state = self.state
        self._failures.append(now)

        if state == CircuitState.HALF_OPEN:
            self._open()
            logger.warning(f"Circuit breaker transitioned to OPEN from HALF_OPEN for {self.name}")
        elif state == CircuitState.CLOSED:
            failures = self._failure_count()
            if failures >= self.failure_threshold:
                self._open()
                logger.error(f"Circuit breaker transitioned to OPEN for {self.name} (failures: {failures})")

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failures.clear()
        self._successes = 0
        self._opened_at = None
        self._last_failure_at = None
        self._last_success_at = None
        logger.info(f"Circuit breaker reset for {self.name}")

    def stats(self) -> dict:
        return {
            "service": self.name,
            "state": self.state.value,
            "failures": self._failure_count(),
            "successes": self._successes,
            "failure_threshold": self.failure_threshold,
            "success_threshold": self.success_threshold,
            "last_failure_at": self._last_failure_at.isoformat() if self._last_failure_at else None,
            "last_success_at": self._last_success_at.isoformat() if self._last_success_at else None,
            "timeout": self.timeout_seconds,
        }
