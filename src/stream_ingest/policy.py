"""
Retry policy and circuit breaker used by the RetryCoordinator.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Literal

from loguru import logger

from .errors import CircuitOpenError, InvalidRecordError, SenderError, TransportError

CircuitState = Literal["closed", "open", "half_open"]

_TRANSIENT_HINTS = ("timeout", "timed out", "temporar", "unavailable", "retry", "busy", "throttl")


def default_retry_classifier(exc: Exception) -> bool:
    """True when ``exc`` looks like a transient transport failure."""
    if isinstance(exc, (SenderError, InvalidRecordError)):
        return False
    if isinstance(
        exc, (TransportError, CircuitOpenError, TimeoutError, asyncio.TimeoutError, ConnectionError)
    ):
        return True
    msg = str(exc).lower()
    return any(hint in msg for hint in _TRANSIENT_HINTS)


@dataclass
class RetryPolicy:
    """Bounded exponential backoff.

    delay(attempt) = min(base_delay_ms * multiplier ** attempt, max_delay_ms)

    ``attempt`` is 0 for the first retry. A batch gets at most ``max_retries``
    retries, i.e. ``max_retries + 1`` sender calls. With ``jitter`` the delay
    is scaled by a random factor in [0.5, 1.0].
    """

    max_retries: int = 5
    base_delay_ms: float = 100
    max_delay_ms: float = 10_000
    multiplier: float = 2.0
    jitter: bool = False
    classify_retryable: Callable[[Exception], bool] = field(default=default_retry_classifier)

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("backoff delays must be >= 0")

    def next_backoff_ms(self, attempt: int) -> float:
        delay = min(self.base_delay_ms * (self.multiplier**attempt), self.max_delay_ms)
        if self.jitter:
            delay *= random.uniform(0.5, 1.0)
        return delay


class CircuitBreaker:
    """Consecutive-failure circuit breaker.

    closed -> open after ``failure_threshold`` consecutive failures;
    open -> half_open once ``half_open_after_sec`` has elapsed (next allow());
    half_open -> closed on success, back to open on failure.
    """

    def __init__(self, failure_threshold: int = 5, half_open_after_sec: float = 30.0):
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be > 0")
        self.failure_threshold = failure_threshold
        self.half_open_after_sec = half_open_after_sec
        self._state: CircuitState = "closed"
        self._failures = 0
        self._opened_at = 0.0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    async def allow(self) -> None:
        """Raise CircuitOpenError unless a call may go through."""
        async with self._lock:
            if self._state != "open":
                return
            if time.monotonic() - self._opened_at >= self.half_open_after_sec:
                self._state = "half_open"
                logger.info("Circuit half-open; allowing trial call")
                return
            raise CircuitOpenError("circuit open; sender calls suspended")

    async def on_success(self) -> None:
        async with self._lock:
            if self._state != "closed":
                logger.info("Circuit closed after successful call")
            self._state = "closed"
            self._failures = 0

    async def on_failure(self) -> None:
        async with self._lock:
            self._failures += 1
            if self._state == "half_open" or (
                self._state == "closed" and self._failures >= self.failure_threshold
            ):
                self._state = "open"
                self._opened_at = time.monotonic()
                logger.warning(f"Circuit opened after {self._failures} consecutive failures")
