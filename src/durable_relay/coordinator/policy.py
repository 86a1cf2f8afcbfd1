"""
Retry policy and circuit breaker.

RetryPolicy is pure: it classifies errors and maps attempt counts to delays.
CircuitBreaker is the only process-wide mutable failure state; it is fed by
the dispatcher's success/failure reports.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Literal, Optional

from loguru import logger

from ..errors import CircuitOpenError, TerminalSinkError


class ErrorClass(str, Enum):
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


# A consumer classifier may return None to defer to the default.
ErrorClassifier = Callable[[BaseException], Optional[ErrorClass]]


def default_error_classifier(exc: BaseException) -> ErrorClass:
    """Only explicit terminal rejections are terminal; unknown errors get retried."""
    if isinstance(exc, TerminalSinkError):
        return ErrorClass.TERMINAL
    return ErrorClass.RETRYABLE


@dataclass
class RetryPolicy:
    """Exponential backoff with cap and symmetric jitter."""

    max_attempts: int = 6
    initial_backoff_ms: int = 500
    max_backoff_ms: int = 60_000
    backoff_multiplier: float = 2.0
    jitter: bool = True
    jitter_ratio: float = 0.2
    classifier: Optional[ErrorClassifier] = None
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_backoff_ms < 0 or self.max_backoff_ms < self.initial_backoff_ms:
            raise ValueError("backoff bounds must satisfy 0 <= initial <= max")
        if self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be >= 1.0")
        if not 0.0 <= self.jitter_ratio < 1.0:
            raise ValueError("jitter_ratio must be in [0, 1)")

    def classify(self, exc: BaseException) -> ErrorClass:
        if self.classifier is not None:
            verdict = self.classifier(exc)
            if verdict is not None:
                return ErrorClass(verdict)
        return default_error_classifier(exc)

    def next_backoff_ms(self, attempt: int) -> int:
        """Delay after the `attempt`-th failed attempt (1-based).

        The cap applies before jitter so records parked at the cap still spread out.
        """
        exp = min(max(attempt, 1) - 1, 64)
        base = min(self.initial_backoff_ms * (self.backoff_multiplier**exp), self.max_backoff_ms)
        if self.jitter and self.jitter_ratio:
            base *= 1.0 + self.rng.uniform(-self.jitter_ratio, self.jitter_ratio)
        return max(0, int(round(base)))

    def next_delay(self, attempts: int) -> float:
        """Same as next_backoff_ms, in seconds."""
        return self.next_backoff_ms(attempts) / 1000.0

    def exhausted(self, budget_used: int) -> bool:
        return budget_used >= self.max_attempts


CircuitState = Literal["closed", "open", "half_open"]


class CircuitBreaker:
    """Consecutive-failure breaker with a single half-open probe.

    `state` is read without the lock; a stale read costs at most one extra
    attempt. Transitions happen under the lock in allow/on_success/on_failure.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        half_open_after_sec: float = 30.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        name: str = "sink",
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.failure_threshold = failure_threshold
        self.half_open_after_sec = half_open_after_sec
        self.name = name
        self._clock = clock
        self._state: CircuitState = "closed"
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        if self._state == "open" and self._cooled_down():
            return "half_open"
        return self._state

    @property
    def failures(self) -> int:
        return self._failures

    @property
    def opened_at(self) -> Optional[float]:
        return self._opened_at

    def is_open(self) -> bool:
        return self.state == "open"

    def seconds_until_half_open(self) -> float:
        if self._state != "open" or self._opened_at is None:
            return 0.0
        return max(self.half_open_after_sec - (self._clock() - self._opened_at), 0.0)

    def _cooled_down(self) -> bool:
        return (
            self._opened_at is not None
            and self._clock() - self._opened_at >= self.half_open_after_sec
        )

    async def allow(self) -> None:
        """Admit one call or raise CircuitOpenError."""
        async with self._lock:
            if self._state == "open":
                if not self._cooled_down():
                    remaining = self.half_open_after_sec - (self._clock() - self._opened_at)
                    raise CircuitOpenError(
                        f"circuit '{self.name}' open; half-open in {max(remaining, 0):.1f}s"
                    )
                self._state = "half_open"
                self._probe_in_flight = False
                logger.info(f"Circuit '{self.name}' half-open; admitting one probe")
            if self._state == "half_open":
                if self._probe_in_flight:
                    raise CircuitOpenError(f"circuit '{self.name}' half-open probe in flight")
                self._probe_in_flight = True

    async def on_success(self) -> None:
        async with self._lock:
            if self._state == "open":
                # admitted before the trip; only a half-open probe closes the circuit
                return
            if self._state != "closed":
                logger.info(f"Circuit '{self.name}' closed after successful probe")
            self._state = "closed"
            self._failures = 0
            self._opened_at = None
            self._probe_in_flight = False

    async def on_failure(self) -> None:
        async with self._lock:
            self._failures += 1
            if self._state == "half_open":
                self._trip("probe failed")
            elif self._state == "closed" and self._failures >= self.failure_threshold:
                self._trip(f"{self._failures} consecutive failures")

    def abandon_probe(self) -> None:
        """An admitted call ended without an outcome; free the half-open probe slot.

        Synchronous so it can run from a cancellation handler.
        """
        self._probe_in_flight = False

    def _trip(self, reason: str) -> None:
        self._state = "open"
        self._opened_at = self._clock()
        self._probe_in_flight = False
        logger.warning(
            f"Circuit '{self.name}' open ({reason}); pausing for {self.half_open_after_sec:.1f}s"
        )
