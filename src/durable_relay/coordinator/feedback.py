"""
Backlog feedback for the delivery dispatcher.

In-process pub/sub for backlog snapshots emitted after every dispatcher
cycle. Subscribers (health endpoints, producer throttles, logging) react to
the pending/dead-letter counts and the breaker state.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from loguru import logger


class BacklogLevel(str, Enum):
    """Backlog severity levels."""

    OK = "ok"  # Below low watermark - normal operation
    SOFT = "soft"  # Between low/high watermarks - caution
    HARD = "hard"  # At/above high watermark - producers should slow down


def backlog_level(pending: int, high_watermark: int, low_watermark: int) -> BacklogLevel:
    if pending >= high_watermark:
        return BacklogLevel.HARD
    if pending > low_watermark:
        return BacklogLevel.SOFT
    return BacklogLevel.OK


@dataclass(frozen=True)
class BacklogEvent:
    """Immutable backlog snapshot.

    Attributes:
        queue_id: Identifies the delivery queue (e.g., "readings", "sheets-sync")
        pending: Records waiting for delivery (pending + failed)
        dead_letters: Records parked in the dead-letter state
        circuit_state: Breaker state at the end of the cycle
        level: Backlog severity (OK, SOFT, HARD)
        reason: Optional context (e.g., "circuit_open", "drained")
    """

    queue_id: str
    pending: int
    dead_letters: int
    circuit_state: str
    level: BacklogLevel
    reason: str | None = None


class FeedbackSubscriber(Protocol):
    """Async callable accepting BacklogEvent. Exceptions are logged and ignored."""

    async def __call__(self, event: BacklogEvent) -> None: ...


class FeedbackBus:
    """Backlog snapshots fanned out to async subscribers.

    Several queues may share one bus; a subscriber can narrow itself to one
    `queue_id`. A failing subscriber is logged and skipped.

    Example:
        async def on_backlog(event: BacklogEvent):
            if event.level == BacklogLevel.HARD:
                await slow_down_producer()

        feedback_bus().subscribe(on_backlog, queue_id="readings")
    """

    def __init__(self) -> None:
        self._subs: dict[FeedbackSubscriber, Optional[str]] = {}
        self._latest: dict[str, BacklogEvent] = {}

    def subscribe(self, callback: FeedbackSubscriber, *, queue_id: Optional[str] = None) -> None:
        """Register `callback`; re-subscribing only updates its queue filter."""
        self._subs[callback] = queue_id
        logger.debug(f"Feedback subscriber added (total: {len(self._subs)})")

    def unsubscribe(self, callback: FeedbackSubscriber) -> None:
        if self._subs.pop(callback, _ABSENT) is not _ABSENT:
            logger.debug(f"Feedback subscriber removed (total: {len(self._subs)})")

    def latest(self, queue_id: str) -> Optional[BacklogEvent]:
        """Last snapshot published for `queue_id`, if any."""
        return self._latest.get(queue_id)

    async def publish(self, event: BacklogEvent) -> None:
        self._latest[event.queue_id] = event
        targets = [cb for cb, only in self._subs.items() if only in (None, event.queue_id)]
        if not targets:
            return
        logger.debug(
            f"Backlog '{event.queue_id}': level={event.level.value} pending={event.pending} "
            f"dead_letters={event.dead_letters} circuit={event.circuit_state}"
        )
        for callback in targets:
            try:
                await callback(event)
            except Exception as exc:
                name = getattr(callback, "__qualname__", repr(callback))
                logger.warning(f"Backlog subscriber {name} failed: {type(exc).__name__}: {exc}")

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)


_ABSENT = object()
_bus: Optional[FeedbackBus] = None


def feedback_bus() -> FeedbackBus:
    """Bus shared by every dispatcher that was not given its own."""
    global _bus
    if _bus is None:
        _bus = FeedbackBus()
    return _bus
