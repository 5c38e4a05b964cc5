"""
Backpressure feedback for the batch buffer.

The buffer publishes a FeedbackEvent whenever its fill level crosses a
watermark; subscribers (logging, a rate controller upstream, tests) react
without the buffer knowing about them.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from loguru import logger


class BackpressureLevel(str, Enum):
    """Backpressure severity levels."""

    OK = "ok"  # below the low watermark
    SOFT = "soft"  # between watermarks
    HARD = "hard"  # at/above the high watermark; put() is about to block


@dataclass(frozen=True)
class FeedbackEvent:
    """Immutable backpressure event.

    Attributes:
        task_id: Task whose buffer emitted the event
        buffered_records: Records queued or in flight
        capacity: max.buffered.records
        level: Backpressure severity
        reason: Optional context (e.g. "high_watermark", "closed")
    """

    task_id: str
    buffered_records: int
    capacity: int
    level: BackpressureLevel
    reason: str | None = None

    @property
    def utilization(self) -> float:
        return self.buffered_records / self.capacity if self.capacity > 0 else 0.0


class FeedbackSubscriber(Protocol):
    async def __call__(self, event: FeedbackEvent) -> None: ...


class FeedbackBus:
    """In-process pub/sub for backpressure events.

    Subscriber failures are logged and isolated from the publisher and from
    each other.
    """

    def __init__(self) -> None:
        self._subs: list[FeedbackSubscriber] = []

    def subscribe(self, callback: FeedbackSubscriber) -> None:
        if callback not in self._subs:
            self._subs.append(callback)
            logger.debug(f"Feedback subscriber added (total: {len(self._subs)})")

    def unsubscribe(self, callback: FeedbackSubscriber) -> None:
        """Remove a subscriber; unknown callbacks are ignored."""
        if callback in self._subs:
            self._subs.remove(callback)
            logger.debug(f"Feedback subscriber removed (total: {len(self._subs)})")

    async def publish(self, event: FeedbackEvent) -> None:
        if not self._subs:
            return

        logger.debug(
            f"Publishing feedback: task={event.task_id} level={event.level.value} "
            f"buffered={event.buffered_records}/{event.capacity} ({event.utilization:.1%})"
        )
        for callback in list(self._subs):
            try:
                await callback(event)
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"Feedback subscriber error: {type(exc).__name__}: {exc}")

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)


_bus: Optional[FeedbackBus] = None


def feedback_bus() -> FeedbackBus:
    """Process-wide FeedbackBus used when a buffer is not given its own."""
    global _bus
    if _bus is None:
        _bus = FeedbackBus()
    return _bus
