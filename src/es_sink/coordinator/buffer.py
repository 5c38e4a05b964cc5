from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Iterable, Optional

from loguru import logger

from ..metrics.registry import BUFFERED_RECORDS
from .feedback import BackpressureLevel, FeedbackBus, FeedbackEvent, feedback_bus
from .types import BatchSlot, IndexedDocument


_REASONS = {
    BackpressureLevel.HARD: "high_watermark",
    BackpressureLevel.SOFT: "below_high_watermark",
    BackpressureLevel.OK: "low_watermark",
}


@dataclass
class _Entry:
    doc: IndexedDocument
    seq: int
    added_at: float = field(default_factory=time.monotonic)


class BatchBuffer:
    """Bounded document buffer that closes documents into BatchSlots.

    A slot closes on the first of: ``batch_size`` documents, ``max_batch_bytes``
    bytes, the oldest eligible document waiting ``linger_ms``, or a flush
    request. ``add`` blocks while queued plus in-flight documents reach
    ``capacity``. In strict ordering mode a document is never put in a slot
    while another document with the same ordering key is in flight or
    already in that slot.

    All state sits behind one asyncio.Condition.
    """

    def __init__(
        self,
        *,
        capacity: int,
        batch_size: int,
        max_batch_bytes: int,
        linger_ms: int = 1,
        strict_ordering: bool = False,
        task_id: str = "0",
        high_watermark: int | None = None,
        low_watermark: int | None = None,
        bus: Optional[FeedbackBus] = None,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")

        self._capacity = capacity
        self._batch_size = batch_size
        self._max_bytes = max_batch_bytes
        self._linger_s = linger_ms / 1000.0
        self._strict = strict_ordering
        self._task_id = task_id

        self._high_wm = high_watermark if high_watermark is not None else max(1, int(0.8 * capacity))
        self._low_wm = low_watermark if low_watermark is not None else int(0.5 * capacity)
        self._bus = bus or feedback_bus()
        self._level = BackpressureLevel.OK

        self._pending: deque[_Entry] = deque()
        self._inflight_keys: set = set()
        self._buffered = 0  # queued + in flight
        self._seq = 0
        self._flush_upto: Optional[int] = None
        self._closed = False
        self._cond = asyncio.Condition()

    @classmethod
    def from_settings(cls, settings, bus: Optional[FeedbackBus] = None) -> "BatchBuffer":
        return cls(
            capacity=settings.max_buffered_records,
            batch_size=settings.batch_size,
            max_batch_bytes=settings.max_buffered_bytes,
            linger_ms=settings.linger_ms,
            strict_ordering=settings.strict_ordering_enabled,
            task_id=settings.task_id,
            bus=bus,
        )

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def size(self) -> int:
        """Documents queued or in flight."""
        return self._buffered

    @property
    def queued(self) -> int:
        return len(self._pending)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def strict_ordering(self) -> bool:
        return self._strict

    # --------------------------- producer side

    async def add(self, doc: IndexedDocument) -> bool:
        """Queue a document; blocks while the buffer is full.

        Returns False if the buffer was closed before the document got in.
        """
        async with self._cond:
            if self._buffered >= self._capacity and not self._closed:
                logger.debug(f"Buffer full ({self._buffered}/{self._capacity}), blocking intake")
            await self._cond.wait_for(lambda: self._closed or self._buffered < self._capacity)
            if self._closed:
                return False
            self._seq += 1
            self._pending.append(_Entry(doc, self._seq))
            self._buffered += 1
            self._cond.notify_all()
            event = self._level_change()
        await self._publish(event)
        return True

    async def request_flush(self) -> None:
        """Make everything queued so far closable immediately."""
        async with self._cond:
            if self._pending:
                self._flush_upto = self._seq
                self._cond.notify_all()

    async def wait_empty(self, timeout: float | None = None) -> bool:
        """Wait until nothing is queued or in flight; False on timeout."""

        async def _wait() -> None:
            async with self._cond:
                await self._cond.wait_for(lambda: self._buffered == 0 or self._closed)

        try:
            await asyncio.wait_for(_wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return self._buffered == 0

    # --------------------------- dispatcher side

    async def take_closed(self) -> Optional[BatchSlot]:
        """Block until a slot closes; None once the buffer is closed."""
        async with self._cond:
            while True:
                if self._closed:
                    return None
                if self._flush_upto is not None and (
                    not self._pending or self._pending[0].seq > self._flush_upto
                ):
                    self._flush_upto = None

                chosen, full = self._select()
                timeout: float | None = None
                if chosen:
                    age = time.monotonic() - min(e.added_at for e in chosen)
                    flushing = self._flush_upto is not None
                    if full or flushing or age >= self._linger_s:
                        return self._close_slot(chosen)
                    timeout = self._linger_s - age

                try:
                    await asyncio.wait_for(self._cond.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    pass

    async def complete(self, docs: Iterable[IndexedDocument]) -> None:
        """Release capacity and ordering keys of documents that left flight."""
        async with self._cond:
            n = 0
            for d in docs:
                n += 1
                key = d.ordering_key
                if key is not None:
                    self._inflight_keys.discard(key)
            self._buffered = max(0, self._buffered - n)
            self._cond.notify_all()
            event = self._level_change()
        await self._publish(event)

    async def close(self) -> int:
        """Stop accepting and handing out documents.

        Queued documents are discarded (their offsets stay pending); returns
        how many were dropped.
        """
        async with self._cond:
            if self._closed:
                return 0
            self._closed = True
            dropped = len(self._pending)
            self._pending.clear()
            self._buffered = max(0, self._buffered - dropped)
            self._cond.notify_all()
            BUFFERED_RECORDS.labels(task=self._task_id).set(self._buffered)
        if dropped:
            logger.info(f"Buffer closed, {dropped} undispatched document(s) left pending")
        return dropped

    # --------------------------- internals

    def _select(self) -> tuple[list[_Entry], bool]:
        chosen: list[_Entry] = []
        keys: set = set()
        nbytes = 0
        for e in self._pending:
            key = e.doc.ordering_key if self._strict else None
            if key is not None and (key in self._inflight_keys or key in keys):
                continue
            size = e.doc.size_bytes
            if chosen and nbytes + size > self._max_bytes:
                return chosen, True
            chosen.append(e)
            nbytes += size
            if key is not None:
                keys.add(key)
            if len(chosen) >= self._batch_size or nbytes >= self._max_bytes:
                return chosen, True
        return chosen, False

    def _close_slot(self, chosen: list[_Entry]) -> BatchSlot:
        n = len(chosen)
        if all(self._pending[i] is chosen[i] for i in range(n)):
            for _ in range(n):
                self._pending.popleft()
        else:
            taken = {id(e) for e in chosen}
            self._pending = deque(e for e in self._pending if id(e) not in taken)

        keys = frozenset(k for k in (e.doc.ordering_key for e in chosen) if k is not None)
        if self._strict:
            self._inflight_keys |= keys
        slot = BatchSlot(documents=[e.doc for e in chosen], keys=keys)
        logger.debug(f"Closed slot {slot.slot_id} with {n} document(s), {self.queued} queued")
        return slot

    def _level_change(self) -> Optional[FeedbackEvent]:
        BUFFERED_RECORDS.labels(task=self._task_id).set(self._buffered)
        if self._buffered >= self._high_wm:
            level = BackpressureLevel.HARD
        elif self._buffered <= self._low_wm:
            level = BackpressureLevel.OK
        else:
            level = BackpressureLevel.SOFT
        if level is self._level:
            return None
        # SOFT on the way down only after HARD; OK->SOFT is not worth a signal
        if level is BackpressureLevel.SOFT and self._level is BackpressureLevel.OK:
            return None
        self._level = level
        return FeedbackEvent(
            task_id=self._task_id,
            buffered_records=self._buffered,
            capacity=self._capacity,
            level=level,
            reason=_REASONS[level],
        )

    async def _publish(self, event: Optional[FeedbackEvent]) -> None:
        if event is not None:
            await self._bus.publish(event)
