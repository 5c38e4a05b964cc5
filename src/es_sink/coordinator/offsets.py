"""
Per-partition offset tracking.

Offsets enter as pending (only Record Intake adds them) and move to a
terminal state when the document is acknowledged or the record is
dead-lettered. ``commitable()`` releases the contiguous terminal prefix.
"""

from __future__ import annotations

from collections import OrderedDict
from enum import Enum
from threading import Lock
from typing import Iterable, Optional

from loguru import logger

from .types import TopicPartition


class OffsetState(str, Enum):
    PENDING = "pending"
    ACKED = "acked"
    FAILED_REPORTED = "failed_reported"


class _PartitionOffsets:
    __slots__ = ("states", "committed")

    def __init__(self) -> None:
        # insertion order == offset order, offsets arrive ascending per partition
        self.states: "OrderedDict[int, OffsetState]" = OrderedDict()
        self.committed: Optional[int] = None  # next offset to consume


class OffsetTracker:
    """Thread-safe offset tracker; one lock guards all partitions.

    Commit positions follow the host convention: the returned value is the
    next offset to consume, i.e. last terminal offset + 1.
    """

    def __init__(self) -> None:
        self._parts: dict[TopicPartition, _PartitionOffsets] = {}
        self._lock = Lock()

    def add_pending(self, tp: TopicPartition, offset: int) -> None:
        with self._lock:
            part = self._parts.setdefault(tp, _PartitionOffsets())
            if part.committed is not None and offset < part.committed:
                # already released; the position never moves back
                logger.debug(f"Offset {offset} on {tp} re-delivered below commit {part.committed}")
                return
            if offset in part.states:
                return
            if part.states and offset < next(reversed(part.states)):
                raise ValueError(f"Offset {offset} on {tp} arrived out of order")
            part.states[offset] = OffsetState.PENDING

    def _mark(self, tp: TopicPartition, offset: int, state: OffsetState) -> None:
        with self._lock:
            part = self._parts.get(tp)
            if part is None or offset not in part.states:
                # partition revoked meanwhile
                logger.debug(f"Ignoring {state.value} for untracked offset {tp}@{offset}")
                return
            part.states[offset] = state

    def mark_acked(self, tp: TopicPartition, offset: int) -> None:
        self._mark(tp, offset, OffsetState.ACKED)

    def mark_failed_reported(self, tp: TopicPartition, offset: int) -> None:
        self._mark(tp, offset, OffsetState.FAILED_REPORTED)

    def state_of(self, tp: TopicPartition, offset: int) -> Optional[OffsetState]:
        with self._lock:
            part = self._parts.get(tp)
            return part.states.get(offset) if part else None

    def commitable(self) -> dict[TopicPartition, int]:
        """Advance each partition over its terminal prefix and return positions."""
        out: dict[TopicPartition, int] = {}
        with self._lock:
            for tp, part in self._parts.items():
                while part.states:
                    offset, state = next(iter(part.states.items()))
                    if state is OffsetState.PENDING:
                        break
                    part.states.popitem(last=False)
                    part.committed = offset + 1
                if part.states:
                    first_pending = next(iter(part.states))
                    out[tp] = (
                        part.committed
                        if part.committed is not None and part.committed <= first_pending
                        else first_pending
                    )
                elif part.committed is not None:
                    out[tp] = part.committed
        return out

    def pending_count(self, tp: Optional[TopicPartition] = None) -> int:
        with self._lock:
            if tp is None:
                parts = list(self._parts.values())
            else:
                parts = [self._parts[tp]] if tp in self._parts else []
            return sum(
                sum(1 for s in p.states.values() if s is OffsetState.PENDING) for p in parts
            )

    def forget(self, partitions: Iterable[TopicPartition]) -> None:
        """Drop state for revoked partitions."""
        with self._lock:
            for tp in partitions:
                self._parts.pop(tp, None)

    @property
    def partitions(self) -> list[TopicPartition]:
        with self._lock:
            return list(self._parts)
