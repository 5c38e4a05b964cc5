from __future__ import annotations

import itertools
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import NamedTuple, Optional, Protocol, Union

Key = Union[bytes, str, None]


class TopicPartition(NamedTuple):
    topic: str
    partition: int

    def __str__(self) -> str:
        return f"{self.topic}-{self.partition}"


@dataclass(frozen=True)
class SourceRecord:
    """A record handed to the sink by the host runtime."""

    topic: str
    partition: int
    offset: int
    key: Key = None
    value: Union[bytes, str, None] = None
    headers: tuple[tuple[str, bytes], ...] = ()
    timestamp: Optional[int] = None  # epoch millis

    @property
    def topic_partition(self) -> TopicPartition:
        return TopicPartition(self.topic, self.partition)

    @property
    def is_tombstone(self) -> bool:
        return self.value is None

    def describe(self) -> str:
        return f"{self.topic}-{self.partition}@{self.offset}"


class Operation(str, Enum):
    INDEX = "index"
    UPDATE = "update"
    UPSERT = "upsert"
    DELETE = "delete"


@dataclass(frozen=True)
class IndexedDocument:
    """A bulk action built from one SourceRecord."""

    index: str
    doc_id: Optional[str]
    operation: Operation
    payload: bytes
    record: SourceRecord
    version: Optional[int] = None

    @property
    def ordering_key(self) -> Optional[tuple[str, int, str]]:
        # auto-generated ids never collide, so they are never ordered
        if self.doc_id is None:
            return None
        return (self.record.topic, self.record.partition, self.doc_id)

    @property
    def size_bytes(self) -> int:
        # action line overhead is roughly constant
        return len(self.payload) + len(self.index) + len(self.doc_id or "") + 48


_slot_ids = itertools.count(1)


@dataclass
class BatchSlot:
    """Documents closed together into one bulk request, in arrival order."""

    documents: list[IndexedDocument]
    keys: frozenset = frozenset()
    slot_id: int = field(default_factory=lambda: next(_slot_ids))
    closed_at: float = field(default_factory=time.monotonic)

    def __len__(self) -> int:
        return len(self.documents)

    @property
    def size_bytes(self) -> int:
        return sum(d.size_bytes for d in self.documents)


@dataclass
class BulkRequest:
    """A slot on its way to the cluster; only the dispatcher mutates it."""

    slot_id: int
    documents: list[IndexedDocument]
    attempts: int = 0
    first_try_at: Optional[float] = None
    deadline: Optional[float] = None
    next_delay_ms: Optional[int] = None

    @classmethod
    def from_slot(cls, slot: BatchSlot) -> "BulkRequest":
        return cls(slot_id=slot.slot_id, documents=list(slot.documents))

    def __len__(self) -> int:
        return len(self.documents)


class Reporter(Protocol):
    """Receives records that are dead-lettered instead of indexed."""

    async def report(self, record: SourceRecord, error: BaseException) -> None: ...
