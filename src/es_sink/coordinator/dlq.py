"""
File-backed dead-letter reporter.

Appends one NDJSON line per dead-lettered record. Shipping records to a
dead-letter topic is the host's job; this reporter serves the standalone
runner and tests, and shows the Reporter contract.
"""

from __future__ import annotations

import asyncio
import base64
import json
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

from loguru import logger

from .types import SourceRecord


def _text(v: Union[bytes, str, None]) -> Optional[str]:
    if v is None or isinstance(v, str):
        return v
    try:
        return v.decode("utf-8")
    except UnicodeDecodeError:
        return "base64:" + base64.b64encode(v).decode("ascii")


@dataclass
class DLQRecord:
    topic: str
    partition: int
    offset: int
    error: str
    error_type: str
    key: Optional[str] = None
    value: Optional[str] = None
    timestamp: Optional[int] = None
    ts: float = field(default_factory=time.time)
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(
        cls, record: SourceRecord, error: BaseException, metadata: Optional[dict[str, Any]] = None
    ) -> "DLQRecord":
        return cls(
            topic=record.topic,
            partition=record.partition,
            offset=record.offset,
            error=str(error),
            error_type=type(error).__name__,
            key=_text(record.key),
            value=_text(record.value),
            timestamp=record.timestamp,
            metadata=dict(metadata or {}),
        )


class DeadLetterQueue:
    """NDJSON dead-letter file implementing the Reporter protocol."""

    def __init__(self, path: Union[str, Path], *, mkdirs: bool = True):
        self.path = Path(path)
        if mkdirs:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        self.reported = 0

    async def report(self, record: SourceRecord, error: BaseException) -> None:
        await self.save(DLQRecord.from_record(record, error))

    async def save(self, rec: DLQRecord) -> None:
        line = json.dumps(asdict(rec), ensure_ascii=False) + "\n"
        async with self._lock:
            await asyncio.to_thread(self._append, line)
            self.reported += 1
        logger.debug(f"Dead-lettered {rec.topic}-{rec.partition}@{rec.offset}: {rec.error_type}")

    def _append(self, line: str) -> None:
        with self.path.open("a", encoding="utf-8") as f:
            f.write(line)

    async def replay(self, max_records: int = 1000) -> list[DLQRecord]:
        """Read back up to ``max_records`` dead-lettered records."""
        if not self.path.exists():
            return []

        def _read() -> list[DLQRecord]:
            out: list[DLQRecord] = []
            with self.path.open("r", encoding="utf-8") as f:
                for line in f:
                    if len(out) >= max_records:
                        break
                    line = line.strip()
                    if line:
                        out.append(DLQRecord(**json.loads(line)))
            return out

        async with self._lock:
            return await asyncio.to_thread(_read)
