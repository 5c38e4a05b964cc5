"""
Unit tests for the file-backed dead-letter queue.
"""

import asyncio
import json

import pytest

from es_sink.coordinator import DeadLetterQueue, DLQRecord, SourceRecord
from es_sink.errors import DocumentRejected


def _rec(offset=7, value=b'{"a": 1}', key=b"k1"):
    return SourceRecord("orders", 2, offset, key=key, value=value, timestamp=1_700_000_000_000)


@pytest.mark.asyncio
async def test_report_and_replay(tmp_path):
    dlq = DeadLetterQueue(tmp_path / "dlq" / "orders.ndjson")
    err = DocumentRejected("mapper_parsing_exception: failed to parse", index="orders", doc_id="k1", status=400)

    await dlq.report(_rec(), err)

    recs = await dlq.replay(10)
    assert dlq.reported == 1
    assert len(recs) == 1
    r = recs[0]
    assert (r.topic, r.partition, r.offset) == ("orders", 2, 7)
    assert r.key == "k1"
    assert r.value == '{"a": 1}'
    assert r.error_type == "DocumentRejected"
    assert "failed to parse" in r.error


@pytest.mark.asyncio
async def test_binary_values_are_base64(tmp_path):
    dlq = DeadLetterQueue(tmp_path / "dlq.ndjson")
    await dlq.report(_rec(value=b"\xff\xfe"), ValueError("not json"))
    line = json.loads((tmp_path / "dlq.ndjson").read_text().strip())
    assert line["value"].startswith("base64:")


@pytest.mark.asyncio
async def test_save_with_metadata(tmp_path):
    dlq = DeadLetterQueue(tmp_path / "dlq.ndjson")
    await dlq.save(DLQRecord.from_record(_rec(), RuntimeError("boom"), {"task": "0"}))
    recs = await dlq.replay()
    assert recs[0].metadata == {"task": "0"}


@pytest.mark.asyncio
async def test_replay_limit(tmp_path):
    dlq = DeadLetterQueue(tmp_path / "dlq.ndjson")
    for i in range(10):
        await dlq.report(_rec(offset=i), RuntimeError(f"error-{i}"))
    recs = await dlq.replay(5)
    assert [r.offset for r in recs] == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_replay_missing_file(tmp_path):
    dlq = DeadLetterQueue(tmp_path / "nope.ndjson", mkdirs=False)
    assert await dlq.replay(10) == []


@pytest.mark.asyncio
async def test_concurrent_reports_are_all_written(tmp_path):
    dlq = DeadLetterQueue(tmp_path / "dlq.ndjson")
    await asyncio.gather(*[dlq.report(_rec(offset=i), RuntimeError(f"e{i}")) for i in range(20)])
    recs = await dlq.replay(100)
    assert len(recs) == 20
    assert sorted(r.offset for r in recs) == list(range(20))
