"""
Pytest configuration and fixtures for es-sink.

Provides cross-platform event loop configuration and a fake cluster served
through httpx.MockTransport.
"""

import asyncio
import json
import sys

import httpx
import pytest

from es_sink.coordinator.feedback import FeedbackBus
from es_sink.coordinator.types import SourceRecord

# Set policy *before* pytest-asyncio creates any loops
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


ES_URL = "http://es.test:9200"


def parse_bulk(body: bytes) -> list[tuple[str, dict, dict | None]]:
    """Split an NDJSON bulk body into (op, meta, source) triples."""
    lines = [ln for ln in body.split(b"\n") if ln]
    out = []
    i = 0
    while i < len(lines):
        action = json.loads(lines[i])
        (op, meta), = action.items()
        i += 1
        source = None
        if op != "delete":
            source = json.loads(lines[i])
            i += 1
        out.append((op, meta, source))
    return out


def bulk_ok(actions, status: int = 201, failures: dict | None = None) -> dict:
    """Bulk response body; ``failures`` maps doc id -> (status, type, reason)."""
    failures = failures or {}
    items = []
    for op, meta, _ in actions:
        item = {"_index": meta["_index"], "_id": meta.get("_id", "auto"), "status": status}
        if meta.get("_id") in failures:
            st, etype, reason = failures[meta["_id"]]
            item["status"] = st
            item["error"] = {"type": etype, "reason": reason}
        else:
            item["result"] = "created"
        items.append({op: item})
    return {"took": 3, "errors": bool(failures), "items": items}


class MockCluster:
    """Answers the handful of endpoints the sink uses.

    ``on_bulk`` receives the parsed actions and the raw request and returns
    an httpx.Response; the default acknowledges every action.
    """

    def __init__(self):
        self.bulk_requests: list[list] = []
        self.created_indices: list[str] = []
        self.pings = 0
        self.on_bulk = self._ack_all
        self.delay_s = 0.0

    async def _ack_all(self, actions, request):
        return httpx.Response(200, json=bulk_ok(actions))

    async def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "GET" and path == "/":
            self.pings += 1
            return httpx.Response(200, json={"version": {"number": "8.11.0"}})
        if request.method == "HEAD":
            return httpx.Response(404)
        if request.method == "PUT":
            self.created_indices.append(path.strip("/"))
            return httpx.Response(200, json={"acknowledged": True})
        if request.method == "POST" and path == "/_bulk":
            actions = parse_bulk(request.content)
            self.bulk_requests.append(actions)
            if self.delay_s:
                await asyncio.sleep(self.delay_s)
            return await self.on_bulk(actions, request)
        return httpx.Response(404, json={"error": "no handler"})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)


@pytest.fixture
def cluster():
    return MockCluster()


@pytest.fixture
def base_props():
    """Minimal task properties for a schemaless JSON topic."""
    return {
        "connection.url": ES_URL,
        "ignore.schema": "true",
        "flush.timeout.ms": "10000",
        "retry.backoff.ms": "10",
        "max.retry.backoff.ms": "50",
    }


@pytest.fixture
def bus():
    """Private feedback bus so tests don't share subscribers."""
    return FeedbackBus()


@pytest.fixture
def make_records():
    """Build ``n`` JSON records per partition with keys ``k<i>``."""

    def _make(n: int, topic: str = "orders", partitions: int = 1, key_mod: int | None = None):
        out = []
        for p in range(partitions):
            for i in range(n):
                k = i % key_mod if key_mod else i
                out.append(
                    SourceRecord(
                        topic=topic,
                        partition=p,
                        offset=i,
                        key=f"k{k}".encode(),
                        value=json.dumps({"n": i, "p": p}).encode(),
                        timestamp=1_700_000_000_000 + i,
                    )
                )
        return out

    return _make


@pytest.fixture
def bulk_body():
    """The ``bulk_ok`` response builder."""
    return bulk_ok
