"""
Unit tests for pipeline metrics (light sanity checks).
"""

import httpx
import pytest
from prometheus_client import REGISTRY

from es_sink import SinkTask
from es_sink.metrics import metrics_registry


def _sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


def test_registry_exposes_metrics():
    assert metrics_registry.records_total is not None
    assert metrics_registry.bulk_requests_total is not None
    assert metrics_registry.in_flight_requests is not None


@pytest.mark.asyncio
async def test_counters_follow_outcomes(cluster, base_props, make_records, bus, bulk_body):
    calls = {"n": 0}

    async def on_bulk(actions, request):
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(503, json={"status": 503, "error": {"type": "x", "reason": "busy"}})
        return httpx.Response(200, json=bulk_body(actions))

    cluster.on_bulk = on_bulk
    task = SinkTask(transport=cluster.transport, bus=bus)
    await task.start({**base_props, "task.id": "metrics-test"})
    await task.put(make_records(3))
    await task.pre_commit()
    await task.stop()

    assert _sample("es_sink_records_total", task="metrics-test", outcome="acked") == 3
    assert _sample("es_sink_bulk_requests_total", task="metrics-test", outcome="retry") == 1
    assert _sample("es_sink_bulk_requests_total", task="metrics-test", outcome="success") == 1
    assert _sample("es_sink_bulk_retries_total", task="metrics-test", kind="server_busy") == 1
    assert _sample("es_sink_in_flight_requests", task="metrics-test") == 0
    assert _sample("es_sink_buffered_records", task="metrics-test") == 0
