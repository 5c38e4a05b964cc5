"""
Prometheus metrics for the sink pipeline.

Metrics live in the global prometheus_client REGISTRY; expose them with
``prometheus_client.start_http_server`` in the hosting process.
"""

from prometheus_client import Counter, Gauge, Histogram

# --- Bulk requests ---

BULK_REQUESTS_TOTAL = Counter(
    "es_sink_bulk_requests_total",
    "Bulk request attempts by outcome",
    ["task", "outcome"],
)

BULK_REQUEST_LATENCY_MS = Histogram(
    "es_sink_bulk_request_latency_ms",
    "Bulk request round-trip latency in milliseconds",
    ["task"],
    buckets=[5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000],
)

BULK_RETRIES_TOTAL = Counter(
    "es_sink_bulk_retries_total",
    "Bulk request retries by error kind",
    ["task", "kind"],
)

IN_FLIGHT_REQUESTS = Gauge(
    "es_sink_in_flight_requests",
    "Bulk requests currently in flight",
    ["task"],
)

# --- Records ---

RECORDS_TOTAL = Counter(
    "es_sink_records_total",
    "Records reaching a terminal state, by outcome",
    ["task", "outcome"],
)

BUFFERED_RECORDS = Gauge(
    "es_sink_buffered_records",
    "Records queued in the batch buffer or in flight",
    ["task"],
)


class MetricsRegistry:
    """Single access point for the pipeline's metrics."""

    bulk_requests_total = BULK_REQUESTS_TOTAL
    bulk_request_latency_ms = BULK_REQUEST_LATENCY_MS
    bulk_retries_total = BULK_RETRIES_TOTAL
    in_flight_requests = IN_FLIGHT_REQUESTS
    records_total = RECORDS_TOTAL
    buffered_records = BUFFERED_RECORDS


metrics_registry = MetricsRegistry()
