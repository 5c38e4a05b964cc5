"""
Elasticsearch Bulk Client

A small async client for the Elasticsearch bulk API, built on httpx with a
shared keep-alive connection pool.

Usage:
    from es_client import BulkClient, encode_bulk

    async with BulkClient({"urls": ["http://localhost:9200"]}) as client:
        resp = await client.send_bulk(encode_bulk(actions))
        if resp.errors:
            ...
"""

from .bulk import action_line, encode_bulk, NDJSON_CONTENT_TYPE
from .client import BulkClient, BulkClientConfig
from .errors import BulkClientError, TransportError, TransportTimeout
from .models import BulkItemResult, BulkResponse

__version__ = "1.0.0"
__all__ = [
    "BulkClient",
    "BulkClientConfig",
    "BulkClientError",
    "TransportError",
    "TransportTimeout",
    "BulkResponse",
    "BulkItemResult",
    "action_line",
    "encode_bulk",
    "NDJSON_CONTENT_TYPE",
]
