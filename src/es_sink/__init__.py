"""
Elasticsearch Sink

Streams records from a partitioned log into Elasticsearch with bounded
buffering, pipelined bulk requests and at-least-once offset commits.

Usage:
    from es_sink import SinkTask, SourceRecord

    task = SinkTask()
    await task.start({"connection.url": "http://localhost:9200", "ignore.schema": "true"})
    await task.put([SourceRecord("orders", 0, 42, key=b"o-1", value=b'{"total": 3}')])
    offsets = await task.pre_commit()
    await task.stop()
"""

__version__ = "1.0.0"

from .config import SinkSettings, load_properties
from .coordinator import DeadLetterQueue, SourceRecord, TopicPartition
from .errors import ConfigError, ConnectorError, DocumentRejected, MalformedRecord, SinkError
from .task import SinkTask, TaskState, TaskStatus
from .connector import ElasticsearchSinkConnector

__all__ = [
    "SinkTask",
    "TaskState",
    "TaskStatus",
    "ElasticsearchSinkConnector",
    "SinkSettings",
    "load_properties",
    "SourceRecord",
    "TopicPartition",
    "DeadLetterQueue",
    "SinkError",
    "ConfigError",
    "ConnectorError",
    "DocumentRejected",
    "MalformedRecord",
]
