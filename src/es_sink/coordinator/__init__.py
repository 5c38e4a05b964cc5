"""Sink pipeline

Record -> document -> buffer -> bulk request -> offsets, with:
- DocumentTransformer (index, id and action per record)
- BatchBuffer (bounded, linger/size/flush slots, strict key ordering)
- BulkDispatcher (in-flight cap, retries, per-item routing)
- ErrorClassifier and RetryPolicy with jitter
- OffsetTracker (contiguous commitable prefix per partition)
- Backpressure feedback bus
- Dead Letter Queue (file-based NDJSON)
"""

from .types import (
    BatchSlot,
    BulkRequest,
    IndexedDocument,
    Operation,
    Reporter,
    SourceRecord,
    TopicPartition,
)
from .classifier import (
    Classification,
    Disposition,
    ErrorClassifier,
    ErrorKind,
    default_retry_classifier,
)
from .policy import RetryPolicy
from .offsets import OffsetState, OffsetTracker
from .feedback import BackpressureLevel, FeedbackBus, FeedbackEvent, feedback_bus
from .buffer import BatchBuffer
from .transformer import DocumentTransformer, topic_to_index_name
from .dispatcher import BulkDispatcher, Completion, DispatcherHealth
from .dlq import DeadLetterQueue, DLQRecord

__all__ = [
    # types
    "SourceRecord",
    "TopicPartition",
    "IndexedDocument",
    "Operation",
    "BatchSlot",
    "BulkRequest",
    "Reporter",
    "Completion",
    "DispatcherHealth",
    "DLQRecord",
    # policies
    "Classification",
    "Disposition",
    "ErrorClassifier",
    "ErrorKind",
    "default_retry_classifier",
    "RetryPolicy",
    # runtime
    "OffsetState",
    "OffsetTracker",
    "BatchBuffer",
    "DocumentTransformer",
    "topic_to_index_name",
    "BulkDispatcher",
    "BackpressureLevel",
    "FeedbackBus",
    "FeedbackEvent",
    "feedback_bus",
    # tooling
    "DeadLetterQueue",
]
