"""
Error classification for bulk requests and bulk items.

Maps (http status, error body, exception) to a small closed set of
dispositions. The classifier holds configuration only; the same inputs
always produce the same Classification.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Literal, Optional

from es_client import BulkItemResult, BulkResponse, TransportError


class Disposition(str, Enum):
    TRANSIENT = "transient"  # retry under the retry policy
    MALFORMED = "malformed"  # per-item, route by behavior.on.malformed.documents
    VERSION_CONFLICT = "version_conflict"  # per-item, ignore or fail
    FATAL = "fatal"  # task failure


class ErrorKind(str, Enum):
    TRANSPORT = "transport"
    SERVER_BUSY = "server_busy"
    CIRCUIT_BROKEN = "circuit_broken"
    MALFORMED = "malformed"
    VERSION_CONFLICT = "version_conflict"
    AUTH_OR_CONFIG = "auth_or_config"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class Classification:
    disposition: Disposition
    kind: ErrorKind
    reason: str

    @property
    def retriable(self) -> bool:
        return self.disposition is Disposition.TRANSIENT


MALFORMED_TYPES = frozenset(
    {
        "mapper_parsing_exception",
        "strict_dynamic_mapping_exception",
        "illegal_argument_exception",
        "document_parsing_exception",
        "action_request_validation_exception",
        "parse_exception",
        "json_parse_exception",
        "x_content_parse_exception",
    }
)
BUSY_TYPES = frozenset({"es_rejected_execution_exception", "rejected_execution_exception"})
CIRCUIT_BREAKING = "circuit_breaking_exception"
VERSION_CONFLICT = "version_conflict_engine_exception"
INDEX_NOT_FOUND = "index_not_found_exception"


def default_retry_classifier(exc: BaseException) -> bool:
    """True for exceptions worth retrying at the transport level."""
    if isinstance(exc, (TransportError, TimeoutError, ConnectionError)):
        return True
    msg = str(exc).lower()
    return any(s in msg for s in ("timeout", "temporar", "connection reset", "unavailable"))


class ErrorClassifier:
    """Stateless classifier; ``circuit_breaking`` selects retry or fail for 429 breakers."""

    def __init__(self, circuit_breaking: Literal["retry", "fail"] = "retry"):
        self.circuit_breaking = circuit_breaking

    def _circuit_broken(self, reason: str) -> Classification:
        disposition = Disposition.TRANSIENT if self.circuit_breaking == "retry" else Disposition.FATAL
        return Classification(disposition, ErrorKind.CIRCUIT_BROKEN, reason)

    def classify_exception(self, exc: BaseException) -> Classification:
        if default_retry_classifier(exc):
            return Classification(Disposition.TRANSIENT, ErrorKind.TRANSPORT, str(exc))
        return Classification(Disposition.FATAL, ErrorKind.AUTH_OR_CONFIG, f"{type(exc).__name__}: {exc}")

    def classify_response(self, response: BulkResponse) -> Optional[Classification]:
        """Request-level verdict; None means the items must be inspected."""
        status = response.http_status
        reason = response.error_summary or f"HTTP {status}"

        if response.ok:
            if response.parse_error is not None:
                return Classification(Disposition.TRANSIENT, ErrorKind.TRANSPORT, reason)
            return None
        if response.error_type == CIRCUIT_BREAKING:
            return self._circuit_broken(reason)
        if status == 429 or response.error_type in BUSY_TYPES:
            return Classification(Disposition.TRANSIENT, ErrorKind.SERVER_BUSY, reason)
        if status == 408 or status >= 500:
            return Classification(Disposition.TRANSIENT, ErrorKind.SERVER_BUSY, reason)
        if status in (401, 403):
            return Classification(
                Disposition.FATAL, ErrorKind.AUTH_OR_CONFIG, f"Authentication failed: {reason}"
            )
        # a request-level 4xx cannot be attributed to single documents
        return Classification(Disposition.FATAL, ErrorKind.AUTH_OR_CONFIG, reason)

    def classify_item(self, item: BulkItemResult) -> Optional[Classification]:
        """Per-item verdict; None means the item succeeded."""
        if not item.failed:
            return None
        status, etype = item.status, item.error_type
        reason = f"[{item.index}/{item.doc_id}] {item.error_summary}"

        if etype == VERSION_CONFLICT or status == 409:
            return Classification(Disposition.VERSION_CONFLICT, ErrorKind.VERSION_CONFLICT, reason)
        if etype == CIRCUIT_BREAKING:
            return self._circuit_broken(reason)
        if etype in BUSY_TYPES or status in (408, 429) or status >= 500:
            return Classification(Disposition.TRANSIENT, ErrorKind.SERVER_BUSY, reason)
        if etype == INDEX_NOT_FOUND or status in (401, 403, 404):
            return Classification(Disposition.FATAL, ErrorKind.AUTH_OR_CONFIG, reason)
        if etype in MALFORMED_TYPES or status == 400:
            return Classification(Disposition.MALFORMED, ErrorKind.MALFORMED, reason)
        return Classification(Disposition.FATAL, ErrorKind.AUTH_OR_CONFIG, reason)
