"""
Exceptions raised by the sink core.

ConnectorError is the only exception that reaches the host as a task
failure; everything else is resolved inside the pipeline.
"""

from __future__ import annotations

from typing import Optional


class SinkError(Exception):
    """Base error for the sink core."""

    pass


class ConfigError(SinkError, ValueError):
    """Invalid connector configuration."""

    pass


class MalformedRecord(SinkError):
    """A record that cannot be turned into a document."""

    pass


class DocumentRejected(SinkError):
    """The cluster refused a single document for a non-retriable reason."""

    def __init__(
        self,
        reason: str,
        *,
        index: Optional[str] = None,
        doc_id: Optional[str] = None,
        status: Optional[int] = None,
        error_type: Optional[str] = None,
    ):
        super().__init__(reason)
        self.index = index
        self.doc_id = doc_id
        self.status = status
        self.error_type = error_type


class ConnectorError(SinkError):
    """Fatal error; the task transitions to FAILED and stops consuming."""

    def __init__(self, message: str, *, kind: Optional[str] = None, attempts: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.attempts = attempts
