"""
Pydantic models for Elasticsearch bulk responses.

The bulk API answers with a top-level ``errors`` flag and one item per
action, in request order. A request-level failure (401, 429, 5xx, ...)
carries a top-level ``error`` object instead of items.
"""

from __future__ import annotations

import json
from typing import Any, Optional

from pydantic import BaseModel, Field


class BulkItemResult(BaseModel):
    """Outcome of one bulk action."""

    op: str
    index: Optional[str] = None
    doc_id: Optional[str] = None
    status: int
    result: Optional[str] = None
    error_type: Optional[str] = None
    error_reason: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error_type is not None or self.status >= 300

    @property
    def error_summary(self) -> str:
        return f"Elasticsearch exception [type={self.error_type}, reason={self.error_reason}]"

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> "BulkItemResult":
        # each item is a single-key object: {"index": {...}}
        (op, body), = raw.items()
        error = body.get("error")
        if isinstance(error, dict):
            error_type = error.get("type")
            error_reason = error.get("reason")
        elif error is not None:
            error_type, error_reason = "exception", str(error)
        else:
            error_type = error_reason = None
        return cls(
            op=op,
            index=body.get("_index"),
            doc_id=body.get("_id"),
            status=int(body.get("status", 500)),
            result=body.get("result"),
            error_type=error_type,
            error_reason=error_reason,
        )


class BulkResponse(BaseModel):
    """Parsed bulk response (any HTTP status)."""

    http_status: int
    took: Optional[int] = None
    errors: bool = False
    items: list[BulkItemResult] = Field(default_factory=list)
    error: Optional[dict[str, Any]] = None
    parse_error: Optional[str] = None
    raw_body: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.http_status < 300

    @property
    def error_type(self) -> Optional[str]:
        if self.error is None:
            return None
        return self.error.get("type")

    @property
    def error_reason(self) -> Optional[str]:
        if self.error is None:
            return None
        return self.error.get("reason")

    @property
    def error_summary(self) -> str:
        """Request-level error text, or the first failed item's."""
        if self.error is not None:
            return (
                "ElasticsearchStatusException[Elasticsearch exception "
                f"[type={self.error_type}, reason={self.error_reason}]]"
            )
        if self.parse_error is not None:
            return f"Unparseable bulk response (status {self.http_status}): {self.parse_error}"
        for item in self.items:
            if item.failed:
                return item.error_summary
        return ""

    @classmethod
    def parse(cls, status: int, text: str) -> "BulkResponse":
        """Parse a response body; never raises on bad JSON or malformed items."""
        if not text.strip():
            return cls(http_status=status, parse_error="empty body", raw_body=text)
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            return cls(http_status=status, parse_error=str(e), raw_body=text)
        if not isinstance(data, dict):
            return cls(http_status=status, parse_error="body is not a JSON object", raw_body=text)

        error = data.get("error")
        if isinstance(error, str):
            error = {"type": "exception", "reason": error}
        items_raw = data.get("items")
        try:
            items = [BulkItemResult.from_raw(i) for i in items_raw] if items_raw else []
        except (ValueError, TypeError, AttributeError) as e:
            return cls(http_status=status, parse_error=f"malformed bulk item: {e}", raw_body=text)
        return cls(
            http_status=status,
            took=data.get("took"),
            errors=bool(data.get("errors", False)),
            items=items,
            error=error,
            parse_error=None if (items_raw is not None or error is not None) else "no items",
            raw_body=text,
        )
