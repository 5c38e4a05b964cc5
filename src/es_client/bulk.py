"""
Bulk API body builders.

The body is newline-delimited JSON: one action line per operation, followed
by a source line for everything except deletes, with a trailing newline.
"""

from __future__ import annotations

import json
from typing import Iterable, Optional, Protocol

NDJSON_CONTENT_TYPE = "application/x-ndjson"

# upserts and partial updates both go through the "update" action
ACTION_NAMES = {
    "index": "index",
    "update": "update",
    "upsert": "update",
    "delete": "delete",
}


class BulkAction(Protocol):
    operation: object
    index: str
    doc_id: Optional[str]
    version: Optional[int]
    payload: bytes


def _op_name(operation: object) -> str:
    op = getattr(operation, "value", operation)
    try:
        return ACTION_NAMES[str(op)]
    except KeyError:
        raise ValueError(f"Unsupported bulk operation: {op!r}") from None


def action_line(
    operation: object,
    index: str,
    doc_id: Optional[str] = None,
    version: Optional[int] = None,
) -> bytes:
    """Build the metadata line for one action."""
    meta: dict[str, object] = {"_index": index}
    if doc_id is not None:
        meta["_id"] = doc_id
    if version is not None:
        meta["version"] = version
        meta["version_type"] = "external"
    return json.dumps({_op_name(operation): meta}, separators=(",", ":")).encode("utf-8")


def encode_bulk(actions: Iterable[BulkAction]) -> bytes:
    """Encode actions into a bulk request body."""
    lines: list[bytes] = []
    for a in actions:
        name = _op_name(a.operation)
        lines.append(action_line(a.operation, a.index, a.doc_id, a.version))
        if name != "delete":
            lines.append(a.payload)
    if not lines:
        return b""
    return b"\n".join(lines) + b"\n"
