from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional

from loguru import logger

from ..errors import MalformedRecord
from .types import IndexedDocument, Operation, SourceRecord

MAX_INDEX_NAME_LENGTH = 255


def topic_to_index_name(topic: str) -> str:
    """Turn a topic name into a legal Elasticsearch index name."""
    name = topic.lower()[:MAX_INDEX_NAME_LENGTH]
    if name.startswith(("-", "_", "+")):
        name = name[1:]
    if name in (".", ".."):
        name = name.replace(".", "dot")
    return name


def _field(doc: dict[str, Any], path: str) -> Any:
    cur: Any = doc
    for part in path.split("."):
        if not isinstance(cur, dict) or part not in cur:
            raise KeyError(path)
        cur = cur[part]
    return cur


class DocumentTransformer:
    """Turns a SourceRecord into at most one IndexedDocument.

    Holds settings only; ``transform`` has no side effects.
    """

    def __init__(self, settings):
        self.settings = settings
        self._index_map = settings.topic_index_map
        self._id_fields = settings.id_fields

    # ---------- index ----------

    def resolve_index(self, record: SourceRecord) -> str:
        index = self._index_map.get(record.topic) or topic_to_index_name(record.topic)
        pattern = self.settings.index_suffix_from_timestamp
        if pattern:
            if record.timestamp is None:
                raise MalformedRecord(
                    f"Record {record.describe()} has no timestamp to build the index suffix from"
                )
            ts = datetime.fromtimestamp(record.timestamp / 1000.0, tz=timezone.utc)
            index = f"{index}-{ts.strftime(pattern).lower()}"
        return index

    # ---------- id ----------

    def _key_id(self, record: SourceRecord) -> str:
        key = record.key
        if key is None:
            raise MalformedRecord(
                f"Key is used as document id and can not be null (record {record.describe()})"
            )
        if isinstance(key, bytes):
            try:
                return key.decode("utf-8")
            except UnicodeDecodeError as e:
                raise MalformedRecord(f"Key of record {record.describe()} is not UTF-8: {e}") from e
        return str(key)

    def resolve_id(self, record: SourceRecord, body: Optional[dict[str, Any]]) -> Optional[str]:
        s = self.settings
        if not s.ignore_key:
            return self._key_id(record)

        strategy = s.key_ignore_id_strategy
        if strategy == "none":
            return None
        if strategy == "record.key":
            return self._key_id(record)
        if strategy == "fields":
            if body is None:
                raise MalformedRecord(
                    f"Record {record.describe()} has no value to read id fields {self._id_fields} from"
                )
            try:
                return "-".join(str(_field(body, f)) for f in self._id_fields)
            except KeyError as e:
                raise MalformedRecord(
                    f"Record {record.describe()} is missing id field {e.args[0]!r}"
                ) from None
        return f"{record.topic}+{record.partition}+{record.offset}"

    # ---------- value ----------

    def _decode(self, record: SourceRecord) -> Optional[dict[str, Any]]:
        raw = record.value
        if raw is None:
            return None
        try:
            value = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedRecord(f"Value of record {record.describe()} is not valid JSON: {e}") from e

        if not self.settings.ignore_schema:
            if not isinstance(value, dict) or "schema" not in value or "payload" not in value:
                raise MalformedRecord(
                    f"Record {record.describe()} has no schema envelope; "
                    "set ignore.schema=true for schemaless values"
                )
            value = value["payload"]
            if value is None:
                return None

        if not isinstance(value, dict):
            raise MalformedRecord(
                f"Value of record {record.describe()} is a {type(value).__name__}, "
                "documents must be JSON objects"
            )
        return value

    # ---------- document ----------

    def transform(self, record: SourceRecord) -> Optional[IndexedDocument]:
        """Build the document for ``record``; None when the record is skipped.

        Raises MalformedRecord when no document can be produced.
        """
        s = self.settings
        index = self.resolve_index(record)
        body = self._decode(record)
        version = record.offset if s.use_external_version else None

        if body is None:
            policy = s.behavior_on_null_values
            if policy == "ignore":
                logger.debug(f"Ignoring record {record.describe()} with null value")
                return None
            if policy == "fail":
                raise MalformedRecord(
                    f"Sink record {record.describe()} has a null value; set "
                    "behavior.on.null.values to 'ignore' or 'delete' to accept tombstones"
                )
            doc_id = self.resolve_id(record, None)
            if doc_id is None:
                raise MalformedRecord(
                    f"Cannot delete for record {record.describe()}: no document id"
                )
            return IndexedDocument(index, doc_id, Operation.DELETE, b"", record, version)

        doc_id = self.resolve_id(record, body)
        if s.write_method == "upsert":
            op, source, version = Operation.UPSERT, {"doc": body, "doc_as_upsert": True}, None
        elif s.write_method == "update":
            op, source, version = Operation.UPDATE, {"doc": body}, None
        else:
            op, source = Operation.INDEX, body

        if op is not Operation.INDEX and doc_id is None:
            raise MalformedRecord(
                f"write.method={s.write_method} needs a document id (record {record.describe()})"
            )

        payload = json.dumps(source, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        return IndexedDocument(index, doc_id, op, payload, record, version)
