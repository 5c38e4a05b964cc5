"""
Unit tests for DocumentTransformer.
"""

import json

import pytest

from es_sink.config import SinkSettings
from es_sink.coordinator import DocumentTransformer, Operation, SourceRecord, topic_to_index_name
from es_sink.errors import MalformedRecord


@pytest.fixture
def transformer(base_props):
    def _make(**overrides):
        props = {**base_props, **{k.replace("_", "."): v for k, v in overrides.items()}}
        return DocumentTransformer(SinkSettings.from_props(props))

    return _make


def _rec(value=b'{"user": {"id": "u1"}, "n": 3}', key=b"k1", topic="Orders", offset=5, ts=1_700_000_000_000):
    return SourceRecord(topic, 0, offset, key=key, value=value, timestamp=ts)


@pytest.mark.parametrize(
    "topic,index",
    [("Orders", "orders"), ("_hidden", "hidden"), ("-x", "x"), (".", "dot"), ("..", "dotdot")],
)
def test_topic_to_index_name(topic, index):
    assert topic_to_index_name(topic) == index


def test_index_name_is_truncated():
    assert len(topic_to_index_name("a" * 300)) == 255


def test_key_is_the_id_with_external_version(transformer):
    doc = transformer()(_rec())
    assert doc.index == "orders"
    assert doc.doc_id == "k1"
    assert doc.operation is Operation.INDEX
    assert doc.version == 5
    assert json.loads(doc.payload) == {"user": {"id": "u1"}, "n": 3}
    assert doc.ordering_key == ("Orders", 0, "k1")


def test_null_key_is_malformed_when_key_is_the_id(transformer):
    with pytest.raises(MalformedRecord, match="can not be null"):
        transformer()(_rec(key=None))


def test_topic_partition_offset_id(transformer):
    doc = transformer(ignore_key="true")(_rec())
    assert doc.doc_id == "Orders+0+5"
    assert doc.version is None


def test_record_key_strategy(transformer):
    doc = transformer(ignore_key="true", key_ignore_id_strategy="record.key")(_rec(key="abc"))
    assert doc.doc_id == "abc"
    assert doc.version == 5


def test_fields_strategy(transformer):
    t = transformer(ignore_key="true", key_ignore_id_strategy="fields", document_id_fields="user.id,n")
    assert t(_rec()).doc_id == "u1-3"
    with pytest.raises(MalformedRecord, match="missing id field"):
        t(_rec(value=b'{"n": 1}'))


def test_none_strategy_lets_the_cluster_pick_ids(transformer):
    doc = transformer(ignore_key="true", key_ignore_id_strategy="none")(_rec())
    assert doc.doc_id is None
    assert doc.ordering_key is None


def test_null_value_policies(transformer):
    with pytest.raises(MalformedRecord, match="null value"):
        transformer()(_rec(value=None))
    assert transformer(behavior_on_null_values="ignore")(_rec(value=None)) is None

    doc = transformer(behavior_on_null_values="delete")(_rec(value=None))
    assert doc.operation is Operation.DELETE
    assert doc.payload == b""
    assert doc.doc_id == "k1"


def test_delete_needs_an_id(transformer):
    t = transformer(behavior_on_null_values="delete", ignore_key="true", key_ignore_id_strategy="none")
    with pytest.raises(MalformedRecord):
        t(_rec(value=None))


def test_upsert_wraps_the_document(transformer):
    doc = transformer(write_method="upsert")(_rec())
    assert doc.operation is Operation.UPSERT
    assert doc.version is None
    assert json.loads(doc.payload) == {"doc": {"user": {"id": "u1"}, "n": 3}, "doc_as_upsert": True}


def test_update_sends_partial_doc(transformer):
    doc = transformer(write_method="update")(_rec())
    assert doc.operation is Operation.UPDATE
    assert json.loads(doc.payload) == {"doc": {"user": {"id": "u1"}, "n": 3}}


@pytest.mark.parametrize("value", [b"not json", b"[1, 2]", b'"text"', b"\xff\xfe"])
def test_unusable_values_are_malformed(transformer, value):
    with pytest.raises(MalformedRecord):
        transformer()(_rec(value=value))


def test_schema_envelope(transformer):
    t = transformer(ignore_schema="false")
    envelope = json.dumps({"schema": {"type": "struct"}, "payload": {"a": 1}}).encode()
    assert json.loads(t(_rec(value=envelope)).payload) == {"a": 1}
    with pytest.raises(MalformedRecord, match="schema envelope"):
        t(_rec(value=b'{"a": 1}'))


def test_topic_map_and_timestamp_suffix(transformer):
    t = transformer(topic_to_index_map="Orders:sales", index_suffix_from_timestamp="%Y.%m.%d")
    assert t(_rec()).index == "sales-2023.11.14"
    with pytest.raises(MalformedRecord, match="no timestamp"):
        t(_rec(ts=None))
