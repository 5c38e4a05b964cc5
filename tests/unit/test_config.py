"""
Unit tests for SinkSettings.
"""

import pytest

from es_sink.config import SinkSettings, load_properties
from es_sink.errors import ConfigError


def test_defaults(base_props):
    s = SinkSettings.from_props({"connection.url": "http://es:9200"})
    assert s.batch_size == 2000
    assert s.max_buffered_records == 20000
    assert s.max_in_flight_requests == 5
    assert s.linger_ms == 1
    assert s.flush_timeout_ms == 180_000
    assert s.max_retries == 5
    assert s.retry_backoff_ms == 100
    assert s.max_retry_backoff_ms == 10_000
    assert s.connect_timeout_ms == 1000
    assert s.read_timeout_ms == 3000
    assert s.behavior_on_null_values == "fail"
    assert s.behavior_on_malformed_documents == "fail"
    assert s.behavior_on_version_conflict == "ignore"
    assert s.write_method == "insert"
    assert s.key_ignore_id_strategy == "topic.partition.offset"


def test_dotted_names_and_case():
    s = SinkSettings.from_props(
        {
            "connection.url": "http://a:9200, http://b:9200",
            "batch.size": "10",
            "behavior.on.null.values": "DELETE",
            "write.method": "Upsert",
        }
    )
    assert s.urls == ["http://a:9200", "http://b:9200"]
    assert s.batch_size == 10
    assert s.behavior_on_null_values == "delete"
    assert s.write_method == "upsert"


def test_settings_are_frozen():
    s = SinkSettings.from_props({"connection.url": "http://es:9200"})
    with pytest.raises(Exception):
        s.batch_size = 1  # type: ignore


@pytest.mark.parametrize(
    "props",
    [
        {"connection.url": " , "},
        {"connection.url": "http://es:9200", "batch.size": "0"},
        {"connection.url": "http://es:9200", "max.in.flight.requests": "-1"},
        {"connection.url": "http://es:9200", "behavior.on.null.values": "explode"},
        {"connection.url": "http://es:9200", "topic.to.index.map": "orders"},
        {"connection.url": "http://es:9200", "key.ignore": "true", "key.ignore.id.strategy": "fields"},
    ],
)
def test_invalid_props_raise_config_error(props):
    with pytest.raises(ConfigError):
        SinkSettings.from_props(props)


def test_missing_url_is_a_config_error(monkeypatch):
    monkeypatch.delenv("ES_SINK_CONNECTION_URL", raising=False)
    with pytest.raises(ConfigError):
        SinkSettings.from_props({})


def test_env_prefix(monkeypatch):
    monkeypatch.setenv("ES_SINK_CONNECTION_URL", "http://env:9200")
    monkeypatch.setenv("ES_SINK_BATCH_SIZE", "42")
    s = SinkSettings()
    assert s.urls == ["http://env:9200"]
    assert s.batch_size == 42


@pytest.mark.parametrize(
    "extra,strict",
    [
        ({}, True),
        ({"key.ignore": "true"}, False),
        ({"key.ignore": "true", "key.ignore.id.strategy": "record.key"}, True),
        ({"key.ignore": "true", "strict.ordering": "true"}, True),
        ({"strict.ordering": "false"}, False),
        ({"strict.ordering": "auto"}, True),
    ],
)
def test_strict_ordering_default_follows_id_source(extra, strict):
    s = SinkSettings.from_props({"connection.url": "http://es:9200", **extra})
    assert s.strict_ordering_enabled is strict


def test_external_version_only_for_keyed_inserts():
    base = {"connection.url": "http://es:9200"}
    assert SinkSettings.from_props(base).use_external_version
    assert not SinkSettings.from_props({**base, "write.method": "upsert"}).use_external_version
    assert not SinkSettings.from_props({**base, "key.ignore": "true"}).use_external_version


def test_client_config_masks_nothing_it_needs():
    s = SinkSettings.from_props(
        {
            "connection.url": "https://es:9200",
            "connection.username": "elastic",
            "connection.password": "s3cret",
            "connection.compression": "gzip",
            "max.in.flight.requests": "7",
        }
    )
    cfg = s.client_config()
    assert cfg["username"] == "elastic"
    assert cfg["password"] == "s3cret"
    assert cfg["compression"] == "gzip"
    assert cfg["max_connections"] == 7
    assert "s3cret" not in repr(s)


def test_topic_map_and_id_fields():
    s = SinkSettings.from_props(
        {
            "connection.url": "http://es:9200",
            "topic.to.index.map": "orders:sales, users:people",
            "document.id.fields": "user.id, n",
        }
    )
    assert s.topic_index_map == {"orders": "sales", "users": "people"}
    assert s.id_fields == ["user.id", "n"]


def test_load_properties(tmp_path):
    p = tmp_path / "sink.properties"
    p.write_text(
        "# comment\n"
        "connection.url=http://es:9200\n"
        "batch.size = 500\n"
        "! also a comment\n"
        "write.method: upsert\n"
        "\n"
    )
    props = load_properties(p)
    assert props == {"connection.url": "http://es:9200", "batch.size": "500", "write.method": "upsert"}
    assert SinkSettings.from_props(props).batch_size == 500
