"""
Unit tests for the es-sink CLI (no cluster needed).
"""

import gzip
import json

import pytest
import typer
from typer.testing import CliRunner

from es_sink import __version__
from es_sink.cli import app, iter_records

runner = CliRunner()


def test_version():
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert result.stdout.strip() == __version__


def test_show_config_from_file_and_overrides(tmp_path):
    p = tmp_path / "sink.properties"
    p.write_text("connection.url=http://es:9200\nconnection.password=hunter2\nbatch.size=10\n")
    result = runner.invoke(app, ["show-config", "-c", str(p), "--set", "batch.size=20"])
    assert result.exit_code == 0
    out = json.loads(result.stdout)
    assert out["batch_size"] == 20
    assert out["connection_url"] == "http://es:9200"
    assert out["strict_ordering"] is True
    assert "hunter2" not in result.stdout


def test_show_config_invalid_exits_2():
    result = runner.invoke(app, ["show-config", "--set", "connection.url=http://es:9200", "--set", "batch.size=0"])
    assert result.exit_code == 2


def test_iter_records(tmp_path):
    p = tmp_path / "records.ndjson.gz"
    lines = [
        {"topic": "orders", "partition": 1, "offset": 4, "key": "k4", "value": {"n": 4}},
        {"topic": "orders", "offset": 5, "value": None},
        {"topic": "orders", "offset": 6, "value": "raw"},
    ]
    p.write_bytes(gzip.compress("\n".join(json.dumps(x) for x in lines).encode() + b"\n\n"))

    recs = list(iter_records(str(p)))
    assert [(r.partition, r.offset) for r in recs] == [(1, 4), (0, 5), (0, 6)]
    assert json.loads(recs[0].value) == {"n": 4}
    assert recs[1].value is None
    assert recs[2].value == "raw"


def test_iter_records_rejects_bad_lines(tmp_path):
    p = tmp_path / "records.ndjson"
    p.write_text('{"topic": "orders"}\n')
    with pytest.raises(typer.BadParameter, match="records.ndjson:1"):
        list(iter_records(str(p)))
