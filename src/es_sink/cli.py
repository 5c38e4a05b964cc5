from __future__ import annotations

import asyncio
import gzip
import io
import json
import sys
from typing import Any, Iterator, List, Optional

import typer
from loguru import logger

from es_client import BulkClient, BulkClientError

from . import __version__
from .config import SinkSettings, load_properties
from .coordinator.dlq import DeadLetterQueue
from .coordinator.types import SourceRecord
from .errors import ConfigError, ConnectorError
from .task import SinkTask

app = typer.Typer(help="Elasticsearch sink operational CLI")

# ---------------------------
# Common options
# ---------------------------


def config_opt() -> Optional[str]:
    return typer.Option(None, "--config", "-c", help="Connector .properties file")


def set_opt() -> List[str]:
    return typer.Option([], "--set", "-s", help="Override a property (name=value), repeatable")


def _props(config: Optional[str], overrides: List[str]) -> dict[str, str]:
    props = load_properties(config) if config else {}
    for item in overrides:
        name, sep, value = item.partition("=")
        if not sep:
            raise typer.BadParameter(f"--set expects name=value, got {item!r}")
        props[name.strip()] = value.strip()
    return props


def _settings(config: Optional[str], overrides: List[str]) -> SinkSettings:
    try:
        return SinkSettings.from_props(_props(config, overrides))
    except ConfigError as e:
        logger.error(str(e))
        raise typer.Exit(2)


def iter_records(path: str) -> Iterator[SourceRecord]:
    """Read records from an NDJSON file ('-' for stdin, .gz ok).

    Each line holds topic, partition, offset and optionally key, value
    (object, string or null) and timestamp.
    """
    if path == "-":
        stream = sys.stdin
    elif path.endswith(".gz"):
        stream = io.TextIOWrapper(gzip.open(path, "rb"), encoding="utf-8")
    else:
        stream = open(path, "r", encoding="utf-8")
    try:
        for lineno, line in enumerate(stream, 1):
            line = line.strip()
            if not line:
                continue
            try:
                obj: dict[str, Any] = json.loads(line)
                value = obj.get("value")
                if value is not None and not isinstance(value, str):
                    value = json.dumps(value)
                yield SourceRecord(
                    topic=obj["topic"],
                    partition=int(obj.get("partition", 0)),
                    offset=int(obj["offset"]),
                    key=obj.get("key"),
                    value=value,
                    timestamp=obj.get("timestamp"),
                )
            except (ValueError, KeyError, TypeError) as e:
                raise typer.BadParameter(f"{path}:{lineno}: not a record ({e})")
    finally:
        if stream is not sys.stdin:
            stream.close()


# ---------------------------
# Commands
# ---------------------------


@app.command("version")
def version():
    typer.echo(__version__)


@app.command("show-config")
def show_config(config: Optional[str] = config_opt(), overrides: List[str] = set_opt()):
    """Print the effective settings (secrets masked)."""
    s = _settings(config, overrides)
    out = s.model_dump(mode="json")
    out["strict_ordering"] = s.strict_ordering_enabled
    typer.echo(json.dumps(out, indent=2, sort_keys=True))


@app.command("ping")
def ping(config: Optional[str] = config_opt(), overrides: List[str] = set_opt()):
    """Check that the cluster answers."""
    s = _settings(config, overrides)

    async def _ping() -> bool:
        async with BulkClient(s.client_config()) as client:
            return await client.ping()

    try:
        ok = asyncio.run(_ping())
    except BulkClientError as e:
        logger.error(f"Ping failed: {e}")
        ok = False
    typer.echo(json.dumps({"ok": ok, "urls": s.urls}, indent=2))
    if not ok:
        raise typer.Exit(1)


@app.command("run")
def run(
    path: str = typer.Argument(..., help="NDJSON records file, '-' for stdin (.gz ok)"),
    config: Optional[str] = config_opt(),
    overrides: List[str] = set_opt(),
    dlq: Optional[str] = typer.Option(None, "--dlq", help="Dead-letter NDJSON file"),
    chunk: int = typer.Option(500, "--chunk", help="Records handed to put() at a time"),
):
    """Feed a records file through a sink task and report the committed offsets."""
    s = _settings(config, overrides)
    try:
        summary = asyncio.run(_run(s, path, dlq, chunk))
    except ConnectorError as e:
        logger.error(f"Task failed: {e}")
        raise typer.Exit(1)
    logger.success(f"Indexed {summary['records']} record(s)")
    typer.echo(json.dumps(summary, indent=2))


async def _run(settings: SinkSettings, path: str, dlq_path: Optional[str], chunk: int) -> dict:
    reporter = DeadLetterQueue(dlq_path) if dlq_path else None
    task = SinkTask(reporter=reporter)
    n = 0
    committed: dict = {}
    try:
        await task.start(settings)
        batch: list[SourceRecord] = []
        for record in iter_records(path):
            batch.append(record)
            if len(batch) >= chunk:
                await task.put(batch)
                n += len(batch)
                batch = []
        if batch:
            await task.put(batch)
            n += len(batch)
        committed = await task.pre_commit()
    finally:
        final = await task.stop()
        committed = final or committed
    return {
        "records": n,
        "committed": {str(tp): off for tp, off in committed.items()},
        "dead_lettered": reporter.reported if reporter else 0,
        "state": task.state.value,
    }


if __name__ == "__main__":
    app()
