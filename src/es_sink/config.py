"""
Per-task sink settings.

Built once at task start from the host's flat property map (dotted names,
``connection.url``) or from ``ES_SINK_*`` environment variables, then passed
by reference to every component. Instances are frozen.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Literal, Mapping, Optional

from pydantic import Field, SecretStr, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from es_client import BulkClientConfig

from .errors import ConfigError

IdStrategy = Literal["none", "topic.partition.offset", "record.key", "fields"]
WriteMethod = Literal["insert", "upsert", "update"]
NullValueBehavior = Literal["ignore", "delete", "fail"]
MalformedBehavior = Literal["ignore", "warn", "fail"]
VersionConflictBehavior = Literal["ignore", "fail"]
CircuitBreakingBehavior = Literal["retry", "fail"]


class SinkSettings(BaseSettings):
    # --- connection
    connection_url: str
    connection_username: Optional[str] = None
    connection_password: Optional[SecretStr] = None
    connection_ssl_ca_location: Optional[str] = None
    connection_ssl_cert_location: Optional[str] = None
    connection_ssl_key_location: Optional[str] = None
    connection_ssl_verify: bool = True
    connection_compression: Literal["none", "gzip"] = "none"

    # --- timing
    connect_timeout_ms: int = Field(1000, gt=0)
    read_timeout_ms: int = Field(3000, gt=0)
    linger_ms: int = Field(1, ge=0)
    flush_timeout_ms: int = Field(180_000, gt=0)

    # --- batching / concurrency
    batch_size: int = Field(2000, gt=0)
    max_buffered_bytes: int = Field(5 * 1024 * 1024, gt=0)
    max_buffered_records: int = Field(20_000, gt=0)
    max_in_flight_requests: int = Field(5, gt=0)

    # --- retry
    max_retries: int = Field(5, ge=0)
    retry_backoff_ms: int = Field(100, ge=0)
    max_retry_backoff_ms: int = Field(10_000, ge=0)

    # --- semantics
    ignore_key: bool = False
    ignore_schema: bool = False
    key_ignore_id_strategy: IdStrategy = "topic.partition.offset"
    document_id_fields: str = ""
    write_method: WriteMethod = "insert"
    behavior_on_null_values: NullValueBehavior = "fail"
    behavior_on_malformed_documents: MalformedBehavior = "fail"
    behavior_on_version_conflict: VersionConflictBehavior = "ignore"
    behavior_on_circuit_breaking: CircuitBreakingBehavior = "retry"
    drop_invalid_message: bool = False
    strict_ordering: Optional[bool] = None

    # --- index naming
    topic_to_index_map: str = ""
    index_suffix_from_timestamp: Optional[str] = None

    # --- lifecycle
    ignore_initial_connection_check: bool = False
    auto_create_indices_at_start: bool = True
    task_id: str = "0"

    model_config = SettingsConfigDict(
        env_prefix="ES_SINK_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    @field_validator(
        "key_ignore_id_strategy",
        "write_method",
        "behavior_on_null_values",
        "behavior_on_malformed_documents",
        "behavior_on_version_conflict",
        "behavior_on_circuit_breaking",
        "connection_compression",
        mode="before",
    )
    @classmethod
    def _lower(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("strict_ordering", mode="before")
    @classmethod
    def _auto_is_none(cls, v):
        if isinstance(v, str) and v.strip().lower() in ("", "auto"):
            return None
        return v

    @field_validator("connection_url")
    @classmethod
    def _urls_present(cls, v: str) -> str:
        if not [u for u in v.split(",") if u.strip()]:
            raise ValueError("connection.url must name at least one URL")
        return v

    @field_validator("index_suffix_from_timestamp")
    @classmethod
    def _valid_pattern(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        try:
            datetime(2024, 1, 1, tzinfo=timezone.utc).strftime(v)
        except ValueError as e:
            raise ValueError(f"invalid index.suffix.from.timestamp pattern {v!r}: {e}") from e
        return v

    @field_validator("topic_to_index_map")
    @classmethod
    def _valid_map(cls, v: str) -> str:
        for pair in filter(None, (p.strip() for p in v.split(","))):
            topic, sep, index = pair.partition(":")
            if not sep or not topic.strip() or not index.strip():
                raise ValueError(f"topic.to.index.map entry {pair!r} is not 'topic:index'")
        return v

    @model_validator(mode="after")
    def _fields_strategy_needs_fields(self) -> "SinkSettings":
        if self.ignore_key and self.key_ignore_id_strategy == "fields" and not self.id_fields:
            raise ValueError("key.ignore.id.strategy=fields requires document.id.fields")
        return self

    # ---------- derived views ----------

    @property
    def urls(self) -> list[str]:
        return [u.strip() for u in self.connection_url.split(",") if u.strip()]

    @property
    def id_fields(self) -> list[str]:
        return [f.strip() for f in self.document_id_fields.split(",") if f.strip()]

    @property
    def topic_index_map(self) -> dict[str, str]:
        out: dict[str, str] = {}
        for pair in filter(None, (p.strip() for p in self.topic_to_index_map.split(","))):
            topic, _, index = pair.partition(":")
            out[topic.strip()] = index.strip()
        return out

    @property
    def id_from_key(self) -> bool:
        """True when document ids are the record keys."""
        return not self.ignore_key or self.key_ignore_id_strategy == "record.key"

    @property
    def strict_ordering_enabled(self) -> bool:
        if self.strict_ordering is not None:
            return self.strict_ordering
        return self.id_from_key

    @property
    def use_external_version(self) -> bool:
        return self.id_from_key and self.write_method == "insert"

    def client_config(self) -> BulkClientConfig:
        cfg: BulkClientConfig = {
            "urls": self.urls,
            "connect_timeout_ms": self.connect_timeout_ms,
            "read_timeout_ms": self.read_timeout_ms,
            "compression": self.connection_compression,
            "ssl_verify": self.connection_ssl_verify,
            "max_connections": self.max_in_flight_requests,
        }
        if self.connection_username:
            cfg["username"] = self.connection_username
            if self.connection_password is not None:
                cfg["password"] = self.connection_password.get_secret_value()
        if self.connection_ssl_ca_location:
            cfg["ssl_ca_location"] = self.connection_ssl_ca_location
        if self.connection_ssl_cert_location:
            cfg["ssl_cert_location"] = self.connection_ssl_cert_location
        if self.connection_ssl_key_location:
            cfg["ssl_key_location"] = self.connection_ssl_key_location
        return cfg

    @classmethod
    def from_props(cls, props: Mapping[str, str]) -> "SinkSettings":
        """Build settings from a host property map (``batch.size`` -> ``batch_size``)."""
        kwargs = {k.strip().replace(".", "_").replace("-", "_").lower(): v for k, v in props.items()}
        try:
            return cls(**kwargs)
        except ValidationError as e:
            raise ConfigError(f"Invalid sink configuration: {e}") from e


def load_properties(path: str | Path) -> dict[str, str]:
    """Read a Java-style ``.properties`` file into a flat dict."""
    props: dict[str, str] = {}
    with open(path, "r", encoding="utf-8") as f:
        for raw in f:
            line = raw.strip()
            if not line or line.startswith(("#", "!")):
                continue
            sep = min((i for i in (line.find("="), line.find(":")) if i >= 0), default=-1)
            if sep < 0:
                props[line] = ""
                continue
            props[line[:sep].strip()] = line[sep + 1 :].strip()
    return props
