"""
Sink task: record intake and task lifecycle.

The host drives one SinkTask per assigned slice of partitions:

    task = SinkTask()
    await task.start(props)
    await task.put(records)              # may block (backpressure)
    offsets = await task.pre_commit()    # commitable positions
    await task.stop()

States: STARTING -> RUNNING -> DRAINING -> STOPPED, or FAILED on any fatal
error. A failed task raises its ConnectorError from every host callback.
"""

from __future__ import annotations

import asyncio
import traceback
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Iterable, Mapping, Optional, Sequence, TypeVar, Union

import httpx
from loguru import logger

from es_client import BulkClient, BulkClientError, TransportError

from . import __version__
from .config import SinkSettings
from .coordinator.buffer import BatchBuffer
from .coordinator.classifier import ErrorKind
from .coordinator.dispatcher import BulkDispatcher
from .coordinator.feedback import FeedbackBus
from .coordinator.offsets import OffsetTracker
from .coordinator.policy import RetryPolicy
from .coordinator.transformer import DocumentTransformer
from .coordinator.types import Reporter, SourceRecord, TopicPartition
from .errors import ConnectorError, MalformedRecord
from .metrics.registry import RECORDS_TOTAL

T = TypeVar("T")


class TaskState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass(frozen=True)
class TaskStatus:
    state: TaskState
    trace: Optional[str] = None


class SinkTask:
    """Feeds host records through transformer, buffer and dispatcher."""

    def __init__(
        self,
        *,
        reporter: Optional[Reporter] = None,
        client: Optional[BulkClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_policy: Optional[RetryPolicy] = None,
        bus: Optional[FeedbackBus] = None,
    ):
        self._reporter = reporter
        self._client = client
        self._owns_client = client is None
        self._transport = transport
        self._retry = retry_policy
        self._bus = bus

        self.settings: Optional[SinkSettings] = None
        self._state = TaskState.STARTING
        self._failure: Optional[ConnectorError] = None
        self._transformer: Optional[DocumentTransformer] = None
        self._tracker = OffsetTracker()
        self._buffer: Optional[BatchBuffer] = None
        self._dispatcher: Optional[BulkDispatcher] = None
        self._known_indices: set[str] = set()

    @staticmethod
    def version() -> str:
        return __version__

    # ---------- state ----------

    @property
    def failure(self) -> Optional[ConnectorError]:
        if self._failure is not None:
            return self._failure
        return self._dispatcher.failure if self._dispatcher is not None else None

    @property
    def state(self) -> TaskState:
        if self.failure is not None:
            return TaskState.FAILED
        return self._state

    @property
    def tracker(self) -> OffsetTracker:
        return self._tracker

    @property
    def dispatcher(self) -> Optional[BulkDispatcher]:
        return self._dispatcher

    def status(self) -> TaskStatus:
        err = self.failure
        trace = "".join(traceback.format_exception(err)) if err is not None else None
        return TaskStatus(self.state, trace)

    def _raise_if_failed(self) -> None:
        err = self.failure
        if err is not None:
            raise err

    def _fail(self, error: ConnectorError) -> ConnectorError:
        if self._failure is None and (self._dispatcher is None or self._dispatcher.failure is None):
            self._failure = error
            logger.error(f"Task {self.settings.task_id if self.settings else '?'} failed: {error}")
        return error

    # ---------- lifecycle ----------

    async def start(self, props: Union[Mapping[str, str], SinkSettings]) -> None:
        self._state = TaskState.STARTING
        s = props if isinstance(props, SinkSettings) else SinkSettings.from_props(props)
        self.settings = s

        if self._client is None:
            self._client = BulkClient(s.client_config(), transport=self._transport)
        if self._retry is None:
            self._retry = RetryPolicy.from_settings(s)
        self._transformer = DocumentTransformer(s)
        self._buffer = BatchBuffer.from_settings(s, bus=self._bus)

        if s.ignore_initial_connection_check:
            logger.info("Skipping initial connection check")
        else:
            await self._check_connection()

        self._dispatcher = BulkDispatcher(
            client=self._client,
            buffer=self._buffer,
            tracker=self._tracker,
            settings=s,
            retry_policy=self._retry,
            reporter=self._reporter,
        )
        self._dispatcher.start()
        self._state = TaskState.RUNNING
        logger.info(
            f"Task {s.task_id} started: urls={s.urls} batch.size={s.batch_size} "
            f"max.in.flight.requests={s.max_in_flight_requests} "
            f"strict.ordering={s.strict_ordering_enabled}"
        )

    async def _with_retries(self, what: str, op: Callable[[], Awaitable[T]]) -> T:
        assert self._retry is not None
        attempts = 0
        while True:
            attempts += 1
            try:
                return await op()
            except TransportError as e:
                reason = str(e)
            if not self._retry.should_retry(attempts):
                raise self._fail(
                    ConnectorError(
                        f"Failed to {what} due to '{reason}' after {attempts} attempt(s)",
                        kind=ErrorKind.EXHAUSTED.value,
                        attempts=attempts,
                    )
                )
            delay = self._retry.next_backoff_ms(attempts)
            logger.warning(f"Could not {what} ({reason}), retrying in {delay} ms")
            await asyncio.sleep(delay / 1000.0)

    async def _check_connection(self) -> None:
        async def _ping() -> bool:
            try:
                ok = await self._client.ping()
            except TransportError:
                raise
            except BulkClientError as e:
                raise self._fail(ConnectorError(str(e), kind=ErrorKind.AUTH_OR_CONFIG.value)) from e
            if not ok:
                raise TransportError(f"cluster at {self._client.urls} did not answer with 2xx")
            return ok

        await self._with_retries("connect to Elasticsearch", _ping)
        logger.info(f"Connected to Elasticsearch at {self._client.urls}")

    async def _ensure_index(self, index: str) -> None:
        if index in self._known_indices:
            return

        async def _create() -> None:
            try:
                if not await self._client.index_exists(index):
                    await self._client.create_index(index)
            except TransportError:
                raise
            except BulkClientError as e:
                raise self._fail(ConnectorError(str(e), kind=ErrorKind.AUTH_OR_CONFIG.value)) from e

        await self._with_retries(f"create index {index}", _create)
        self._known_indices.add(index)

    # ---------- intake ----------

    def _ensure_running(self) -> None:
        self._raise_if_failed()
        if self._state is not TaskState.RUNNING:
            raise ConnectorError(f"Task is {self._state.value}, not accepting records")

    async def put(self, records: Sequence[SourceRecord]) -> None:
        """Accept a batch from the host; blocks while the buffer is full."""
        self._ensure_running()
        assert self.settings and self._transformer and self._buffer
        task_id = self.settings.task_id

        for record in records:
            self._tracker.add_pending(record.topic_partition, record.offset)
            try:
                doc = self._transformer.transform(record)
            except MalformedRecord as e:
                await self._handle_malformed(record, e)
                continue

            if doc is None:
                self._tracker.mark_acked(record.topic_partition, record.offset)
                RECORDS_TOTAL.labels(task=task_id, outcome="skipped").inc()
                continue

            if self.settings.auto_create_indices_at_start:
                try:
                    await self._ensure_index(doc.index)
                except ConnectorError as e:
                    await self._dispatcher.abort(e)
                    raise
            if not await self._buffer.add(doc):
                # stopped or failed while waiting for space
                break

        self._raise_if_failed()

    async def _handle_malformed(self, record: SourceRecord, error: MalformedRecord) -> None:
        s = self.settings
        policy = s.behavior_on_malformed_documents
        if not s.drop_invalid_message and policy == "fail":
            err = ConnectorError(
                f"Can't convert record {record.describe()}: {error}",
                kind=ErrorKind.MALFORMED.value,
            )
            await self._dispatcher.abort(err)
            raise err

        if s.drop_invalid_message or policy == "warn":
            logger.warning(f"Dropping invalid record {record.describe()}: {error}")
        if self._reporter is not None:
            try:
                await self._reporter.report(record, error)
            except Exception as e:  # noqa: BLE001
                err = ConnectorError(f"Failed to dead-letter record {record.describe()}: {e}")
                await self._dispatcher.abort(err)
                raise err from e
        self._tracker.mark_failed_reported(record.topic_partition, record.offset)
        RECORDS_TOTAL.labels(task=s.task_id, outcome="dlq").inc()

    # ---------- commit ----------

    async def pre_commit(
        self, offsets: Optional[Mapping[TopicPartition, int]] = None
    ) -> dict[TopicPartition, int]:
        """Flush what is buffered and return commitable positions.

        Waits up to flush.timeout.ms; whatever is still pending then is simply
        not included.
        """
        self._raise_if_failed()
        if self._state is TaskState.RUNNING and self._buffer is not None:
            await self._buffer.request_flush()
            if not await self._buffer.wait_empty(self.settings.flush_timeout_ms / 1000.0):
                self._raise_if_failed()
                logger.warning(
                    f"Flush did not finish within {self.settings.flush_timeout_ms} ms, "
                    f"committing acknowledged prefix only"
                )
        self._raise_if_failed()

        positions = self._tracker.commitable()
        if offsets is not None:
            positions = {tp: o for tp, o in positions.items() if tp in offsets}
        return positions

    async def flush(
        self, offsets: Optional[Mapping[TopicPartition, int]] = None
    ) -> dict[TopicPartition, int]:
        return await self.pre_commit(offsets)

    # ---------- partitions ----------

    def open(self, partitions: Iterable[TopicPartition]) -> None:
        logger.debug(f"Partitions assigned: {', '.join(map(str, partitions))}")

    def close(self, partitions: Iterable[TopicPartition]) -> None:
        partitions = list(partitions)
        self._tracker.forget(partitions)
        logger.debug(f"Partitions revoked: {', '.join(map(str, partitions))}")

    # ---------- stop ----------

    async def stop(self) -> dict[TopicPartition, int]:
        """Drain in-flight work and return final commitable positions.

        In-flight requests finish their current attempt but are not retried;
        anything unfinished stays pending for the next task instance.
        """
        if self._state is TaskState.STOPPED:
            return {}
        if self.failure is None:
            self._state = TaskState.DRAINING
            logger.info(f"Task {self.settings.task_id if self.settings else '?'} draining")

        if self._dispatcher is not None:
            self._dispatcher.begin_stop()
        if self._buffer is not None:
            await self._buffer.close()
        if self._dispatcher is not None:
            await self._dispatcher.drain()
        if self._client is not None and self._owns_client:
            await self._client.aclose()

        if self.failure is not None:
            return {}
        self._state = TaskState.STOPPED
        positions = self._tracker.commitable()
        logger.info(f"Task stopped, final positions: { {str(tp): o for tp, o in positions.items()} }")
        return positions

