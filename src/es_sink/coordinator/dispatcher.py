from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Optional

from loguru import logger

from es_client import BulkClient, BulkClientError, BulkResponse, encode_bulk

from ..errors import ConnectorError, DocumentRejected
from ..metrics.registry import (
    BULK_REQUEST_LATENCY_MS,
    BULK_REQUESTS_TOTAL,
    BULK_RETRIES_TOTAL,
    IN_FLIGHT_REQUESTS,
    RECORDS_TOTAL,
)
from .buffer import BatchBuffer
from .classifier import Classification, Disposition, ErrorClassifier, ErrorKind
from .offsets import OffsetTracker
from .policy import RetryPolicy
from .types import BulkRequest, IndexedDocument, Reporter


@dataclass
class Completion:
    """What a finished BulkRequest did to each of its documents."""

    request: BulkRequest
    documents: list[IndexedDocument]
    acked: list[IndexedDocument] = field(default_factory=list)
    rejected: list[tuple[IndexedDocument, DocumentRejected]] = field(default_factory=list)
    abandoned: list[IndexedDocument] = field(default_factory=list)
    error: Optional[ConnectorError] = None


@dataclass(frozen=True)
class DispatcherHealth:
    in_flight: int
    max_in_flight: int
    buffered: int
    queued: int
    stopping: bool
    failed: bool


class BulkDispatcher:
    """Sends closed slots to the cluster with at most ``max_in_flight`` requests.

    A pump pulls slots from the buffer (acquiring an in-flight permit before
    each pull), each request runs in its own worker task, and finished
    requests go through a completion queue to a single reaper that applies
    acks, dead-letter reports and offset marks in completion order.
    """

    def __init__(
        self,
        *,
        client: BulkClient,
        buffer: BatchBuffer,
        tracker: OffsetTracker,
        settings,
        classifier: Optional[ErrorClassifier] = None,
        retry_policy: Optional[RetryPolicy] = None,
        reporter: Optional[Reporter] = None,
    ):
        self._client = client
        self._buffer = buffer
        self._tracker = tracker
        self._settings = settings
        self._classifier = classifier or ErrorClassifier(settings.behavior_on_circuit_breaking)
        self._retry = retry_policy or RetryPolicy.from_settings(settings)
        self._reporter = reporter
        self._task_id = settings.task_id

        self._max_in_flight = settings.max_in_flight_requests
        self._permits = asyncio.Semaphore(self._max_in_flight)
        self._completions: asyncio.Queue[Optional[Completion]] = asyncio.Queue()
        self._workers: set[asyncio.Task] = set()
        self._pump_task: Optional[asyncio.Task] = None
        self._reaper_task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

        self._in_flight = 0
        self.max_in_flight_observed = 0
        self.failure: Optional[ConnectorError] = None
        self.failed = asyncio.Event()

    # ---------- lifecycle ----------

    def start(self, *, pump: bool = True) -> None:
        if self._reaper_task is None:
            self._reaper_task = asyncio.create_task(self._reap(), name=f"reaper-{self._task_id}")
        if pump and self._pump_task is None:
            self._pump_task = asyncio.create_task(self._pump(), name=f"pump-{self._task_id}")

    async def submit(self, request: BulkRequest) -> None:
        """Send a request, waiting for an in-flight permit first."""
        await self._permits.acquire()
        self._spawn(request)

    def begin_stop(self) -> None:
        """Failed attempts are no longer retried; backoff sleeps end now."""
        self._stopping.set()

    async def drain(self) -> None:
        """Wait for the pump, every worker and the reaper to finish.

        The buffer must be closed (or about to be) for the pump to end.
        """
        if self._pump_task is not None:
            await asyncio.gather(self._pump_task, return_exceptions=True)
        while self._workers:
            await asyncio.gather(*list(self._workers), return_exceptions=True)
        if self._reaper_task is not None and not self._reaper_task.done():
            await self._completions.put(None)
            await asyncio.gather(self._reaper_task, return_exceptions=True)

    async def abort(self, error: ConnectorError) -> None:
        """Fail the pipeline: stop consuming and cancel outstanding work."""
        if self.failure is None:
            self.failure = error
            logger.error(f"Task {self._task_id} failed: {error}")
        self._stopping.set()
        self.failed.set()
        await self._buffer.close()
        current = asyncio.current_task()
        for t in [*self._workers, self._pump_task]:
            if t is not None and t is not current and not t.done():
                t.cancel()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def health(self) -> DispatcherHealth:
        return DispatcherHealth(
            in_flight=self._in_flight,
            max_in_flight=self._max_in_flight,
            buffered=self._buffer.size,
            queued=self._buffer.queued,
            stopping=self._stopping.is_set(),
            failed=self.failure is not None,
        )

    # ---------- pump / workers ----------

    async def _pump(self) -> None:
        while True:
            await self._permits.acquire()
            slot = await self._buffer.take_closed()
            if slot is None:
                self._permits.release()
                break
            self._spawn(BulkRequest.from_slot(slot))

    def _spawn(self, request: BulkRequest) -> None:
        self._in_flight += 1
        self.max_in_flight_observed = max(self.max_in_flight_observed, self._in_flight)
        IN_FLIGHT_REQUESTS.labels(task=self._task_id).set(self._in_flight)
        t = asyncio.create_task(self._worker(request), name=f"bulk-{request.slot_id}")
        self._workers.add(t)
        t.add_done_callback(self._workers.discard)

    async def _worker(self, request: BulkRequest) -> None:
        try:
            done = await self._execute(request)
        except asyncio.CancelledError:
            raise
        except Exception as e:  # noqa: BLE001
            logger.exception(f"Bulk worker for slot {request.slot_id} crashed")
            done = Completion(
                request,
                list(request.documents),
                error=ConnectorError(f"Unexpected error in bulk worker: {type(e).__name__}: {e}"),
            )
        finally:
            self._in_flight -= 1
            IN_FLIGHT_REQUESTS.labels(task=self._task_id).set(self._in_flight)
            self._permits.release()
        await self._completions.put(done)

    async def _backoff(self, delay_ms: int) -> bool:
        """Sleep ``delay_ms``; True if a stop interrupted the sleep."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=delay_ms / 1000.0)
            return True
        except asyncio.TimeoutError:
            return False

    async def _send(self, request: BulkRequest) -> tuple[Optional[BulkResponse], Optional[Classification]]:
        body = encode_bulk(request.documents)
        t0 = time.monotonic()
        deadline_s = getattr(self._client, "deadline_s", None)
        request.deadline = t0 + deadline_s if deadline_s else None
        try:
            response = await self._client.send_bulk(body)
        except BulkClientError as e:
            return None, self._classifier.classify_exception(e)
        finally:
            BULK_REQUEST_LATENCY_MS.labels(task=self._task_id).observe(
                (time.monotonic() - t0) * 1000.0
            )
        return response, self._classifier.classify_response(response)

    async def _execute(self, request: BulkRequest) -> Completion:
        done = Completion(request, list(request.documents))
        request.first_try_at = time.monotonic()

        while request.documents:
            request.attempts += 1
            response, verdict = await self._send(request)

            if verdict is None:
                assert response is not None
                retry_docs, verdict = self._apply_items(request, response, done)
                if done.error is not None:
                    break
                if not retry_docs:
                    BULK_REQUESTS_TOTAL.labels(task=self._task_id, outcome="success").inc()
                    break
                request.documents = retry_docs
            elif verdict.disposition is Disposition.FATAL:
                done.error = ConnectorError(
                    f"Failed to execute bulk request due to '{verdict.reason}' "
                    f"after {request.attempts} attempt(s)",
                    kind=verdict.kind.value,
                    attempts=request.attempts,
                )
                break

            assert verdict is not None
            if self._stopping.is_set():
                logger.info(
                    f"Not retrying slot {request.slot_id} while stopping; "
                    f"{len(request.documents)} document(s) stay pending"
                )
                done.abandoned.extend(request.documents)
                break
            if not self._retry.should_retry(request.attempts):
                done.error = self._retry.exhausted(verdict.reason, request.attempts)
                break

            delay = self._retry.next_backoff_ms(request.attempts)
            request.next_delay_ms = delay
            BULK_REQUESTS_TOTAL.labels(task=self._task_id, outcome="retry").inc()
            BULK_RETRIES_TOTAL.labels(task=self._task_id, kind=verdict.kind.value).inc()
            logger.warning(
                f"Bulk request for slot {request.slot_id} failed ({verdict.reason}), "
                f"attempt {request.attempts}/{self._retry.max_attempts}, retrying in {delay} ms"
            )
            if await self._backoff(delay):
                done.abandoned.extend(request.documents)
                break

        if done.error is not None:
            BULK_REQUESTS_TOTAL.labels(task=self._task_id, outcome="failed").inc()
        return done

    def _apply_items(
        self, request: BulkRequest, response: BulkResponse, done: Completion
    ) -> tuple[list[IndexedDocument], Optional[Classification]]:
        """Resolve per-item results; returns the documents to retry."""
        docs = request.documents
        if len(response.items) != len(docs):
            return list(docs), Classification(
                Disposition.TRANSIENT,
                ErrorKind.TRANSPORT,
                f"Bulk response has {len(response.items)} item(s) for {len(docs)} action(s)",
            )

        s = self._settings
        retry: list[IndexedDocument] = []
        retry_verdict: Optional[Classification] = None
        for doc, item in zip(docs, response.items):
            verdict = self._classifier.classify_item(item)
            if verdict is None:
                done.acked.append(doc)
                continue

            d = verdict.disposition
            if d is Disposition.TRANSIENT:
                retry.append(doc)
                retry_verdict = verdict
            elif d is Disposition.VERSION_CONFLICT and s.behavior_on_version_conflict == "ignore":
                logger.debug(f"Ignoring version conflict for {doc.record.describe()}: {verdict.reason}")
                done.acked.append(doc)
            elif d is Disposition.MALFORMED and s.behavior_on_malformed_documents != "fail":
                if s.behavior_on_malformed_documents == "warn":
                    logger.warning(
                        f"Dead-lettering record {doc.record.describe()} rejected by the cluster: "
                        f"{verdict.reason}"
                    )
                done.rejected.append(
                    (
                        doc,
                        DocumentRejected(
                            verdict.reason,
                            index=item.index or doc.index,
                            doc_id=item.doc_id or doc.doc_id,
                            status=item.status,
                            error_type=item.error_type,
                        ),
                    )
                )
            else:
                done.error = ConnectorError(
                    f"Bulk request failed for record {doc.record.describe()}: {verdict.reason}",
                    kind=verdict.kind.value,
                    attempts=request.attempts,
                )
                return [], None
        return retry, retry_verdict

    # ---------- reaper ----------

    async def _reap(self) -> None:
        while True:
            done = await self._completions.get()
            if done is None:
                break
            try:
                await self._settle(done)
            except ConnectorError as e:
                await self.abort(e)
            finally:
                await self._buffer.complete(done.documents)

    async def _settle(self, done: Completion) -> None:
        for doc in done.acked:
            self._tracker.mark_acked(doc.record.topic_partition, doc.record.offset)
        if done.acked:
            RECORDS_TOTAL.labels(task=self._task_id, outcome="acked").inc(len(done.acked))

        for doc, err in done.rejected:
            if self._reporter is not None:
                try:
                    await self._reporter.report(doc.record, err)
                except Exception as e:  # noqa: BLE001
                    raise ConnectorError(
                        f"Failed to dead-letter record {doc.record.describe()}: {e}"
                    ) from e
            self._tracker.mark_failed_reported(doc.record.topic_partition, doc.record.offset)
            RECORDS_TOTAL.labels(task=self._task_id, outcome="dlq").inc()

        if done.error is not None:
            await self.abort(done.error)
