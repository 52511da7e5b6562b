from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass
import logging
import random
from typing import Any

from opentelemetry import trace

from trunk_ingest.core.config import Settings
from trunk_ingest.core.errors import (
    ConflictError,
    DeferredWriteFailure,
    HashCollisionError,
    IngestError,
    PipelineClosedError,
    StorageUnavailable,
)
from trunk_ingest.services.dedup import LogDeduplicator
from trunk_ingest.services.gateway import PostgresGateway
from trunk_ingest.services.hashing import shard_for
from trunk_ingest.services.normalizer import call_identifier
from trunk_ingest.services.records import EventKind
from trunk_ingest.services.sequencer import IngestResult, ReferentialSequencer
from trunk_ingest.services.store import DeadLetterStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

_OPERATOR_ERRORS = (ConflictError, HashCollisionError, DeferredWriteFailure)


@dataclass(slots=True)
class QueuedEvent:
    kind: EventKind
    call_id: str
    payload: dict[str, Any]
    future: asyncio.Future[IngestResult] | None = None


class IngestPipeline:
    """Sharded worker pool: one FIFO lane per call id, lanes run concurrently.

    Shard queues are bounded, so a saturated store blocks producers instead of
    buffering without limit.
    """

    def __init__(
        self,
        sequencer: ReferentialSequencer,
        dead_letters: DeadLetterStore,
        *,
        worker_count: int = 8,
        queue_size: int = 100,
        storage_pause_base_seconds: float = 1.0,
        storage_pause_max_seconds: float = 30.0,
        drain_timeout_seconds: float = 30.0,
    ) -> None:
        self.sequencer = sequencer
        self.dead_letters = dead_letters
        self.worker_count = max(1, worker_count)
        self.queue_size = max(1, queue_size)
        self.storage_pause_base_seconds = max(0.0, storage_pause_base_seconds)
        self.storage_pause_max_seconds = max(self.storage_pause_base_seconds, storage_pause_max_seconds)
        self.drain_timeout_seconds = max(0.0, drain_timeout_seconds)
        self._queues: list[asyncio.Queue[QueuedEvent | None]] = []
        self._workers: list[asyncio.Task[None]] = []
        self._accepting = False
        self._stopping = False
        self._stop_event: asyncio.Event | None = None
        sequencer.bind_resubmit(self._resubmit)

    @property
    def running(self) -> bool:
        return bool(self._workers) and not self._stopping

    async def start(self) -> None:
        if self._workers:
            return
        self._stopping = False
        self._stop_event = asyncio.Event()
        self.sequencer.resume()
        self._queues = [asyncio.Queue(maxsize=self.queue_size) for _ in range(self.worker_count)]
        self._workers = [
            asyncio.create_task(self._run_worker(index), name=f"ingest-worker-{index}")
            for index in range(self.worker_count)
        ]
        self._accepting = True
        logger.info("ingest pipeline started workers=%s queue_size=%s", self.worker_count, self.queue_size)

    async def submit_call(self, descriptor: Mapping[str, Any]) -> IngestResult:
        try:
            call_id = call_identifier(descriptor)
        except IngestError as exc:
            logger.warning("rejected call event call_id=None error=%s message=%s", type(exc).__name__, exc.message)
            raise
        return await self._submit(QueuedEvent(kind=EventKind.CALL, call_id=call_id, payload=dict(descriptor)))

    async def submit_log(self, kind: EventKind, call_id: str, event: Mapping[str, Any]) -> IngestResult:
        if kind is EventKind.CALL:
            raise ValueError("call descriptors go through submit_call")
        return await self._submit(QueuedEvent(kind=kind, call_id=call_id, payload=dict(event)))

    async def replay(self, dead_letter_id: str) -> IngestResult:
        entry = self.dead_letters.pop(dead_letter_id)
        if entry is None:
            raise KeyError(dead_letter_id)
        logger.info("replaying %s id=%s kind=%s call_id=%s", entry.category, entry.id, entry.kind.value, entry.call_id)
        call_id = entry.call_id
        if not call_id:
            call_id = call_identifier(entry.payload) if entry.kind is EventKind.CALL else ""
        item = QueuedEvent(kind=entry.kind, call_id=call_id, payload=entry.payload)
        try:
            return await self._submit(item)
        except PipelineClosedError:
            self.dead_letters.restore(entry)
            raise

    async def join(self) -> None:
        """Wait until every queued event and every deferred waiter has settled."""
        while True:
            for queue in self._queues:
                await queue.join()
            if not self.sequencer.waiting:
                return
            await self.sequencer.wait_idle()

    async def drain(self) -> None:
        """Stop intake and let in-flight events reach a commit or rollback boundary."""
        if not self._workers:
            return
        self._accepting = False
        logger.info("draining ingest pipeline timeout=%.1fs", self.drain_timeout_seconds)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.drain_timeout_seconds

        await self._wait_queues(deadline)
        await self.sequencer.shutdown()
        await self._wait_queues(deadline)

        self._stopping = True
        if self._stop_event is not None:
            self._stop_event.set()
        for queue in self._queues:
            self._dead_letter_queued(queue)
            queue.put_nowait(None)
        # Workers finish their current event; nothing is cancelled mid-transaction.
        await asyncio.gather(*self._workers)
        self._workers = []
        self._queues = []
        logger.info("ingest pipeline drained dead_letters=%s", len(self.dead_letters))

    async def _wait_queues(self, deadline: float) -> None:
        remaining = deadline - asyncio.get_running_loop().time()
        try:
            await asyncio.wait_for(
                asyncio.gather(*(queue.join() for queue in self._queues)),
                timeout=max(0.0, remaining),
            )
        except asyncio.TimeoutError:
            logger.warning("drain timeout reached with events still queued")

    async def _submit(self, item: QueuedEvent) -> IngestResult:
        if not self._accepting:
            raise PipelineClosedError("ingest pipeline is not accepting events", call_id=item.call_id)
        item.future = asyncio.get_running_loop().create_future()
        await self._enqueue(item)
        return await item.future

    async def _enqueue(self, item: QueuedEvent) -> None:
        queue = self._queues[shard_for(item.call_id, len(self._queues))]
        # Blocks while the shard is full; backpressure reaches the producer.
        await queue.put(item)

    async def _resubmit(self, kind: EventKind, call_id: str, payload: dict[str, Any]) -> None:
        if self._stopping or not self._queues:
            raise PipelineClosedError("ingest pipeline stopped", call_id=call_id)
        await self._enqueue(QueuedEvent(kind=kind, call_id=call_id, payload=payload))

    async def _run_worker(self, index: int) -> None:
        queue = self._queues[index]
        while True:
            item = await queue.get()
            try:
                if item is None:
                    return
                await self._process(item)
            finally:
                queue.task_done()

    async def _process(self, item: QueuedEvent) -> None:
        with tracer.start_as_current_span("ingest.process_event") as span:
            span.set_attribute("ingest.kind", item.kind.value)
            span.set_attribute("ingest.call_id", item.call_id)
            backoff = self.storage_pause_base_seconds
            while True:
                try:
                    result = await self._dispatch(item)
                except StorageUnavailable as exc:
                    if self._stopping:
                        self._dead_letter(item, reason="storage_unavailable", error=exc.message)
                        self._fail(item, exc)
                        return
                    jitter = random.uniform(0.0, 0.5)
                    sleep_for = min(max(backoff, 0.01) * (1.0 + jitter), self.storage_pause_max_seconds)
                    logger.warning(
                        "storage unavailable kind=%s call_id=%s; shard paused, retry in %.1fs: %s",
                        item.kind.value,
                        item.call_id,
                        sleep_for,
                        exc.message,
                    )
                    await self._pause(sleep_for)
                    backoff = min(sleep_for * 2.0, self.storage_pause_max_seconds)
                    continue
                except IngestError as exc:
                    span.set_attribute("ingest.error", type(exc).__name__)
                    self._log_reject(item, exc)
                    self._fail(item, exc)
                    return
                except Exception as exc:
                    logger.exception("unexpected failure kind=%s call_id=%s", item.kind.value, item.call_id)
                    self._dead_letter(item, reason="unexpected_error", error=repr(exc))
                    self._fail(item, exc)
                    return

                span.set_attribute("ingest.status", result.status)
                if item.future is not None and not item.future.done():
                    item.future.set_result(result)
                return

    async def _dispatch(self, item: QueuedEvent) -> IngestResult:
        if item.kind is EventKind.CALL:
            return await self.sequencer.ingest_call(item.payload)
        return await self.sequencer.ingest_log(item.kind, item.call_id, item.payload)

    async def _pause(self, seconds: float) -> None:
        if self._stop_event is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def _dead_letter_queued(self, queue: asyncio.Queue[QueuedEvent | None]) -> None:
        while True:
            try:
                item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                if item is not None:
                    self._dead_letter(item, reason="shutdown", error="pipeline stopped before the event was processed")
                    self._fail(item, PipelineClosedError("ingest pipeline stopped", call_id=item.call_id))
            finally:
                queue.task_done()

    def _dead_letter(self, item: QueuedEvent, *, reason: str, error: str) -> None:
        self.dead_letters.add(
            category="dead_letter",
            kind=item.kind,
            call_id=item.call_id,
            payload=item.payload,
            reason=reason,
            error=error,
        )

    @staticmethod
    def _fail(item: QueuedEvent, exc: BaseException) -> None:
        if item.future is not None and not item.future.done():
            item.future.set_exception(exc)

    @staticmethod
    def _log_reject(item: QueuedEvent, exc: IngestError) -> None:
        level = logging.ERROR if isinstance(exc, _OPERATOR_ERRORS) else logging.WARNING
        logger.log(
            level,
            "rejected %s event call_id=%s hashed=%s error=%s message=%s",
            item.kind.value,
            exc.call_id or item.call_id,
            exc.hashed,
            type(exc).__name__,
            exc.message,
        )


def build_pipeline(
    gateway: PostgresGateway,
    settings: Settings,
    dead_letters: DeadLetterStore | None = None,
) -> IngestPipeline:
    store = dead_letters if dead_letters is not None else DeadLetterStore(settings.dead_letter_spool_path)
    sequencer = ReferentialSequencer(
        gateway,
        store,
        deduplicator=LogDeduplicator(capacity=settings.dedup_cache_size),
        hash_key=settings.dedup_hash_key_bytes,
        deferred_base_seconds=settings.deferred_retry_base_seconds,
        deferred_max_seconds=settings.deferred_retry_max_seconds,
        deferred_max_attempts=settings.deferred_max_attempts,
        committed_cache_size=settings.committed_calls_cache_size,
        deferred_capacity=settings.deferred_capacity,
    )
    return IngestPipeline(
        sequencer,
        store,
        worker_count=settings.worker_count,
        queue_size=settings.worker_queue_size,
        storage_pause_base_seconds=settings.storage_pause_base_seconds,
        storage_pause_max_seconds=settings.storage_pause_max_seconds,
        drain_timeout_seconds=settings.drain_timeout_seconds,
    )
