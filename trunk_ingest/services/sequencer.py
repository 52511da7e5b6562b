"""Per-call write ordering.

A call row always commits before any log row that references it. Log events
that arrive first are parked in a per-call pending index and released when the
call commits (or is found committed by a later check); events whose call never
shows up are dead-lettered once the retry budget runs out.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Literal

from trunk_ingest.core.errors import (
    ConflictError,
    DeferredWriteFailure,
    HashCollisionError,
    IngestError,
    PipelineClosedError,
    ReferenceNotFound,
    StorageUnavailable,
)
from trunk_ingest.schemas.ingest import CallDescriptor
from trunk_ingest.services.dedup import LogDeduplicator, build_entry
from trunk_ingest.services.gateway import LogWriteOutcome, PostgresGateway
from trunk_ingest.services.normalizer import call_identifier, normalize_call, parse_call, talkgroup_lookup
from trunk_ingest.services.records import EventKind, LogEntry, SourceLogEntry
from trunk_ingest.services.store import DeadLetterStore

logger = logging.getLogger(__name__)

ResultStatus = Literal["stored", "duplicate", "deferred"]
Resubmit = Callable[[EventKind, str, dict[str, Any]], Awaitable[None]]


@dataclass(slots=True)
class RejectedEvent:
    kind: EventKind
    index: int | None
    hashed: int | None
    error: str
    message: str


@dataclass(slots=True)
class IngestResult:
    kind: EventKind
    call_id: str
    status: ResultStatus
    hashed: int | None = None
    freqlist_stored: int = 0
    freqlist_duplicates: int = 0
    srclist_stored: int = 0
    srclist_duplicates: int = 0
    out_of_order: int = 0
    rejected: list[RejectedEvent] = field(default_factory=list)

    def count(self, kind: EventKind, *, duplicate: bool) -> None:
        if kind is EventKind.FREQLIST:
            if duplicate:
                self.freqlist_duplicates += 1
            else:
                self.freqlist_stored += 1
        elif duplicate:
            self.srclist_duplicates += 1
        else:
            self.srclist_stored += 1


@dataclass(slots=True)
class PendingWrite:
    kind: EventKind
    entry: LogEntry
    payload: dict[str, Any]
    deferred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ReferentialSequencer:
    def __init__(
        self,
        gateway: PostgresGateway,
        dead_letters: DeadLetterStore,
        *,
        deduplicator: LogDeduplicator | None = None,
        hash_key: bytes = b"",
        deferred_base_seconds: float = 0.5,
        deferred_max_seconds: float = 30.0,
        deferred_max_attempts: int = 8,
        committed_cache_size: int = 10_000,
        deferred_capacity: int = 10_000,
    ) -> None:
        self.gateway = gateway
        self.dead_letters = dead_letters
        self.deduplicator = deduplicator or LogDeduplicator()
        self.hash_key = hash_key
        self.deferred_base_seconds = max(0.0, deferred_base_seconds)
        self.deferred_max_seconds = max(self.deferred_base_seconds, deferred_max_seconds)
        self.deferred_max_attempts = max(1, deferred_max_attempts)
        self.committed_cache_size = max(1, committed_cache_size)
        self.deferred_capacity = max(1, deferred_capacity)
        self._pending: dict[str, dict[int, PendingWrite]] = {}
        self._call_events: dict[str, asyncio.Event] = {}
        self._committed: OrderedDict[str, None] = OrderedDict()
        self._waiters: set[asyncio.Task[None]] = set()
        self._deferred_slots = asyncio.Semaphore(self.deferred_capacity)
        self._deferred_total = 0
        self._resubmit: Resubmit = self._write_released
        self._closing = False

    def bind_resubmit(self, resubmit: Resubmit) -> None:
        """Route released events back through the caller's per-call ordering."""
        self._resubmit = resubmit

    @property
    def waiting(self) -> bool:
        return bool(self._waiters)

    @property
    def deferred_count(self) -> int:
        return self._deferred_total

    def pending_for(self, call_id: str) -> list[PendingWrite]:
        return list(self._pending.get(call_id, {}).values())

    async def ingest_call(self, descriptor: Mapping[str, Any]) -> IngestResult:
        call_id = call_identifier(descriptor)
        parsed = parse_call(descriptor, call_id=call_id)
        lookup = talkgroup_lookup(parsed)
        known_talkgroups = await self.gateway.existing_talkgroups(lookup) if lookup else set()
        call = normalize_call(parsed, known_talkgroups=known_talkgroups, filename=call_id)

        result = IngestResult(kind=EventKind.CALL, call_id=call_id, status="stored")
        entries, payloads = self._embedded_entries(call_id, parsed, result)

        sources = {entry.src for entry in entries if isinstance(entry, SourceLogEntry)}
        missing_sources = await self.gateway.missing_sources(sources) if sources else set()
        ready: list[LogEntry] = []
        for entry in entries:
            if isinstance(entry, SourceLogEntry) and entry.src in missing_sources:
                self._reject(
                    result,
                    ReferenceNotFound(f"source {entry.src} does not exist", call_id=call_id, hashed=entry.hashed),
                    kind=entry.kind,
                )
                continue
            ready.append(entry)

        try:
            outcome = await self.gateway.write_call_batch(call, ready)
        except ConflictError as exc:
            self.dead_letters.add(
                category="quarantine",
                kind=EventKind.CALL,
                call_id=call_id,
                payload=dict(descriptor),
                reason="call_conflict",
                error=exc.message,
            )
            raise

        result.status = "stored" if outcome.call_inserted else "duplicate"
        for log_outcome in outcome.log_outcomes:
            self._apply_outcome(result, log_outcome, payloads.get(log_outcome.entry.hashed, {}))

        self.mark_committed(call_id)
        logger.info(
            "call %s call_id=%s freqlist_stored=%s srclist_stored=%s duplicates=%s rejected=%s",
            result.status,
            call_id,
            result.freqlist_stored,
            result.srclist_stored,
            result.freqlist_duplicates + result.srclist_duplicates,
            len(result.rejected),
        )
        return result

    async def ingest_log(self, kind: EventKind, call_id: str, event: Mapping[str, Any]) -> IngestResult:
        try:
            return await self._ingest_log(kind, call_id, event)
        except HashCollisionError as exc:
            self.dead_letters.add(
                category="quarantine",
                kind=kind,
                call_id=call_id,
                payload=dict(event),
                reason="hash_collision",
                error=exc.message,
                hashed=exc.hashed,
            )
            raise

    async def _ingest_log(self, kind: EventKind, call_id: str, event: Mapping[str, Any]) -> IngestResult:
        entry = build_entry(kind, call_id, event, hash_key=self.hash_key)
        if self.deduplicator.is_duplicate(entry):
            return IngestResult(kind=kind, call_id=call_id, status="duplicate", hashed=entry.hashed)

        if isinstance(entry, SourceLogEntry):
            if await self.gateway.missing_sources([entry.src]):
                raise ReferenceNotFound(f"source {entry.src} does not exist", call_id=call_id, hashed=entry.hashed)

        if not await self.is_committed(call_id):
            return await self._defer(kind, entry, event)

        (outcome,) = await self.gateway.write_log_entries([entry])
        if outcome.status == "missing_call":
            # The cached commit was stale; park the event like any other early arrival.
            self._committed.pop(call_id, None)
            return await self._defer(kind, entry, event)
        if outcome.status == "missing_reference":
            raise ReferenceNotFound(
                outcome.detail or "referenced row does not exist",
                call_id=call_id,
                hashed=entry.hashed,
            )
        if outcome.status == "collision":
            raise HashCollisionError(
                f"{kind.value} payload differs from stored entry with the same hash: {outcome.detail}",
                call_id=call_id,
                hashed=entry.hashed,
            )

        result = IngestResult(
            kind=kind,
            call_id=call_id,
            status="stored" if outcome.status == "inserted" else "duplicate",
            hashed=entry.hashed,
        )
        self.deduplicator.remember(entry)
        if outcome.status == "inserted" and self.deduplicator.observe_position(entry):
            result.out_of_order += 1
        return result

    async def is_committed(self, call_id: str) -> bool:
        if call_id in self._committed:
            self._committed.move_to_end(call_id)
            return True
        exists = await self.gateway.call_exists(call_id)
        if exists:
            self._remember_commit(call_id)
        return exists

    def mark_committed(self, call_id: str) -> None:
        self._remember_commit(call_id)
        notify = self._call_events.pop(call_id, None)
        if notify is not None:
            notify.set()

    async def wait_idle(self) -> None:
        while self._waiters:
            await asyncio.wait(set(self._waiters))

    def resume(self) -> None:
        self._closing = False

    async def shutdown(self) -> None:
        """Wake every deferred waiter for a final check, then wait for them to settle."""
        self._closing = True
        for notify in list(self._call_events.values()):
            notify.set()
        await self.wait_idle()

    def _embedded_entries(
        self,
        call_id: str,
        descriptor: CallDescriptor,
        result: IngestResult,
    ) -> tuple[list[LogEntry], dict[int, Mapping[str, Any]]]:
        entries: dict[int, LogEntry] = {}
        payloads: dict[int, Mapping[str, Any]] = {}
        embedded = ((EventKind.FREQLIST, descriptor.freq_list), (EventKind.SRCLIST, descriptor.src_list))
        for kind, events in embedded:
            for index, event in enumerate(events or ()):
                try:
                    entry = build_entry(kind, call_id, event, hash_key=self.hash_key)
                    previous = entries.get(entry.hashed)
                    if previous is not None and previous.fingerprint() != entry.fingerprint():
                        raise HashCollisionError(
                            f"{kind.value} events in one call share a hash with different payloads",
                            call_id=call_id,
                            hashed=entry.hashed,
                        )
                    if previous is not None or self.deduplicator.is_duplicate(entry):
                        result.count(kind, duplicate=True)
                        continue
                except IngestError as exc:
                    if isinstance(exc, HashCollisionError):
                        self._quarantine(kind, call_id, event, exc)
                    self._reject(result, exc, kind=kind, index=index)
                    continue
                entries[entry.hashed] = entry
                payloads[entry.hashed] = event
        return list(entries.values()), payloads

    def _apply_outcome(self, result: IngestResult, outcome: LogWriteOutcome, payload: Mapping[str, Any]) -> None:
        entry = outcome.entry
        if outcome.status in ("inserted", "duplicate"):
            self.deduplicator.remember(entry)
            result.count(entry.kind, duplicate=outcome.status == "duplicate")
            if outcome.status == "inserted" and self.deduplicator.observe_position(entry):
                result.out_of_order += 1
            return

        error: IngestError
        if outcome.status == "collision":
            error = HashCollisionError(
                f"{entry.kind.value} payload differs from stored entry with the same hash: {outcome.detail}",
                call_id=entry.call_id,
                hashed=entry.hashed,
            )
            self._quarantine(entry.kind, entry.call_id, payload, error)
        else:
            error = ReferenceNotFound(
                outcome.detail or "referenced row does not exist",
                call_id=entry.call_id,
                hashed=entry.hashed,
            )
        self._reject(result, error, kind=entry.kind)

    def _reject(self, result: IngestResult, exc: IngestError, *, kind: EventKind, index: int | None = None) -> None:
        logger.warning(
            "rejected embedded %s event call_id=%s hashed=%s error=%s message=%s",
            kind.value,
            exc.call_id or result.call_id,
            exc.hashed,
            type(exc).__name__,
            exc.message,
        )
        result.rejected.append(
            RejectedEvent(
                kind=kind,
                index=index,
                hashed=exc.hashed,
                error=type(exc).__name__,
                message=exc.message,
            )
        )

    def _quarantine(self, kind: EventKind, call_id: str, payload: Any, exc: IngestError) -> None:
        self.dead_letters.add(
            category="quarantine",
            kind=kind,
            call_id=call_id,
            payload=dict(payload) if isinstance(payload, Mapping) else {"value": payload},
            reason="hash_collision",
            error=exc.message,
            hashed=exc.hashed,
        )

    async def _defer(self, kind: EventKind, entry: LogEntry, event: Mapping[str, Any]) -> IngestResult:
        parked = self._parked(kind, entry)
        if parked is not None:
            return parked
        if self._closing:
            raise self._dead_letter_on_shutdown(kind, entry, event)

        if self._deferred_slots.locked():
            logger.warning(
                "deferred buffer full capacity=%s; holding %s event call_id=%s hashed=%s",
                self.deferred_capacity,
                kind.value,
                entry.call_id,
                entry.hashed,
            )
        # Blocks the submitting shard until a parked event is released or dead-lettered.
        await self._deferred_slots.acquire()
        try:
            parked = self._parked(kind, entry)
            if parked is None and self._closing:
                raise self._dead_letter_on_shutdown(kind, entry, event)
        except IngestError:
            self._deferred_slots.release()
            raise
        if parked is not None:
            self._deferred_slots.release()
            return parked

        call_id = entry.call_id
        write = PendingWrite(kind=kind, entry=entry, payload=dict(event))
        self._pending.setdefault(call_id, {})[entry.hashed] = write
        self._deferred_total += 1
        notify = self._call_events.setdefault(call_id, asyncio.Event())
        task = asyncio.create_task(self._await_parent(write, notify), name=f"deferred:{call_id}:{entry.hashed}")
        self._waiters.add(task)
        task.add_done_callback(self._waiters.discard)
        logger.info("deferred %s event call_id=%s hashed=%s until call row commits", kind.value, call_id, entry.hashed)
        return IngestResult(kind=kind, call_id=call_id, status="deferred", hashed=entry.hashed)

    def _parked(self, kind: EventKind, entry: LogEntry) -> IngestResult | None:
        """Result for a redelivery of an already pending event, or None when it is new."""
        existing = self._pending.get(entry.call_id, {}).get(entry.hashed)
        if existing is None:
            return None
        if existing.entry.fingerprint() != entry.fingerprint():
            raise HashCollisionError(
                f"{kind.value} payload differs from a pending entry with the same hash",
                call_id=entry.call_id,
                hashed=entry.hashed,
            )
        return IngestResult(kind=kind, call_id=entry.call_id, status="deferred", hashed=entry.hashed)

    def _dead_letter_on_shutdown(
        self,
        kind: EventKind,
        entry: LogEntry,
        event: Mapping[str, Any],
    ) -> DeferredWriteFailure:
        error = DeferredWriteFailure(
            "call row not committed and ingestion is shutting down",
            call_id=entry.call_id,
            hashed=entry.hashed,
        )
        self.dead_letters.add(
            category="dead_letter",
            kind=kind,
            call_id=entry.call_id,
            payload=dict(event),
            reason="shutdown",
            error=error.message,
            hashed=entry.hashed,
        )
        return error

    async def _await_parent(self, write: PendingWrite, notify: asyncio.Event) -> None:
        call_id = write.entry.call_id
        reason = "deferred_write_budget_exhausted"
        try:
            for attempt in range(self.deferred_max_attempts):
                if not self._closing:
                    try:
                        await asyncio.wait_for(notify.wait(), timeout=self._deferred_delay(attempt))
                    except asyncio.TimeoutError:
                        pass

                try:
                    committed = await self.is_committed(call_id)
                except StorageUnavailable as exc:
                    logger.warning(
                        "deferred check failed call_id=%s hashed=%s attempt=%s error=%s",
                        call_id,
                        write.entry.hashed,
                        attempt + 1,
                        exc,
                    )
                    committed = False

                if committed:
                    self._release(write)
                    try:
                        await self._resubmit(write.kind, call_id, write.payload)
                    except PipelineClosedError:
                        reason = "shutdown"
                        break
                    return
                if self._closing:
                    reason = "shutdown"
                    break
        except asyncio.CancelledError:
            self._release(write)
            self._dead_letter_deferred(write, "cancelled")
            raise

        self._release(write)
        self._dead_letter_deferred(write, reason)

    async def _write_released(self, kind: EventKind, call_id: str, payload: dict[str, Any]) -> None:
        try:
            result = await self.ingest_log(kind, call_id, payload)
        except IngestError as exc:
            logger.warning(
                "released %s event rejected call_id=%s hashed=%s error=%s message=%s",
                kind.value,
                call_id,
                exc.hashed,
                type(exc).__name__,
                exc.message,
            )
            return
        logger.info("released %s event %s call_id=%s hashed=%s", kind.value, result.status, call_id, result.hashed)

    def _dead_letter_deferred(self, write: PendingWrite, reason: str) -> None:
        if reason == "deferred_write_budget_exhausted":
            message = f"call row never committed after {self.deferred_max_attempts} checks"
        else:
            message = f"call row not committed before {reason}"
        error = DeferredWriteFailure(
            message,
            call_id=write.entry.call_id,
            hashed=write.entry.hashed,
        )
        self.dead_letters.add(
            category="dead_letter",
            kind=write.kind,
            call_id=write.entry.call_id,
            payload=write.payload,
            reason=reason,
            error=error.message,
            hashed=write.entry.hashed,
        )

    def _release(self, write: PendingWrite) -> None:
        call_id = write.entry.call_id
        pending = self._pending.get(call_id)
        if pending is None:
            return
        if pending.get(write.entry.hashed) is write:
            del pending[write.entry.hashed]
            self._deferred_total -= 1
            self._deferred_slots.release()
        if not pending:
            del self._pending[call_id]
            self._call_events.pop(call_id, None)

    def _remember_commit(self, call_id: str) -> None:
        self._committed[call_id] = None
        self._committed.move_to_end(call_id)
        while len(self._committed) > self.committed_cache_size:
            self._committed.popitem(last=False)

    def _deferred_delay(self, attempt: int) -> float:
        return min(self.deferred_base_seconds * (2**attempt), self.deferred_max_seconds)
