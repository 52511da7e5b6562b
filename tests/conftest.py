from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable, Sequence
from typing import Any

import pytest

from trunk_ingest.core.errors import ConflictError, StorageUnavailable
from trunk_ingest.services.gateway import BatchOutcome, LogWriteOutcome
from trunk_ingest.services.records import Call, FrequencyLogEntry, LogEntry, SourceLogEntry
from trunk_ingest.services.store import DeadLetterStore

CALL_ID = "20250101_120000_control"
START_EPOCH = 1_735_732_800  # 2025-01-01T12:00:00Z


class FakeGateway:
    """In-memory stand-in for PostgresGateway with the same outcome semantics."""

    def __init__(self, *, talkgroups: Iterable[int] = (100,), sources: Iterable[int] = (1234, 5678)) -> None:
        self.talkgroups = set(talkgroups)
        self.sources = set(sources)
        self.calls: dict[str, Call] = {}
        self.freqlist: dict[int, FrequencyLogEntry] = {}
        self.srclist: dict[int, SourceLogEntry] = {}
        self.fail_writes = 0
        self.failures_raised = 0
        self.opened = False
        self.closed = False
        # When set, call writes wait on it so tests can hold a worker mid-transaction.
        self.hold: asyncio.Event | None = None

    async def open(self) -> None:
        self.opened = True

    async def close(self) -> None:
        self.closed = True

    async def existing_talkgroups(self, talkgroups: Iterable[int]) -> set[int]:
        return set(talkgroups) & self.talkgroups

    async def missing_sources(self, sources: Iterable[int]) -> set[int]:
        return set(sources) - self.sources

    async def call_exists(self, filename: str) -> bool:
        return filename in self.calls

    async def write_call_batch(self, call: Call, entries: Sequence[LogEntry] = ()) -> BatchOutcome:
        if self.hold is not None:
            await self.hold.wait()
        self._maybe_fail(call.filename)
        stored = self.calls.get(call.filename)
        if stored is not None and stored != call:
            raise ConflictError("redelivered call diverges from committed row", call_id=call.filename)
        inserted = stored is None
        self.calls[call.filename] = call
        return BatchOutcome(call_inserted=inserted, log_outcomes=[self._insert(entry) for entry in entries])

    async def write_log_entries(self, entries: Sequence[LogEntry]) -> list[LogWriteOutcome]:
        if entries:
            self._maybe_fail(entries[0].call_id)
        return [self._insert(entry) for entry in entries]

    def _insert(self, entry: LogEntry) -> LogWriteOutcome:
        if entry.call_id not in self.calls:
            return LogWriteOutcome(entry=entry, status="missing_call", detail="freqlist_call_id_fkey")
        if isinstance(entry, SourceLogEntry) and entry.src not in self.sources:
            return LogWriteOutcome(entry=entry, status="missing_reference", detail="srclist_src_fkey")
        table: dict[int, Any] = self.freqlist if isinstance(entry, FrequencyLogEntry) else self.srclist
        stored = table.get(entry.hashed)
        if stored is None:
            table[entry.hashed] = entry
            return LogWriteOutcome(entry=entry, status="inserted")
        if stored.fingerprint() == entry.fingerprint():
            return LogWriteOutcome(entry=entry, status="duplicate")
        detail = f"stored row belongs to call_id={stored.call_id}"
        return LogWriteOutcome(entry=entry, status="collision", detail=detail)

    def _maybe_fail(self, call_id: str) -> None:
        if self.fail_writes > 0:
            self.fail_writes -= 1
            self.failures_raised += 1
            raise StorageUnavailable("connection refused", call_id=call_id)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def dead_letters() -> DeadLetterStore:
    return DeadLetterStore()


@pytest.fixture
def call_descriptor() -> Callable[..., dict[str, Any]]:
    def build(**overrides: Any) -> dict[str, Any]:
        descriptor: dict[str, Any] = {
            "filename": CALL_ID,
            "freq": 851_012_500,
            "freq_error": 12,
            "signal": -50,
            "noise": -100,
            "source_num": 0,
            "recorder_num": 1,
            "tdma_slot": 0,
            "phase2_tdma": 0,
            "start_time": START_EPOCH,
            "stop_time": START_EPOCH + 10,
            "emergency": 0,
            "priority": 4,
            "mode": 0,
            "duplex": 0,
            "encrypted": 0,
            "call_length": 10,
            "talkgroup": 100,
            "talkgroup_tag": "Control",
            "audio_type": "digital",
            "short_name": "metro-control",
            "freqList": [],
            "srcList": [],
        }
        descriptor.update(overrides)
        return descriptor

    return build


@pytest.fixture
def freq_event() -> Callable[..., dict[str, Any]]:
    def build(pos: float = 1.0, **overrides: Any) -> dict[str, Any]:
        event: dict[str, Any] = {
            "freq": 851_012_500,
            "time": START_EPOCH + 1,
            "pos": pos,
            "len": 0.5,
            "error_count": 0,
            "spike_count": 0,
        }
        event.update(overrides)
        return event

    return build


@pytest.fixture
def src_event() -> Callable[..., dict[str, Any]]:
    def build(src: int = 1234, pos: float = 1.0, **overrides: Any) -> dict[str, Any]:
        event: dict[str, Any] = {
            "src": src,
            "time": START_EPOCH + 1,
            "pos": pos,
            "emergency": 0,
            "signal_system": "",
            "tag": "Dispatch",
        }
        event.update(overrides)
        return event

    return build
