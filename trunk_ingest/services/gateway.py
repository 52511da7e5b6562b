from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from functools import lru_cache
import logging
import random
from typing import Any, Literal, TypeVar

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from trunk_ingest.core.config import get_settings
from trunk_ingest.core.errors import ConflictError, ReferenceNotFound, StorageUnavailable
from trunk_ingest.services.records import AudioType, Call, FrequencyLogEntry, LogEntry, SourceLogEntry

logger = logging.getLogger(__name__)

T = TypeVar("T")

LogWriteStatus = Literal["inserted", "duplicate", "collision", "missing_reference", "missing_call"]

# Failures worth retrying: the statement may succeed on a fresh connection or a later attempt.
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.InterfaceError,
    pg_exc.PostgresConnectionError,
    pg_exc.CannotConnectNowError,
    pg_exc.TooManyConnectionsError,
    pg_exc.SerializationError,
    pg_exc.DeadlockDetectedError,
)


@dataclass(slots=True)
class LogWriteOutcome:
    entry: LogEntry
    status: LogWriteStatus
    detail: str | None = None


@dataclass(slots=True)
class BatchOutcome:
    call_inserted: bool
    log_outcomes: list[LogWriteOutcome]


class PostgresGateway:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        command_timeout_seconds: float,
        retry_attempts: int,
        retry_base_seconds: float,
        retry_max_seconds: float,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max(1, max_pool_size)
        self.command_timeout_seconds = command_timeout_seconds
        self.retry_attempts = max(1, retry_attempts)
        self.retry_base_seconds = max(0.0, retry_base_seconds)
        self.retry_max_seconds = max(0.0, retry_max_seconds)
        self._pool: asyncpg.Pool | None = None
        self._pool_lock = asyncio.Lock()

    async def open(self) -> None:
        await self._get_pool()

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def existing_talkgroups(self, talkgroups: Iterable[int]) -> set[int]:
        ids = sorted(set(talkgroups))
        if not ids:
            return set()

        async def operation(conn: asyncpg.Connection) -> set[int]:
            rows = await conn.fetch("select talkgroup from talkgroups where talkgroup = any($1::int[])", ids)
            return {row["talkgroup"] for row in rows}

        return await self._run("existing_talkgroups", operation)

    async def missing_sources(self, sources: Iterable[int]) -> set[int]:
        ids = sorted(set(sources))
        if not ids:
            return set()

        async def operation(conn: asyncpg.Connection) -> set[int]:
            rows = await conn.fetch("select src from sources where src = any($1::int[])", ids)
            return set(ids) - {row["src"] for row in rows}

        return await self._run("missing_sources", operation)

    async def call_exists(self, filename: str) -> bool:
        async def operation(conn: asyncpg.Connection) -> bool:
            return bool(await conn.fetchval("select exists(select 1 from calls where filename = $1)", filename))

        return await self._run("call_exists", operation, call_id=filename)

    async def write_call_batch(self, call: Call, entries: Sequence[LogEntry] = ()) -> BatchOutcome:
        """Commit a call row together with the log rows that arrived with it."""

        async def operation(conn: asyncpg.Connection) -> BatchOutcome:
            async with conn.transaction():
                inserted = await self._insert_call(conn, call)
                outcomes = [await self._insert_log_entry(conn, entry) for entry in entries]
                return BatchOutcome(call_inserted=inserted, log_outcomes=outcomes)

        return await self._run("write_call_batch", operation, call_id=call.filename)

    async def write_log_entries(self, entries: Sequence[LogEntry]) -> list[LogWriteOutcome]:
        if not entries:
            return []

        async def operation(conn: asyncpg.Connection) -> list[LogWriteOutcome]:
            async with conn.transaction():
                return [await self._insert_log_entry(conn, entry) for entry in entries]

        return await self._run("write_log_entries", operation, call_id=entries[0].call_id)

    async def _insert_call(self, conn: asyncpg.Connection, call: Call) -> bool:
        try:
            row = await conn.fetchrow(
                """
                insert into calls (
                  filename,
                  freq,
                  freq_error,
                  signal,
                  noise,
                  source_num,
                  recorder_num,
                  tdma_slot,
                  phase2_tdma,
                  start_time,
                  stop_time,
                  emergency,
                  priority,
                  mode,
                  duplex,
                  encrypted,
                  call_length,
                  talkgroup,
                  audio_type,
                  short_name,
                  transcription
                )
                values (
                  $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11,
                  $12, $13, $14, $15, $16, $17, $18, $19::audiotype, $20, $21
                )
                on conflict (filename) do nothing
                returning filename
                """,
                call.filename,
                call.freq,
                call.freq_error,
                call.signal,
                call.noise,
                call.source_num,
                call.recorder_num,
                call.tdma_slot,
                call.phase2_tdma,
                call.start_time,
                call.stop_time,
                call.emergency,
                call.priority,
                call.mode,
                call.duplex,
                call.encrypted,
                call.call_length,
                call.talkgroup,
                call.audio_type.value,
                call.short_name,
                call.transcription,
            )
        except pg_exc.ForeignKeyViolationError as exc:
            raise ReferenceNotFound(f"talkgroup {call.talkgroup} does not exist", call_id=call.filename) from exc
        if row:
            return True

        existing = await conn.fetchrow(
            """
            select
              filename,
              freq,
              freq_error,
              signal,
              noise,
              source_num,
              recorder_num,
              tdma_slot,
              phase2_tdma,
              start_time,
              stop_time,
              emergency,
              priority,
              mode,
              duplex,
              encrypted,
              call_length,
              talkgroup,
              audio_type::text as audio_type,
              short_name,
              transcription
            from calls
            where filename = $1
            """,
            call.filename,
        )
        if not existing:
            raise ConflictError("failed to resolve existing call after conflict", call_id=call.filename)
        stored = self._call_from_row(existing)
        if stored != call:
            raise ConflictError(
                f"redelivered call diverges from committed row in {self._diverging_fields(stored, call)}",
                call_id=call.filename,
            )
        return False

    async def _insert_log_entry(self, conn: asyncpg.Connection, entry: LogEntry) -> LogWriteOutcome:
        try:
            # Savepoint: a foreign-key failure here must not abort the enclosing batch.
            async with conn.transaction():
                if isinstance(entry, FrequencyLogEntry):
                    hashed = await conn.fetchval(
                        """
                        insert into freqlist (call_id, hashed, freq, time, pos, len, error_count, spike_count)
                        values ($1, $2, $3, $4, $5, $6, $7, $8)
                        on conflict (hashed) do nothing
                        returning hashed
                        """,
                        entry.call_id,
                        entry.hashed,
                        entry.freq,
                        entry.time,
                        entry.pos,
                        entry.length,
                        entry.error_count,
                        entry.spike_count,
                    )
                else:
                    hashed = await conn.fetchval(
                        """
                        insert into srclist (call_id, hashed, src, time, pos, emergency, signal_system)
                        values ($1, $2, $3, $4, $5, $6, $7)
                        on conflict (hashed) do nothing
                        returning hashed
                        """,
                        entry.call_id,
                        entry.hashed,
                        entry.src,
                        entry.time,
                        entry.pos,
                        entry.emergency,
                        entry.signal_system,
                    )
        except pg_exc.ForeignKeyViolationError as exc:
            constraint = getattr(exc, "constraint_name", None) or ""
            status: LogWriteStatus = "missing_call" if "call_id" in constraint else "missing_reference"
            return LogWriteOutcome(entry=entry, status=status, detail=str(exc))

        if hashed is not None:
            return LogWriteOutcome(entry=entry, status="inserted")

        stored = await self._fetch_log_entry(conn, entry)
        if stored is None:
            raise ConflictError(
                "failed to resolve existing log entry after conflict",
                call_id=entry.call_id,
                hashed=entry.hashed,
            )
        if stored.fingerprint() == entry.fingerprint():
            return LogWriteOutcome(entry=entry, status="duplicate")
        return LogWriteOutcome(
            entry=entry,
            status="collision",
            detail=f"stored row belongs to call_id={stored.call_id}",
        )

    async def _fetch_log_entry(self, conn: asyncpg.Connection, entry: LogEntry) -> LogEntry | None:
        if isinstance(entry, FrequencyLogEntry):
            row = await conn.fetchrow(
                """
                select call_id, hashed, freq, time, pos, len, error_count, spike_count
                from freqlist
                where hashed = $1
                """,
                entry.hashed,
            )
            return self._frequency_from_row(row) if row else None

        row = await conn.fetchrow(
            """
            select call_id, hashed, src, time, pos, emergency, signal_system
            from srclist
            where hashed = $1
            """,
            entry.hashed,
        )
        return self._source_from_row(row) if row else None

    async def _run(
        self,
        action: str,
        operation: Callable[[asyncpg.Connection], Awaitable[T]],
        *,
        call_id: str | None = None,
    ) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                pool = await self._get_pool()
                async with pool.acquire() as conn:
                    return await operation(conn)
            except TRANSIENT_ERRORS as exc:
                if attempt >= self.retry_attempts:
                    raise StorageUnavailable(
                        f"{action} failed after {attempt} attempts: {exc}",
                        call_id=call_id,
                    ) from exc
                delay = self._compute_retry_delay_seconds(attempt=attempt)
                logger.warning(
                    "transient storage failure action=%s call_id=%s attempt=%s retry_in=%.2fs error=%s",
                    action,
                    call_id,
                    attempt,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise StorageUnavailable("TI_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        async with self._pool_lock:
            if self._pool is not None:
                return self._pool
            try:
                self._pool = await asyncpg.create_pool(
                    dsn=self.database_url,
                    min_size=self.min_pool_size,
                    max_size=self.max_pool_size,
                    command_timeout=self.command_timeout_seconds,
                )
            except TRANSIENT_ERRORS:
                raise
            except Exception as exc:  # pragma: no cover - depends on environment
                raise StorageUnavailable("database unavailable") from exc
            return self._pool

    def _compute_retry_delay_seconds(self, *, attempt: int) -> float:
        if self.retry_base_seconds <= 0:
            return 0.0
        multiplier = max(0, attempt - 1)
        delay = self.retry_base_seconds * (2**multiplier)
        jitter = random.uniform(0.0, 0.25 * delay)
        return min(delay + jitter, self.retry_max_seconds)

    @staticmethod
    def _call_from_row(row: asyncpg.Record) -> Call:
        return Call(
            filename=row["filename"],
            freq=row["freq"],
            freq_error=row["freq_error"],
            signal=row["signal"],
            noise=row["noise"],
            source_num=row["source_num"],
            recorder_num=row["recorder_num"],
            tdma_slot=row["tdma_slot"],
            phase2_tdma=row["phase2_tdma"],
            start_time=row["start_time"],
            stop_time=row["stop_time"],
            emergency=row["emergency"],
            priority=row["priority"],
            mode=row["mode"],
            duplex=row["duplex"],
            encrypted=row["encrypted"],
            call_length=row["call_length"],
            talkgroup=row["talkgroup"],
            audio_type=AudioType(row["audio_type"]),
            short_name=row["short_name"],
            transcription=row["transcription"],
        )

    @staticmethod
    def _frequency_from_row(row: asyncpg.Record) -> FrequencyLogEntry:
        return FrequencyLogEntry(
            call_id=row["call_id"],
            hashed=row["hashed"],
            freq=row["freq"],
            time=row["time"],
            pos=row["pos"],
            length=row["len"],
            error_count=row["error_count"],
            spike_count=row["spike_count"],
        )

    @staticmethod
    def _source_from_row(row: asyncpg.Record) -> SourceLogEntry:
        return SourceLogEntry(
            call_id=row["call_id"],
            hashed=row["hashed"],
            src=row["src"],
            time=row["time"],
            pos=row["pos"],
            emergency=row["emergency"],
            signal_system=row["signal_system"],
        )

    @staticmethod
    def _diverging_fields(stored: Call, incoming: Call) -> list[str]:
        diverging: list[str] = []
        for name in Call.__dataclass_fields__:
            stored_value: Any = getattr(stored, name)
            if stored_value != getattr(incoming, name):
                diverging.append(name)
        return diverging


@lru_cache
def get_gateway() -> PostgresGateway:
    settings = get_settings()
    return PostgresGateway(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        command_timeout_seconds=settings.database_command_timeout_seconds,
        retry_attempts=settings.storage_retry_attempts,
        retry_base_seconds=settings.storage_retry_base_seconds,
        retry_max_seconds=settings.storage_retry_max_seconds,
    )
