from __future__ import annotations

import asyncio
import os
from collections.abc import Coroutine
from pathlib import Path
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
import pytest

from trunk_ingest.core.errors import ConflictError, StorageUnavailable
from trunk_ingest.services.dedup import build_frequency_entry, build_source_entry
from trunk_ingest.services.gateway import PostgresGateway
from trunk_ingest.services.normalizer import normalize_call

from conftest import CALL_ID

SCHEMA_PATH = Path(__file__).resolve().parents[1] / "db" / "schema.sql"

T = TypeVar("T")


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("TI_DATABASE_URL")
    if not url:
        pytest.skip("integration tests require TI_DATABASE_URL")
    return url


@pytest.fixture(autouse=True)
def reset_tables(request) -> None:
    if "database_url" not in request.fixturenames:
        return
    _run(_reset(request.getfixturevalue("database_url")))


def _gateway(database_url: str | None) -> PostgresGateway:
    return PostgresGateway(
        database_url=database_url,
        min_pool_size=1,
        max_pool_size=2,
        command_timeout_seconds=5.0,
        retry_attempts=2,
        retry_base_seconds=0.0,
        retry_max_seconds=0.0,
    )


def test_gateway_without_database_url_is_unavailable() -> None:
    gateway = _gateway(None)

    with pytest.raises(StorageUnavailable):
        _run(gateway.call_exists(CALL_ID))


def test_write_call_batch_is_idempotent(database_url: str, call_descriptor, freq_event, src_event) -> None:
    call = normalize_call(call_descriptor(), known_talkgroups={100})
    entries = [build_frequency_entry(CALL_ID, freq_event()), build_source_entry(CALL_ID, src_event())]

    async def scenario():
        gateway = _gateway(database_url)
        await gateway.open()
        try:
            first = await gateway.write_call_batch(call, entries)
            second = await gateway.write_call_batch(call, entries)
            exists = await gateway.call_exists(CALL_ID)
        finally:
            await gateway.close()
        return first, second, exists

    first, second, exists = _run(scenario())

    assert first.call_inserted is True
    assert [outcome.status for outcome in first.log_outcomes] == ["inserted", "inserted"]
    assert second.call_inserted is False
    assert [outcome.status for outcome in second.log_outcomes] == ["duplicate", "duplicate"]
    assert exists is True
    assert _run(_count(database_url, "freqlist")) == 1
    assert _run(_count(database_url, "srclist")) == 1


def test_write_call_batch_reports_divergent_rows(database_url: str, call_descriptor, freq_event, src_event) -> None:
    call = normalize_call(call_descriptor(), known_talkgroups={100})
    changed = normalize_call(call_descriptor(signal=-10), known_talkgroups={100})
    stored = build_frequency_entry(CALL_ID, freq_event())
    divergent = build_frequency_entry(CALL_ID, freq_event(error_count=7))
    unknown_source = build_source_entry(CALL_ID, src_event(src=9999))

    async def scenario():
        gateway = _gateway(database_url)
        try:
            await gateway.write_call_batch(call, [stored])
            outcomes = await gateway.write_log_entries([divergent, unknown_source])
            with pytest.raises(ConflictError):
                await gateway.write_call_batch(changed)
        finally:
            await gateway.close()
        return outcomes

    outcomes = _run(scenario())

    assert [outcome.status for outcome in outcomes] == ["collision", "missing_reference"]
    assert _run(_count(database_url, "srclist")) == 0


def test_log_entry_without_call_row_is_missing_call(database_url: str, freq_event) -> None:
    entry = build_frequency_entry("never-committed", freq_event())

    async def scenario():
        gateway = _gateway(database_url)
        try:
            return await gateway.write_log_entries([entry])
        finally:
            await gateway.close()

    (outcome,) = _run(scenario())

    assert outcome.status == "missing_call"
    assert _run(_count(database_url, "freqlist")) == 0


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


async def _reset(database_url: str) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(SCHEMA_PATH.read_text(encoding="utf-8"))
        await conn.execute("truncate table srclist, freqlist, calls, sources, talkgroups")
        await conn.execute("insert into talkgroups (talkgroup, talkgroup_tag) values (100, 'Control')")
        await conn.execute("insert into sources (src, tag) values (1234, 'Dispatch'), (5678, 'Engine 4')")
    finally:
        await conn.close()


async def _count(database_url: str, table: str) -> int:
    conn = await asyncpg.connect(database_url)
    try:
        return await conn.fetchval(f"select count(*) from {table}")
    finally:
        await conn.close()
