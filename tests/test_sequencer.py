from __future__ import annotations

import asyncio

import pytest

from trunk_ingest.core.errors import ConflictError, HashCollisionError, ReferenceNotFound
from trunk_ingest.services.records import EventKind
from trunk_ingest.services.sequencer import ReferentialSequencer

from conftest import CALL_ID


def _sequencer(gateway, dead_letters, **overrides) -> ReferentialSequencer:
    options = {
        "deferred_base_seconds": 0.01,
        "deferred_max_seconds": 0.05,
        "deferred_max_attempts": 3,
    }
    options.update(overrides)
    return ReferentialSequencer(gateway, dead_letters, **options)


def test_call_with_repeated_frequency_events_stores_one_row_per_hash(
    gateway, dead_letters, call_descriptor, freq_event
) -> None:
    sequencer = _sequencer(gateway, dead_letters)
    descriptor = call_descriptor(freqList=[freq_event(pos=1.0), freq_event(pos=1.0), freq_event(pos=2.0)])

    result = asyncio.run(sequencer.ingest_call(descriptor))

    assert result.status == "stored"
    assert result.freqlist_stored == 2
    assert result.freqlist_duplicates == 1
    assert list(gateway.calls) == [CALL_ID]
    assert len(gateway.freqlist) == 2


def test_redelivered_call_is_idempotent(gateway, dead_letters, call_descriptor, freq_event, src_event) -> None:
    sequencer = _sequencer(gateway, dead_letters)
    descriptor = call_descriptor(freqList=[freq_event()], srcList=[src_event()])

    async def scenario():
        await sequencer.ingest_call(descriptor)
        # A fresh process has no dedup memory; the store must still absorb the repeat.
        restarted = _sequencer(gateway, dead_letters)
        return await restarted.ingest_call(descriptor)

    result = asyncio.run(scenario())

    assert result.status == "duplicate"
    assert result.freqlist_duplicates == 1
    assert result.srclist_duplicates == 1
    assert len(gateway.freqlist) == 1
    assert len(gateway.srclist) == 1


def test_divergent_call_redelivery_is_quarantined(gateway, dead_letters, call_descriptor) -> None:
    sequencer = _sequencer(gateway, dead_letters)

    async def scenario() -> None:
        await sequencer.ingest_call(call_descriptor())
        await sequencer.ingest_call(call_descriptor(signal=-40))

    with pytest.raises(ConflictError):
        asyncio.run(scenario())

    (entry,) = dead_letters.list_entries(category="quarantine")
    assert entry.reason == "call_conflict"
    assert entry.call_id == CALL_ID
    assert gateway.calls[CALL_ID].signal == -50


def test_embedded_event_with_unknown_source_is_rejected_alone(
    gateway, dead_letters, call_descriptor, src_event
) -> None:
    sequencer = _sequencer(gateway, dead_letters)
    descriptor = call_descriptor(srcList=[src_event(src=1234, pos=1.0), src_event(src=9999, pos=2.0)])

    result = asyncio.run(sequencer.ingest_call(descriptor))

    assert result.status == "stored"
    assert result.srclist_stored == 1
    assert [row.error for row in result.rejected] == ["ReferenceNotFound"]
    assert [row.src for row in gateway.srclist.values()] == [1234]


def test_embedded_events_sharing_a_hash_with_different_payloads_are_quarantined(
    gateway, dead_letters, call_descriptor, freq_event
) -> None:
    sequencer = _sequencer(gateway, dead_letters)
    descriptor = call_descriptor(freqList=[freq_event(), freq_event(error_count=4)])

    result = asyncio.run(sequencer.ingest_call(descriptor))

    assert result.freqlist_stored == 1
    assert [row.error for row in result.rejected] == ["HashCollisionError"]
    assert dead_letters.list_entries(category="quarantine")[0].reason == "hash_collision"


def test_unknown_source_is_rejected_without_writing(gateway, dead_letters, src_event) -> None:
    sequencer = _sequencer(gateway, dead_letters)

    with pytest.raises(ReferenceNotFound) as exc_info:
        asyncio.run(sequencer.ingest_log(EventKind.SRCLIST, "X", src_event(src=9999)))

    assert exc_info.value.call_id == "X"
    assert exc_info.value.hashed is not None
    assert gateway.srclist == {}
    assert sequencer.pending_for("X") == []


def test_repeated_frequency_event_stores_one_row(gateway, dead_letters, call_descriptor, freq_event) -> None:
    sequencer = _sequencer(gateway, dead_letters)

    async def scenario():
        await sequencer.ingest_call(call_descriptor())
        return [await sequencer.ingest_log(EventKind.FREQLIST, CALL_ID, freq_event()) for _ in range(4)]

    results = asyncio.run(scenario())

    assert [result.status for result in results] == ["stored", "duplicate", "duplicate", "duplicate"]
    assert len(gateway.freqlist) == 1


def test_event_before_call_is_stored_once_the_call_commits(
    gateway, dead_letters, call_descriptor, freq_event
) -> None:
    sequencer = _sequencer(gateway, dead_letters, deferred_base_seconds=5.0, deferred_max_seconds=5.0)

    async def scenario():
        deferred = await sequencer.ingest_log(EventKind.FREQLIST, CALL_ID, freq_event())
        redelivered = await sequencer.ingest_log(EventKind.FREQLIST, CALL_ID, freq_event())
        pending = len(sequencer.pending_for(CALL_ID))
        rows_before_commit = len(gateway.freqlist)
        await sequencer.ingest_call(call_descriptor())
        await sequencer.wait_idle()
        return deferred, redelivered, pending, rows_before_commit

    deferred, redelivered, pending, rows_before_commit = asyncio.run(scenario())

    assert deferred.status == "deferred"
    assert redelivered.status == "deferred"
    assert pending == 1
    assert rows_before_commit == 0
    assert len(gateway.freqlist) == 1
    assert sequencer.pending_for(CALL_ID) == []
    assert len(dead_letters) == 0


def test_pending_event_with_divergent_payload_is_a_collision(gateway, dead_letters, freq_event) -> None:
    sequencer = _sequencer(gateway, dead_letters, deferred_base_seconds=5.0, deferred_max_seconds=5.0)

    async def scenario() -> None:
        await sequencer.ingest_log(EventKind.FREQLIST, CALL_ID, freq_event())
        try:
            await sequencer.ingest_log(EventKind.FREQLIST, CALL_ID, freq_event(spike_count=9))
        finally:
            await sequencer.shutdown()

    with pytest.raises(HashCollisionError):
        asyncio.run(scenario())

    reasons = sorted(entry.reason for entry in dead_letters.entries.values())
    assert reasons == ["hash_collision", "shutdown"]


def test_event_whose_call_never_arrives_is_dead_lettered(gateway, dead_letters, freq_event) -> None:
    sequencer = _sequencer(gateway, dead_letters, deferred_base_seconds=0.001, deferred_max_seconds=0.002)

    async def scenario() -> None:
        await sequencer.ingest_log(EventKind.FREQLIST, CALL_ID, freq_event())
        await sequencer.wait_idle()

    asyncio.run(scenario())

    (entry,) = dead_letters.list_entries(category="dead_letter")
    assert entry.reason == "deferred_write_budget_exhausted"
    assert entry.kind is EventKind.FREQLIST
    assert entry.call_id == CALL_ID
    assert entry.hashed is not None
    assert gateway.freqlist == {}
    assert sequencer.pending_for(CALL_ID) == []


def test_shutdown_dead_letters_pending_events(gateway, dead_letters, freq_event, src_event) -> None:
    sequencer = _sequencer(gateway, dead_letters, deferred_base_seconds=10.0, deferred_max_seconds=10.0)

    async def scenario() -> None:
        await sequencer.ingest_log(EventKind.FREQLIST, CALL_ID, freq_event())
        await sequencer.ingest_log(EventKind.SRCLIST, CALL_ID, src_event())
        await sequencer.shutdown()

    asyncio.run(scenario())

    assert sorted(entry.kind.value for entry in dead_letters.entries.values()) == ["freqlist", "srclist"]
    assert {entry.reason for entry in dead_letters.entries.values()} == {"shutdown"}
    assert sequencer.waiting is False


def test_call_committed_elsewhere_is_found_through_the_gateway(
    gateway, dead_letters, call_descriptor, freq_event
) -> None:
    writer = _sequencer(gateway, dead_letters)
    reader = _sequencer(gateway, dead_letters)

    async def scenario():
        await writer.ingest_call(call_descriptor())
        return await reader.ingest_log(EventKind.FREQLIST, CALL_ID, freq_event())

    result = asyncio.run(scenario())

    assert result.status == "stored"
    assert len(gateway.freqlist) == 1


@pytest.mark.parametrize(
    "overrides",
    [{"pos": 1e15}, {"time": "9" * 20}, {"len": float("inf")}, {"freq": "fast"}],
)
def test_malformed_embedded_event_is_rejected_alone(
    gateway, dead_letters, call_descriptor, freq_event, overrides
) -> None:
    sequencer = _sequencer(gateway, dead_letters)
    descriptor = call_descriptor(freqList=[freq_event(**overrides), freq_event(pos=2.0)])

    result = asyncio.run(sequencer.ingest_call(descriptor))

    assert result.status == "stored"
    assert result.freqlist_stored == 1
    (rejected,) = result.rejected
    assert rejected.error == "ValidationError"
    assert rejected.index == 0
    assert CALL_ID in gateway.calls
    assert len(gateway.freqlist) == 1


def test_deferral_waits_for_a_free_slot_when_the_buffer_is_full(
    gateway, dead_letters, call_descriptor, freq_event
) -> None:
    sequencer = _sequencer(
        gateway,
        dead_letters,
        deferred_capacity=2,
        deferred_base_seconds=10.0,
        deferred_max_seconds=10.0,
    )

    async def scenario():
        await sequencer.ingest_log(EventKind.FREQLIST, "call-a", freq_event())
        await sequencer.ingest_log(EventKind.FREQLIST, "call-b", freq_event())
        third = asyncio.create_task(sequencer.ingest_log(EventKind.FREQLIST, "call-c", freq_event()))
        await asyncio.sleep(0.02)
        held = (third.done(), sequencer.deferred_count)
        await sequencer.ingest_call(call_descriptor(filename="call-a"))
        result = await asyncio.wait_for(third, timeout=1.0)
        count_after_release = sequencer.deferred_count
        await sequencer.shutdown()
        return held, result, count_after_release

    held, result, count_after_release = asyncio.run(scenario())

    assert held == (False, 2)
    assert result.status == "deferred"
    assert count_after_release == 2
    assert "call-a" in gateway.calls
    assert len(gateway.freqlist) == 1
    assert {entry.call_id for entry in dead_letters.list_entries()} == {"call-b", "call-c"}
    assert sequencer.deferred_count == 0
