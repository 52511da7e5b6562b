from __future__ import annotations

from collections import OrderedDict
from collections.abc import Mapping
from datetime import timedelta
import logging
from typing import Any

from trunk_ingest.core.errors import HashCollisionError
from trunk_ingest.schemas.ingest import FrequencyEvent, SourceEvent, parse_record
from trunk_ingest.services.hashing import stable_hash
from trunk_ingest.services.records import EventKind, FrequencyLogEntry, LogEntry, SourceLogEntry

logger = logging.getLogger(__name__)


def build_frequency_entry(call_id: str, event: Mapping[str, Any], *, hash_key: bytes = b"") -> FrequencyLogEntry:
    parsed = parse_record(FrequencyEvent, event, call_id=call_id)
    return FrequencyLogEntry(
        call_id=call_id,
        hashed=stable_hash(call_id, parsed.time, parsed.pos, key=hash_key),
        freq=parsed.freq,
        time=parsed.time,
        pos=parsed.pos,
        length=parsed.length,
        error_count=parsed.error_count,
        spike_count=parsed.spike_count,
    )


def build_source_entry(call_id: str, event: Mapping[str, Any], *, hash_key: bytes = b"") -> SourceLogEntry:
    parsed = parse_record(SourceEvent, event, call_id=call_id)
    return SourceLogEntry(
        call_id=call_id,
        hashed=stable_hash(call_id, parsed.time, parsed.pos, key=hash_key),
        src=parsed.src,
        time=parsed.time,
        pos=parsed.pos,
        emergency=parsed.emergency,
        signal_system=parsed.signal_system,
    )


def build_entry(kind: EventKind, call_id: str, event: Mapping[str, Any], *, hash_key: bytes = b"") -> LogEntry:
    if kind is EventKind.FREQLIST:
        return build_frequency_entry(call_id, event, hash_key=hash_key)
    if kind is EventKind.SRCLIST:
        return build_source_entry(call_id, event, hash_key=hash_key)
    raise ValueError(f"not a log event kind: {kind}")


class LogDeduplicator:
    """Remembers committed log entries by hash.

    Entries are only remembered after they are durably stored, so a failed or
    deferred write never turns a later redelivery into a silent no-op.
    """

    def __init__(self, capacity: int = 50_000, position_capacity: int = 10_000) -> None:
        self.capacity = max(1, capacity)
        self.position_capacity = max(1, position_capacity)
        self._seen: OrderedDict[int, tuple] = OrderedDict()
        self._last_pos: OrderedDict[tuple[str, EventKind], timedelta] = OrderedDict()
        self.out_of_order_count = 0

    def is_duplicate(self, entry: LogEntry) -> bool:
        """True when an identical entry was already stored; raises on a divergent payload."""
        fingerprint = self._seen.get(entry.hashed)
        if fingerprint is None:
            return False
        self._seen.move_to_end(entry.hashed)
        if fingerprint != entry.fingerprint():
            raise HashCollisionError(
                f"{entry.kind.value} payload differs from stored entry with the same hash",
                call_id=entry.call_id,
                hashed=entry.hashed,
            )
        return True

    def remember(self, entry: LogEntry) -> None:
        self._seen[entry.hashed] = entry.fingerprint()
        self._seen.move_to_end(entry.hashed)
        while len(self._seen) > self.capacity:
            self._seen.popitem(last=False)

    def observe_position(self, entry: LogEntry) -> bool:
        """Track arrival order of ``pos`` per call; returns True when it went backwards."""
        key = (entry.call_id, entry.kind)
        previous = self._last_pos.get(key)
        out_of_order = previous is not None and entry.pos < previous
        if out_of_order:
            self.out_of_order_count += 1
            logger.info(
                "out-of-order %s event call_id=%s hashed=%s pos=%s previous_pos=%s",
                entry.kind.value,
                entry.call_id,
                entry.hashed,
                entry.pos,
                previous,
            )
        else:
            self._last_pos[key] = entry.pos
        self._last_pos.move_to_end(key)
        while len(self._last_pos) > self.position_capacity:
            self._last_pos.popitem(last=False)
        return out_of_order
