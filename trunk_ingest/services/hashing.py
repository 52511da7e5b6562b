from __future__ import annotations

from datetime import datetime, timedelta, timezone
import hashlib

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MICROSECOND = timedelta(microseconds=1)
_SEPARATOR = "\x1f"


def stable_hash(call_id: str, time: datetime, pos: timedelta, *, key: bytes = b"") -> int:
    """Dedup key for a log event: signed 64-bit BLAKE2b over ``(call_id, time, pos)``.

    Time and position are reduced to integer microseconds so the value does not
    depend on float formatting, timezone representation or process state.
    """
    digest = hashlib.blake2b(
        _canonical_key(call_id, time, pos).encode("utf-8"),
        digest_size=8,
        key=key,
    ).digest()
    return int.from_bytes(digest, "big", signed=True)


def shard_for(call_id: str, shard_count: int) -> int:
    digest = hashlib.blake2b(call_id.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big") % max(1, shard_count)


def _canonical_key(call_id: str, time: datetime, pos: timedelta) -> str:
    if time.tzinfo is None:
        time = time.replace(tzinfo=timezone.utc)
    time_us = (time - _EPOCH) // _MICROSECOND
    pos_us = pos // _MICROSECOND
    return f"{call_id}{_SEPARATOR}{time_us}{_SEPARATOR}{pos_us}"
