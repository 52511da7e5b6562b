"""Map raw trunk-recorder call descriptors into validated ``Call`` values.

Everything here is a pure transformation: talkgroup existence is resolved by
the caller and passed in, and writing is left to the storage gateway. Field
types and column ranges are enforced by the pydantic ``CallDescriptor``.
"""

from __future__ import annotations

from collections.abc import Container, Mapping
from dataclasses import fields
from datetime import datetime
from typing import Any

from trunk_ingest.core.errors import ReferenceNotFound, UnknownAudioType, ValidationError
from trunk_ingest.schemas.ingest import INT_MAX, INT_MIN, CallDescriptor, CallLocator, parse_record
from trunk_ingest.services.records import AudioType, Call

AUDIO_TYPE_TAGS: dict[str, AudioType] = {
    "analog": AudioType.ANALOG,
    "digital": AudioType.DIGITAL,
    "digital_tdma": AudioType.DIGITAL_TDMA,
}

_CALL_COLUMNS = {column.name for column in fields(Call)} - {"filename", "audio_type"}


def map_audio_type(tag: Any) -> AudioType:
    """Total mapping over the closed tag set; anything else is ``UnknownAudioType``."""
    if not isinstance(tag, str):
        raise UnknownAudioType(f"audio_type must be a string tag, got {tag!r}", field="audio_type")
    key = tag.strip().lower().replace(" ", "_").replace("-", "_")
    audio_type = AUDIO_TYPE_TAGS.get(key)
    if audio_type is None:
        raise UnknownAudioType(f"unknown audio_type tag: {tag!r}", field="audio_type")
    return audio_type


def call_filename(*, short_name: str, start_time: datetime, audio_name: str) -> str:
    """Object path the recorder uploads under: ``<system>/<YYYY>/<MM>/<DD>/<audio_name>``."""
    system = short_name.split("-")[-1].strip()
    if not system:
        raise ValidationError("short_name must be populated", field="short_name")
    return f"{system}/{start_time:%Y/%m/%d}/{audio_name}"


def call_identifier(descriptor: Mapping[str, Any]) -> str:
    locator = parse_record(CallLocator, descriptor)
    if locator.filename:
        return locator.filename

    if not locator.audio_name:
        raise ValidationError("call descriptor needs filename or audio_name", field="filename")
    if not locator.short_name:
        raise ValidationError("short_name must be populated", field="short_name")
    if locator.start_time is None:
        raise ValidationError("start_time is required to derive the call path", field="start_time")
    return call_filename(
        short_name=locator.short_name,
        start_time=locator.start_time,
        audio_name=locator.audio_name,
    )


def parse_call(descriptor: Mapping[str, Any] | CallDescriptor, *, call_id: str | None = None) -> CallDescriptor:
    if isinstance(descriptor, CallDescriptor):
        return descriptor
    return parse_record(CallDescriptor, descriptor, call_id=call_id)


def talkgroup_lookup(descriptor: CallDescriptor) -> list[int]:
    """Talkgroup ids worth asking storage about; out-of-range ids cannot exist."""
    talkgroup = descriptor.talkgroup
    if talkgroup is None or talkgroup < INT_MIN or talkgroup > INT_MAX:
        return []
    return [talkgroup]


def normalize_call(
    descriptor: Mapping[str, Any] | CallDescriptor,
    *,
    known_talkgroups: Container[int],
    filename: str | None = None,
) -> Call:
    call_id = filename or call_identifier(descriptor)
    parsed = parse_call(descriptor, call_id=call_id)
    talkgroup = parsed.talkgroup
    if talkgroup is None:
        raise ReferenceNotFound("call has no talkgroup", call_id=call_id)
    if talkgroup not in talkgroup_lookup(parsed) or talkgroup not in known_talkgroups:
        raise ReferenceNotFound(f"talkgroup {talkgroup} does not exist", call_id=call_id)
    if parsed.stop_time < parsed.start_time:
        raise ValidationError("stop_time precedes start_time", field="stop_time", call_id=call_id)

    try:
        audio_type = map_audio_type(parsed.audio_type)
    except ValidationError as exc:
        exc.call_id = call_id
        raise

    return Call(
        filename=call_id,
        audio_type=audio_type,
        **parsed.model_dump(include=_CALL_COLUMNS),
    )
