from __future__ import annotations

from dataclasses import astuple, dataclass
from datetime import datetime, timedelta
from enum import Enum


class AudioType(str, Enum):
    ANALOG = "analog"
    DIGITAL = "digital"
    DIGITAL_TDMA = "digital_tdma"


class EventKind(str, Enum):
    CALL = "call"
    FREQLIST = "freqlist"
    SRCLIST = "srclist"


@dataclass(frozen=True, slots=True)
class Call:
    filename: str
    freq: int
    freq_error: int
    signal: int
    noise: int
    source_num: int
    recorder_num: int
    tdma_slot: int
    phase2_tdma: int
    start_time: datetime
    stop_time: datetime
    emergency: bool
    priority: int
    mode: int
    duplex: int
    encrypted: bool
    call_length: int
    talkgroup: int
    audio_type: AudioType
    short_name: str
    transcription: str | None = None


@dataclass(frozen=True, slots=True)
class FrequencyLogEntry:
    call_id: str
    hashed: int
    freq: int
    time: datetime
    pos: timedelta
    length: timedelta
    error_count: int
    spike_count: int

    @property
    def kind(self) -> EventKind:
        return EventKind.FREQLIST

    def fingerprint(self) -> tuple:
        return astuple(self)


@dataclass(frozen=True, slots=True)
class SourceLogEntry:
    call_id: str
    hashed: int
    src: int
    time: datetime
    pos: timedelta
    emergency: bool
    signal_system: str | None = None

    @property
    def kind(self) -> EventKind:
        return EventKind.SRCLIST

    def fingerprint(self) -> tuple:
        return astuple(self)


LogEntry = FrequencyLogEntry | SourceLogEntry
