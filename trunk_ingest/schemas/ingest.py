from __future__ import annotations

from datetime import datetime, timedelta, timezone
import math
from typing import TYPE_CHECKING, Annotated, Any, Literal, TypeVar

from pydantic import (
    AfterValidator,
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    StringConstraints,
    field_validator,
)
from pydantic import ValidationError as PydanticValidationError

from trunk_ingest.core.errors import ValidationError

if TYPE_CHECKING:
    from trunk_ingest.services.sequencer import IngestResult

SMALLINT_MIN = -32_768
SMALLINT_MAX = 32_767
INT_MIN = -2_147_483_648
INT_MAX = 2_147_483_647

# timedelta tops out just under a billion days.
_MAX_DURATION_SECONDS = timedelta.max.total_seconds()


def _reject_bool(value: Any) -> Any:
    # bool is an int subclass; a flag where a number belongs is malformed.
    if isinstance(value, bool):
        raise ValueError("expected an integer, got a boolean")
    return value


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    try:
        return value.astimezone(timezone.utc)
    except OverflowError as exc:
        raise ValueError("timestamp out of range") from exc


def _strip_text(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


Integer = Annotated[int, BeforeValidator(_reject_bool)]
SmallInt = Annotated[Integer, Field(ge=SMALLINT_MIN, le=SMALLINT_MAX)]
Int4 = Annotated[Integer, Field(ge=INT_MIN, le=INT_MAX)]
UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]
Text = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
OptionalText = Annotated[str | None, BeforeValidator(_strip_text)]


def _parse_flag(value: Any) -> Any:
    """Recorder flags arrive as 0/1, booleans or their string spellings."""
    if isinstance(value, str):
        return value.strip().lower()
    if isinstance(value, float) and value in (0.0, 1.0):
        return int(value)
    return value


def _parse_seconds(value: Any) -> Any:
    if value is None or isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ValueError("expected a duration in seconds, got a boolean")
    try:
        seconds = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"expected a duration in seconds, got {value!r}") from exc
    if not math.isfinite(seconds) or abs(seconds) > _MAX_DURATION_SECONDS:
        raise ValueError(f"duration out of range: {value!r}")
    try:
        return timedelta(seconds=seconds)
    except OverflowError as exc:
        raise ValueError(f"duration out of range: {value!r}") from exc


class CallLocator(BaseModel):
    """The subset of a call descriptor needed to name the call."""

    model_config = ConfigDict(extra="ignore")

    filename: OptionalText = None
    audio_name: OptionalText = None
    short_name: OptionalText = None
    start_time: UtcDatetime | None = None


class CallDescriptor(BaseModel):
    """A trunk-recorder call sidecar. Talkgroup metadata and unknown keys are ignored."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    freq: Int4
    freq_error: SmallInt
    signal: SmallInt
    noise: SmallInt
    source_num: SmallInt
    recorder_num: SmallInt
    tdma_slot: SmallInt
    phase2_tdma: SmallInt
    start_time: UtcDatetime
    stop_time: UtcDatetime
    emergency: bool
    priority: SmallInt
    mode: SmallInt
    duplex: SmallInt
    encrypted: bool
    call_length: SmallInt
    talkgroup: Integer | None = None
    # Kept raw so the normalizer can report UnknownAudioType instead of a type error.
    audio_type: Any = None
    short_name: Text
    transcription: OptionalText = None
    freq_list: list[Any] | None = Field(default=None, validation_alias=AliasChoices("freqList", "freq_list"))
    src_list: list[Any] | None = Field(default=None, validation_alias=AliasChoices("srcList", "src_list"))

    @field_validator("emergency", "encrypted", mode="before")
    @classmethod
    def parse_flags(cls, value: Any) -> Any:
        return _parse_flag(value)


class _LogEvent(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    time: UtcDatetime
    pos: timedelta

    @field_validator("pos", "length", mode="before", check_fields=False)
    @classmethod
    def parse_durations(cls, value: Any) -> Any:
        return _parse_seconds(value)

    @field_validator("pos", "length", check_fields=False)
    @classmethod
    def non_negative(cls, value: timedelta) -> timedelta:
        if value < timedelta(0):
            raise ValueError("must be non-negative")
        return value


class FrequencyEvent(_LogEvent):
    freq: Int4
    length: timedelta = Field(validation_alias=AliasChoices("len", "length"))
    error_count: SmallInt
    spike_count: SmallInt


class SourceEvent(_LogEvent):
    src: Int4
    emergency: bool
    signal_system: OptionalText = None

    @field_validator("emergency", mode="before")
    @classmethod
    def parse_flags(cls, value: Any) -> Any:
        return _parse_flag(value)


Model = TypeVar("Model", bound=BaseModel)


def parse_record(model: type[Model], payload: Any, *, call_id: str | None = None) -> Model:
    """Validate ``payload`` against ``model``, reporting the first failing field as a domain error."""
    try:
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or None
        message = f"{field}: {first['msg']}" if field else first["msg"]
        raise ValidationError(message, field=field, call_id=call_id) from exc


class RejectedEventOut(BaseModel):
    kind: str
    index: int | None = None
    hashed: int | None = None
    error: str
    message: str


class IngestAccepted(BaseModel):
    kind: str
    call_id: str
    status: Literal["stored", "duplicate", "deferred"]
    hashed: int | None = None
    freqlist_stored: int = 0
    freqlist_duplicates: int = 0
    srclist_stored: int = 0
    srclist_duplicates: int = 0
    out_of_order: int = 0
    rejected: list[RejectedEventOut] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: IngestResult) -> "IngestAccepted":
        return cls(
            kind=result.kind.value,
            call_id=result.call_id,
            status=result.status,
            hashed=result.hashed,
            freqlist_stored=result.freqlist_stored,
            freqlist_duplicates=result.freqlist_duplicates,
            srclist_stored=result.srclist_stored,
            srclist_duplicates=result.srclist_duplicates,
            out_of_order=result.out_of_order,
            rejected=[
                RejectedEventOut(
                    kind=row.kind.value,
                    index=row.index,
                    hashed=row.hashed,
                    error=row.error,
                    message=row.message,
                )
                for row in result.rejected
            ],
        )
