from __future__ import annotations


class IngestError(Exception):
    """Base ingestion error.

    Carries the call identifier and, for log entries, the dedup hash so every
    reject can be logged with both.
    """

    def __init__(self, message: str, *, call_id: str | None = None, hashed: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.call_id = call_id
        self.hashed = hashed

    def describe(self) -> dict[str, object]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "call_id": self.call_id,
            "hashed": self.hashed,
        }


class ValidationError(IngestError):
    """Raised when a required field is missing, malformed or out of range."""

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        call_id: str | None = None,
        hashed: int | None = None,
    ) -> None:
        super().__init__(message, call_id=call_id, hashed=hashed)
        self.field = field

    def describe(self) -> dict[str, object]:
        return {**super().describe(), "field": self.field}


class UnknownAudioType(ValidationError):
    """Raised when the raw audio-type tag has no enum counterpart."""


class ReferenceNotFound(IngestError):
    """Raised when a talkgroup or source reference cannot be resolved."""


class HashCollisionError(IngestError):
    """Raised when two different payloads share one dedup hash."""


class DeferredWriteFailure(IngestError):
    """Raised when a dependent event's call row never commits within the retry budget."""


class ConflictError(IngestError):
    """Raised when a redelivered call row diverges from the committed one."""


class StorageUnavailable(IngestError):
    """Raised when the database is unavailable, not configured or saturated."""


class PipelineClosedError(IngestError):
    """Raised when events are submitted while the pipeline is draining or stopped."""
