from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from trunk_ingest.services.store import DeadLetter


class DeadLetterOut(BaseModel):
    id: str
    category: str
    kind: str
    call_id: str | None = None
    reason: str
    error: str
    hashed: int | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    @classmethod
    def from_entry(cls, entry: DeadLetter) -> "DeadLetterOut":
        return cls(
            id=entry.id,
            category=entry.category,
            kind=entry.kind.value,
            call_id=entry.call_id,
            reason=entry.reason,
            error=entry.error,
            hashed=entry.hashed,
            payload=entry.payload,
            created_at=entry.created_at,
        )
