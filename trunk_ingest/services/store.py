from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import os
from pathlib import Path
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ValidationError

from trunk_ingest.services.records import EventKind

logger = logging.getLogger(__name__)

DeadLetterCategory = Literal["dead_letter", "quarantine"]


@dataclass(slots=True)
class DeadLetter:
    id: str
    category: DeadLetterCategory
    kind: EventKind
    call_id: str | None
    payload: dict[str, Any]
    reason: str
    error: str
    hashed: int | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class SpoolRecord(BaseModel):
    """One line of the dead-letter spool: a stored entry or the id of a removed one."""

    entry: DeadLetter | None = None
    removed: str | None = None


class DeadLetterStore:
    """Events the pipeline could not commit, held for operator inspection and replay.

    ``dead_letter`` entries are replayable as-is (deferred writes whose call row
    never showed up, events caught by shutdown). ``quarantine`` entries are
    structural problems (hash collisions, divergent call redeliveries) that need
    a human decision first.

    With a ``spool_path`` every change is appended to a JSON-lines file and
    fsynced, so entries dead-lettered during a drain survive the restart. The
    spool is replayed and compacted when the store is created.
    """

    def __init__(self, spool_path: Path | None = None) -> None:
        self.entries: dict[str, DeadLetter] = {}
        self.spool_path = spool_path
        if spool_path is not None:
            self._load(spool_path)

    def add(
        self,
        *,
        category: DeadLetterCategory,
        kind: EventKind,
        call_id: str | None,
        payload: dict[str, Any],
        reason: str,
        error: str,
        hashed: int | None = None,
    ) -> DeadLetter:
        entry = DeadLetter(
            id=str(uuid4()),
            category=category,
            kind=kind,
            call_id=call_id,
            payload=dict(payload),
            reason=reason,
            error=error,
            hashed=hashed,
        )
        self.entries[entry.id] = entry
        self._append(SpoolRecord(entry=entry))
        logger.error(
            "%s stored id=%s kind=%s call_id=%s hashed=%s reason=%s error=%s",
            category,
            entry.id,
            kind.value,
            call_id,
            hashed,
            reason,
            error,
        )
        return entry

    def restore(self, entry: DeadLetter) -> None:
        """Put back an entry taken out for a replay that could not be submitted."""
        self.entries[entry.id] = entry
        self._append(SpoolRecord(entry=entry))
        logger.info("%s restored id=%s call_id=%s", entry.category, entry.id, entry.call_id)

    def get(self, entry_id: str) -> DeadLetter | None:
        return self.entries.get(entry_id)

    def pop(self, entry_id: str) -> DeadLetter | None:
        entry = self.entries.pop(entry_id, None)
        if entry is not None:
            self._append(SpoolRecord(removed=entry_id))
        return entry

    def list_entries(self, *, category: DeadLetterCategory | None = None, limit: int = 100) -> list[DeadLetter]:
        rows = sorted(self.entries.values(), key=lambda row: row.created_at)
        if category:
            rows = [row for row in rows if row.category == category]
        return rows[:limit]

    def __len__(self) -> int:
        return len(self.entries)

    def _load(self, path: Path) -> None:
        if not path.exists():
            return
        with path.open(encoding="utf-8") as handle:
            for number, line in enumerate(handle, start=1):
                if not line.strip():
                    continue
                try:
                    record = SpoolRecord.model_validate_json(line)
                except ValidationError:
                    # A torn final line is what a crash mid-append leaves behind.
                    logger.error("unreadable dead-letter spool line path=%s line=%s", path, number)
                    continue
                if record.entry is not None:
                    self.entries[record.entry.id] = record.entry
                elif record.removed:
                    self.entries.pop(record.removed, None)
        self._compact(path)
        logger.info("loaded %s dead letters from %s", len(self.entries), path)

    def _compact(self, path: Path) -> None:
        staging = path.with_name(f"{path.name}.tmp")
        with staging.open("w", encoding="utf-8") as handle:
            for entry in self.entries.values():
                handle.write(SpoolRecord(entry=entry).model_dump_json() + "\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(staging, path)

    def _append(self, record: SpoolRecord) -> None:
        if self.spool_path is None:
            return
        try:
            self.spool_path.parent.mkdir(parents=True, exist_ok=True)
            with self.spool_path.open("a", encoding="utf-8") as handle:
                handle.write(record.model_dump_json() + "\n")
                handle.flush()
                os.fsync(handle.fileno())
        except OSError:
            logger.exception("dead-letter spool write failed path=%s; entry kept in memory only", self.spool_path)
