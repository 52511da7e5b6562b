from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status

from trunk_ingest.api.deps import get_pipeline, ingest_http_error
from trunk_ingest.core.errors import IngestError
from trunk_ingest.schemas.dead_letters import DeadLetterOut
from trunk_ingest.schemas.ingest import IngestAccepted

router = APIRouter()


@router.get("", response_model=list[DeadLetterOut])
async def list_dead_letters(
    category: Literal["dead_letter", "quarantine"] | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    pipeline=Depends(get_pipeline),
) -> list[DeadLetterOut]:
    entries = pipeline.dead_letters.list_entries(category=category, limit=limit)
    return [DeadLetterOut.from_entry(entry) for entry in entries]


@router.get("/{dead_letter_id}", response_model=DeadLetterOut)
async def get_dead_letter(dead_letter_id: str, pipeline=Depends(get_pipeline)) -> DeadLetterOut:
    entry = pipeline.dead_letters.get(dead_letter_id)
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="dead letter not found")
    return DeadLetterOut.from_entry(entry)


@router.post("/{dead_letter_id}/replay", response_model=IngestAccepted)
async def replay_dead_letter(dead_letter_id: str, pipeline=Depends(get_pipeline)) -> IngestAccepted:
    try:
        result = await pipeline.replay(dead_letter_id)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="dead letter not found") from exc
    except IngestError as exc:
        raise ingest_http_error(exc) from exc
    return IngestAccepted.from_result(result)
