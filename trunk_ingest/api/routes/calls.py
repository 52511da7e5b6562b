from typing import Any

from fastapi import APIRouter, Body, Depends, Response, status

from trunk_ingest.api.deps import get_pipeline, ingest_http_error
from trunk_ingest.core.errors import IngestError
from trunk_ingest.schemas.ingest import IngestAccepted
from trunk_ingest.services.records import EventKind
from trunk_ingest.services.sequencer import IngestResult

router = APIRouter()

_STATUS_BY_RESULT = {
    "stored": status.HTTP_201_CREATED,
    "duplicate": status.HTTP_200_OK,
    "deferred": status.HTTP_202_ACCEPTED,
}


@router.post("", response_model=IngestAccepted, status_code=status.HTTP_201_CREATED)
async def ingest_call(
    response: Response,
    descriptor: dict[str, Any] = Body(...),
    pipeline=Depends(get_pipeline),
) -> IngestAccepted:
    try:
        result = await pipeline.submit_call(descriptor)
    except IngestError as exc:
        raise ingest_http_error(exc) from exc
    return _accepted(response, result)


@router.post("/{call_id:path}/freqlist", response_model=IngestAccepted, status_code=status.HTTP_201_CREATED)
async def ingest_frequency_event(
    call_id: str,
    response: Response,
    event: dict[str, Any] = Body(...),
    pipeline=Depends(get_pipeline),
) -> IngestAccepted:
    try:
        result = await pipeline.submit_log(EventKind.FREQLIST, call_id, event)
    except IngestError as exc:
        raise ingest_http_error(exc) from exc
    return _accepted(response, result)


@router.post("/{call_id:path}/srclist", response_model=IngestAccepted, status_code=status.HTTP_201_CREATED)
async def ingest_source_event(
    call_id: str,
    response: Response,
    event: dict[str, Any] = Body(...),
    pipeline=Depends(get_pipeline),
) -> IngestAccepted:
    try:
        result = await pipeline.submit_log(EventKind.SRCLIST, call_id, event)
    except IngestError as exc:
        raise ingest_http_error(exc) from exc
    return _accepted(response, result)


def _accepted(response: Response, result: IngestResult) -> IngestAccepted:
    response.status_code = _STATUS_BY_RESULT[result.status]
    return IngestAccepted.from_result(result)
