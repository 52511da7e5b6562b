from fastapi import HTTPException, Request, status

from trunk_ingest.core.errors import (
    ConflictError,
    DeferredWriteFailure,
    HashCollisionError,
    IngestError,
    PipelineClosedError,
    ReferenceNotFound,
    StorageUnavailable,
    ValidationError,
)
from trunk_ingest.services.pipeline import IngestPipeline

_STATUS_BY_ERROR: tuple[tuple[type[IngestError], int], ...] = (
    (ValidationError, 422),
    (ReferenceNotFound, 404),
    (ConflictError, 409),
    (HashCollisionError, 409),
    (StorageUnavailable, 503),
    (PipelineClosedError, 503),
    (DeferredWriteFailure, 503),
)


def get_pipeline(request: Request) -> IngestPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None or not pipeline.running:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="ingest pipeline not running")
    return pipeline


def ingest_http_error(exc: IngestError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=exc.describe())
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=exc.describe())
