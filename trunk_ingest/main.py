from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from trunk_ingest.api.router import api_router
from trunk_ingest.core.config import get_settings
from trunk_ingest.core.telemetry import TelemetryRuntime, configure_logging, setup_telemetry, shutdown_telemetry
from trunk_ingest.services.gateway import get_gateway
from trunk_ingest.services.pipeline import build_pipeline

settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime_settings = get_settings()
    configure_logging(correlate=runtime_settings.otel_log_correlation)
    gateway = get_gateway()
    await gateway.open()
    pipeline = build_pipeline(gateway, runtime_settings)
    await pipeline.start()
    app.state.pipeline = pipeline
    try:
        yield
    finally:
        # Drain before closing the pool so in-flight batches can still commit.
        await pipeline.drain()
        app.state.pipeline = None
        await gateway.close()
        get_gateway.cache_clear()
        if _telemetry_runtime is not None:
            shutdown_telemetry(_telemetry_runtime)


app = FastAPI(title=settings.app_name, lifespan=lifespan)
_telemetry_runtime = setup_telemetry(settings, app)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    level = logging.WARNING if response.status_code >= 500 else logging.INFO
    logger.log(
        level,
        "%s %s status=%s duration_ms=%.1f",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started) * 1000.0,
    )
    return response


app.include_router(api_router)
