from datetime import datetime, timezone

from fastapi import APIRouter

from trunk_ingest.core.config import get_settings

router = APIRouter()


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    timestamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return {"status": "healthy", "timestamp": timestamp, "service": get_settings().app_name}
