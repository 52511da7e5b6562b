from fastapi import APIRouter

from trunk_ingest.api.routes import calls, dead_letters, health

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(calls.router, prefix="/calls", tags=["ingest"])
api_router.include_router(dead_letters.router, prefix="/dead-letters", tags=["operator"])
