"""
API v1 Router

REST endpoints live under /api/v1; the WebSocket is mounted at the root.
"""

from fastapi import APIRouter

from . import sync, ws

router = APIRouter()

router.include_router(sync.router, prefix="/sync", tags=["Sync"])

ws_router = ws.router


@router.get("/", tags=["API"])
async def api_root():
    """API root: returns version and available endpoints."""
    return {
        "api": "v1",
        "version": "0.1.0",
        "endpoints": [
            "/sync/changes/{entity_type}",
            "/sync/status",
            "/sync/logout",
            "/sync/prune",
        ],
    }
