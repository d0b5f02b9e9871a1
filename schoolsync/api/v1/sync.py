"""
Sync catch-up and diagnostics endpoints.

- GET /changes/{entity_type}: changes after a client-supplied version
- GET /status: per entity type summary plus live connection counters
- POST /logout: revoke the caller's token and close their socket
- POST /prune: delete change records past the retention horizon (admin)
"""

from __future__ import annotations

from datetime import timedelta
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query

from schoolsync.core.auth import Principal, get_principal, require_admin, revoke_jwt
from schoolsync.sync.registry import CLOSE_INVALID_CREDENTIAL
from schoolsync.sync.service import SyncService, get_sync_service

router = APIRouter()
log = structlog.get_logger()

MAX_CHANGES_PAGE = 1000


@router.get("/changes/{entity_type}")
async def get_changes(
    entity_type: str,
    since: int = Query(0, ge=0, description="Last version the client has seen"),
    limit: int = Query(MAX_CHANGES_PAGE, ge=1, le=MAX_CHANGES_PAGE),
    principal: Principal = Depends(get_principal),
    service: SyncService = Depends(get_sync_service),
):
    """Catch-up query.

    Returns ``{changes, currentVersion}``. When ``changes`` is a full page the
    client re-queries with the last version it received.
    """
    catch_up = await service.tracker.changes_since(entity_type, since, limit=limit)
    return catch_up.to_wire()


@router.get("/status")
async def get_status(
    principal: Principal = Depends(get_principal),
    service: SyncService = Depends(get_sync_service),
):
    entities = await service.tracker.status()
    registry = service.registry
    return {
        "entities": entities,
        "connections": {
            "live": len(registry.live_principals()),
            "channels": len(registry.channels),
        },
        "pendingEvents": service.pending_events,
        "metrics": service.metrics.to_dict(),
    }


@router.post("/logout")
async def logout(
    principal: Principal = Depends(get_principal),
    service: SyncService = Depends(get_sync_service),
):
    """Revoke the caller's token and drop their live connection, if any."""
    if principal.jti:
        await revoke_jwt(principal.jti, ttl_seconds=service.settings.jwt_expire_minutes * 60)
    disconnected = await service.registry.disconnect(
        principal.id, CLOSE_INVALID_CREDENTIAL, "Session revoked"
    )
    log.info("sync.logout", principal_id=principal.id, disconnected=disconnected)
    return {"revoked": bool(principal.jti), "disconnected": disconnected}


@router.post("/prune")
async def prune_changes(
    older_than_hours: Optional[float] = Query(None, ge=0),
    principal: Principal = Depends(require_admin),
    service: SyncService = Depends(get_sync_service),
):
    """Delete change records older than the horizon (default: configured retention)."""
    horizon = (
        timedelta(hours=older_than_hours) if older_than_hours is not None else service.retention
    )
    deleted = await service.tracker.prune(horizon)
    log.info("sync.pruned", deleted=deleted, principal_id=principal.id, horizon=str(horizon))
    return {"deleted": deleted}
