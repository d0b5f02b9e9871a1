"""
Real-time sync WebSocket.

- WS /ws?token=<jwt>: authenticated connection, one per principal

Frame types (client -> server):
- ping → pong
- subscribe {channel} → subscribed | error
- unsubscribe {channel} → unsubscribed | error

Server -> client frames are produced by the fan-out dispatcher:
``connected``, ``channel``, ``notification`` and ``error``.
"""

from __future__ import annotations

import json
from typing import Any, Optional

import structlog
from fastapi import APIRouter, Query, WebSocket

from schoolsync.core.auth import authenticate_token
from schoolsync.core.errors import AuthenticationError, DeliveryError, SubscriptionError
from schoolsync.sync.registry import (
    CLOSE_INVALID_CREDENTIAL,
    CLOSE_NO_CREDENTIAL,
    Connection,
    ConnectionRegistry,
)
from schoolsync.sync.service import get_sync_service

router = APIRouter()
log = structlog.get_logger()


def _error(message: str) -> dict[str, Any]:
    return {"type": "error", "message": message}


async def handle_frame(registry: ConnectionRegistry, conn: Connection, raw: Optional[str]) -> None:
    """Answer one client frame. Bad input gets an error frame, never a close."""
    try:
        frame = json.loads(raw) if raw is not None else None
    except ValueError:
        frame = None
    if not isinstance(frame, dict):
        await conn.send(_error("Invalid message format"))
        return

    frame_type = frame.get("type")

    # --- Ping/Pong ---
    if frame_type == "ping":
        await conn.send({"type": "pong"})
        return

    # --- Subscriptions ---
    if frame_type in ("subscribe", "unsubscribe"):
        channel = frame.get("channel")
        if not isinstance(channel, str) or not channel:
            await conn.send(_error("Channel is required"))
            return
        try:
            if frame_type == "subscribe":
                registry.subscribe(conn.principal_id, channel)
            else:
                registry.unsubscribe(conn.principal_id, channel)
        except SubscriptionError as exc:
            await conn.send(_error(exc.message))
            return
        await conn.send({"type": f"{frame_type}d", "channel": channel})
        return

    await conn.send(_error("Unknown message type"))


@router.websocket("/ws")
async def sync_websocket(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
):
    """
    Authenticated WebSocket endpoint for change notifications.

    The socket is accepted before authentication so that the close code
    (4001 missing token, 4002 invalid token) reaches the client.
    """
    service = get_sync_service(websocket)
    await websocket.accept()

    # Authenticate
    try:
        principal = await authenticate_token(token)
    except AuthenticationError as exc:
        if exc.missing:
            await websocket.close(code=CLOSE_NO_CREDENTIAL, reason="Authentication required")
        else:
            log.info("ws.auth_failed", error=exc.message)
            await websocket.close(code=CLOSE_INVALID_CREDENTIAL, reason="Authentication failed")
        return

    registry = service.registry
    try:
        conn = await registry.register(principal.id, principal.role, websocket)
    except DeliveryError:
        return

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            await handle_frame(registry, conn, message.get("text"))
    except DeliveryError as exc:
        log.info("ws.send_failed", principal_id=principal.id, error=exc.message)
    except Exception as exc:
        log.error("ws.error", principal_id=principal.id, error=str(exc))
    finally:
        # No-op if a newer connection already replaced this one.
        registry.unregister(principal.id, conn)
