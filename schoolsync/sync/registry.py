"""
Connection registry for authenticated WebSocket sessions.

Features:
- At most one live connection per principal; a newer connection supersedes
  (and closes) the older one
- Channel -> subscriber index, purged when a connection goes away
- Per-connection send lock so frames reach a client in dispatch order
- Housekeeping sweep for connections whose transport already closed

All state is process-local. The registry is owned by the SyncService and
mutated only from the event loop, so the maps need no locking.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog
from starlette.websockets import WebSocket, WebSocketState

from schoolsync.core.errors import DeliveryError, SubscriptionError
from schoolsync.core.metrics import MetricsCollector

log = structlog.get_logger()

# WebSocket close codes
CLOSE_GOING_AWAY = 1001
CLOSE_NO_CREDENTIAL = 4001
CLOSE_INVALID_CREDENTIAL = 4002
CLOSE_SUPERSEDED = 4003


class ConnectionState(str, Enum):
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class Connection:
    """One live transport session for a principal."""

    __slots__ = (
        "websocket",
        "principal_id",
        "role",
        "state",
        "connected_at",
        "_send_lock",
    )

    def __init__(self, websocket: WebSocket, principal_id: str, role: str):
        self.websocket = websocket
        self.principal_id = principal_id
        self.role = role
        self.state = ConnectionState.OPEN
        self.connected_at = datetime.now(timezone.utc)
        self._send_lock = asyncio.Lock()

    @property
    def transport_closed(self) -> bool:
        """True once either side of the underlying socket has disconnected."""
        for attr in ("application_state", "client_state"):
            if getattr(self.websocket, attr, None) == WebSocketState.DISCONNECTED:
                return True
        return False

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.OPEN and not self.transport_closed

    async def send(self, message: dict[str, Any]) -> None:
        """Send one JSON frame. Raises DeliveryError on any transport failure."""
        if self.state is not ConnectionState.OPEN:
            raise DeliveryError(f"Connection for {self.principal_id} is {self.state.value}")
        text = json.dumps(message, default=str)
        async with self._send_lock:
            try:
                await self.websocket.send_text(text)
            except Exception as exc:
                raise DeliveryError(
                    f"Send to {self.principal_id} failed: {exc}",
                    {"principal_id": self.principal_id},
                ) from exc

    async def close(self, code: int, reason: str) -> None:
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSING
        try:
            await self.websocket.close(code=code, reason=reason)
        except Exception as exc:
            # Transport already gone; nothing left to tell the client.
            log.debug("registry.close_failed", principal_id=self.principal_id, error=str(exc))
        finally:
            self.state = ConnectionState.CLOSED


class ConnectionRegistry:
    """
    Maps principals to their live connection and channels to subscribers.

    State per principal is either Disconnected or Connected; reconnecting is
    unregister followed by register.
    """

    def __init__(self, metrics: MetricsCollector | None = None) -> None:
        # principal_id -> Connection
        self._connections: dict[str, Connection] = {}
        # channel -> principal_ids
        self._subscriptions: dict[str, set[str]] = {}
        self._metrics = metrics or MetricsCollector()

    @property
    def connections(self) -> dict[str, Connection]:
        return self._connections

    @property
    def channels(self) -> dict[str, set[str]]:
        return self._subscriptions

    def get(self, principal_id: str) -> Connection | None:
        return self._connections.get(principal_id)

    def is_live(self, principal_id: str) -> bool:
        conn = self._connections.get(principal_id)
        return conn is not None and conn.is_open

    def live_principals(self) -> list[str]:
        return [pid for pid, conn in self._connections.items() if conn.is_open]

    def subscribers_of(self, channel: str) -> set[str]:
        return set(self._subscriptions.get(channel, ()))

    def channels_of(self, principal_id: str) -> set[str]:
        return {ch for ch, subs in self._subscriptions.items() if principal_id in subs}

    # --- Lifecycle ---

    async def register(self, principal_id: str, role: str, websocket: WebSocket) -> Connection:
        """
        Make ``websocket`` the authoritative connection for ``principal_id``.

        An existing connection is unregistered and closed with
        CLOSE_SUPERSEDED before the new one is acknowledged. The new
        connection is installed before any await, so a concurrent register
        for the same principal supersedes this one instead of being lost.
        """
        existing = self._connections.get(principal_id)
        conn = Connection(websocket, principal_id, role)
        if existing is not None:
            self.unregister(principal_id, existing)
        self._connections[principal_id] = conn
        self._update_gauge()

        if existing is not None:
            await existing.close(CLOSE_SUPERSEDED, "New connection established")
            self._metrics.inc("connections_superseded_total")
            log.info("registry.superseded", principal_id=principal_id)

        try:
            await conn.send({"type": "connected", "userId": principal_id, "role": role})
        except DeliveryError:
            self.unregister(principal_id, conn)
            raise

        log.info(
            "registry.connected",
            principal_id=principal_id,
            role=role,
            total=len(self._connections),
        )
        return conn

    def unregister(self, principal_id: str, connection: Connection | None = None) -> bool:
        """
        Remove the principal's connection and every subscription it holds.

        When ``connection`` is given, only that exact connection is removed,
        so a superseded socket tearing down cannot evict its replacement.
        Returns False if there was nothing to remove.
        """
        current = self._connections.get(principal_id)
        if current is None:
            return False
        if connection is not None and current is not connection:
            return False

        del self._connections[principal_id]
        for channel in list(self._subscriptions):
            subscribers = self._subscriptions[channel]
            subscribers.discard(principal_id)
            if not subscribers:
                del self._subscriptions[channel]

        self._update_gauge()
        log.info("registry.disconnected", principal_id=principal_id)
        return True

    async def disconnect(self, principal_id: str, code: int, reason: str) -> bool:
        """Close and unregister a principal's connection (e.g. after logout)."""
        conn = self._connections.get(principal_id)
        if conn is None:
            return False
        self.unregister(principal_id, conn)
        await conn.close(code, reason)
        return True

    def cleanup(self) -> int:
        """Unregister connections whose transport is closing or closed."""
        stale = [
            (pid, conn)
            for pid, conn in self._connections.items()
            if conn.state is not ConnectionState.OPEN or conn.transport_closed
        ]
        for pid, conn in stale:
            self.unregister(pid, conn)
        if stale:
            log.info("registry.cleanup", removed=len(stale))
        return len(stale)

    async def close_all(self, code: int = CLOSE_GOING_AWAY, reason: str = "Server shutting down") -> int:
        principals = list(self._connections)
        for principal_id in principals:
            await self.disconnect(principal_id, code, reason)
        return len(principals)

    # --- Subscriptions ---

    def subscribe(self, principal_id: str, channel: str) -> None:
        if not self.is_live(principal_id):
            raise SubscriptionError(
                "No live connection for subscription",
                {"principal_id": principal_id, "channel": channel},
            )
        self._subscriptions.setdefault(channel, set()).add(principal_id)
        log.debug("registry.subscribed", principal_id=principal_id, channel=channel)

    def unsubscribe(self, principal_id: str, channel: str) -> None:
        if not self.is_live(principal_id):
            raise SubscriptionError(
                "No live connection for subscription",
                {"principal_id": principal_id, "channel": channel},
            )
        subscribers = self._subscriptions.get(channel)
        if subscribers is None:
            return
        subscribers.discard(principal_id)
        if not subscribers:
            del self._subscriptions[channel]
        log.debug("registry.unsubscribed", principal_id=principal_id, channel=channel)

    def _update_gauge(self) -> None:
        self._metrics.set_gauge("connections_active", len(self._connections))
