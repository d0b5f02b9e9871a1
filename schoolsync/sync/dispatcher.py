"""
Fan-out dispatcher.

Delivers JSON frames to live connections held by the ConnectionRegistry.
Every send is best-effort: a transport failure unregisters the broken
connection and is logged, never raised.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any, Optional

import structlog

from schoolsync.core.errors import DeliveryError
from schoolsync.core.metrics import MetricsCollector
from schoolsync.sync.registry import ConnectionRegistry

log = structlog.get_logger()


class FanoutDispatcher:
    def __init__(self, registry: ConnectionRegistry, metrics: MetricsCollector | None = None):
        self.registry = registry
        self._metrics = metrics or MetricsCollector()

    async def send_to_principal(self, principal_id: str, message: dict[str, Any]) -> bool:
        """Send to one principal. Returns True if the frame was written."""
        conn = self.registry.get(principal_id)
        if conn is None or not conn.is_open:
            return False

        try:
            await conn.send(message)
        except DeliveryError as exc:
            self._metrics.inc("delivery_failures_total")
            log.warning(
                "dispatch.delivery_failed",
                principal_id=principal_id,
                message_type=message.get("type"),
                error=exc.message,
            )
            # Dead transport: treat as a disconnect.
            self.registry.unregister(principal_id, conn)
            return False

        self._metrics.inc("messages_delivered_total")
        return True

    async def send_to_principals(self, principal_ids: Iterable[str], message: dict[str, Any]) -> int:
        """Send to each principal in turn. Returns the number of successful sends."""
        delivered = 0
        for principal_id in dict.fromkeys(principal_ids):
            if await self.send_to_principal(principal_id, message):
                delivered += 1
        return delivered

    async def send_to_channel(self, channel: str, data: Any) -> int:
        """Wrap ``data`` in a channel frame and send it to every subscriber."""
        subscribers = self.registry.subscribers_of(channel)
        if not subscribers:
            return 0
        message = {"type": "channel", "channel": channel, "data": data}
        delivered = await self.send_to_principals(sorted(subscribers), message)
        log.debug("dispatch.channel", channel=channel, subscribers=len(subscribers), delivered=delivered)
        return delivered

    async def send_notification(self, principal_ids: Iterable[str], payload: dict[str, Any]) -> int:
        """Send a principal-targeted notification frame."""
        return await self.send_to_principals(
            principal_ids, {"type": "notification", "payload": payload}
        )

    async def broadcast(self, message: dict[str, Any], exclude_principal_id: Optional[str] = None) -> int:
        """Send to every live connection except ``exclude_principal_id``."""
        targets = [
            pid for pid in self.registry.live_principals() if pid != exclude_principal_id
        ]
        delivered = await self.send_to_principals(targets, message)
        log.info("dispatch.broadcast", targets=len(targets), delivered=delivered)
        return delivered
