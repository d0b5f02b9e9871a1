"""
Sync event router.

Turns a domain change event into:
1. a tracked, versioned ChangeRecord
2. a channel frame on ``"{entity_type}:{entity_id}"``
3. a notification to the principals the entity type's resolver names

Runs detached from the request that caused the change, so nothing here is
allowed to raise.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import structlog
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, ConfigDict, Field

from schoolsync.models.sync import SYSTEM_ACTOR
from schoolsync.sync.dispatcher import FanoutDispatcher
from schoolsync.sync.sanitize import strip_sensitive
from schoolsync.sync.tracker import ChangeTracker

log = structlog.get_logger()

Resolver = Callable[[str], Awaitable[Iterable[Any]]]


class ChangeType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncEvent(BaseModel):
    """A change reported by a CRUD collaborator after its write committed.

    Database ids may be passed as integers; they are stored as strings.
    """

    model_config = ConfigDict(coerce_numbers_to_str=True)

    type: ChangeType
    entity_type: str
    entity_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    actor_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def channel_name(entity_type: str, entity_id: str) -> str:
    return f"{entity_type}:{entity_id}"


def notification_message(category: str, action: str) -> str:
    return f"{category.capitalize()} has been {action}d"


class _Registration:
    __slots__ = ("resolver", "category")

    def __init__(self, resolver: Resolver, category: str):
        self.resolver = resolver
        self.category = category


class SyncEventRouter:
    def __init__(self, tracker: ChangeTracker, dispatcher: FanoutDispatcher):
        self.tracker = tracker
        self.dispatcher = dispatcher
        self._resolvers: dict[str, _Registration] = {}

    def register_resolver(
        self,
        entity_type: str,
        resolver: Resolver,
        category: Optional[str] = None,
    ) -> None:
        """Register who gets notified when ``entity_type`` changes.

        ``category`` is the human label used in notifications; it defaults to
        the entity type.
        """
        if entity_type in self._resolvers:
            log.warning("router.resolver_replaced", entity_type=entity_type)
        self._resolvers[entity_type] = _Registration(resolver, category or entity_type)

    @property
    def entity_types(self) -> list[str]:
        return sorted(self._resolvers)

    async def handle(self, event: SyncEvent) -> Optional[int]:
        """Track, publish and notify. Returns the allocated version, if any."""
        event = event.model_copy(update={"payload": strip_sensitive(jsonable_encoder(event.payload))})
        version: Optional[int] = None
        try:
            version = await self.tracker.track_change(
                event.entity_type,
                event.entity_id,
                event.payload,
                event.actor_id or SYSTEM_ACTOR,
            )
        except Exception as exc:
            # Notification is advisory; keep going without a version.
            log.error(
                "router.track_failed",
                entity_type=event.entity_type,
                entity_id=event.entity_id,
                error=str(exc),
            )

        try:
            await self._publish(event, version)
        except Exception as exc:
            log.error(
                "router.publish_failed",
                entity_type=event.entity_type,
                entity_id=event.entity_id,
                error=str(exc),
                exc_info=True,
            )

        try:
            await self._notify(event)
        except Exception as exc:
            log.error(
                "router.notify_failed",
                entity_type=event.entity_type,
                entity_id=event.entity_id,
                error=str(exc),
                exc_info=True,
            )
        return version

    async def _publish(self, event: SyncEvent, version: Optional[int]) -> None:
        channel = channel_name(event.entity_type, event.entity_id)
        await self.dispatcher.send_to_channel(
            channel,
            {
                "eventType": event.type.value,
                "entityType": event.entity_type,
                "entityId": event.entity_id,
                "version": version,
                "data": event.payload,
                "timestamp": event.timestamp.isoformat(),
            },
        )

    async def _notify(self, event: SyncEvent) -> None:
        registration = self._resolvers.get(event.entity_type)
        if registration is None:
            log.warning("router.no_resolver", entity_type=event.entity_type)
            return

        principals = [str(pid) for pid in await registration.resolver(event.entity_id)]
        if not principals:
            return

        action = event.type.value
        delivered = await self.dispatcher.send_notification(
            principals,
            {
                "category": registration.category,
                "action": action,
                "entityId": event.entity_id,
                "message": notification_message(registration.category, action),
                "data": event.payload,
            },
        )
        log.debug(
            "router.notified",
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            interested=len(principals),
            delivered=delivered,
        )
