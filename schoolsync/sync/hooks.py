"""
Hook for CRUD handlers to report changes after their response is sent.

Usage::

    @router.put("/grades/{grade_id}")
    async def update_grade(..., sync: SyncReporter = Depends(sync_reporter("grades"))):
        grade = await save(...)
        sync.report(grade)
        return grade

The event is queued on FastAPI's BackgroundTasks, so it runs only after the
response has gone out and never changes the response.
"""

from __future__ import annotations

from typing import Any, Optional

import structlog
from fastapi import BackgroundTasks, Depends, Request
from fastapi.encoders import jsonable_encoder

from schoolsync.core.auth import Principal, get_optional_principal
from schoolsync.models.sync import SYSTEM_ACTOR
from schoolsync.sync.router import ChangeType, SyncEvent
from schoolsync.sync.service import SyncService, get_sync_service

log = structlog.get_logger()

_METHOD_EVENT_TYPES = {
    "POST": ChangeType.CREATE,
    "PUT": ChangeType.UPDATE,
    "PATCH": ChangeType.UPDATE,
    "DELETE": ChangeType.DELETE,
}


def event_type_for_method(method: str) -> ChangeType:
    return _METHOD_EVENT_TYPES.get(method.upper(), ChangeType.UPDATE)


def _id_of(item: Any) -> Any:
    if isinstance(item, dict):
        return item.get("id") or item.get("_id")
    return None


def extract_entity_id(body: Any) -> Optional[str]:
    """Find the changed entity's id in a response body.

    Looks at ``id``/``_id``, the first element of a list, and a nested
    ``data`` object or list, in that order of precedence (last match wins).
    """
    entity_id = _id_of(body)
    if isinstance(body, list) and body:
        entity_id = _id_of(body[0])
    if isinstance(body, dict) and body.get("data"):
        nested = body["data"]
        entity_id = _id_of(nested)
        if isinstance(nested, list) and nested:
            entity_id = _id_of(nested[0])
    if entity_id is None or entity_id == "":
        return None
    return str(entity_id)


class SyncReporter:
    """Per-request handle bound to one entity type."""

    def __init__(
        self,
        entity_type: str,
        service: SyncService,
        background_tasks: BackgroundTasks,
        method: str,
        actor_id: Optional[str] = None,
    ):
        self.entity_type = entity_type
        self.service = service
        self.background_tasks = background_tasks
        self.change_type = event_type_for_method(method)
        self.actor_id = actor_id or SYSTEM_ACTOR

    def report(
        self,
        body: Any,
        payload: Any = None,
        *,
        change_type: Optional[ChangeType] = None,
    ) -> Optional[SyncEvent]:
        """Queue a change for ``body`` (a model, dict or list). Returns the event,
        or None when no entity id could be found."""
        encoded = jsonable_encoder(body)
        entity_id = extract_entity_id(encoded)
        if entity_id is None:
            log.debug("sync.report_skipped", entity_type=self.entity_type, reason="no_entity_id")
            return None

        data = jsonable_encoder(payload) if payload is not None else encoded
        if not isinstance(data, dict):
            data = {"value": data}

        event = SyncEvent(
            type=change_type or self.change_type,
            entity_type=self.entity_type,
            entity_id=entity_id,
            payload=data,
            actor_id=self.actor_id,
        )
        self.background_tasks.add_task(self._report, event)
        return event

    async def _report(self, event: SyncEvent) -> None:
        # Must run on the event loop; sync callables go to the threadpool.
        self.service.report_change(event)


def sync_reporter(entity_type: str):
    """Dependency factory: ``Depends(sync_reporter("grades"))``."""

    async def dependency(
        request: Request,
        background_tasks: BackgroundTasks,
        service: SyncService = Depends(get_sync_service),
        principal: Optional[Principal] = Depends(get_optional_principal),
    ) -> SyncReporter:
        return SyncReporter(
            entity_type,
            service,
            background_tasks,
            request.method,
            principal.id if principal else None,
        )

    return dependency
