"""
Change tracker: the single write path into the sync tables.

Allocates the next version, strips sensitive fields, appends the change row.
Version allocation and the append are separate statements: if the append
fails the version is still consumed, leaving a gap in the log but never a
collision.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Optional

import structlog
from fastapi.encoders import jsonable_encoder

from schoolsync.core.metrics import MetricsCollector
from schoolsync.models.sync import ChangeRecord
from schoolsync.sync.changelog import ChangeLog
from schoolsync.sync.sanitize import strip_sensitive
from schoolsync.sync.versions import VersionStore

log = structlog.get_logger()


class CatchUp:
    """Result of a catch-up query."""

    __slots__ = ("changes", "current_version")

    def __init__(self, changes: list[ChangeRecord], current_version: int):
        self.changes = changes
        self.current_version = current_version

    def to_wire(self) -> dict[str, Any]:
        return {
            "changes": [change.to_wire() for change in self.changes],
            "currentVersion": self.current_version,
        }


class ChangeTracker:
    def __init__(
        self,
        versions: VersionStore,
        changelog: ChangeLog,
        metrics: MetricsCollector | None = None,
    ):
        self.versions = versions
        self.changelog = changelog
        self._metrics = metrics or MetricsCollector()

    async def track_change(
        self,
        entity_type: str,
        entity_id: str,
        payload: Any,
        actor_id: Optional[str] = None,
    ) -> int:
        """Record a change and return its version.

        Raises StorageError / DuplicateVersionError. A failure here means the
        notification may be lost; the domain write is already committed and
        must not be retried.
        """
        try:
            version = await self.versions.next_version(entity_type)
        except Exception:
            self._metrics.inc("change_tracking_failures_total")
            raise

        sanitized = strip_sensitive(jsonable_encoder(payload))
        if not isinstance(sanitized, dict):
            sanitized = {"value": sanitized}

        try:
            await self.changelog.append(entity_type, entity_id, version, sanitized, actor_id)
        except Exception:
            self._metrics.inc("change_tracking_failures_total")
            log.error(
                "sync.change_log_gap",
                entity_type=entity_type,
                entity_id=entity_id,
                version=version,
            )
            raise

        self._metrics.inc("changes_tracked_total")
        log.debug(
            "sync.change_tracked",
            entity_type=entity_type,
            entity_id=entity_id,
            version=version,
        )
        return version

    async def changes_since(
        self,
        entity_type: str,
        after_version: int,
        limit: int | None = None,
    ) -> CatchUp:
        changes = await self.changelog.since(entity_type, after_version, limit=limit)
        current = await self.versions.current_version(entity_type)
        return CatchUp(changes, current)

    async def status(self) -> list[dict[str, Any]]:
        return await self.changelog.status()

    async def prune(self, older_than: timedelta) -> int:
        deleted = await self.changelog.prune(older_than)
        self._metrics.inc("changes_pruned_total", deleted)
        return deleted
