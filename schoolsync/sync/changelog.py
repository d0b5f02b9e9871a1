"""
Durable, append-only change log.

Rows are written once by the change tracker and never updated. Catch-up
clients read them back with `since()`; the retention job removes old ones
with `prune()`.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import structlog
from sqlalchemy import case, delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from schoolsync.core.errors import DuplicateVersionError, StorageError
from schoolsync.models.sync import SYSTEM_ACTOR, ChangeRecord, EntityVersion

log = structlog.get_logger()

STATUS_WINDOW = timedelta(hours=24)


class ChangeLog:
    """Persists and queries ChangeRecords."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    async def append(
        self,
        entity_type: str,
        entity_id: str,
        version: int,
        payload: dict[str, Any],
        actor_id: Optional[str] = None,
    ) -> ChangeRecord:
        """Persist one change. ``version`` must come from the version store."""
        record = ChangeRecord(
            entity_type=entity_type,
            entity_id=str(entity_id),
            version=version,
            payload=payload,
            actor_id=str(actor_id) if actor_id is not None else SYSTEM_ACTOR,
            created_at=datetime.now(timezone.utc),
        )
        try:
            async with self._session_factory() as session:
                session.add(record)
                await session.commit()
        except IntegrityError as exc:
            log.critical(
                "changelog.duplicate_version",
                entity_type=entity_type,
                entity_id=entity_id,
                version=version,
            )
            raise DuplicateVersionError(
                f"Version {version} already logged for {entity_type}",
                {"entity_type": entity_type, "version": version},
            ) from exc
        except SQLAlchemyError as exc:
            log.error(
                "changelog.append_failed",
                entity_type=entity_type,
                version=version,
                error=str(exc),
            )
            raise StorageError(f"Failed to append change for {entity_type}") from exc
        return record

    async def since(
        self,
        entity_type: str,
        after_version: int,
        limit: int | None = None,
    ) -> list[ChangeRecord]:
        """Changes with ``version > after_version``, ascending by version."""
        stmt = (
            select(ChangeRecord)
            .where(
                ChangeRecord.entity_type == entity_type,
                ChangeRecord.version > after_version,
            )
            .order_by(ChangeRecord.version.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to read changes for {entity_type}") from exc

    async def status(self) -> list[dict[str, Any]]:
        """Per entity type: current version, last update, total and 24h change counts."""
        cutoff = datetime.now(timezone.utc) - STATUS_WINDOW
        stmt = (
            select(
                EntityVersion.entity_type,
                EntityVersion.current_version,
                EntityVersion.updated_at,
                func.count(ChangeRecord.id).label("total_changes"),
                func.count(
                    case((ChangeRecord.created_at >= cutoff, ChangeRecord.id))
                ).label("changes_last_24h"),
            )
            .select_from(EntityVersion)
            .outerjoin(ChangeRecord, ChangeRecord.entity_type == EntityVersion.entity_type)
            .group_by(
                EntityVersion.entity_type,
                EntityVersion.current_version,
                EntityVersion.updated_at,
            )
            .order_by(EntityVersion.entity_type)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                rows = result.all()
        except SQLAlchemyError as exc:
            raise StorageError("Failed to read sync status") from exc

        return [
            {
                "entityType": row.entity_type,
                "currentVersion": row.current_version,
                "lastUpdated": row.updated_at.isoformat() if row.updated_at else None,
                "totalChanges": int(row.total_changes),
                "changesLast24h": int(row.changes_last_24h),
            }
            for row in rows
        ]

    async def prune(self, older_than: timedelta) -> int:
        """Delete changes created more than ``older_than`` ago. Returns the count."""
        threshold = datetime.now(timezone.utc) - older_than
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(ChangeRecord).where(ChangeRecord.created_at < threshold)
                )
                await session.commit()
        except SQLAlchemyError as exc:
            log.error("changelog.prune_failed", error=str(exc))
            raise StorageError("Failed to prune change log") from exc

        deleted = result.rowcount or 0
        if deleted:
            log.info("changelog.pruned", deleted=deleted, threshold=threshold.isoformat())
        return deleted
