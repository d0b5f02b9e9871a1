"""
Version store: one monotonically increasing counter per entity type.

The authoritative value only ever comes out of a single
`INSERT ... ON CONFLICT DO UPDATE ... RETURNING` statement, so concurrent
callers (in this process or another instance against the same database)
never receive the same version. The in-memory map is a read-through cache
for diagnostics and may lag other instances.
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from schoolsync.core.errors import StorageError
from schoolsync.models.sync import EntityVersion

log = structlog.get_logger()

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _upsert_increment(dialect_name: str, entity_type: str, now: datetime):
    try:
        insert = _UPSERT_DIALECTS[dialect_name]
    except KeyError:
        raise StorageError(f"Unsupported database dialect for version allocation: {dialect_name}")

    table = EntityVersion.__table__
    stmt = insert(table).values(entity_type=entity_type, current_version=1, updated_at=now)
    return stmt.on_conflict_do_update(
        index_elements=[table.c.entity_type],
        set_={
            "current_version": table.c.current_version + 1,
            "updated_at": now,
        },
    ).returning(table.c.current_version)


class VersionStore:
    """Allocates versions and caches the last value seen per entity type."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._cache: dict[str, int] = {}

    async def load(self) -> dict[str, int]:
        """Refresh the cache from storage. Called once on process start."""
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(EntityVersion.entity_type, EntityVersion.current_version)
                )
                rows = result.all()
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to load entity versions: {exc}") from exc

        self._cache = {entity_type: version for entity_type, version in rows}
        log.info("versions.loaded", entity_types=len(self._cache))
        return dict(self._cache)

    async def next_version(self, entity_type: str) -> int:
        """Atomically increment and return the version for ``entity_type``.

        Creates the counter at 1 on first use.
        """
        now = datetime.now(timezone.utc)
        try:
            async with self._session_factory() as session:
                stmt = _upsert_increment(session.bind.dialect.name, entity_type, now)
                result = await session.execute(stmt)
                version = result.scalar_one()
                await session.commit()
        except SQLAlchemyError as exc:
            log.error("versions.allocation_failed", entity_type=entity_type, error=str(exc))
            raise StorageError(
                f"Failed to allocate version for {entity_type}",
                {"entity_type": entity_type},
            ) from exc

        self._remember(entity_type, version)
        return version

    async def current_version(self, entity_type: str) -> int:
        """Read the stored version (0 if unseen) and refresh the cache."""
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(EntityVersion.current_version).where(
                        EntityVersion.entity_type == entity_type
                    )
                )
                version = result.scalar_one_or_none() or 0
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to read version for {entity_type}") from exc

        self._remember(entity_type, version)
        return version

    def cached_version(self, entity_type: str) -> int:
        """Last known version from the cache; may be stale."""
        return self._cache.get(entity_type, 0)

    def _remember(self, entity_type: str, version: int) -> None:
        if version > self._cache.get(entity_type, 0):
            self._cache[entity_type] = version
