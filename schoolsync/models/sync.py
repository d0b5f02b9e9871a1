"""Sync tables: per-entity-type version counters and the change log."""

from datetime import datetime
from typing import Any, Optional

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import JSONType, TimestampType, _utcnow

SYSTEM_ACTOR = "system"


class EntityVersion(SQLModel, table=True):
    """One row per entity type; mutated only by the atomic upsert-increment."""

    __tablename__ = "sync_versions"

    entity_type: str = Field(primary_key=True, max_length=50)
    current_version: int = Field(default=0, nullable=False)
    updated_at: datetime = Field(
        default_factory=_utcnow,
        nullable=False,
        sa_column_kwargs={"server_default": sa.text("CURRENT_TIMESTAMP")},
        sa_type=TimestampType,
    )


class ChangeRecord(SQLModel, table=True):
    """Immutable change-log row (no foreign keys point at it)."""

    __tablename__ = "sync_changes"
    __table_args__ = (
        sa.UniqueConstraint("entity_type", "version", name="uq_sync_changes_entity_version"),
        sa.Index("idx_sync_changes_entity_version", "entity_type", "version"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    entity_type: str = Field(nullable=False, max_length=50)
    entity_id: str = Field(nullable=False, max_length=50)
    version: int = Field(nullable=False)
    payload: dict = Field(default_factory=dict, sa_type=JSONType, nullable=False)
    actor_id: str = Field(default=SYSTEM_ACTOR, nullable=False, max_length=50)
    created_at: datetime = Field(
        default_factory=_utcnow,
        nullable=False,
        index=True,
        sa_column_kwargs={"server_default": sa.text("CURRENT_TIMESTAMP")},
        sa_type=TimestampType,
    )

    def to_wire(self) -> dict[str, Any]:
        """Catch-up wire shape."""
        return {
            "id": self.id,
            "version": self.version,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "data": self.payload,
            "actorId": self.actor_id,
            "timestamp": self.created_at.isoformat() if self.created_at else None,
        }
