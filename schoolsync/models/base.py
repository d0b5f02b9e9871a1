"""Shared column helpers for SQLModel tables."""

from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# JSONB on PostgreSQL, plain JSON on SQLite.
JSONType = sa.JSON().with_variant(JSONB(), "postgresql")

TimestampType = sa.DateTime(timezone=True)
