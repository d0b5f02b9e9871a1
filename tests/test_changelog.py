"""
Change log tests.

Tests cover:
- append / since ordering and bounds
- (entity_type, version) uniqueness -> DuplicateVersionError
- status aggregates
- prune by age
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from schoolsync.core.errors import DuplicateVersionError
from schoolsync.models.sync import ChangeRecord
from schoolsync.sync.changelog import ChangeLog
from schoolsync.sync.versions import VersionStore


@pytest.fixture
def changelog(session_factory):
    return ChangeLog(session_factory)


@pytest.fixture
def versions(session_factory):
    return VersionStore(session_factory)


async def _log(changelog, versions, entity_type, entity_id, payload=None, actor_id=None):
    version = await versions.next_version(entity_type)
    return await changelog.append(entity_type, entity_id, version, payload or {}, actor_id)


class TestAppendAndSince:
    async def test_append_returns_record(self, changelog, versions):
        record = await _log(changelog, versions, "grades", "42", {"percentage": 91}, "7")
        assert record.id is not None
        assert record.version == 1
        assert record.entity_id == "42"
        assert record.actor_id == "7"
        assert record.payload == {"percentage": 91}

    async def test_missing_actor_is_system(self, changelog, versions):
        record = await _log(changelog, versions, "grades", "42")
        assert record.actor_id == "system"

    async def test_since_is_ascending_and_exclusive(self, changelog, versions):
        for i in range(5):
            await _log(changelog, versions, "grades", str(i))

        changes = await changelog.since("grades", 2)
        assert [c.version for c in changes] == [3, 4, 5]

    async def test_since_current_version_is_empty(self, changelog, versions):
        for i in range(3):
            await _log(changelog, versions, "grades", str(i))
        current = await versions.current_version("grades")
        assert await changelog.since("grades", current) == []

    async def test_since_filters_entity_type(self, changelog, versions):
        await _log(changelog, versions, "grades", "1")
        await _log(changelog, versions, "attendance", "1")
        changes = await changelog.since("attendance", 0)
        assert len(changes) == 1
        assert changes[0].entity_type == "attendance"

    async def test_since_limit(self, changelog, versions):
        for i in range(5):
            await _log(changelog, versions, "grades", str(i))
        changes = await changelog.since("grades", 0, limit=2)
        assert [c.version for c in changes] == [1, 2]

    async def test_duplicate_version_rejected(self, changelog, versions):
        record = await _log(changelog, versions, "grades", "42")
        with pytest.raises(DuplicateVersionError) as exc_info:
            await changelog.append("grades", "43", record.version, {})
        assert exc_info.value.detail["version"] == record.version

    async def test_wire_shape(self, changelog, versions):
        record = await _log(changelog, versions, "grades", "42", {"percentage": 91}, "7")
        wire = record.to_wire()
        assert wire["entityType"] == "grades"
        assert wire["entityId"] == "42"
        assert wire["data"] == {"percentage": 91}
        assert wire["actorId"] == "7"
        assert wire["version"] == 1
        assert wire["timestamp"]


class TestStatus:
    async def test_status_summarises_each_type(self, changelog, versions):
        await _log(changelog, versions, "grades", "1")
        await _log(changelog, versions, "grades", "2")
        await _log(changelog, versions, "attendance", "1")

        status = {row["entityType"]: row for row in await changelog.status()}

        assert status["grades"]["currentVersion"] == 2
        assert status["grades"]["totalChanges"] == 2
        assert status["grades"]["changesLast24h"] == 2
        assert status["attendance"]["totalChanges"] == 1
        assert status["grades"]["lastUpdated"]

    async def test_old_changes_not_counted_in_window(self, changelog, versions, session_factory):
        await _log(changelog, versions, "grades", "1")
        await _log(changelog, versions, "grades", "2")
        await _backdate(session_factory, version=1, days=2)

        [row] = await changelog.status()
        assert row["totalChanges"] == 2
        assert row["changesLast24h"] == 1

    async def test_empty(self, changelog):
        assert await changelog.status() == []


class TestPrune:
    async def test_prune_removes_only_old_records(self, changelog, versions, session_factory):
        for i in range(3):
            await _log(changelog, versions, "grades", str(i))
        await _backdate(session_factory, version=1, days=8)

        deleted = await changelog.prune(timedelta(days=7))

        assert deleted == 1
        assert [c.version for c in await changelog.since("grades", 0)] == [2, 3]

    async def test_prune_now_deletes_everything_keeps_version(self, changelog, versions):
        for i in range(3):
            await _log(changelog, versions, "grades", str(i))

        deleted = await changelog.prune(timedelta(0))

        assert deleted == 3
        assert await changelog.since("grades", 0) == []
        assert await versions.current_version("grades") == 3

    async def test_prune_is_idempotent(self, changelog, versions):
        await _log(changelog, versions, "grades", "1")
        assert await changelog.prune(timedelta(0)) == 1
        assert await changelog.prune(timedelta(0)) == 0


async def _backdate(session_factory, *, version: int, days: int) -> None:
    async with session_factory() as session:
        await session.execute(
            update(ChangeRecord)
            .where(ChangeRecord.version == version)
            .values(created_at=datetime.now(timezone.utc) - timedelta(days=days))
        )
        await session.commit()
