"""
Sync REST endpoint tests.

Tests cover:
- catch-up query (since, limit, currentVersion)
- bearer auth required
- status summary
- admin-only prune
- logout revokes the token and closes the socket
- storage failure mapped to 503
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlmodel import Session
from starlette.websockets import WebSocketDisconnect

from schoolsync.core.auth import create_jwt
from schoolsync.core.database import build_session_factory
from schoolsync.core.errors import StorageError
from schoolsync.main import create_app
from schoolsync.models.sync import ChangeRecord, EntityVersion
from schoolsync.sync.service import SyncService

from helpers import auth_header, make_engine


def seed(db_path, entity_type: str, count: int, *, age: timedelta = timedelta(0)) -> None:
    engine = create_engine(f"sqlite:///{db_path}")
    created = datetime.now(timezone.utc) - age
    with Session(engine) as session:
        session.add(EntityVersion(entity_type=entity_type, current_version=count))
        for version in range(1, count + 1):
            session.add(
                ChangeRecord(
                    entity_type=entity_type,
                    entity_id=str(version),
                    version=version,
                    payload={"n": version},
                    created_at=created,
                )
            )
        session.commit()
    engine.dispose()


@pytest.fixture
def service(db_path, settings):
    factory = build_session_factory(make_engine(db_path))
    return SyncService(factory, settings, register_defaults=False)


@pytest.fixture
def client(settings, service):
    app = create_app(settings, sync_service=service)
    with TestClient(app) as c:
        yield c


class TestChanges:
    def test_requires_auth(self, client):
        response = client.get("/api/v1/sync/changes/grades")
        assert response.status_code == 401

    def test_catch_up(self, client, db_path):
        seed(db_path, "grades", 5)

        response = client.get("/api/v1/sync/changes/grades?since=3", headers=auth_header("1"))

        assert response.status_code == 200
        body = response.json()
        assert body["currentVersion"] == 5
        assert [c["version"] for c in body["changes"]] == [4, 5]
        assert body["changes"][0]["entityType"] == "grades"
        assert body["changes"][0]["data"] == {"n": 4}

    def test_up_to_date_client_gets_nothing(self, client, db_path):
        seed(db_path, "grades", 2)
        body = client.get("/api/v1/sync/changes/grades?since=2", headers=auth_header("1")).json()
        assert body == {"changes": [], "currentVersion": 2}

    def test_limit(self, client, db_path):
        seed(db_path, "grades", 5)
        body = client.get(
            "/api/v1/sync/changes/grades?since=0&limit=2", headers=auth_header("1")
        ).json()
        assert [c["version"] for c in body["changes"]] == [1, 2]
        assert body["currentVersion"] == 5

    def test_limit_bounds(self, client):
        response = client.get("/api/v1/sync/changes/grades?limit=5000", headers=auth_header("1"))
        assert response.status_code == 422

    def test_storage_failure_is_503(self, client, service):
        with patch.object(
            service.tracker, "changes_since", AsyncMock(side_effect=StorageError("down"))
        ):
            response = client.get("/api/v1/sync/changes/grades", headers=auth_header("1"))
        assert response.status_code == 503


class TestStatus:
    def test_status(self, client, db_path):
        seed(db_path, "grades", 3)
        body = client.get("/api/v1/sync/status", headers=auth_header("1")).json()

        [row] = body["entities"]
        assert row["entityType"] == "grades"
        assert row["currentVersion"] == 3
        assert row["totalChanges"] == 3
        assert body["connections"] == {"live": 0, "channels": 0}
        assert body["metrics"]["changes"]["tracked"] == 0


class TestPrune:
    def test_non_admin_forbidden(self, client):
        response = client.post("/api/v1/sync/prune", headers=auth_header("1", "teacher"))
        assert response.status_code == 403

    def test_default_retention_keeps_recent(self, client, db_path):
        seed(db_path, "grades", 2)
        response = client.post("/api/v1/sync/prune", headers=auth_header("9", "admin"))
        assert response.json() == {"deleted": 0}

    def test_default_retention_removes_old(self, client, db_path):
        seed(db_path, "attendance", 2, age=timedelta(days=8))
        response = client.post("/api/v1/sync/prune", headers=auth_header("9", "admin"))
        assert response.json() == {"deleted": 2}

    def test_prune_now_keeps_version(self, client, db_path):
        seed(db_path, "grades", 3)
        response = client.post(
            "/api/v1/sync/prune?older_than_hours=0", headers=auth_header("9", "admin")
        )
        assert response.json() == {"deleted": 3}

        body = client.get("/api/v1/sync/changes/grades", headers=auth_header("1")).json()
        assert body == {"changes": [], "currentVersion": 3}


class TestLogout:
    def test_revokes_token(self, client):
        token, jti = create_jwt("4", "parent")
        with patch("schoolsync.api.v1.sync.revoke_jwt", AsyncMock()) as revoke:
            response = client.post(
                "/api/v1/sync/logout", headers={"Authorization": f"Bearer {token}"}
            )

        assert response.status_code == 200
        assert response.json() == {"revoked": True, "disconnected": False}
        revoke.assert_awaited_once_with(jti, ttl_seconds=3600)

    def test_closes_live_socket(self, client, service):
        token, _ = create_jwt("4", "parent")
        with client.websocket_connect(f"/ws?token={token}") as ws:
            ws.receive_json()
            with patch("schoolsync.api.v1.sync.revoke_jwt", AsyncMock()):
                response = client.post(
                    "/api/v1/sync/logout", headers={"Authorization": f"Bearer {token}"}
                )
            assert response.json()["disconnected"] is True
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_text()
            assert exc_info.value.code == 4002
        assert not service.registry.is_live("4")
