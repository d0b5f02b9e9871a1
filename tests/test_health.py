"""
Health, readiness and metrics endpoint tests.
"""

import pytest
from fastapi.testclient import TestClient

from schoolsync.core.database import build_session_factory
from schoolsync.main import create_app
from schoolsync.sync.service import SyncService

from helpers import auth_header, make_engine


@pytest.fixture
def client(db_path, settings):
    service = SyncService(build_session_factory(make_engine(db_path)), settings, register_defaults=False)
    with TestClient(create_app(settings, sync_service=service)) as c:
        yield c


def test_health_check(client):
    """Health endpoint should return status ok."""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_ready_check(client):
    """Ready endpoint checks the database."""
    response = client.get("/ready")
    assert response.status_code == 200
    assert response.json() == {"status": "ready"}


def test_ready_without_database(tmp_path, settings):
    engine = make_engine(tmp_path / "missing" / "nope.db")
    service = SyncService(build_session_factory(engine), settings, register_defaults=False)
    app = create_app(settings, sync_service=service)
    # No lifespan (startup would fail loading versions); wire the service directly.
    app.state.sync = service
    response = TestClient(app).get("/ready")
    assert response.status_code == 503


def test_create_tables_on_startup(tmp_path, settings):
    fresh = settings.model_copy(update={"create_tables": True})
    service = SyncService(
        build_session_factory(make_engine(tmp_path / "fresh.db")), fresh, register_defaults=False
    )
    with TestClient(create_app(fresh, sync_service=service)) as c:
        assert c.get("/ready").status_code == 200
        assert c.get("/api/v1/sync/status", headers=auth_header("1")).json()["entities"] == []


def test_metrics_exposition(client):
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "schoolsync_uptime_seconds" in response.text


def test_api_root(client):
    """API v1 root should return version and endpoint list."""
    response = client.get("/api/v1/")
    assert response.status_code == 200
    data = response.json()
    assert data["api"] == "v1"
    assert "/sync/status" in data["endpoints"]


def test_request_id_header(client):
    response = client.get("/health", headers={"X-Request-ID": "abc123"})
    assert response.headers["X-Request-ID"] == "abc123"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
