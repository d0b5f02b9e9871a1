"""
Shared fixtures.

Store tests run against a file-backed SQLite database (aiosqlite) so that
several engines can share it, the way several API instances share one
PostgreSQL database in production. NullPool keeps connections from leaking
between event loops.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import create_engine
from sqlmodel import SQLModel

import schoolsync.models  # noqa: F401  populate metadata
from schoolsync.core.config import Settings
from schoolsync.core.database import build_session_factory
from schoolsync.core.metrics import MetricsCollector

from helpers import make_engine, make_ws


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "sync.db"
    sync_engine = create_engine(f"sqlite:///{path}")
    SQLModel.metadata.create_all(sync_engine)
    sync_engine.dispose()
    return path


@pytest.fixture
async def engine(db_path):
    eng = make_engine(db_path)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def settings(db_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{db_path}",
        log_format="text",
        shutdown_grace_seconds=1.0,
    )


@pytest.fixture(autouse=True)
def no_revocations():
    """Redis is not available in tests; nothing is revoked unless a test says so."""
    with patch("schoolsync.core.auth.is_jwt_revoked", AsyncMock(return_value=False)) as mock:
        yield mock


@pytest.fixture
def mock_ws():
    return make_ws()
