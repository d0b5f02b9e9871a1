"""
SyncService: owns one instance of every sync component for this process.

Built once in the FastAPI lifespan, stored on ``app.state.sync`` and handed
to endpoints through ``get_sync_service``.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Optional

import structlog
from sqlalchemy.orm import sessionmaker
from starlette.requests import HTTPConnection

from schoolsync.core.background import PeriodicJob, TaskGroup
from schoolsync.core.config import Settings, get_settings
from schoolsync.core.metrics import MetricsCollector
from schoolsync.sync.changelog import ChangeLog
from schoolsync.sync.dispatcher import FanoutDispatcher
from schoolsync.sync.registry import CLOSE_GOING_AWAY, ConnectionRegistry
from schoolsync.sync.resolvers import register_default_resolvers
from schoolsync.sync.router import SyncEvent, SyncEventRouter
from schoolsync.sync.tracker import ChangeTracker
from schoolsync.sync.versions import VersionStore

log = structlog.get_logger()


class SyncService:
    def __init__(
        self,
        session_factory: sessionmaker,
        settings: Optional[Settings] = None,
        metrics: Optional[MetricsCollector] = None,
        *,
        register_defaults: bool = True,
    ):
        self.settings = settings or get_settings()
        self.metrics = metrics or MetricsCollector()
        self.session_factory = session_factory

        self.versions = VersionStore(session_factory)
        self.changelog = ChangeLog(session_factory)
        self.tracker = ChangeTracker(self.versions, self.changelog, self.metrics)
        self.registry = ConnectionRegistry(self.metrics)
        self.dispatcher = FanoutDispatcher(self.registry, self.metrics)
        self.router = SyncEventRouter(self.tracker, self.dispatcher)

        self._register_defaults = register_defaults
        self._tasks = TaskGroup("sync-events")
        self._jobs = [
            PeriodicJob(
                "connection-cleanup",
                self.settings.connection_cleanup_interval_seconds,
                self._cleanup_connections,
            ),
            PeriodicJob(
                "change-retention",
                self.settings.retention_interval_seconds,
                self.prune_expired,
            ),
        ]
        self._started = False

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self.settings.change_retention_days)

    @property
    def pending_events(self) -> int:
        return len(self._tasks)

    async def start(self) -> None:
        if self._started:
            return
        await self.versions.load()
        if self._register_defaults:
            register_default_resolvers(self.router, self.session_factory)
        for job in self._jobs:
            job.start()
        self._started = True
        log.info("sync.started", resolvers=self.router.entity_types)

    async def stop(self) -> None:
        if not self._started:
            return
        for job in self._jobs:
            await job.stop()
        await self._tasks.drain(self.settings.shutdown_grace_seconds)
        closed = await self.registry.close_all(CLOSE_GOING_AWAY, "Server shutting down")
        self._started = False
        log.info("sync.stopped", connections_closed=closed)

    def report_change(self, event: SyncEvent) -> None:
        """Route ``event`` in the background. The caller must not wait on it."""
        self._tasks.spawn(
            self.router.handle(event),
            name=f"sync:{event.entity_type}:{event.entity_id}",
        )

    async def prune_expired(self) -> int:
        return await self.tracker.prune(self.retention)

    async def _cleanup_connections(self) -> int:
        return self.registry.cleanup()


def get_sync_service(conn: HTTPConnection) -> SyncService:
    """FastAPI dependency (HTTP and WebSocket)."""
    return conn.app.state.sync
