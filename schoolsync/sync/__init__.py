"""Change tracking and real-time fan-out."""

from .changelog import ChangeLog
from .dispatcher import FanoutDispatcher
from .registry import Connection, ConnectionRegistry
from .router import ChangeType, SyncEvent, SyncEventRouter
from .service import SyncService, get_sync_service
from .tracker import CatchUp, ChangeTracker
from .versions import VersionStore

__all__ = [
    "CatchUp",
    "ChangeLog",
    "ChangeTracker",
    "ChangeType",
    "Connection",
    "ConnectionRegistry",
    "FanoutDispatcher",
    "SyncEvent",
    "SyncEventRouter",
    "SyncService",
    "VersionStore",
    "get_sync_service",
]
