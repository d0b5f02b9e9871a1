"""
Error taxonomy for the sync subsystem.

StorageError and DuplicateVersionError propagate to the direct caller of the
version store, change log and change tracker. DeliveryError never leaves the
fan-out dispatcher. SubscriptionError and AuthenticationError are converted to
client-visible WebSocket replies or close codes at the edge.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class SyncError(Exception):
    """Base class for sync subsystem failures."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageError(SyncError):
    """Version allocation or change-log persistence failed."""


class DuplicateVersionError(StorageError):
    """An (entity_type, version) pair was written twice."""


class DeliveryError(SyncError):
    """Sending a frame over a live transport failed."""


class SubscriptionError(SyncError):
    """Subscribe/unsubscribe for a principal with no live connection."""


class AuthenticationError(SyncError):
    """Handshake credential missing, invalid, expired or revoked."""

    def __init__(self, message: str, *, missing: bool = False):
        super().__init__(message)
        self.missing = missing


__all__ = [
    "AuthenticationError",
    "DeliveryError",
    "DuplicateVersionError",
    "StorageError",
    "SubscriptionError",
    "SyncError",
]
