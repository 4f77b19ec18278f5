"""Replication error taxonomy."""

from __future__ import annotations

from typing import Any


class ReplicationError(Exception):
    """Base class for replication failures."""


class StoreConnectionError(ReplicationError):
    """A store is unreachable or misconfigured. Fatal to ``start``."""


class CollectionNotFound(ReplicationError):
    """Source collection missing or unreadable. Aborts the rest of the run."""

    def __init__(self, collection: str, reason: str = ""):
        self.collection = collection
        message = f"Source collection {collection} does not exist or is not accessible"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class WriteError(ReplicationError):
    """A bulk write failed; ``details`` carries the driver's partial result."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.details = details or {}


class StreamError(ReplicationError):
    """Change-feed transport lost. Never fatal, the relay re-subscribes."""


class AlreadyInProgress(ReplicationError):
    """A reconciliation run is already active in this process."""

    def __init__(self, message: str = "Sync already in progress"):
        super().__init__(message)


class NotConfigured(ReplicationError):
    """No valid replication config has been saved yet."""

    def __init__(self, message: str = "No configuration found"):
        super().__init__(message)
