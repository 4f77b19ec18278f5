"""SQLAlchemy ORM models for the replicator."""

from replicator.models.base import Base
from replicator.models.sync_log import SyncLog

__all__ = [
    "Base",
    "SyncLog",
]
