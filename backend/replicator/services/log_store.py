"""Sync log store — capped SQLite table plus live broadcast to listeners."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from replicator.config import settings
from replicator.models.sync_log import SyncLog
from replicator.schemas.sync import LogEntry, LogType

logger = logging.getLogger(__name__)

_LEVELS = {
    LogType.INFO: logging.INFO,
    LogType.SUCCESS: logging.INFO,
    LogType.WARNING: logging.WARNING,
    LogType.ERROR: logging.ERROR,
}


def _jsonable(details: dict[str, Any] | None) -> dict[str, Any]:
    """Coerce ObjectIds, datetimes etc. to strings so the JSON column accepts them."""
    if not details:
        return {}
    return json.loads(json.dumps(details, default=str))


def _to_entry(row: SyncLog) -> LogEntry:
    ts = row.timestamp
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return LogEntry(
        id=row.id,
        timestamp=ts,
        type=LogType(row.type),
        message=row.message,
        details=row.details or {},
    )


class LogStore:
    """Append-only, newest-first log of replication events."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        retention: int | None = None,
        listener_queue_size: int | None = None,
    ):
        self._sessions = session_factory
        self._retention = retention or settings.log_retention
        self._queue_size = listener_queue_size or settings.log_listener_queue_size
        self._listeners: set[asyncio.Queue[dict[str, Any]]] = set()

    async def append(
        self,
        type: LogType | str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> LogEntry:
        """Persist one entry, trim to the retention cap, and broadcast it."""
        log_type = LogType(type)
        payload = _jsonable(details)
        logger.log(_LEVELS[log_type], "%s %s", message, payload if payload else "")

        row = SyncLog(
            timestamp=datetime.now(timezone.utc),
            type=log_type.value,
            message=message,
            details=payload,
        )
        async with self._sessions() as db:
            db.add(row)
            await db.flush()
            cutoff = await db.scalar(
                select(SyncLog.id)
                .order_by(SyncLog.id.desc())
                .offset(self._retention - 1)
                .limit(1)
            )
            entry = _to_entry(row)
            if cutoff is not None:
                await db.execute(delete(SyncLog).where(SyncLog.id < cutoff))
            await db.commit()

        self._broadcast(entry)
        return entry

    async def recent(self, limit: int = 100) -> list[LogEntry]:
        async with self._sessions() as db:
            result = await db.execute(
                select(SyncLog).order_by(SyncLog.id.desc()).limit(limit)
            )
            return [_to_entry(row) for row in result.scalars().all()]

    async def clear(self) -> None:
        async with self._sessions() as db:
            await db.execute(delete(SyncLog))
            await db.commit()

    # --- live listeners ---

    def subscribe(self) -> asyncio.Queue[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._queue_size)
        self._listeners.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[dict[str, Any]]) -> None:
        self._listeners.discard(queue)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def _broadcast(self, entry: LogEntry) -> None:
        message = {
            "type": entry.type.value,
            "message": entry.message,
            "details": entry.details,
            "timestamp": entry.timestamp.isoformat(),
        }
        for queue in list(self._listeners):
            try:
                # A slow listener loses entries; persistence is unaffected
                queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning("Log listener queue full, dropping entry")
