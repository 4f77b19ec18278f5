"""Replication log routes and the live log WebSocket."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from replicator.api.deps import get_log_store
from replicator.schemas.sync import LogEntry
from replicator.services.log_store import LogStore

logger = logging.getLogger(__name__)

router = APIRouter()
ws_router = APIRouter()


@router.get("", response_model=list[LogEntry])
async def list_logs(
    limit: int = Query(100, ge=1, le=1000),
    log_store: LogStore = Depends(get_log_store),
):
    """Most recent entries, newest first."""
    return await log_store.recent(limit)


@router.delete("")
async def clear_logs(log_store: LogStore = Depends(get_log_store)):
    await log_store.clear()
    return {"success": True, "message": "Logs cleared"}


async def _forward(websocket: WebSocket, queue: asyncio.Queue[dict[str, Any]]) -> None:
    while True:
        message = await queue.get()
        await websocket.send_json(message)


async def _drain(websocket: WebSocket) -> None:
    # Inbound frames are ignored; returns once the client goes away
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


@ws_router.websocket("/ws/logs")
async def log_stream(websocket: WebSocket, log_store: LogStore = Depends(get_log_store)):
    """Greet, then push every appended log entry until the client disconnects."""
    await websocket.accept()
    queue = log_store.subscribe()
    logger.info("Log stream client connected (%d listening)", log_store.listener_count)

    tasks: list[asyncio.Task] = []
    try:
        await websocket.send_json({
            "type": "info",
            "message": "Connected to log stream",
            "details": {},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })
        tasks = [
            asyncio.create_task(_forward(websocket, queue)),
            asyncio.create_task(_drain(websocket)),
        ]
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.debug("Log stream ended: %s", task.exception())
    except WebSocketDisconnect:
        pass
    finally:
        for task in tasks:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
                await task
        log_store.unsubscribe(queue)
        logger.info("Log stream client disconnected (%d listening)", log_store.listener_count)
