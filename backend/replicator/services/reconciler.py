"""Batch reconciliation — copies one collection source -> target in bounded pages.

Pages are read from the source ordered by ``_id`` and offset by the number of
documents already processed, then written to the target in chunks of
replace-upserts. Each chunk is retried a fixed number of times; whatever was
committed before a failure stays on the target. The time window is checked
before every page and a stop request before every chunk, so a run can be
paused or aborted without leaving a half-written chunk.

Incremental runs scope work with the last successful sync time. A pass that
does not finish leaves a per-collection checkpoint (the highest
``_id`` of the last fully written page plus the time the pass began) so the
next run resumes there; a completed pass clears it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from bson import ObjectId

from replicator.config import settings
from replicator.schemas.sync import (
    CollectionSyncResult,
    LogType,
    RunOutcome,
    SyncConfig,
    SyncProgress,
)
from replicator.services.config_store import Checkpoint, ConfigStore
from replicator.services.errors import CollectionNotFound, WriteError
from replicator.services.log_store import LogStore
from replicator.services.store import StoreConnection, UpsertResult, copy_indexes
from replicator.services.sync_state import SyncStateMachine
from replicator.services.time_window import window_open

logger = logging.getLogger(__name__)


def _changed_since(when: datetime) -> list[dict[str, Any]]:
    return [
        {"_id": {"$gt": ObjectId.from_datetime(when)}},
        {"updatedAt": {"$gt": when}},
    ]


def build_filter(last_sync_at: datetime | None, checkpoint: Checkpoint | None = None) -> dict[str, Any]:
    """Scan filter for one collection.

    Without history this is a full scan; with history, documents created or
    updated since the last sync. A checkpoint left by an interrupted pass
    narrows that scope to ``_id`` values beyond it, widened again by anything
    created or updated after the interrupted pass began, so edits to documents
    it had already copied are not lost.
    """
    scope: dict[str, Any] = {} if last_sync_at is None else {"$or": _changed_since(last_sync_at)}
    if checkpoint is None:
        return scope

    remaining: dict[str, Any] = {"_id": {"$gt": checkpoint.document_id}}
    if scope:
        remaining = {"$and": [scope, remaining]}
    if checkpoint.pass_started_at is None:
        return remaining
    return {"$or": [remaining, *_changed_since(checkpoint.pass_started_at)]}


class CollectionReconciler:
    """Runs reconciliation passes for the collections of one run."""

    def __init__(
        self,
        source: StoreConnection,
        target: StoreConnection,
        config: SyncConfig,
        log_store: LogStore,
        config_store: ConfigStore,
        state: SyncStateMachine,
        should_continue: Callable[[], bool],
        clock: Callable[[], datetime] = datetime.now,
        last_sync_at: datetime | None = None,
        write_attempts: int | None = None,
        retry_backoff: float | None = None,
    ):
        self._source = source
        self._target = target
        self._config = config
        self._logs = log_store
        self._config_store = config_store
        self._state = state
        self._should_continue = should_continue
        self._clock = clock
        self._last_sync_at = last_sync_at
        self._attempts = write_attempts or settings.write_retry_attempts
        if retry_backoff is None:
            retry_backoff = settings.write_retry_backoff_ms / 1000
        self._backoff = retry_backoff
        self._delay = config.batch_delay_ms / 1000

    async def sync_collection(self, collection: str) -> CollectionSyncResult:
        """Copy one collection. Raises on failure; pause and stop are results."""
        await self._logs.append(LogType.INFO, f"Starting sync for collection: {collection}")

        if not await self._source.collection_exists(collection):
            raise CollectionNotFound(collection)

        await self._prepare_target(collection)

        pass_started_at = datetime.now(timezone.utc)
        checkpoint = self._config_store.get_checkpoint(collection)
        if checkpoint is not None:
            pass_started_at = checkpoint.pass_started_at or pass_started_at
        query = build_filter(self._last_sync_at, checkpoint)
        total = await self._source.count_where(collection, query)

        cfg = self._config
        processed = inserted = updated = 0

        while processed < total:
            if not self._should_continue():
                return await self._stopped(collection, total, processed, inserted, updated)

            if not window_open(self._clock(), cfg.time_window):
                await self._logs.append(
                    LogType.INFO,
                    "Outside of sync window, pausing sync",
                    {"collection": collection, "processed": processed, "total": total},
                )
                return CollectionSyncResult(
                    outcome=RunOutcome.PAUSED,
                    total=total, processed=processed, inserted=inserted, updated=updated,
                )

            page = await self._source.scan(collection, query, skip=processed, limit=cfg.batch_size)
            if not page:
                break

            for start in range(0, len(page), cfg.chunk_size):
                if not self._should_continue():
                    return await self._stopped(collection, total, processed, inserted, updated)

                chunk = page[start:start + cfg.chunk_size]
                result = await self._write_chunk(collection, chunk)
                inserted += result.upserted_count
                updated += result.modified_count
                processed += len(chunk)

                progress = SyncProgress(
                    collection=collection,
                    processed=processed,
                    total=total,
                    inserted=inserted,
                    updated=updated,
                    percentage=round(processed / total * 100),
                )
                await self._logs.append(
                    LogType.INFO,
                    f"Processed {processed}/{total} documents in {collection}",
                    progress.model_dump(),
                )
                await asyncio.to_thread(self._state.set_progress, progress)

                await self._verify_chunk(collection, chunk)
                await asyncio.sleep(self._delay)

            await asyncio.to_thread(
                self._advance_checkpoint, collection, page[-1]["_id"], pass_started_at,
            )
            await asyncio.sleep(self._delay)

        if not self._should_continue():
            return await self._stopped(collection, total, processed, inserted, updated)

        await asyncio.to_thread(self._config_store.clear_checkpoint, collection)
        source_count, target_count = await self._verify_collection(collection)
        stats = CollectionSyncResult(
            outcome=RunOutcome.COMPLETED,
            total=total,
            processed=processed,
            inserted=inserted,
            updated=updated,
            source_count=source_count,
            target_count=target_count,
        )
        await self._logs.append(
            LogType.SUCCESS,
            f"Completed sync for collection: {collection}",
            {"stats": stats.model_dump(exclude={"outcome"})},
        )
        return stats

    async def _prepare_target(self, collection: str) -> None:
        if await self._target.ensure_collection(collection):
            await self._logs.append(LogType.INFO, f"Created target collection: {collection}")
        created = await copy_indexes(self._source, self._target, collection)
        if created:
            await self._logs.append(
                LogType.INFO,
                f"Created indexes for collection: {collection}",
                {"count": created},
            )

    async def _write_chunk(self, collection: str, chunk: list[dict[str, Any]]) -> UpsertResult:
        attempt = 1
        while True:
            try:
                return await self._target.bulk_upsert(collection, chunk)
            except WriteError as e:
                remaining = self._attempts - attempt
                if remaining <= 0:
                    await self._logs.append(
                        LogType.ERROR,
                        f"Write errors in batch for {collection}",
                        {"error": str(e), "details": e.details},
                    )
                    raise
                logger.warning(
                    "Retrying bulk write to %s, %d attempts remaining: %s",
                    collection, remaining, e,
                )
                await asyncio.sleep(self._backoff)
                attempt += 1

    async def _verify_chunk(self, collection: str, chunk: list[dict[str, Any]]) -> None:
        ids = [doc["_id"] for doc in chunk]
        found = await self._target.count_where(collection, {"_id": {"$in": ids}})
        if found != len(chunk):
            await self._logs.append(
                LogType.WARNING,
                f"Batch verification failed for {collection}",
                {"expected": len(chunk), "actual": found},
            )

    async def _verify_collection(self, collection: str) -> tuple[int, int]:
        source_count = await self._source.count_where(collection, {})
        target_count = await self._target.count_where(collection, {})
        if source_count != target_count:
            await self._logs.append(
                LogType.WARNING,
                f"Count mismatch in {collection}",
                {
                    "source": source_count,
                    "target": target_count,
                    "difference": abs(source_count - target_count),
                },
            )

        source_indexes = await self._source.list_indexes(collection)
        target_indexes = await self._target.list_indexes(collection)
        if len(source_indexes) != len(target_indexes):
            await self._logs.append(
                LogType.WARNING,
                f"Index count mismatch in {collection}",
                {"source": len(source_indexes), "target": len(target_indexes)},
            )
        return source_count, target_count

    def _advance_checkpoint(self, collection: str, document_id: Any, pass_started_at: datetime) -> None:
        current = self._config_store.get_checkpoint(collection)
        try:
            if current is not None and not document_id > current.document_id:
                return
        except TypeError:
            pass  # mixed _id types: latest page wins
        self._config_store.set_checkpoint(collection, document_id, pass_started_at)

    async def _stopped(
        self, collection: str, total: int, processed: int, inserted: int, updated: int,
    ) -> CollectionSyncResult:
        await self._logs.append(LogType.WARNING, f"Sync operation stopped for collection: {collection}")
        return CollectionSyncResult(
            outcome=RunOutcome.STOPPED,
            total=total, processed=processed, inserted=inserted, updated=updated,
        )
