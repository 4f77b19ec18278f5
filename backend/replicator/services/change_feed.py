"""Mirrors live source mutations onto the target."""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing

from replicator.config import settings
from replicator.schemas.sync import LogType
from replicator.services.errors import StreamError
from replicator.services.log_store import LogStore
from replicator.services.store import ChangeEvent, StoreConnection

logger = logging.getLogger(__name__)

UPSERT_OPS = {"insert", "update", "replace"}


class ChangeFeedRelay:
    """Supervised subscription over the tracked collections, re-subscribing on loss."""

    def __init__(
        self,
        source: StoreConnection,
        target: StoreConnection,
        log_store: LogStore,
        retry_delay: float | None = None,
    ):
        self._source = source
        self._target = target
        self._logs = log_store
        self._retry_delay = (
            settings.change_feed_retry_delay_seconds if retry_delay is None else retry_delay
        )
        self._collections: set[str] = set()
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def tracked(self) -> frozenset[str]:
        return frozenset(self._collections)

    @property
    def is_active(self) -> bool:
        return self._task is not None and not self._task.done()

    async def track(self, collection: str) -> None:
        """Add a collection; an active subscription picks it up in place."""
        if collection in self._collections:
            return
        self._collections.add(collection)
        if self.is_active:
            await self._logs.append(LogType.INFO, f"Added {collection} to change stream tracking")

    async def untrack(self, collection: str) -> None:
        """Stop relaying a collection; takes effect on the next event."""
        if collection not in self._collections:
            return
        self._collections.discard(collection)
        if self.is_active:
            await self._logs.append(LogType.INFO, f"Removed {collection} from change stream tracking")

    def start(self) -> None:
        """Start the relay background loop."""
        if self._task is not None:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Change-feed relay started for %s", sorted(self._collections))

    async def stop(self) -> None:
        """Stop the relay and forget tracked collections."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._collections.clear()
        logger.info("Change-feed relay stopped")

    async def apply(self, event: ChangeEvent) -> None:
        """Mirror one event onto the target. Replays are idempotent."""
        if event.op in UPSERT_OPS:
            if event.full_document is None:
                await self._logs.append(
                    LogType.WARNING,
                    f"Skipped {event.op} without full document via change stream",
                    {"collection": event.collection, "documentId": event.document_id},
                )
                return
            await self._target.upsert_one(event.collection, event.full_document)
        elif event.op == "delete":
            await self._target.delete_one(event.collection, event.document_id)
        else:
            logger.debug("Ignoring change event %s", event.op)
            return

        await self._logs.append(
            LogType.INFO,
            f"Processed {event.op} operation via change stream",
            {"collection": event.collection, "documentId": event.document_id},
        )

    async def _consume(self) -> None:
        async with aclosing(self._source.subscribe_changes(self._collections)) as stream:
            await self._logs.append(
                LogType.INFO,
                "Change stream setup complete",
                {"collections": sorted(self._collections)},
            )
            async for event in stream:
                try:
                    await self.apply(event)
                except Exception as e:
                    await self._logs.append(
                        LogType.ERROR,
                        "Error processing change stream event",
                        {
                            "error": str(e),
                            "collection": event.collection,
                            "documentId": event.document_id,
                            "op": event.op,
                        },
                    )
                if not self._running:
                    break

    async def _run_loop(self) -> None:
        """Subscribe, relay, and on transport loss retry after a fixed delay."""
        reconnecting = False
        while self._running:
            try:
                if reconnecting:
                    await self._logs.append(LogType.INFO, "Change stream reconnecting")
                await self._consume()
                if self._running:
                    raise StreamError("Change stream ended unexpectedly")
            except StreamError as e:
                await self._logs.append(LogType.ERROR, "Change stream error", {"error": str(e)})
            except Exception as e:
                await self._logs.append(
                    LogType.ERROR, "Error setting up change stream", {"error": str(e)},
                )

            if not self._running:
                break
            reconnecting = True
            try:
                await asyncio.sleep(self._retry_delay)
            except asyncio.CancelledError:
                break
