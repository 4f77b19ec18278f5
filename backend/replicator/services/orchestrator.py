"""Sync orchestrator — lifecycle, cron scheduling and single-flight reconciliation runs."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from replicator.cron import crontab_trigger
from replicator.schemas.sync import (
    CollectionSyncResult,
    LogType,
    RunOutcome,
    RunResult,
    RunTotals,
    SyncConfig,
    SyncStatus,
)
from replicator.services.change_feed import ChangeFeedRelay
from replicator.services.config_store import ConfigStore
from replicator.services.errors import AlreadyInProgress, NotConfigured, StoreConnectionError
from replicator.services.log_store import LogStore
from replicator.services.reconciler import CollectionReconciler
from replicator.services.store import StoreConnection, StoreConnector, connect_pair, connect_store
from replicator.services.sync_state import SyncState, SyncStateMachine
from replicator.services.time_window import window_open

logger = logging.getLogger(__name__)

JOB_ID = "reconcile_collections"


def _new_scheduler() -> AsyncIOScheduler:
    # One job; overlapping ticks are coalesced and dropped while a run is active
    return AsyncIOScheduler(job_defaults={"coalesce": True, "max_instances": 1})


class SyncOrchestrator:
    """Owns the store connections, the change-feed relay and the cron trigger."""

    def __init__(
        self,
        config_store: ConfigStore,
        log_store: LogStore,
        state: SyncStateMachine,
        connector: StoreConnector = connect_store,
        clock: Callable[[], datetime] = datetime.now,
        relay_retry_delay: float | None = None,
        write_retry_backoff: float | None = None,
    ):
        self._config_store = config_store
        self._logs = log_store
        self._state = state
        self._connector = connector
        self._clock = clock
        self._relay_retry_delay = relay_retry_delay
        self._write_retry_backoff = write_retry_backoff

        self._config: SyncConfig | None = None
        self._source: StoreConnection | None = None
        self._target: StoreConnection | None = None
        self._relay: ChangeFeedRelay | None = None
        self._scheduler = _new_scheduler()

        # Single-flight: checked and set with no await in between
        self._run_active = False
        self._stop_requested = False
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def config(self) -> SyncConfig | None:
        return self._config

    @property
    def relay(self) -> ChangeFeedRelay | None:
        return self._relay

    @property
    def job(self):
        """The installed cron job, if any."""
        return self._scheduler.get_job(JOB_ID)

    @property
    def is_started(self) -> bool:
        return self._source is not None and self._target is not None

    def is_running(self) -> bool:
        return self._run_active

    def status(self) -> SyncStatus:
        return self._state.status().model_copy(update={"is_running": self._run_active})

    # --- lifecycle ---

    async def start(self, config: SyncConfig) -> None:
        """Connect, start the relay and install the cron trigger. Runs no pass."""
        if self.is_started:
            await self.stop()

        self._config = config
        self._state.transition(SyncState.CONNECTING)
        self._source, self._target = await self._connect(config)
        self._state.transition(SyncState.IDLE)

        self._relay = ChangeFeedRelay(
            self._source, self._target, self._logs, retry_delay=self._relay_retry_delay,
        )
        for collection in config.collections:
            await self._relay.track(collection)
        self._relay.start()

        self._install_schedule(config.schedule)
        await self._logs.append(
            LogType.INFO,
            "Sync service started",
            {"collections": config.collections, "schedule": config.schedule},
        )

    async def update_config(self, config: SyncConfig) -> None:
        """Swap the cached config and reschedule; connections stay open."""
        self._config = config
        if self._relay is not None:
            for collection in self._relay.tracked - set(config.collections):
                await self._relay.untrack(collection)
            for collection in config.collections:
                await self._relay.track(collection)
        if self.is_started:
            self._install_schedule(config.schedule)
        await self._logs.append(
            LogType.INFO,
            "Configuration updated",
            {"collections": config.collections, "schedule": config.schedule},
        )

    async def stop(self) -> None:
        """Tear everything down and persist a stopped status."""
        if self._scheduler.get_job(JOB_ID):
            self._scheduler.remove_job(JOB_ID)
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = _new_scheduler()

        if self._run_active:
            self._stop_requested = True
            await self._idle.wait()

        if self._relay is not None:
            await self._relay.stop()
            self._relay = None
        await self._disconnect()

        self._state.force_state(SyncState.IDLE)
        await self._logs.append(
            LogType.INFO,
            "Sync service stopped",
            {"collections": self._config.collections if self._config else []},
        )

    async def stop_sync(self) -> bool:
        """Ask the active run to abort after its current chunk."""
        if not self._run_active:
            return False
        self._stop_requested = True
        await self._logs.append(LogType.WARNING, "Sync operation terminated by user")
        return True

    # --- reconciliation ---

    async def manual_sync(self) -> RunResult:
        """Run a reconciliation pass now. Opens connections if not started."""
        self._claim()
        try:
            config = self._config or self._config_store.load()
            if config is None:
                raise NotConfigured()

            await self._logs.append(
                LogType.INFO,
                "Starting manual sync",
                {
                    "collections": config.collections,
                    "batchSize": config.batch_size,
                    "chunkSize": config.chunk_size,
                    "batchDelay": config.batch_delay_ms,
                },
            )

            if self.is_started:
                return await self._execute(config, self._source, self._target)

            self._state.transition(SyncState.CONNECTING)
            source, target = await self._connect(config)
            self._state.transition(SyncState.IDLE)
            try:
                return await self._execute(config, source, target)
            finally:
                await source.close()
                await target.close()
        finally:
            self._release()

    async def _on_tick(self) -> None:
        """Cron callback: drop the tick if busy or outside the window."""
        if self._run_active:
            await self._logs.append(LogType.INFO, "Previous sync still running, skipping")
            return

        config = self._config
        if config is None or not self.is_started:
            return

        if not window_open(self._clock(), config.time_window):
            await self._logs.append(LogType.INFO, "Outside of sync window, skipping")
            return

        try:
            self._claim()
        except AlreadyInProgress:
            await self._logs.append(LogType.INFO, "Previous sync still running, skipping")
            return

        try:
            await self._logs.append(
                LogType.INFO, "Starting scheduled sync", {"collections": config.collections},
            )
            await self._execute(config, self._source, self._target)
        except Exception as e:
            logger.exception("Scheduled sync crashed")
            await self._logs.append(
                LogType.ERROR,
                "Error during sync execution",
                {"error": str(e), "collections": config.collections},
            )
        finally:
            self._release()

    async def _execute(
        self, config: SyncConfig, source: StoreConnection, target: StoreConnection,
    ) -> RunResult:
        """Reconcile every configured collection in order, stopping at the first non-success."""
        started_at = datetime.now(timezone.utc)
        stored = self._config_store.load()
        last_sync_at = stored.last_sync_at if stored else config.last_sync_at

        self._state.transition(SyncState.RUNNING)
        self._state.set_error(None)

        reconciler = CollectionReconciler(
            source,
            target,
            config,
            self._logs,
            self._config_store,
            self._state,
            should_continue=lambda: not self._stop_requested,
            clock=self._clock,
            last_sync_at=last_sync_at,
            retry_backoff=self._write_retry_backoff,
        )

        results: dict[str, CollectionSyncResult] = {}
        outcome = RunOutcome.COMPLETED
        error: str | None = None
        try:
            for collection in config.collections:
                if self._stop_requested:
                    await self._logs.append(LogType.WARNING, "Sync operation stopped by user")
                    outcome = RunOutcome.STOPPED
                    break

                try:
                    result = await reconciler.sync_collection(collection)
                except Exception as e:
                    error = str(e)
                    outcome = RunOutcome.FAILED
                    await self._logs.append(
                        LogType.ERROR,
                        f"Error syncing collection {collection}",
                        {"error": error, "type": type(e).__name__},
                    )
                    break

                results[collection] = result
                if result.outcome != RunOutcome.COMPLETED:
                    outcome = result.outcome
                    break

            totals = RunTotals(
                total=sum(r.total for r in results.values()),
                processed=sum(r.processed for r in results.values()),
                inserted=sum(r.inserted for r in results.values()),
                updated=sum(r.updated for r in results.values()),
            )

            if outcome == RunOutcome.COMPLETED:
                self._config_store.record_last_sync(started_at)
                self._state.mark_synced(started_at)
                await self._logs.append(
                    LogType.SUCCESS,
                    "All collections synced successfully",
                    {
                        "collections": config.collections,
                        "collectionStats": {
                            name: r.model_dump(exclude={"outcome"}) for name, r in results.items()
                        },
                        "totalStats": totals.model_dump(),
                    },
                )
            elif outcome == RunOutcome.FAILED:
                self._config_store.record_error(error)
                self._state.set_error(error)
            else:
                await self._logs.append(
                    LogType.WARNING,
                    f"Sync {outcome.value} before all collections were processed",
                    {"collections": config.collections, "completed": list(results)},
                )
        finally:
            self._state.transition(SyncState.IDLE)

        return RunResult(
            success=outcome == RunOutcome.COMPLETED,
            outcome=outcome,
            collections=results,
            totals=totals,
            error=error,
        )

    # --- helpers ---

    def _claim(self) -> None:
        if self._run_active:
            raise AlreadyInProgress()
        self._run_active = True
        self._stop_requested = False
        self._idle.clear()

    def _release(self) -> None:
        self._run_active = False
        self._stop_requested = False
        self._idle.set()

    async def _connect(self, config: SyncConfig) -> tuple[StoreConnection, StoreConnection]:
        try:
            source, target = await connect_pair(self._connector, config.source_url, config.target_url)
        except StoreConnectionError as e:
            self._state.transition(SyncState.FAILED)
            self._state.set_error(str(e))
            await self._logs.append(
                LogType.ERROR, "Failed to connect to databases", {"error": str(e)},
            )
            self._config_store.record_error(str(e))
            self._state.transition(SyncState.IDLE)
            raise
        await self._logs.append(LogType.INFO, "Successfully connected to source and target databases")
        return source, target

    async def _disconnect(self) -> None:
        for conn in (self._source, self._target):
            if conn is None:
                continue
            try:
                await conn.close()
            except Exception as e:
                await self._logs.append(
                    LogType.ERROR, "Error disconnecting from databases", {"error": str(e)},
                )
        self._source = None
        self._target = None

    def _install_schedule(self, cron: str) -> None:
        """(Re)install the cron job; the scheduler starts on first use."""
        self._scheduler.add_job(
            self._on_tick,
            trigger=crontab_trigger(cron),
            id=JOB_ID,
            name="Reconcile configured collections",
            replace_existing=True,
        )
        if not self._scheduler.running:
            self._scheduler.start()
        logger.info("Reconciliation scheduled: cron='%s'", cron)
