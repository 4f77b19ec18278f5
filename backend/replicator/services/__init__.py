"""Service container, owned by the application lifespan."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from replicator.services.config_store import ConfigStore
from replicator.services.errors import StoreConnectionError
from replicator.services.log_store import LogStore
from replicator.services.orchestrator import SyncOrchestrator
from replicator.services.store import StoreConnector, connect_store
from replicator.services.sync_state import SyncStateMachine

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config_store: ConfigStore
    log_store: LogStore
    state: SyncStateMachine
    orchestrator: SyncOrchestrator
    connector: StoreConnector = connect_store


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    config_store: ConfigStore | None = None,
    state: SyncStateMachine | None = None,
    connector: StoreConnector = connect_store,
    **orchestrator_kwargs,
) -> Services:
    """Wire the stores and the orchestrator together without starting anything."""
    config_store = config_store or ConfigStore()
    log_store = LogStore(session_factory)
    state = state or SyncStateMachine()
    orchestrator = SyncOrchestrator(
        config_store, log_store, state, connector=connector, **orchestrator_kwargs,
    )
    return Services(
        config_store=config_store,
        log_store=log_store,
        state=state,
        orchestrator=orchestrator,
        connector=connector,
    )


async def init_services(services: Services) -> None:
    """Start replication if a config has been saved before."""
    config = services.config_store.load()
    if config is None:
        logger.warning("Replication not configured — waiting for POST /api/config")
        return

    try:
        await services.orchestrator.start(config)
        logger.info("Replication started for %s", ", ".join(config.collections))
    except StoreConnectionError as e:
        # Already logged and recorded; a config save retries the connection
        logger.error("Replication not started: %s", e)


async def shutdown_services(services: Services) -> None:
    """Stop scheduler, relay and connections."""
    if services.orchestrator.is_started:
        await services.orchestrator.stop()
