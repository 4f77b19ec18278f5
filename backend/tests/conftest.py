"""Test fixtures — temp SQLite log database, fake stores and FastAPI test client."""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from fakes import SOURCE_URL, TARGET_URL, Clock, FakeConnector, FakeStore
from replicator.main import create_app
from replicator.models.base import Base
from replicator.services import Services
from replicator.services.config_store import ConfigStore
from replicator.services.log_store import LogStore
from replicator.services.orchestrator import SyncOrchestrator
from replicator.services.sync_state import SyncStateMachine


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Async SQLite log database in a temp dir, one connection per session."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'logs.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def log_store(session_factory):
    return LogStore(session_factory, retention=1000, listener_queue_size=100)


@pytest.fixture
def config_store(tmp_path):
    return ConfigStore(tmp_path / "sync-config.json")


@pytest.fixture
def state(tmp_path):
    return SyncStateMachine(status_path=tmp_path / "sync-status.json")


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def source():
    return FakeStore("source")


@pytest.fixture
def target():
    return FakeStore("target")


@pytest.fixture
def connector(source, target):
    return FakeConnector({SOURCE_URL: source, TARGET_URL: target})


@pytest_asyncio.fixture
async def orchestrator(config_store, log_store, state, connector, clock):
    orch = SyncOrchestrator(
        config_store,
        log_store,
        state,
        connector=connector,
        clock=clock,
        relay_retry_delay=0.01,
        write_retry_backoff=0,
    )
    yield orch
    if orch.is_started:
        await orch.stop()


@pytest_asyncio.fixture
async def services(config_store, log_store, state, orchestrator, connector):
    return Services(
        config_store=config_store,
        log_store=log_store,
        state=state,
        orchestrator=orchestrator,
        connector=connector,
    )


@pytest_asyncio.fixture
async def client(services):
    """Async test client with the service container injected."""
    app = create_app()
    app.state.services = services

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
