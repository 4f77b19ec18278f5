"""Health check."""

from fastapi import APIRouter, Depends

from replicator import __version__
from replicator.api.deps import get_services
from replicator.schemas.system import HealthResponse
from replicator.services import Services

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(services: Services = Depends(get_services)):
    """Connectivity check plus a coarse view of the replication state."""
    orchestrator = services.orchestrator
    relay = orchestrator.relay
    return HealthResponse(
        version=__version__,
        configured=services.config_store.load() is not None,
        sync_state=services.state.state.value,
        change_feed_active=relay is not None and relay.is_active,
    )


@router.get("/ping")
async def ping():
    """Ultra-lightweight ping."""
    return {"status": "ok"}
