"""FastAPI dependency injection — service container lookups."""

from __future__ import annotations

from fastapi import Depends, HTTPException, status
from starlette.requests import HTTPConnection

from replicator.services import Services
from replicator.services.config_store import ConfigStore
from replicator.services.log_store import LogStore
from replicator.services.orchestrator import SyncOrchestrator


def get_services(conn: HTTPConnection) -> Services:
    """Services live on app.state; set by the lifespan or by tests."""
    services = getattr(conn.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Services not initialized",
        )
    return services


def get_orchestrator(services: Services = Depends(get_services)) -> SyncOrchestrator:
    return services.orchestrator


def get_config_store(services: Services = Depends(get_services)) -> ConfigStore:
    return services.config_store


def get_log_store(services: Services = Depends(get_services)) -> LogStore:
    return services.log_store
