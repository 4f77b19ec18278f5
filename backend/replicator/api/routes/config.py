"""Replication config routes."""

from fastapi import APIRouter, Depends, HTTPException, Query

from replicator.api.deps import get_services
from replicator.schemas.sync import InventoryResponse, SyncConfig, SyncConfigIn
from replicator.services import Services
from replicator.services.errors import StoreConnectionError
from replicator.services.inventory import collection_inventory

router = APIRouter()


@router.get("", response_model=SyncConfig)
async def get_config(services: Services = Depends(get_services)):
    """Return the stored config."""
    config = services.config_store.load()
    if config is None:
        raise HTTPException(status_code=404, detail="No configuration found")
    return config


@router.post("", response_model=SyncConfig)
async def save_config(body: SyncConfigIn, services: Services = Depends(get_services)):
    """Save the config and (re)start replication with it."""
    previous = services.config_store.load()
    config = services.config_store.save(body)
    orchestrator = services.orchestrator

    same_endpoints = previous is not None and (
        previous.source_url == config.source_url and previous.target_url == config.target_url
    )
    try:
        if orchestrator.is_started and same_endpoints:
            await orchestrator.update_config(config)
        else:
            await orchestrator.start(config)
    except StoreConnectionError as e:
        raise HTTPException(status_code=502, detail=str(e))

    return services.config_store.load()


@router.get("/collections", response_model=InventoryResponse)
async def list_collections(
    source_url: str = Query(..., min_length=1),
    target_url: str = Query(..., min_length=1),
    services: Services = Depends(get_services),
):
    """Compare source and target collections for the given URLs."""
    try:
        return await collection_inventory(services.connector, source_url, target_url)
    except StoreConnectionError as e:
        raise HTTPException(status_code=502, detail=str(e))
