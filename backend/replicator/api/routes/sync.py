"""Reconciliation control routes."""

from fastapi import APIRouter, Depends, HTTPException

from replicator.api.deps import get_orchestrator
from replicator.schemas.sync import RunResult, SyncStatus
from replicator.services.errors import AlreadyInProgress, NotConfigured, StoreConnectionError
from replicator.services.orchestrator import SyncOrchestrator

router = APIRouter()


@router.get("/status", response_model=SyncStatus)
async def sync_status(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    return orchestrator.status()


@router.post("", response_model=RunResult)
async def trigger_sync(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Run a reconciliation pass and wait for its result."""
    try:
        return await orchestrator.manual_sync()
    except AlreadyInProgress as e:
        raise HTTPException(status_code=409, detail=str(e))
    except NotConfigured as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StoreConnectionError as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.post("/stop")
async def stop_sync(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Abort the active pass after its current chunk."""
    if not await orchestrator.stop_sync():
        raise HTTPException(status_code=400, detail="No sync operation is currently running")
    return {"success": True, "message": "Sync operation stopped"}
