"""API route registration."""

from fastapi import APIRouter

from replicator.api.routes import config, health, logs, sync

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(config.router, prefix="/config", tags=["config"])
api_router.include_router(sync.router, prefix="/sync", tags=["sync"])
api_router.include_router(logs.router, prefix="/logs", tags=["logs"])
api_router.include_router(logs.ws_router, tags=["logs"])
