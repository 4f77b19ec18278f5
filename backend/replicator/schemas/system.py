"""Health schemas."""

from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = "ok"
    version: str
    service: str = "replicator"
    configured: bool = False
    sync_state: str = "idle"
    change_feed_active: bool = False
