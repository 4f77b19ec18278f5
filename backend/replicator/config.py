"""Replicator configuration — Pydantic BaseSettings loaded from .env."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process-level settings. Replication config itself lives in the config store."""

    app_name: str = "Collection Replicator"
    debug: bool = False
    log_level: str = "INFO"

    # Network
    host: str = "127.0.0.1"
    port: int = 3000
    api_prefix: str = "/api"
    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Storage paths (relative resolved from backend/ at runtime)
    data_dir: str = "./data"
    config_file: str = "sync-config.json"
    status_file: str = "sync-status.json"
    database_path: str = "./data/replicator.db"

    # Store connections (milliseconds, passed straight to the driver)
    server_selection_timeout_ms: int = 30000
    connect_timeout_ms: int = 30000
    socket_timeout_ms: int = 60000
    min_pool_size: int = 5
    max_pool_size: int = 50
    write_timeout_ms: int = 60000

    # Reconciliation
    write_retry_attempts: int = 3
    write_retry_backoff_ms: int = 500

    # Change feed
    change_feed_retry_delay_seconds: float = 5.0

    # Log store
    log_retention: int = 1000
    log_listener_queue_size: int = 1000

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        env_prefix="REPLICATOR_",
        extra="ignore",
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, value: list[str] | str) -> list[str]:
        if isinstance(value, str) and not value.startswith("["):
            return [o.strip() for o in value.split(",") if o.strip()]
        if isinstance(value, list):
            return value
        return ["http://localhost:3000"]

    @model_validator(mode="after")
    def _resolve_paths(self) -> "Settings":
        """Ensure data paths are absolute."""
        base = Path(__file__).resolve().parent.parent  # backend/
        for field in ("data_dir", "database_path"):
            val = getattr(self, field)
            if not Path(val).is_absolute():
                setattr(self, field, str(base / val))
        return self

    @property
    def config_path(self) -> Path:
        return Path(self.data_dir) / self.config_file

    @property
    def status_path(self) -> Path:
        return Path(self.data_dir) / self.status_file


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
