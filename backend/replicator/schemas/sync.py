"""Replication config, status and result schemas."""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from replicator.cron import crontab_trigger

TIME_PATTERN = re.compile(r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$")
URL_SCHEMES = ("mongodb://", "mongodb+srv://")


def parse_hhmm(value: str) -> int:
    """Minutes since midnight for an ``HH:mm`` string."""
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


class TimeWindow(BaseModel):
    """Daily window in which reconciliation may run. No overnight wraparound."""
    start: str = "00:00"
    end: str = "06:00"

    @field_validator("start", "end")
    @classmethod
    def _check_format(cls, value: str) -> str:
        if not TIME_PATTERN.match(value):
            raise ValueError("time must be in HH:mm format (00:00-23:59)")
        return value

    @model_validator(mode="after")
    def _check_order(self) -> "TimeWindow":
        if parse_hhmm(self.end) < parse_hhmm(self.start):
            raise ValueError("time window end must not be before start (overnight windows are not supported)")
        return self


class SyncConfigIn(BaseModel):
    """User-editable part of the replication config."""
    source_url: str
    target_url: str
    collections: list[str]
    schedule: str = "0 0 * * *"
    time_window: TimeWindow = Field(default_factory=TimeWindow)
    batch_size: int = Field(5000, ge=1)
    chunk_size: int = Field(1000, ge=1)
    batch_delay_ms: int = Field(10, ge=0)

    @field_validator("source_url", "target_url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("database URL is required")
        if not value.startswith(URL_SCHEMES):
            raise ValueError(f"invalid MongoDB URL format: {value}")
        return value

    @field_validator("collections", mode="before")
    @classmethod
    def _split_collections(cls, value: list[str] | str) -> list[str]:
        if isinstance(value, str):
            return [c.strip() for c in value.split(",")]
        return value

    @field_validator("collections")
    @classmethod
    def _check_collections(cls, value: list[str]) -> list[str]:
        names = [c.strip() for c in value]
        if not names or any(not c for c in names):
            raise ValueError("collections must be a non-empty list of names")
        if len(set(names)) != len(names):
            raise ValueError("collection names must be unique")
        return names

    @field_validator("schedule")
    @classmethod
    def _check_schedule(cls, value: str) -> str:
        value = " ".join(value.split())
        if len(value.split(" ")) != 5:
            raise ValueError("cron expression must have exactly 5 fields")
        try:
            crontab_trigger(value)
        except ValueError as e:
            raise ValueError(f"invalid cron expression: {e}") from e
        return value

    @model_validator(mode="after")
    def _check_sizes(self) -> "SyncConfigIn":
        if self.chunk_size > self.batch_size:
            raise ValueError("chunk_size must not exceed batch_size")
        return self


class SyncConfig(SyncConfigIn):
    """Stored replication config, including run bookkeeping."""
    last_sync_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    # collection -> last replicated _id, as MongoDB extended JSON
    checkpoints: dict[str, str] = {}


class SyncProgress(BaseModel):
    collection: str
    processed: int
    total: int
    inserted: int
    updated: int
    percentage: int


class SyncStatus(BaseModel):
    """Current replication status."""
    state: str = "idle"
    is_running: bool = False
    progress: SyncProgress | None = None
    last_sync: datetime | None = None
    error: str | None = None


class RunOutcome(str, Enum):
    COMPLETED = "completed"
    PAUSED = "paused"
    STOPPED = "stopped"
    FAILED = "failed"


class CollectionSyncResult(BaseModel):
    """Per-collection numbers, including post-copy verification counts."""
    outcome: RunOutcome = RunOutcome.COMPLETED
    total: int = 0
    processed: int = 0
    inserted: int = 0
    updated: int = 0
    source_count: int | None = None
    target_count: int | None = None


class RunTotals(BaseModel):
    total: int = 0
    processed: int = 0
    inserted: int = 0
    updated: int = 0


class RunResult(BaseModel):
    """Outcome of one reconciliation run over the configured collections."""
    success: bool
    outcome: RunOutcome
    collections: dict[str, CollectionSyncResult] = {}
    totals: RunTotals = Field(default_factory=RunTotals)
    error: str | None = None


class LogType(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class LogEntry(BaseModel):
    id: int | None = None
    timestamp: datetime
    type: LogType
    message: str
    details: dict[str, Any] = {}


class CollectionInventory(BaseModel):
    name: str
    count: int
    target_count: int = 0
    last_modified: datetime | None = None
    needs_sync: bool = False
    only_in_target: bool = False


class InventoryResponse(BaseModel):
    """Source vs target collection listing for the config screen."""
    source_collections: list[CollectionInventory]
    target_collections: list[CollectionInventory]
    unique_target_collections: list[CollectionInventory]
