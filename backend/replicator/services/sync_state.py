"""Orchestrator state machine with JSON-persisted sync status."""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from enum import Enum
from pathlib import Path

from pydantic import ValidationError

from replicator.config import settings
from replicator.schemas.sync import SyncProgress, SyncStatus

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    RUNNING = "running"
    FAILED = "failed"


VALID_TRANSITIONS: dict[SyncState, set[SyncState]] = {
    SyncState.IDLE: {SyncState.CONNECTING, SyncState.RUNNING},
    SyncState.CONNECTING: {SyncState.IDLE, SyncState.FAILED},
    SyncState.RUNNING: {SyncState.IDLE},
    SyncState.FAILED: {SyncState.IDLE},
}


class SyncStateMachine:
    """Tracks orchestrator state and the status readers see."""

    def __init__(self, status_path: str | Path | None = None):
        self._status_file = Path(status_path or settings.status_path)
        self._state = SyncState.IDLE
        self._progress: SyncProgress | None = None
        self._last_sync: datetime | None = None
        self._error: str | None = None
        # Progress updates are written from worker threads
        self._lock = threading.Lock()
        self._load()

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == SyncState.RUNNING

    @property
    def last_sync(self) -> datetime | None:
        return self._last_sync

    def transition(self, new_state: SyncState) -> bool:
        """Transition to new state. Returns True if valid, False if rejected."""
        if new_state == self._state:
            return True

        valid = VALID_TRANSITIONS.get(self._state, set())
        if new_state not in valid:
            logger.warning(
                "Invalid sync state transition: %s -> %s (valid: %s)",
                self._state, new_state, valid,
            )
            return False

        old_state = self._state
        self._state = new_state
        if new_state != SyncState.RUNNING:
            self._progress = None
        self._save()

        logger.debug("Sync state: %s -> %s", old_state, new_state)
        return True

    def force_state(self, new_state: SyncState) -> None:
        """Force state without transition validation (used by stop)."""
        self._state = new_state
        self._progress = None
        self._save()

    def set_progress(self, progress: SyncProgress | None) -> None:
        self._progress = progress
        self._save()

    def set_error(self, error: str | None) -> None:
        self._error = error
        self._save()

    def mark_synced(self, when: datetime) -> None:
        self._last_sync = when
        self._error = None
        self._save()

    def status(self) -> SyncStatus:
        return SyncStatus(
            state=self._state.value,
            is_running=self.is_running,
            progress=self._progress,
            last_sync=self._last_sync,
            error=self._error,
        )

    def _load(self) -> None:
        """Restore last_sync/error. A restarted process always begins idle."""
        if not self._status_file.exists():
            return

        try:
            data = SyncStatus.model_validate_json(self._status_file.read_text(encoding="utf-8"))
            self._last_sync = data.last_sync
            self._error = data.error
        except (ValidationError, ValueError) as e:
            logger.warning("Failed to load sync status, resetting: %s", e)

    def _save(self) -> None:
        with self._lock:
            self._status_file.parent.mkdir(parents=True, exist_ok=True)
            self._status_file.write_text(
                json.dumps(self.status().model_dump(mode="json"), indent=2), encoding="utf-8"
            )
