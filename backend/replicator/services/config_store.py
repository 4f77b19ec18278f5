"""Replication config persistence — JSON file with atomic replace and corruption backup."""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, NamedTuple

from bson import json_util
from pydantic import ValidationError

from replicator.config import settings
from replicator.schemas.sync import SyncConfig, SyncConfigIn

logger = logging.getLogger(__name__)


class Checkpoint(NamedTuple):
    document_id: Any
    pass_started_at: datetime | None = None


class ConfigStore:
    """Loads and saves the single active SyncConfig."""

    def __init__(self, path: str | Path | None = None):
        self._path = Path(path or settings.config_path)
        self._config: SyncConfig | None = None
        self._loaded = False
        # Saves are read-merge-write and may run on worker threads
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> SyncConfig | None:
        """Return the stored config, or None when unconfigured."""
        if self._loaded:
            return self._config
        with self._lock:
            if not self._loaded:
                self._config = self._read()
                self._loaded = True
        return self._config

    def _read(self) -> SyncConfig | None:
        if not self._path.exists():
            logger.info("No config file at %s — replication not configured", self._path)
            return None

        raw = self._path.read_text(encoding="utf-8")
        if not raw.strip():
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            backup = self._backup()
            logger.warning("Corrupt config file, backed up to %s: %s", backup, e)
            return None
        if not data:
            return None

        try:
            return SyncConfig.model_validate(data)
        except ValidationError as e:
            logger.warning("Stored config is invalid, ignoring: %s", e)
            return None

    def save(self, config: SyncConfigIn | dict[str, Any]) -> SyncConfig:
        """Merge ``config`` into the stored one and write it atomically."""
        with self._lock:
            current = self.load()
            merged: dict[str, Any] = current.model_dump() if current else {}
            if isinstance(config, SyncConfigIn):
                merged.update(config.model_dump())
            else:
                merged.update(config)

            if current and (
                merged.get("source_url") != current.source_url
                or merged.get("target_url") != current.target_url
            ):
                # New endpoints: sync history no longer describes the target
                logger.info("Database URLs changed, resetting last sync and checkpoints")
                merged["last_sync_at"] = None
                merged["checkpoints"] = {}

            now = datetime.now(timezone.utc)
            merged["updated_at"] = now
            merged["created_at"] = (current.created_at if current else None) or now

            stored = SyncConfig.model_validate(merged)
            self._write(stored)
            self._config = stored
            return stored

    def record_last_sync(self, timestamp: datetime) -> None:
        if self.load() is None:
            return
        self.save({"last_sync_at": timestamp, "last_error": None})

    def record_error(self, message: str | None) -> None:
        if self.load() is None:
            logger.warning("Cannot record error without a config: %s", message)
            return
        self.save({"last_error": message})

    def get_checkpoint(self, collection: str) -> Checkpoint | None:
        """Resume point of an interrupted pass over ``collection``, or None."""
        config = self.load()
        if config is None or collection not in config.checkpoints:
            return None
        data = json_util.loads(config.checkpoints[collection])
        started = data.get("passStartedAt")
        return Checkpoint(
            document_id=data["_id"],
            pass_started_at=datetime.fromisoformat(started) if started else None,
        )

    def set_checkpoint(
        self, collection: str, document_id: Any, pass_started_at: datetime | None = None,
    ) -> None:
        with self._lock:
            config = self.load()
            if config is None:
                return
            data: dict[str, Any] = {"_id": document_id}
            if pass_started_at is not None:
                data["passStartedAt"] = pass_started_at.isoformat()
            checkpoints = dict(config.checkpoints)
            checkpoints[collection] = json_util.dumps(data)
            self.save({"checkpoints": checkpoints})

    def clear_checkpoint(self, collection: str) -> None:
        with self._lock:
            config = self.load()
            if config is None or collection not in config.checkpoints:
                return
            checkpoints = dict(config.checkpoints)
            del checkpoints[collection]
            self.save({"checkpoints": checkpoints})

    def clear_checkpoints(self) -> None:
        if self.load() is not None:
            self.save({"checkpoints": {}})

    def _write(self, config: SyncConfig) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = config.model_dump_json(indent=2)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent,
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _backup(self) -> Path:
        backup = self._path.with_name(f"{self._path.name}.{int(time.time())}.bak")
        shutil.copyfile(self._path, backup)
        return backup
