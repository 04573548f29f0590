"""
FilePatientStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    patients_active.json       entity_key → {"entity", "first_seen_at"}
    patients_processed.json    [ProcessedRecord, ...]
    message_tags.json          "entity_key::kind" → MessageReservation

Features:
  - Survives process restarts (unlike InMemoryPatientStore)
  - No external dependencies (no database server)
  - Every write goes to a temp file and is renamed over the target
  - A partition that fails to parse, or holds a record that does not
    validate, is reset to empty and rewritten
  - Reservations always flush before reserve_tag returns
  - Single-process only (no concurrent write safety)
"""
from __future__ import annotations

import copy
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import structlog

from database.store_base import ReservationPolicy, StorageError
from database.store_memory import InMemoryPatientStore
from models.schemas import (
    MessageKind, MessageReservation, ProcessedRecord, SnapshotDiff, WaitingEntity,
)
from utils.clock import Clock

logger = structlog.get_logger()

ACTIVE = "patients_active"
PROCESSED = "patients_processed"
TAGS = "message_tags"

_COLLECTIONS = [ACTIVE, PROCESSED, TAGS]


class FilePatientStore(InMemoryPatientStore):
    """
    Extends InMemoryPatientStore with JSON file persistence.

    On init: loads all partitions from JSON files into memory.
    On every write: flushes the changed partitions to disk before returning.
    """

    def __init__(self, data_dir: str = "./data",
                 policy: Optional[ReservationPolicy] = None, clock: Optional[Clock] = None):
        super().__init__(policy=policy, clock=clock)
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._load_all()
        logger.info("file_store_initialized", data_dir=str(self._data_dir))

    # ── Load / Save ───────────────────────────────────────

    def _file_path(self, collection: str) -> Path:
        return self._data_dir / f"{collection}.json"

    @staticmethod
    def _empty(collection: str) -> Any:
        return [] if collection == PROCESSED else {}

    def _load_all(self):
        """Load all partitions from disk, resetting any that are unreadable."""
        for collection in _COLLECTIONS:
            path = self._file_path(collection)
            if not path.exists():
                continue
            try:
                with open(path, "r") as f:
                    data = json.load(f)
                if not isinstance(data, type(self._empty(collection))):
                    raise ValueError(f"expected {type(self._empty(collection)).__name__}")
                self._check_records(collection, data)
            except (json.JSONDecodeError, ValueError, OSError) as e:
                logger.warning("file_store_partition_corrupt",
                               collection=collection, error=str(e))
                data = self._empty(collection)
                self._set_collection(collection, data)
                try:
                    self._flush_collection(collection)
                except OSError as write_err:
                    logger.error("file_store_reset_failed",
                                 collection=collection, error=str(write_err))
                continue
            self._set_collection(collection, data)
            logger.debug("file_store_loaded", collection=collection, records=len(data))

    @staticmethod
    def _check_records(collection: str, data: Any):
        """Parse every record of a partition. Raises ValueError on the first bad one."""
        try:
            if collection == ACTIVE:
                for item in data.values():
                    WaitingEntity(**item["entity"])
                    datetime.fromisoformat(item["first_seen_at"])
            elif collection == PROCESSED:
                for item in data:
                    ProcessedRecord(**item)
            elif collection == TAGS:
                for item in data.values():
                    MessageReservation(**item)
        except (KeyError, TypeError, AttributeError) as e:
            raise ValueError(f"malformed record: {e!r}") from e

    def _set_collection(self, collection: str, data: Any):
        if collection == ACTIVE:
            self._active = data
        elif collection == PROCESSED:
            self._processed = data
        elif collection == TAGS:
            self._tags = data

    def _get_collection_data(self, collection: str) -> Any:
        mapping = {
            ACTIVE: self._active,
            PROCESSED: self._processed,
            TAGS: self._tags,
        }
        return mapping.get(collection, {})

    def _flush_collection(self, collection: str):
        """Write a single partition to disk."""
        path = self._file_path(collection)
        data = self._get_collection_data(collection)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2, default=str)
        tmp_path.replace(path)  # atomic on POSIX

    def _backup(self, *collections: str):
        """Copy partitions so a failed write can be undone."""
        backup = {c: copy.deepcopy(self._get_collection_data(c)) for c in collections}
        return backup

    def _write_or_rollback(self, backup: dict[str, Any]):
        """Flush the backed-up partitions; on failure restore them and raise StorageError."""
        try:
            for c in backup:
                self._flush_collection(c)
        except OSError as e:
            for c, data in backup.items():
                self._set_collection(c, data)
            logger.error("file_store_write_failed", collections=list(backup), error=str(e))
            raise StorageError(f"Could not persist {', '.join(backup)}: {e}") from e

    # ── Override write methods to trigger persistence ──────

    async def apply_snapshot(self, incoming: list[WaitingEntity]) -> SnapshotDiff:
        backup = self._backup(ACTIVE, PROCESSED)
        diff = await super().apply_snapshot(incoming)
        self._write_or_rollback(backup)
        return diff

    async def reserve_tag(self, entity_key: str, kind: MessageKind) -> bool:
        backup = self._backup(TAGS)
        reserved = await super().reserve_tag(entity_key, kind)
        if reserved:
            self._write_or_rollback(backup)
        return reserved

    async def confirm_tag(self, entity_key: str, kind: MessageKind, success: bool,
                          channel_id: Optional[str] = None, error: str = "") -> bool:
        backup = self._backup(TAGS)
        confirmed = await super().confirm_tag(entity_key, kind, success, channel_id, error)
        if confirmed:
            self._write_or_rollback(backup)
        return confirmed

    async def clear_all(self) -> dict[str, int]:
        backup = self._backup(*_COLLECTIONS)
        counts = await super().clear_all()
        self._write_or_rollback(backup)
        return counts
