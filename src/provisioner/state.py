"""Persistent state store for applied resources.

The state document maps logical names to StateRecords:

```json
{
  "version": 1,
  "resources": {
    "acr": {"name": "acr", "kind": "azure:containerregistry:Registry",
            "id": "/subscriptions/.../registries/acr", "properties": {...},
            "outputs": {"loginServer": "acr.azurecr.io"}, "dependencies": ["rg"]}
  },
  "pending_deletes": [{"name": "cg", "kind": "...", "id": "..."}]
}
```

Only the executor mutates the store. Writes are serialized with an
asyncio lock and land atomically (temp file + rename) so an interrupted
write never leaves a partial document behind.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .config import MAX_STATE_FILE_SIZE_BYTES
from .models import PendingDelete, StateRecord

logger = logging.getLogger(__name__)

STATE_DOCUMENT_VERSION = 1


class StateStoreError(Exception):
    """Raised when the state document cannot be read or written."""

    pass


class StateStore:
    """Last-known resource state keyed by logical name.

    Pass ``path=None`` for a purely in-memory store (previews, tests).
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = path
        self._records: dict[str, StateRecord] = {}
        self._pending_deletes: list[PendingDelete] = []
        self._lock = asyncio.Lock()
        self._loaded = False

    @property
    def path(self) -> Path | None:
        return self._path

    def load(self) -> None:
        """Load the state document from disk.

        A missing file is an empty state. Records that fail validation are
        kept as degraded records so the differ can treat them as unknown.

        Raises:
            StateStoreError: If the document is unreadable or not valid JSON.
        """
        self._records = {}
        self._pending_deletes = []
        self._loaded = True

        if self._path is None or not self._path.exists():
            logger.info("No existing state, starting empty", extra={"path": str(self._path)})
            return

        try:
            file_size = self._path.stat().st_size
        except OSError as e:
            raise StateStoreError(f"Failed to stat state file {self._path}: {e}") from e

        if file_size > MAX_STATE_FILE_SIZE_BYTES:
            raise StateStoreError(
                f"State file exceeds maximum size of {MAX_STATE_FILE_SIZE_BYTES} bytes: {self._path}"
            )

        try:
            content = self._path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise StateStoreError(f"Failed to read state file {self._path}: {e}") from e

        if not content.strip():
            return

        try:
            document = json.loads(content)
        except json.JSONDecodeError as e:
            raise StateStoreError(f"Invalid JSON in state file {self._path}: {e}") from e

        if not isinstance(document, dict) or not isinstance(document.get("resources", {}), dict):
            raise StateStoreError(f"State file must contain a 'resources' mapping: {self._path}")

        if not isinstance(document.get("pending_deletes", []), list):
            raise StateStoreError(f"State file 'pending_deletes' must be a list: {self._path}")

        version = document.get("version", STATE_DOCUMENT_VERSION)
        if version != STATE_DOCUMENT_VERSION:
            raise StateStoreError(
                f"Unsupported state document version {version} in {self._path}"
            )

        for name, raw in document.get("resources", {}).items():
            self._records[name] = self._load_record(name, raw)

        for raw in document.get("pending_deletes", []):
            try:
                self._pending_deletes.append(PendingDelete.model_validate(raw))
            except ValidationError as e:
                # Without an id there is nothing left to delete
                logger.warning(
                    "Dropping unreadable pending delete",
                    extra={"entry": raw, "error": str(e)},
                )

        logger.info(
            "Loaded state",
            extra={
                "path": str(self._path),
                "resource_count": len(self._records),
                "pending_delete_count": len(self._pending_deletes),
            },
        )

    def _load_record(self, name: str, raw: Any) -> StateRecord:
        try:
            record = StateRecord.model_validate(raw)
        except ValidationError as e:
            raw_dict = raw if isinstance(raw, dict) else {}
            record_id = raw_dict.get("id")
            logger.warning(
                "Corrupt state record, treating as unknown state",
                extra={"resource": name, "error": str(e)},
            )
            return StateRecord(
                name=name,
                kind=str(raw_dict.get("kind") or "unknown"),
                id=record_id if isinstance(record_id, str) else None,
                properties=None,
            )
        if record.name != name:
            logger.warning(
                "State record name mismatch, using document key",
                extra={"resource": name, "record_name": record.name},
            )
            record = record.model_copy(update={"name": name})
        return record

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, name: str) -> StateRecord | None:
        self._ensure_loaded()
        return self._records.get(name)

    def records(self) -> dict[str, StateRecord]:
        self._ensure_loaded()
        return dict(self._records)

    def pending_deletes(self) -> list[PendingDelete]:
        self._ensure_loaded()
        return list(self._pending_deletes)

    def outputs(self, name: str) -> dict[str, Any]:
        record = self.get(name)
        return dict(record.outputs) if record else {}

    # -------------------------------------------------------------------------
    # Writes (executor only)
    # -------------------------------------------------------------------------

    async def put(self, record: StateRecord) -> None:
        """Insert or replace a record and persist."""
        async with self._lock:
            self._ensure_loaded()
            self._records[record.name] = record.model_copy(
                update={"updated_at": datetime.now(UTC)}
            )
            self._save()

    async def put_replacement(self, record: StateRecord, replaced: PendingDelete) -> None:
        """Record a new instance and queue the old one for deletion in one write."""
        async with self._lock:
            self._ensure_loaded()
            self._records[record.name] = record.model_copy(
                update={"updated_at": datetime.now(UTC)}
            )
            if replaced not in self._pending_deletes:
                self._pending_deletes.append(replaced)
            self._save()

    async def remove(self, name: str) -> None:
        """Remove a record and persist."""
        async with self._lock:
            self._ensure_loaded()
            self._records.pop(name, None)
            self._save()

    async def add_pending_delete(self, entry: PendingDelete) -> None:
        async with self._lock:
            self._ensure_loaded()
            if entry not in self._pending_deletes:
                self._pending_deletes.append(entry)
            self._save()

    async def remove_pending_delete(self, entry: PendingDelete) -> None:
        async with self._lock:
            self._ensure_loaded()
            self._pending_deletes = [
                p for p in self._pending_deletes if (p.name, p.id) != (entry.name, entry.id)
            ]
            self._save()

    def to_document(self) -> dict[str, Any]:
        """Render the state as a JSON-serializable document."""
        self._ensure_loaded()
        return {
            "version": STATE_DOCUMENT_VERSION,
            "resources": {
                name: record.model_dump(mode="json")
                for name, record in sorted(self._records.items())
            },
            "pending_deletes": [p.model_dump(mode="json") for p in self._pending_deletes],
        }

    def _save(self) -> None:
        if self._path is None:
            return

        content = json.dumps(self.to_document(), indent=2, sort_keys=False)
        directory = self._path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=directory, prefix=f".{self._path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(content)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_name, self._path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StateStoreError(f"Failed to write state file {self._path}: {e}") from e

        logger.debug("State saved", extra={"path": str(self._path)})
