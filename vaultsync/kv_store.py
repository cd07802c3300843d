"""Small persistent key-value store backed by a single JSON document.

The sync engine keeps its durable bookkeeping here: the pending operation
queue, the last successful sync time and the last known cloud record limit.
Every write replaces the whole document atomically so a crash never leaves a
half-written file behind.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Optional

from vaultsync import app_paths

logger = logging.getLogger(__name__)


class JsonKeyValueStore:
    """Persist JSON-serialisable values under string keys."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = Path(path) if path is not None else app_paths.data_path("sync_state.json")
        self._lock = threading.Lock()
        if self._path.parent and not self._path.parent.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._read().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if key not in data:
                return
            del data[key]
            self._write(data)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _read(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except json.JSONDecodeError:
            logger.warning("Sync state file %s is corrupt; starting empty", self._path)
            return {}
        if not isinstance(payload, dict):
            return {}
        return payload

    def _write(self, data: Dict[str, Any]) -> None:
        fd, tmp_name = tempfile.mkstemp(
            prefix=".sync_state-", suffix=".tmp", dir=str(self._path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2, ensure_ascii=False)
            os.replace(tmp_name, self._path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise


__all__ = ["JsonKeyValueStore"]
