"""Record of last-write-wins resolutions where the two sides really differed.

Entries are kept newest first in a bounded ring and mirrored as JSON lines to
``conflicts.log`` so a user can audit which side won after the fact.
"""
from __future__ import annotations

import json
import logging
import threading
from collections import deque
from pathlib import Path
from typing import Deque, Dict, List, Mapping, Optional, Tuple

from vaultsync import app_paths
from vaultsync.models import utc_now_iso

HISTORY_SIZE = 50

# Ciphertext only, but never written out.
_REDACTED_FIELDS = frozenset({"encrypted_secret"})

FieldDiffs = Mapping[str, Tuple[str, str]]


def diff_fields(local: Mapping[str, str], remote: Mapping[str, str]) -> Dict[str, Tuple[str, str]]:
    """Return ``{field: (local, remote)}`` for every field whose value differs."""

    diffs: Dict[str, Tuple[str, str]] = {}
    for key in sorted(set(local) | set(remote)):
        pair = (local.get(key, ""), remote.get(key, ""))
        if pair[0] != pair[1]:
            diffs[key] = ("<changed>", "<changed>") if key in _REDACTED_FIELDS else pair
    return diffs


class ConflictLog:
    def __init__(
        self,
        log_path: Optional[Path] = None,
        size: int = HISTORY_SIZE,
        logger_name: str = "keyvault.sync.conflicts",
    ) -> None:
        self._entries: Deque[Dict[str, object]] = deque(maxlen=size)
        self._lock = threading.Lock()
        self._log_path = log_path
        self._logger = logging.getLogger(logger_name)
        self._handler_ready = False

    def _file_logger(self) -> logging.Logger:
        if not self._handler_ready:
            path = self._log_path or app_paths.logs_path("conflicts.log")
            try:
                handler = logging.FileHandler(path, encoding="utf-8")
            except OSError:
                self._logger.warning("Cannot open %s; conflicts kept in memory only", path)
            else:
                handler.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
                self._logger.addHandler(handler)
            self._logger.setLevel(logging.INFO)
            self._handler_ready = True
        return self._logger

    def record(
        self,
        record_id: int,
        field_diffs: FieldDiffs,
        *,
        winner: str,
        context: Optional[Mapping[str, object]] = None,
    ) -> Optional[Dict[str, object]]:
        if not field_diffs:
            return None
        entry: Dict[str, object] = dict(context or {})
        entry.update(
            record_id=record_id,
            winner=winner,
            timestamp=utc_now_iso(),
            fields={name: list(values) for name, values in field_diffs.items()},
        )
        self._file_logger().info("%s", json.dumps(entry, default=str, sort_keys=True))
        with self._lock:
            self._entries.appendleft(entry)
        return entry

    def recent(self, limit: int = 10) -> List[Dict[str, object]]:
        with self._lock:
            return [dict(entry) for entry in list(self._entries)[:limit]]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


_default_log = ConflictLog()


def record(
    record_id: int,
    field_diffs: FieldDiffs,
    *,
    winner: str,
    context: Optional[Mapping[str, object]] = None,
) -> None:
    _default_log.record(record_id, field_diffs, winner=winner, context=context)


def recent(limit: int = 10) -> List[Dict[str, object]]:
    """Newest-first resolution entries from this process."""

    return _default_log.recent(limit)


def clear() -> None:
    _default_log.clear()


__all__ = ["ConflictLog", "HISTORY_SIZE", "clear", "diff_fields", "recent", "record"]
