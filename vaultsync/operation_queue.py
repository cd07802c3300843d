"""Durable FIFO of pending mutations replayed when the remote store is reachable."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Set

from vaultsync.kv_store import JsonKeyValueStore
from vaultsync.models import ItemFailure, Operation, OperationKind
from vaultsync.remote_store import RemotePermissionError, RemoteStoreError

logger = logging.getLogger(__name__)

QUEUE_KEY = "sync_queue"

ReplayHandler = Callable[[Operation], Awaitable[None]]


@dataclass
class DrainReport:
    sent: int = 0
    retained: int = 0
    failures: List[ItemFailure] = field(default_factory=list)
    permission_denied: bool = False


class OperationQueue:
    """Persist operations in the key-value store until the remote confirms them.

    The stored list is rewritten after every confirmed operation, so a crash
    mid-drain leaves only the unexecuted tail and the failed operations behind.
    """

    def __init__(self, kv_store: JsonKeyValueStore) -> None:
        self._kv_store = kv_store
        self._lock = threading.Lock()

    def enqueue(self, operation: Operation) -> bool:
        """Append ``operation``; returns ``False`` when its ``op_id`` is already queued."""

        with self._lock:
            entries = self._load()
            if any(entry.op_id == operation.op_id for entry in entries):
                logger.warning("Operation %s already queued; ignoring duplicate", operation.op_id)
                return False
            entries.append(operation)
            self._store(entries)
        logger.debug("Queued %s operation %s", operation.kind.value, operation.op_id)
        return True

    def pending(self) -> List[Operation]:
        with self._lock:
            return self._load()

    def pending_count(self) -> int:
        return len(self.pending())

    def pending_delete_ids(self) -> Set[int]:
        return {
            operation.local_id
            for operation in self.pending()
            if operation.kind == OperationKind.DELETE and operation.local_id is not None
        }

    def clear(self) -> None:
        with self._lock:
            self._store([])

    async def drain(self, handler: ReplayHandler) -> DrainReport:
        """Replay queued operations in insertion order.

        Operations whose replay raises :class:`RemoteStoreError` stay queued in
        their original relative order. A permission failure stops the drain,
        leaving the failing operation and everything after it in place.
        """

        report = DrainReport()
        snapshot = self.pending()
        if not snapshot:
            return report

        logger.info("Replaying %d queued operations", len(snapshot))
        for position, operation in enumerate(snapshot):
            try:
                await handler(operation)
            except RemotePermissionError as exc:
                report.failures.append(
                    ItemFailure(kind=exc.kind, message=str(exc), local_id=operation.local_id)
                )
                report.permission_denied = True
                report.retained += len(snapshot) - position
                logger.warning(
                    "Permission denied replaying %s; leaving %d operations queued",
                    operation.op_id,
                    len(snapshot) - position,
                )
                break
            except RemoteStoreError as exc:
                report.failures.append(
                    ItemFailure(kind=exc.kind, message=str(exc), local_id=operation.local_id)
                )
                report.retained += 1
                logger.info("Replay of %s failed (%s); will retry", operation.op_id, exc)
            else:
                self._remove(operation.op_id)
                report.sent += 1

        return report

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _remove(self, op_id: str) -> None:
        with self._lock:
            entries = [entry for entry in self._load() if entry.op_id != op_id]
            self._store(entries)

    def _load(self) -> List[Operation]:
        raw = self._kv_store.get(QUEUE_KEY) or []
        entries: List[Operation] = []
        if not isinstance(raw, list):
            return entries
        for item in raw:
            operation = _parse_entry(item)
            if operation is not None:
                entries.append(operation)
        return entries

    def _store(self, entries: List[Operation]) -> None:
        self._kv_store.set(QUEUE_KEY, [entry.to_json() for entry in entries])


def _parse_entry(item: object) -> Optional[Operation]:
    if not isinstance(item, dict):
        return None
    try:
        return Operation.from_json(item)
    except (KeyError, ValueError, TypeError):
        logger.warning("Dropping malformed queue entry: %r", item)
        return None


__all__ = ["DrainReport", "OperationQueue", "QUEUE_KEY", "ReplayHandler"]
