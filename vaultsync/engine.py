"""Reconciliation engine: queue drain followed by a full last-write-wins diff.

A cycle runs in two explicit phases. Queued local mutations are replayed
first, then the complete local and remote record sets are compared by local
id and every difference is resolved in favour of the newer ``last_modified``.

Only one cycle runs at a time per engine. The in-progress flag is owned by the
engine instance and a watchdog force-clears it after ``timeout`` seconds so a
hung remote call cannot lock out future cycles.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, TypeVar

from db import LocalRecordStore, LocalStoreError
from vaultsync import conflicts
from vaultsync.kv_store import JsonKeyValueStore
from vaultsync.models import (
    EPOCH,
    CredentialRecord,
    ItemFailure,
    Operation,
    OperationKind,
    QuotaReport,
    RemoteRecord,
    SyncOutcome,
    SyncResult,
    SyncStatus,
    normalize_fields,
    parse_timestamp,
    utc_now_iso,
)
from vaultsync.operation_queue import OperationQueue
from vaultsync.quota import QuotaExceededError, QuotaLimitProvider, check_quota
from vaultsync.remote_store import (
    RemoteNotFoundError,
    RemotePermissionError,
    RemoteRecordStore,
    RemoteStoreError,
)

logger = logging.getLogger(__name__)

LAST_SYNC_KEY = "last_sync_time"
DEFAULT_BATCH_SIZE = 50
DEFAULT_SYNC_TIMEOUT = 30.0

T = TypeVar("T")

_UPLOAD = "upload"
_UPDATE_REMOTE = "update_remote"


def _batched(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _failure_from(exc: BaseException, local_id: Optional[int]) -> ItemFailure:
    if isinstance(exc, RemoteStoreError):
        return ItemFailure(kind=exc.kind, message=str(exc), local_id=local_id)
    return ItemFailure(kind="unexpected", message=repr(exc), local_id=local_id)


def _reraise_fatal(outcome: object) -> None:
    # gather(return_exceptions=True) hands back cancellation and interpreter exits too.
    if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
        raise outcome


def _document(fields: Dict[str, str], last_modified: Any, local_id: int) -> Dict[str, Any]:
    document: Dict[str, Any] = dict(fields)
    document["last_modified"] = last_modified
    document["local_id"] = local_id
    return document


@dataclass
class _CycleState:
    """Remote facts fetched lazily and shared by both phases of one cycle."""

    index: Optional[Dict[int, RemoteRecord]] = None
    count: int = 0
    limit: Optional[int] = None
    list_error: Optional[RemoteStoreError] = None
    quota: Optional[QuotaReport] = None
    created: int = 0
    failures: List[ItemFailure] = field(default_factory=list)


class ReconciliationEngine:
    """Bidirectional sync between a :class:`LocalRecordStore` and a remote store."""

    def __init__(
        self,
        local_store: LocalRecordStore,
        remote_store: Optional[RemoteRecordStore],
        queue: OperationQueue,
        limit_provider: QuotaLimitProvider,
        kv_store: JsonKeyValueStore,
        *,
        owner_id: str,
        enabled: bool = True,
        reachability: Optional[Callable[[], bool]] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        timeout: float = DEFAULT_SYNC_TIMEOUT,
    ) -> None:
        self._local = local_store
        self._remote = remote_store
        self._queue = queue
        self._limits = limit_provider
        self._kv_store = kv_store
        self._owner_id = owner_id
        self._enabled = enabled
        self._reachability = reachability
        self._batch_size = max(1, int(batch_size))
        self._timeout = float(timeout)
        self._in_progress = False
        self._generation = 0
        self._watchdog: Optional[asyncio.TimerHandle] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def enabled(self) -> bool:
        return self._enabled and bool(self._owner_id) and self._remote is not None

    def is_syncing(self) -> bool:
        return self._in_progress

    def is_online(self) -> bool:
        if self._reachability is None:
            return True
        try:
            return bool(self._reachability())
        except Exception:
            logger.exception("Reachability source raised an exception")
            return False

    def status(self) -> SyncStatus:
        return SyncStatus(
            is_online=self.is_online(),
            pending_operations=self._queue.pending_count(),
            is_syncing=self._in_progress,
            last_sync_time=self._kv_store.get(LAST_SYNC_KEY),
        )

    async def sync(self) -> SyncResult:
        """Run one reconciliation cycle unless one is already in progress."""

        if self._in_progress:
            logger.debug("Sync already in progress; skipping request")
            return SyncResult(outcome=SyncOutcome.SKIPPED, message="sync already in progress")

        blocked = self._precheck()
        if blocked is not None:
            return blocked

        token = self._acquire()
        try:
            result = await self._run_cycle()
        except LocalStoreError as exc:
            logger.error("Local store failure aborted the sync cycle: %s", exc)
            result = SyncResult(outcome=SyncOutcome.FAILED, message=str(exc))
        except Exception as exc:
            logger.exception("Sync cycle failed unexpectedly")
            result = SyncResult(outcome=SyncOutcome.FAILED, message=str(exc) or repr(exc))
        finally:
            self._release(token)

        logger.info(
            "Sync finished: %s uploaded=%d downloaded=%d updated_local=%d updated_remote=%d"
            " errors=%d retained=%d",
            result.outcome.value,
            result.uploaded,
            result.downloaded,
            result.updated_local,
            result.updated_remote,
            result.errors,
            result.retained,
        )
        return result

    # ------------------------------------------------------------------
    # Guard
    # ------------------------------------------------------------------
    def _precheck(self) -> Optional[SyncResult]:
        if not self._enabled:
            return SyncResult(outcome=SyncOutcome.DISABLED, message="cloud sync is disabled")
        if not self._owner_id:
            return SyncResult(outcome=SyncOutcome.DISABLED, message="no owner configured")
        if self._remote is None:
            return SyncResult(outcome=SyncOutcome.DISABLED, message="no remote store configured")
        if not self.is_online():
            return SyncResult(outcome=SyncOutcome.OFFLINE, message="network unreachable")
        return None

    def _acquire(self) -> int:
        self._generation += 1
        token = self._generation
        self._in_progress = True
        loop = asyncio.get_running_loop()
        self._watchdog = loop.call_later(self._timeout, self._force_release, token)
        return token

    def _release(self, token: int) -> None:
        if token != self._generation:
            return
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None
        self._in_progress = False

    def _force_release(self, token: int) -> None:
        if token != self._generation or not self._in_progress:
            return
        logger.warning("Sync cycle exceeded %.1f seconds; clearing in-progress flag", self._timeout)
        self._watchdog = None
        self._in_progress = False

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------
    async def _run_cycle(self) -> SyncResult:
        assert self._remote is not None
        result = SyncResult()
        state = _CycleState()

        async def replay(operation: Operation) -> None:
            await self._replay(operation, state)

        await self._gate_replayed_creates(state)
        report = await self._queue.drain(replay)
        result.uploaded += state.created
        result.drained = report.sent
        result.retained = report.retained
        result.failures.extend(report.failures)
        if report.permission_denied:
            result.outcome = SyncOutcome.PERMISSION_DENIED
            result.message = "remote store denied access while replaying queued changes"
            return result

        local_records = self._local.list()
        try:
            remote_records = await self._remote.list(self._owner_id)
        except RemotePermissionError as exc:
            result.failures.append(_failure_from(exc, None))
            result.outcome = SyncOutcome.PERMISSION_DENIED
            result.message = str(exc)
            return result
        except RemoteStoreError as exc:
            logger.info("Remote listing failed (%s); treating cycle as offline", exc)
            result.failures.append(_failure_from(exc, None))
            result.outcome = SyncOutcome.OFFLINE
            result.message = str(exc)
            return result

        local_map: Dict[int, CredentialRecord] = {record.id: record for record in local_records}
        remote_map: Dict[int, RemoteRecord] = {}
        unlinked: List[RemoteRecord] = []
        for remote in remote_records:
            if remote.local_id is None:
                unlinked.append(remote)
            elif remote.local_id in remote_map:
                logger.warning(
                    "Remote documents %s and %s share local id %s; ignoring the older one",
                    remote_map[remote.local_id].remote_id,
                    remote.remote_id,
                    remote.local_id,
                )
            else:
                remote_map[remote.local_id] = remote

        pending_deletes = self._queue.pending_delete_ids()
        downloads: List[RemoteRecord] = list(unlinked)
        update_local: List[Tuple[CredentialRecord, RemoteRecord]] = []
        update_remote: List[Tuple[CredentialRecord, RemoteRecord]] = []
        for local_id, remote in remote_map.items():
            local = local_map.get(local_id)
            if local is None:
                if local_id not in pending_deletes:
                    downloads.append(remote)
                continue
            remote_time = remote.effective_last_modified()
            local_time = local.modified_at()
            if remote_time > local_time:
                update_local.append((local, remote))
            elif local_time > remote_time:
                update_remote.append((local, remote))

        uploads = [record for record in local_records if record.id not in remote_map]

        quota_blocked = False
        if uploads:
            limit = await self._cycle_limit(state)
            current = len(remote_records)
            check = check_quota(current, len(uploads), limit)
            if not check.ok:
                quota_blocked = True
                result.quota = QuotaReport(
                    current=current, pending=len(uploads), limit=limit, exceeded=check.exceeded
                )
                logger.warning(
                    "Cloud record limit reached: %d stored + %d pending > %d; skipping uploads",
                    current,
                    len(uploads),
                    limit,
                )
                self._local.set_cloud_synced([record.id for record in uploads], False)
                uploads = []

        self._apply_update_local(update_local, result)
        await self._apply_downloads(downloads, result)
        await self._push(uploads, update_remote, result)

        self._kv_store.set(LAST_SYNC_KEY, utc_now_iso())

        if quota_blocked:
            result.outcome = SyncOutcome.QUOTA_EXCEEDED
            result.message = "cloud record limit reached"
        elif result.errors or result.retained:
            result.outcome = SyncOutcome.PARTIAL
        else:
            result.outcome = SyncOutcome.COMPLETED
        return result

    # ------------------------------------------------------------------
    # Queue replay
    # ------------------------------------------------------------------
    async def _replay(self, operation: Operation, state: _CycleState) -> None:
        local_id = operation.local_id
        if local_id is None:
            logger.warning("Dropping queued %s without a record id", operation.op_id)
            return

        index = await self._remote_index(state)
        existing = index.get(local_id)

        if operation.kind == OperationKind.DELETE:
            if existing is None:
                return
            try:
                await self._remote.delete(self._owner_id, existing.remote_id)
            except RemoteNotFoundError:
                logger.debug("Remote copy of %s already deleted", local_id)
            index.pop(local_id, None)
            state.count = max(0, state.count - 1)
            return

        if self._local.get(local_id) is None:
            # Deleted locally since; the queued delete or the full diff settles it.
            return

        fields = normalize_fields(operation.payload.get("fields") or {})
        last_modified = operation.payload.get("last_modified")
        document = _document(fields, last_modified, local_id)

        if existing is not None:
            queued_time = parse_timestamp(last_modified) or EPOCH
            if existing.effective_last_modified() >= queued_time:
                return
            await self._remote.update(self._owner_id, existing.remote_id, document)
            remote_id = existing.remote_id
        else:
            limit = await self._cycle_limit(state)
            if state.quota is not None or state.count >= limit:
                raise QuotaExceededError(
                    f"Cloud record limit {limit} reached; keeping record {local_id} queued"
                )
            remote_id = await self._remote.create(self._owner_id, document)
            state.count += 1
            state.created += 1

        index[local_id] = RemoteRecord(
            remote_id=remote_id, local_id=local_id, last_modified=last_modified, **fields
        )
        self._local.set_cloud_synced([local_id], True)

    async def _gate_replayed_creates(self, state: _CycleState) -> None:
        """Check the quota once for every upload this cycle before the drain creates any."""

        queued = {
            operation.local_id
            for operation in self._queue.pending()
            if operation.kind != OperationKind.DELETE and operation.local_id is not None
        }
        if not queued:
            return
        try:
            index = await self._remote_index(state)
        except RemoteStoreError:
            # Cached on the state; each replay reports it.
            return
        if queued.issubset(index):
            return

        missing = [record.id for record in self._local.list() if record.id not in index]
        limit = await self._cycle_limit(state)
        check = check_quota(state.count, len(missing), limit)
        if not check.ok:
            state.quota = QuotaReport(
                current=state.count, pending=len(missing), limit=limit, exceeded=check.exceeded
            )
            logger.warning(
                "Cloud record limit reached: %d stored + %d pending > %d; holding queued adds",
                state.count,
                len(missing),
                limit,
            )

    async def _remote_index(self, state: _CycleState) -> Dict[int, RemoteRecord]:
        if state.index is not None:
            return state.index
        if state.list_error is not None:
            raise state.list_error
        try:
            records = await self._remote.list(self._owner_id)
        except RemoteStoreError as exc:
            state.list_error = exc
            raise
        index: Dict[int, RemoteRecord] = {}
        for record in records:
            if record.local_id is not None and record.local_id not in index:
                index[record.local_id] = record
        state.index = index
        state.count = len(records)
        return index

    async def _cycle_limit(self, state: _CycleState) -> int:
        if state.limit is None:
            state.limit = await self._limits.current_limit()
        return state.limit

    # ------------------------------------------------------------------
    # Apply phases
    # ------------------------------------------------------------------
    def _apply_update_local(
        self, pairs: List[Tuple[CredentialRecord, RemoteRecord]], result: SyncResult
    ) -> None:
        for local, remote in pairs:
            incoming = remote.fields()
            diffs = conflicts.diff_fields(local.fields(), incoming)
            self._local.upsert(local.id, incoming, remote.effective_last_modified_iso())
            conflicts.record(
                local.id,
                diffs,
                winner="remote",
                context={"local_modified": local.last_modified, "remote_id": remote.remote_id},
            )
            result.updated_local += 1

    async def _apply_downloads(self, downloads: List[RemoteRecord], result: SyncResult) -> None:
        for batch in _batched(downloads, self._batch_size):
            created: List[Tuple[RemoteRecord, int]] = []
            try:
                for remote in batch:
                    new_id = self._local.insert_downloaded(
                        remote.fields(), remote.effective_last_modified_iso()
                    )
                    created.append((remote, new_id))
            except BaseException:
                # Rows that will never be linked would be uploaded as duplicates.
                for _remote, new_id in created:
                    try:
                        self._local.discard(new_id)
                    except LocalStoreError:
                        logger.exception("Could not roll back downloaded record %s", new_id)
                raise

            outcomes = await asyncio.gather(
                *(
                    self._remote.link_local_id(self._owner_id, remote.remote_id, new_id)
                    for remote, new_id in created
                ),
                return_exceptions=True,
            )
            for (remote, new_id), outcome in zip(created, outcomes):
                _reraise_fatal(outcome)
                if isinstance(outcome, Exception):
                    # An unlinked copy would be uploaded again next cycle.
                    self._local.discard(new_id)
                    self._record_failure(outcome, None, result, f"link {remote.remote_id}")
                else:
                    result.downloaded += 1

    async def _push(
        self,
        uploads: List[CredentialRecord],
        update_remote: List[Tuple[CredentialRecord, RemoteRecord]],
        result: SyncResult,
    ) -> None:
        jobs: List[Tuple[str, CredentialRecord, Optional[RemoteRecord]]] = [
            (_UPLOAD, record, None) for record in uploads
        ]
        jobs.extend((_UPDATE_REMOTE, local, remote) for local, remote in update_remote)

        for batch in _batched(jobs, self._batch_size):
            outcomes = await asyncio.gather(
                *(self._push_one(kind, local, remote) for kind, local, remote in batch),
                return_exceptions=True,
            )
            synced: List[int] = []
            for (kind, local, remote), outcome in zip(batch, outcomes):
                _reraise_fatal(outcome)
                if isinstance(outcome, Exception):
                    self._record_failure(outcome, local.id, result, kind)
                    continue
                synced.append(local.id)
                if kind == _UPLOAD:
                    result.uploaded += 1
                else:
                    assert remote is not None
                    conflicts.record(
                        local.id,
                        conflicts.diff_fields(local.fields(), remote.fields()),
                        winner="local",
                        context={
                            "remote_modified": remote.effective_last_modified_iso(),
                            "remote_id": remote.remote_id,
                        },
                    )
                    result.updated_remote += 1
            self._local.set_cloud_synced(synced, True)

    async def _push_one(
        self, kind: str, local: CredentialRecord, remote: Optional[RemoteRecord]
    ) -> None:
        document = _document(local.fields(), local.last_modified, local.id)
        if kind == _UPLOAD:
            await self._remote.create(self._owner_id, document)
        else:
            assert remote is not None
            await self._remote.update(self._owner_id, remote.remote_id, document)

    def _record_failure(
        self, exc: Exception, local_id: Optional[int], result: SyncResult, action: str
    ) -> None:
        failure = _failure_from(exc, local_id)
        result.failures.append(failure)
        result.errors += 1
        if isinstance(exc, RemoteStoreError):
            logger.info("%s failed for record %s: %s", action, local_id, exc)
        else:
            logger.error("%s failed for record %s", action, local_id, exc_info=exc)


# ---------------------------------------------------------------------------
# Trigger funnel
# ---------------------------------------------------------------------------

class SyncTrigger(str, Enum):
    STARTUP = "startup"
    REACHABILITY = "reachability"
    MUTATION = "mutation"
    MANUAL = "manual"


_STOP = object()

ResultCallback = Callable[[SyncResult], None]


class SyncCoordinator:
    """Single consumer that turns sync requests from any source into engine cycles.

    Requests that arrive while a cycle runs are coalesced into one follow-up
    cycle, so a burst of mutations costs at most one extra sync.
    """

    def __init__(self, engine: ReconciliationEngine, *, on_result: Optional[ResultCallback] = None) -> None:
        self._engine = engine
        self._on_result = on_result
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self.last_result: Optional[SyncResult] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def request(self, trigger: SyncTrigger = SyncTrigger.MANUAL) -> bool:
        """Queue a sync request; returns ``False`` when the coordinator is not running."""

        if self._queue is None or not self.running:
            logger.debug("Sync request (%s) dropped; coordinator not running", trigger.value)
            return False
        self._queue.put_nowait(trigger)
        return True

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._queue is None or self._task is None:
            return
        self._queue.put_nowait(_STOP)
        try:
            await self._task
        finally:
            self._task = None
            self._queue = None

    async def run_until_idle(self) -> None:
        """Wait until every queued request has been handled."""

        if self._queue is not None:
            await self._queue.join()

    async def _run(self) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            items = [await queue.get()]
            while not queue.empty():
                items.append(queue.get_nowait())

            stop = any(item is _STOP for item in items)
            triggers = [item for item in items if item is not _STOP]
            try:
                if triggers:
                    logger.debug(
                        "Running sync for %s", ", ".join(sorted({t.value for t in triggers}))
                    )
                    await self._sync_once()
            finally:
                for _ in items:
                    queue.task_done()
            if stop:
                return

    async def _sync_once(self) -> None:
        result = await self._engine.sync()
        self.last_result = result
        if self._on_result is None:
            return
        try:
            self._on_result(result)
        except Exception:
            logger.exception("Sync result callback raised an exception")


__all__ = [
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_SYNC_TIMEOUT",
    "LAST_SYNC_KEY",
    "ReconciliationEngine",
    "SyncCoordinator",
    "SyncTrigger",
]
