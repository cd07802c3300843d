import asyncio
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import db
from vaultsync import conflicts
from vaultsync.engine import LAST_SYNC_KEY, ReconciliationEngine
from vaultsync.kv_store import JsonKeyValueStore
from vaultsync.models import Operation, OperationKind, QuotaReport, RemoteRecord, SyncOutcome
from vaultsync.operation_queue import OperationQueue
from vaultsync.quota import QuotaLimitProvider
from vaultsync.remote_store import RemoteNetworkError, RemotePermissionError

from fakes import FakeRemoteConfig, FakeRemoteStore

OWNER = "owner-1"
T1 = "2024-03-01T10:00:00.000Z"
T2 = "2024-03-02T10:00:00.000Z"


def _make_engine(
    tmp_path: Path,
    remote: Optional[FakeRemoteStore] = None,
    *,
    limit: Optional[int] = None,
    local_store: Optional[db.LocalRecordStore] = None,
    **options,
) -> Tuple[ReconciliationEngine, FakeRemoteStore, OperationQueue, JsonKeyValueStore]:
    kv_store = JsonKeyValueStore(tmp_path / "state.json")
    queue = OperationQueue(kv_store)
    remote = remote if remote is not None else FakeRemoteStore()
    provider = QuotaLimitProvider(FakeRemoteConfig(limit), kv_store)
    engine = ReconciliationEngine(
        local_store or db.LocalRecordStore(),
        remote,
        queue,
        provider,
        kv_store,
        owner_id=OWNER,
        **options,
    )
    return engine, remote, queue, kv_store


def _fields(site: str, secret: str = "cipher") -> Dict[str, str]:
    return {"site_name": site, "username": f"{site}-user", "encrypted_secret": secret, "comments": ""}


def _content(fields: Dict[str, str]) -> Tuple[str, str, str, str]:
    return (fields["site_name"], fields["username"], fields["encrypted_secret"], fields["comments"])


def _local_content() -> List[Tuple[str, str, str, str]]:
    return sorted(_content(record.fields()) for record in db.list_credentials())


def _remote_content(remote: FakeRemoteStore) -> List[Tuple[str, str, str, str]]:
    return sorted(_content(record.fields()) for record in remote.snapshot(OWNER))


def _remote_by_local_id(remote: FakeRemoteStore) -> Dict[int, RemoteRecord]:
    return {record.local_id: record for record in remote.snapshot(OWNER) if record.local_id is not None}


# ---------------------------------------------------------------------------
# Convergence and idempotence
# ---------------------------------------------------------------------------

def test_disjoint_sets_converge(local_db: Path, tmp_path: Path) -> None:
    engine, remote, _queue, kv_store = _make_engine(tmp_path)
    db.add_credential(_fields("local-a"))
    db.add_credential(_fields("local-b"))
    remote.seed(OWNER, {**_fields("remote-c"), "last_modified": T1})
    remote.seed(OWNER, {**_fields("remote-d"), "last_modified": T2})

    result = asyncio.run(engine.sync())

    assert result.outcome == SyncOutcome.COMPLETED
    assert result.uploaded == 2
    assert result.downloaded == 2
    assert _local_content() == _remote_content(remote)
    assert len(_local_content()) == 4
    linked = _remote_by_local_id(remote)
    assert sorted(linked) == sorted(record.id for record in db.list_credentials())
    assert all(record.cloud_synced for record in db.list_credentials())
    assert kv_store.get(LAST_SYNC_KEY)


def test_second_sync_is_a_no_op(local_db: Path, tmp_path: Path) -> None:
    engine, remote, _queue, _kv = _make_engine(tmp_path)
    db.add_credential(_fields("local-a"))
    remote.seed(OWNER, {**_fields("remote-b"), "last_modified": T1})

    asyncio.run(engine.sync())
    second = asyncio.run(engine.sync())

    assert second.outcome == SyncOutcome.COMPLETED
    assert second.counts() == {
        "uploaded": 0,
        "downloaded": 0,
        "updated_local": 0,
        "updated_remote": 0,
        "errors": 0,
    }
    assert remote.count(OWNER) == 2
    assert db.count_credentials() == 2


# ---------------------------------------------------------------------------
# Last-write-wins
# ---------------------------------------------------------------------------

def _linked_pair(remote: FakeRemoteStore, local_stamp: str, remote_stamp: str) -> Tuple[int, str]:
    db.upsert_credential(1, _fields("mail", "local-secret"), local_stamp)
    remote_id = remote.seed(
        OWNER, {**_fields("mail", "remote-secret"), "local_id": 1, "last_modified": remote_stamp}
    )
    return 1, remote_id


def test_newer_remote_overwrites_local(local_db: Path, tmp_path: Path) -> None:
    engine, remote, _queue, _kv = _make_engine(tmp_path)
    record_id, remote_id = _linked_pair(remote, T1, T2)

    result = asyncio.run(engine.sync())

    assert result.updated_local == 1
    assert result.updated_remote == 0
    record = db.fetch_credential(record_id)
    assert record is not None
    assert record.encrypted_secret == "remote-secret"
    assert record.last_modified == T2
    assert remote.get(OWNER, remote_id).encrypted_secret == "remote-secret"

    entry = conflicts.recent(1)[0]
    assert entry["winner"] == "remote"
    assert entry["fields"] == {"encrypted_secret": ["<changed>", "<changed>"]}


def test_newer_local_overwrites_remote(local_db: Path, tmp_path: Path) -> None:
    engine, remote, _queue, _kv = _make_engine(tmp_path)
    record_id, remote_id = _linked_pair(remote, T2, T1)

    result = asyncio.run(engine.sync())

    assert result.updated_remote == 1
    assert result.updated_local == 0
    stored = remote.get(OWNER, remote_id)
    assert stored.encrypted_secret == "local-secret"
    assert stored.last_modified == T2
    assert db.fetch_credential(record_id).encrypted_secret == "local-secret"
    assert conflicts.recent(1)[0]["winner"] == "local"


def test_equal_timestamps_transfer_nothing(local_db: Path, tmp_path: Path) -> None:
    engine, remote, _queue, _kv = _make_engine(tmp_path)
    record_id, remote_id = _linked_pair(remote, T1, T1)

    result = asyncio.run(engine.sync())

    assert result.total == 0
    assert db.fetch_credential(record_id).encrypted_secret == "local-secret"
    assert remote.get(OWNER, remote_id).encrypted_secret == "remote-secret"
    assert "update" not in remote.calls


def test_remote_without_last_modified_falls_back_to_updated_at(local_db: Path, tmp_path: Path) -> None:
    engine, remote, _queue, _kv = _make_engine(tmp_path)
    db.upsert_credential(1, _fields("mail", "local-secret"), T1)
    remote.seed(
        OWNER,
        {**_fields("mail", "remote-secret"), "local_id": 1, "updated_at": T2, "created_at": T1},
    )

    result = asyncio.run(engine.sync())

    assert result.updated_local == 1
    assert db.fetch_credential(1).encrypted_secret == "remote-secret"


# ---------------------------------------------------------------------------
# Downloads and linkage
# ---------------------------------------------------------------------------

def test_download_links_without_touching_remote_timestamps(local_db: Path, tmp_path: Path) -> None:
    engine, remote, _queue, _kv = _make_engine(tmp_path)
    remote_id = remote.seed(
        OWNER,
        {**_fields("shop"), "last_modified": T1, "created_at": T1, "updated_at": T1},
    )

    result = asyncio.run(engine.sync())

    assert result.downloaded == 1
    records = db.list_credentials()
    assert len(records) == 1
    stored = remote.get(OWNER, remote_id)
    assert stored.local_id == records[0].id
    assert stored.last_modified == T1
    assert stored.updated_at == T1
    assert records[0].last_modified == T1
    assert remote.count(OWNER) == 1


def test_failed_link_discards_download_and_retries(local_db: Path, tmp_path: Path) -> None:
    engine, remote, _queue, _kv = _make_engine(tmp_path)
    remote_id = remote.seed(OWNER, {**_fields("shop"), "last_modified": T1})
    remote.fail_next["link_local_id"] = [RemoteNetworkError("timeout")]

    first = asyncio.run(engine.sync())

    assert first.outcome == SyncOutcome.PARTIAL
    assert first.downloaded == 0
    assert first.errors == 1
    assert db.count_credentials() == 0
    assert remote.count(OWNER) == 1

    second = asyncio.run(engine.sync())

    assert second.downloaded == 1
    assert second.uploaded == 0
    records = db.list_credentials()
    assert len(records) == 1
    assert remote.get(OWNER, remote_id).local_id == records[0].id
    assert remote.count(OWNER) == 1


class _FailingSecondInsertStore(db.LocalRecordStore):
    def __init__(self) -> None:
        self.inserts = 0

    def insert_downloaded(self, fields, last_modified):
        self.inserts += 1
        if self.inserts == 2:
            raise db.LocalStoreError("database is locked")
        return super().insert_downloaded(fields, last_modified)


def test_partial_download_failure_leaves_no_orphan_rows(local_db: Path, tmp_path: Path) -> None:
    engine, remote, _queue, _kv = _make_engine(tmp_path, local_store=_FailingSecondInsertStore())
    remote.seed(OWNER, {**_fields("a"), "last_modified": T1})
    remote.seed(OWNER, {**_fields("b"), "last_modified": T1})

    first = asyncio.run(engine.sync())

    assert first.outcome == SyncOutcome.FAILED
    assert db.count_credentials() == 0
    assert "link_local_id" not in remote.calls

    second = asyncio.run(engine.sync())

    assert second.outcome == SyncOutcome.COMPLETED
    assert second.uploaded == 0
    assert second.downloaded == 2
    assert remote.count(OWNER) == 2
    assert _local_content() == _remote_content(remote)
    assert all(record.local_id is not None for record in remote.snapshot(OWNER))


def test_duplicate_remote_local_ids_are_not_downloaded_twice(local_db: Path, tmp_path: Path) -> None:
    engine, remote, _queue, _kv = _make_engine(tmp_path)
    db.upsert_credential(1, _fields("mail"), T1)
    remote.seed(OWNER, {**_fields("mail"), "local_id": 1, "last_modified": T1})
    remote.seed(OWNER, {**_fields("mail"), "local_id": 1, "last_modified": T1})

    result = asyncio.run(engine.sync())

    assert result.total == 0
    assert db.count_credentials() == 1


# ---------------------------------------------------------------------------
# Quota
# ---------------------------------------------------------------------------

def test_quota_blocks_uploads_but_not_downloads(local_db: Path, tmp_path: Path) -> None:
    engine, remote, _queue, _kv = _make_engine(tmp_path, limit=50)
    for index in range(5):
        db.add_credential(_fields(f"local-{index}"))
    for index in range(48):
        remote.seed(OWNER, {**_fields(f"remote-{index}"), "last_modified": T1})

    result = asyncio.run(engine.sync())

    assert result.outcome == SyncOutcome.QUOTA_EXCEEDED
    assert result.quota == QuotaReport(current=48, pending=5, limit=50, exceeded=3)
    assert result.uploaded == 0
    assert result.downloaded == 48
    assert "create" not in remote.calls
    assert remote.count(OWNER) == 48
    assert db.count_credentials() == 53
    unsynced = [record for record in db.list_credentials() if not record.cloud_synced]
    assert sorted(record.site_name for record in unsynced) == [f"local-{index}" for index in range(5)]


def test_uploads_fit_under_limit(local_db: Path, tmp_path: Path) -> None:
    engine, remote, _queue, _kv = _make_engine(tmp_path, limit=3)
    for index in range(3):
        db.add_credential(_fields(f"local-{index}"))

    result = asyncio.run(engine.sync())

    assert result.outcome == SyncOutcome.COMPLETED
    assert result.uploaded == 3
    assert result.quota is None


# ---------------------------------------------------------------------------
# Queue replay
# ---------------------------------------------------------------------------

def _queue_record(queue: OperationQueue, kind: OperationKind, record_id: int) -> Operation:
    record = db.fetch_credential(record_id)
    payload = {"id": record_id}
    if record is not None:
        payload.update({"fields": record.fields(), "last_modified": record.last_modified})
    operation = Operation(kind=kind, payload=payload)
    queue.enqueue(operation)
    return operation


def test_replayed_add_is_not_uploaded_twice(local_db: Path, tmp_path: Path) -> None:
    engine, remote, queue, _kv = _make_engine(tmp_path)
    record_id = db.add_credential(_fields("mail"))
    _queue_record(queue, OperationKind.ADD, record_id)

    result = asyncio.run(engine.sync())

    assert result.drained == 1
    assert result.uploaded == 1
    assert queue.pending_count() == 0
    assert remote.count(OWNER) == 1
    assert _remote_by_local_id(remote)[record_id].site_name == "mail"
    assert db.fetch_credential(record_id).cloud_synced is True


def test_replayed_add_after_diff_upload_updates_instead_of_creating(local_db: Path, tmp_path: Path) -> None:
    engine, remote, queue, _kv = _make_engine(tmp_path)
    record_id = db.add_credential(_fields("mail"))
    asyncio.run(engine.sync())
    _queue_record(queue, OperationKind.ADD, record_id)

    result = asyncio.run(engine.sync())

    assert result.drained == 1
    assert remote.count(OWNER) == 1
    assert remote.calls.count("create") == 1


def test_replayed_edit_skips_older_change(local_db: Path, tmp_path: Path) -> None:
    engine, remote, queue, _kv = _make_engine(tmp_path)
    db.upsert_credential(1, _fields("mail", "queued-secret"), T1)
    remote_id = remote.seed(OWNER, {**_fields("mail", "newer-secret"), "local_id": 1, "last_modified": T2})
    _queue_record(queue, OperationKind.EDIT, 1)

    result = asyncio.run(engine.sync())

    assert result.drained == 1
    assert remote.get(OWNER, remote_id).encrypted_secret == "newer-secret"
    assert result.updated_local == 1
    assert db.fetch_credential(1).encrypted_secret == "newer-secret"


def test_replayed_delete_removes_remote_copy(local_db: Path, tmp_path: Path) -> None:
    engine, remote, queue, _kv = _make_engine(tmp_path)
    record_id = db.add_credential(_fields("mail"))
    asyncio.run(engine.sync())
    db.delete_credential(record_id)
    _queue_record(queue, OperationKind.DELETE, record_id)

    result = asyncio.run(engine.sync())

    assert result.outcome == SyncOutcome.COMPLETED
    assert remote.count(OWNER) == 0
    assert db.count_credentials() == 0


def test_delete_of_absent_remote_counts_as_applied(local_db: Path, tmp_path: Path) -> None:
    engine, remote, queue, _kv = _make_engine(tmp_path)
    queue.enqueue(Operation(kind=OperationKind.DELETE, payload={"id": 42}))

    result = asyncio.run(engine.sync())

    assert result.drained == 1
    assert queue.pending_count() == 0
    assert "delete" not in remote.calls


def test_pending_delete_prevents_download(local_db: Path, tmp_path: Path) -> None:
    engine, remote, queue, _kv = _make_engine(tmp_path)
    record_id = db.add_credential(_fields("mail"))
    asyncio.run(engine.sync())
    db.delete_credential(record_id)
    _queue_record(queue, OperationKind.DELETE, record_id)
    remote.fail_next["delete"] = [RemoteNetworkError("timeout")]

    result = asyncio.run(engine.sync())

    assert result.outcome == SyncOutcome.PARTIAL
    assert result.retained == 1
    assert result.downloaded == 0
    assert db.count_credentials() == 0
    assert remote.count(OWNER) == 1

    retry = asyncio.run(engine.sync())

    assert retry.outcome == SyncOutcome.COMPLETED
    assert remote.count(OWNER) == 0


def test_add_replay_respects_quota(local_db: Path, tmp_path: Path) -> None:
    engine, remote, queue, _kv = _make_engine(tmp_path, limit=0)
    record_id = db.add_credential(_fields("mail"))
    _queue_record(queue, OperationKind.ADD, record_id)

    result = asyncio.run(engine.sync())

    assert result.outcome == SyncOutcome.QUOTA_EXCEEDED
    assert result.retained == 1
    assert result.failures[0].kind == "quota"
    assert queue.pending_count() == 1
    assert remote.count(OWNER) == 0


def test_permission_error_during_replay_stops_cycle(local_db: Path, tmp_path: Path) -> None:
    engine, remote, queue, _kv = _make_engine(tmp_path)
    record_id = db.add_credential(_fields("mail"))
    _queue_record(queue, OperationKind.ADD, record_id)
    remote.fail_next["list"] = [RemotePermissionError("denied")]

    result = asyncio.run(engine.sync())

    assert result.outcome == SyncOutcome.PERMISSION_DENIED
    assert queue.pending_count() == 1
    assert remote.count(OWNER) == 0
    assert not engine.is_syncing()


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------

def test_upload_failure_does_not_abort_siblings(local_db: Path, tmp_path: Path) -> None:
    engine, remote, _queue, _kv = _make_engine(tmp_path, batch_size=2)
    ids = [db.add_credential(_fields(f"site-{index}")) for index in range(5)]
    remote.fail_next["create"] = [RemoteNetworkError("reset")]

    result = asyncio.run(engine.sync())

    assert result.outcome == SyncOutcome.PARTIAL
    assert result.uploaded == 4
    assert result.errors == 1
    assert result.failures[0].kind == "network"
    assert result.failures[0].local_id == ids[0]
    assert db.fetch_credential(ids[0]).cloud_synced is False
    assert remote.count(OWNER) == 4

    retry = asyncio.run(engine.sync())
    assert retry.uploaded == 1
    assert remote.count(OWNER) == 5


def test_network_error_while_listing_reports_offline(local_db: Path, tmp_path: Path) -> None:
    engine, remote, _queue, kv_store = _make_engine(tmp_path)
    db.add_credential(_fields("mail"))
    remote.fail_next["list"] = [RemoteNetworkError("unreachable")]

    result = asyncio.run(engine.sync())

    assert result.outcome == SyncOutcome.OFFLINE
    assert remote.count(OWNER) == 0
    assert kv_store.get(LAST_SYNC_KEY) is None


class _BrokenLocalStore(db.LocalRecordStore):
    def list(self):
        raise db.LocalStoreError("disk I/O error")


def test_local_store_failure_aborts_cycle_and_clears_guard(local_db: Path, tmp_path: Path) -> None:
    engine, _remote, _queue, _kv = _make_engine(tmp_path, local_store=_BrokenLocalStore())

    result = asyncio.run(engine.sync())

    assert result.outcome == SyncOutcome.FAILED
    assert "disk I/O error" in result.message
    assert not engine.is_syncing()


def test_disabled_engine_touches_nothing(local_db: Path, tmp_path: Path) -> None:
    engine, remote, _queue, _kv = _make_engine(tmp_path, enabled=False)
    db.add_credential(_fields("mail"))

    assert asyncio.run(engine.sync()).outcome == SyncOutcome.DISABLED
    assert remote.calls == []


def test_unreachable_network_skips_cycle(local_db: Path, tmp_path: Path) -> None:
    engine, remote, _queue, _kv = _make_engine(tmp_path, reachability=lambda: False)

    result = asyncio.run(engine.sync())

    assert result.outcome == SyncOutcome.OFFLINE
    assert remote.calls == []
    assert engine.status().is_online is False


# ---------------------------------------------------------------------------
# Re-entrancy guard
# ---------------------------------------------------------------------------

class _HangingRemote(FakeRemoteStore):
    """Blocks the first ``list`` call until ``release`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.release: Optional[asyncio.Event] = None
        self.hang = True

    async def list(self, owner_id: str):
        if self.hang:
            self.hang = False
            assert self.release is not None
            await self.release.wait()
        return await super().list(owner_id)


def test_concurrent_sync_is_skipped_until_watchdog_clears(local_db: Path, tmp_path: Path) -> None:
    remote = _HangingRemote()
    engine, _remote, _queue, _kv = _make_engine(tmp_path, remote, timeout=0.05)
    db.add_credential(_fields("mail"))

    async def scenario() -> None:
        remote.release = asyncio.Event()
        first = asyncio.create_task(engine.sync())
        await asyncio.sleep(0.01)
        assert engine.is_syncing()
        assert engine.status().is_syncing is True

        skipped = await engine.sync()
        assert skipped.outcome == SyncOutcome.SKIPPED
        assert remote.calls == []

        await asyncio.sleep(0.1)
        assert not engine.is_syncing()

        second = await engine.sync()
        assert second.outcome == SyncOutcome.COMPLETED
        assert second.uploaded == 1

        remote.release.set()
        await first
        assert not engine.is_syncing()

    asyncio.run(scenario())


def test_status_reports_queue_and_last_sync(local_db: Path, tmp_path: Path) -> None:
    engine, _remote, queue, _kv = _make_engine(tmp_path)
    queue.enqueue(Operation(kind=OperationKind.DELETE, payload={"id": 3}))

    before = engine.status()
    assert before.pending_operations == 1
    assert before.last_sync_time is None
    assert before.is_online is True

    asyncio.run(engine.sync())

    after = engine.status()
    assert after.pending_operations == 0
    assert after.last_sync_time is not None
    assert after.is_syncing is False
