"""User-facing credential operations wired to the sync machinery.

Local mutations are committed first, then queued for the remote store and a
sync is requested from the coordinator. Nothing here waits on the network
except :meth:`VaultService.sync_now`.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, List, Mapping, Optional

from db import LocalRecordStore
from settings import SyncSettings
from vaultsync.connectivity import ConnectivityMonitor, socket_probe
from vaultsync.engine import ReconciliationEngine, SyncCoordinator, SyncTrigger
from vaultsync.kv_store import JsonKeyValueStore
from vaultsync.models import (
    CredentialRecord,
    Operation,
    OperationKind,
    SyncOutcome,
    SyncResult,
    SyncStatus,
)
from vaultsync.operation_queue import OperationQueue
from vaultsync.quota import QuotaLimitProvider
from vaultsync.remote_store import RemoteStoreError
from vaultsync.sheets_store import SheetsRemoteConfig, SheetsRemoteStore

logger = logging.getLogger(__name__)


class VaultService:
    """Add, edit and delete credentials while keeping the cloud mirror in step."""

    def __init__(
        self,
        local_store: LocalRecordStore,
        queue: OperationQueue,
        engine: Optional[ReconciliationEngine] = None,
        coordinator: Optional[SyncCoordinator] = None,
        monitor: Optional[ConnectivityMonitor] = None,
    ) -> None:
        self.local_store = local_store
        self.queue = queue
        self.engine = engine
        self.coordinator = coordinator
        self.monitor = monitor

    @property
    def sync_enabled(self) -> bool:
        return self.engine is not None and self.engine.enabled

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def add(self, fields: Mapping[str, Any]) -> int:
        record_id = self.local_store.add(fields)
        self._enqueue(OperationKind.ADD, self.local_store.get(record_id))
        return record_id

    def edit(self, record_id: int, fields: Mapping[str, Any]) -> str:
        """Update ``record_id``; raises :class:`KeyError` when it does not exist."""

        last_modified = self.local_store.update(record_id, fields)
        self._enqueue(OperationKind.EDIT, self.local_store.get(record_id))
        return last_modified

    def delete(self, record_id: int) -> None:
        if self.local_store.get(record_id) is None:
            raise KeyError(record_id)
        self.local_store.delete(record_id)
        if self.sync_enabled:
            self.queue.enqueue(Operation(kind=OperationKind.DELETE, payload={"id": record_id}))
            self._request(SyncTrigger.MUTATION)

    def list(self) -> List[CredentialRecord]:
        return self.local_store.list()

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------
    async def sync_now(self) -> SyncResult:
        if self.engine is None:
            return SyncResult(outcome=SyncOutcome.DISABLED, message="cloud sync is not configured")
        if self.monitor is not None:
            await self.monitor.poll_once()
        return await self.engine.sync()

    def status(self) -> SyncStatus:
        if self.engine is None:
            return SyncStatus(
                is_online=False,
                pending_operations=self.queue.pending_count(),
                is_syncing=False,
                last_sync_time=None,
            )
        return self.engine.status()

    async def start(self) -> None:
        """Start the coordinator, then the monitor whose first poll requests a sync."""

        if self.coordinator is not None:
            await self.coordinator.start()
        if self.monitor is not None:
            await self.monitor.start()

    async def stop(self) -> None:
        if self.monitor is not None:
            await self.monitor.stop()
        if self.coordinator is not None:
            await self.coordinator.stop()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _enqueue(self, kind: OperationKind, record: Optional[CredentialRecord]) -> None:
        if record is None or not self.sync_enabled:
            return
        operation = Operation(
            kind=kind,
            payload={
                "id": record.id,
                "fields": record.fields(),
                "last_modified": record.last_modified,
            },
        )
        self.queue.enqueue(operation)
        self._request(SyncTrigger.MUTATION)

    def _request(self, trigger: SyncTrigger) -> None:
        if self.coordinator is not None:
            self.coordinator.request(trigger)


def build_vault(settings: SyncSettings, *, kv_store: Optional[JsonKeyValueStore] = None) -> VaultService:
    """Assemble a :class:`VaultService` from persisted settings."""

    kv_store = kv_store or JsonKeyValueStore()
    local_store = LocalRecordStore()
    queue = OperationQueue(kv_store)

    remote_store: Optional[SheetsRemoteStore] = None
    config_service: Optional[SheetsRemoteConfig] = None
    if settings.cloud_sync_enabled and settings.spreadsheet_id:
        credential_path = Path(settings.credential_path) if settings.credential_path else None
        try:
            remote_store = SheetsRemoteStore(
                settings.spreadsheet_id,
                worksheet_title=settings.records_tab,
                credential_path=credential_path,
            )
            config_service = SheetsRemoteConfig(
                settings.spreadsheet_id,
                worksheet_title=settings.config_tab,
                credential_path=credential_path,
            )
        except RemoteStoreError as exc:
            logger.warning("Cloud sync unavailable: %s", exc)
            remote_store = None
            config_service = None

    limit_provider = QuotaLimitProvider(
        config_service, kv_store, default_limit=settings.default_record_limit
    )

    monitor = ConnectivityMonitor(
        socket_probe(settings.probe_host, settings.probe_port),
        on_online=lambda: coordinator.request(SyncTrigger.REACHABILITY),
        interval=float(settings.poll_interval_seconds),
    )
    engine = ReconciliationEngine(
        local_store,
        remote_store,
        queue,
        limit_provider,
        kv_store,
        owner_id=settings.owner_id,
        enabled=settings.cloud_sync_enabled,
        reachability=monitor.is_online,
        batch_size=settings.batch_size,
        timeout=float(settings.sync_timeout_seconds),
    )
    coordinator = SyncCoordinator(engine)
    return VaultService(local_store, queue, engine, coordinator, monitor)


__all__ = ["VaultService", "build_vault"]
