"""Remote document store interface used by the sync engine.

Every remote call is a coroutine scoped by an opaque ``owner_id``. Failures
are raised as subclasses of :class:`RemoteStoreError` so the engine can tag
them per item (transient network trouble versus permission problems) without
ever treating them as fatal.
"""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Protocol

from vaultsync.models import RECORD_FIELDS, RemoteRecord, normalize_timestamp


class RemoteStoreError(RuntimeError):
    """Base error raised for remote store failures."""

    kind = "remote"


class RemoteNetworkError(RemoteStoreError):
    """Transient failure: timeout, unreachable host, 5xx response."""

    kind = "network"


class RemotePermissionError(RemoteStoreError):
    """The owner is not authorised for the requested document or collection."""

    kind = "permission"


class RemoteNotFoundError(RemoteStoreError):
    """The referenced remote document does not exist."""

    kind = "not_found"


class RemoteRecordStore(Protocol):
    async def create(self, owner_id: str, fields: Mapping[str, Any]) -> str: ...

    async def update(self, owner_id: str, remote_id: str, fields: Mapping[str, Any]) -> None: ...

    async def delete(self, owner_id: str, remote_id: str) -> None: ...

    async def list(self, owner_id: str) -> List[RemoteRecord]: ...

    async def link_local_id(self, owner_id: str, remote_id: str, local_id: int) -> None: ...


class RemoteConfigService(Protocol):
    async def fetch_limits(self) -> Mapping[str, Any]: ...


def prepare_document(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Keep only the keys a remote document may carry."""

    document: Dict[str, Any] = {}
    for key in RECORD_FIELDS:
        if key in fields:
            document[key] = "" if fields[key] is None else str(fields[key])
    if "last_modified" in fields:
        document["last_modified"] = normalize_timestamp(fields["last_modified"])
    if fields.get("local_id") not in (None, ""):
        document["local_id"] = int(fields["local_id"])
    return document


__all__ = [
    "RemoteConfigService",
    "RemoteNetworkError",
    "RemoteNotFoundError",
    "RemotePermissionError",
    "RemoteRecordStore",
    "RemoteStoreError",
    "prepare_document",
]
