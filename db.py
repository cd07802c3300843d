"""SQLite-backed credential store for KeyVault.

All writes are committed before the call returns, so callers never observe a
partially applied change. Rows are identified by an integer id assigned by
SQLite (``AUTOINCREMENT`` guarantees ids are never reused after deletion).
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional

from vaultsync import app_paths
from vaultsync.models import (
    RECORD_FIELDS,
    CredentialRecord,
    normalize_fields,
    normalize_timestamp,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Database path handling
# ---------------------------------------------------------------------------
_DEFAULT_DB_PATH = Path(
    os.environ.get("KEYVAULT_DB_PATH", str(app_paths.data_path("keyvault.db")))
).resolve()
_DB_PATH = _DEFAULT_DB_PATH
DB_PATH = _DB_PATH

_SCHEMA_LOCK = threading.Lock()
_SCHEMA_READY = False

CREDENTIAL_COLUMN_DEFINITIONS: Dict[str, str] = {
    "id": "INTEGER PRIMARY KEY AUTOINCREMENT",
    "site_name": "TEXT NOT NULL",
    "username": "TEXT NOT NULL DEFAULT ''",
    "encrypted_secret": "TEXT NOT NULL DEFAULT ''",
    "comments": "TEXT NOT NULL DEFAULT ''",
    "last_modified": "TEXT NOT NULL",
    "cloud_synced": "INTEGER NOT NULL DEFAULT 0",
    "created_at": "TEXT",
}

_CHANGE_LISTENERS: List[Callable[[int], None]] = []
_LISTENER_LOCK = threading.Lock()


class LocalStoreError(RuntimeError):
    """Raised when the local SQLite store cannot complete an operation."""


# ---------------------------------------------------------------------------
# Database helpers
# ---------------------------------------------------------------------------

def set_database_path(path: Path) -> None:
    """Override the SQLite file used for storage."""

    global _DB_PATH, DB_PATH, _SCHEMA_READY
    _DB_PATH = Path(path).resolve()
    DB_PATH = _DB_PATH
    _SCHEMA_READY = False


def _ensure_schema(conn: sqlite3.Connection) -> None:
    columns = ",\n        ".join(
        f"{column} {definition}" for column, definition in CREDENTIAL_COLUMN_DEFINITIONS.items()
    )
    conn.execute(f"CREATE TABLE IF NOT EXISTS credentials (\n        {columns}\n    )")

    existing = {row[1] for row in conn.execute("PRAGMA table_info(credentials)")}
    for column, definition in CREDENTIAL_COLUMN_DEFINITIONS.items():
        if column not in existing:
            conn.execute(f"ALTER TABLE credentials ADD COLUMN {column} {definition}")

    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_credentials_last_modified ON credentials(last_modified)"
    )


def _ensure_database() -> None:
    global _SCHEMA_READY
    if _SCHEMA_READY:
        return
    with _SCHEMA_LOCK:
        if _SCHEMA_READY:
            return
        if _DB_PATH.parent:
            _DB_PATH.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(_DB_PATH)
        except sqlite3.Error as exc:
            raise LocalStoreError(f"Cannot open credential database: {exc}") from exc
        try:
            _ensure_schema(conn)
            conn.commit()
        except sqlite3.Error as exc:
            raise LocalStoreError(f"Cannot prepare credential database: {exc}") from exc
        finally:
            conn.close()
        _SCHEMA_READY = True


def get_connection() -> sqlite3.Connection:
    _ensure_database()
    try:
        conn = sqlite3.connect(_DB_PATH)
    except sqlite3.Error as exc:
        raise LocalStoreError(f"Cannot open credential database: {exc}") from exc
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    conn = get_connection()
    try:
        conn.execute("BEGIN")
        yield conn
        conn.commit()
    except sqlite3.Error as exc:
        conn.rollback()
        raise LocalStoreError(str(exc)) from exc
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _row_to_record(row: sqlite3.Row) -> CredentialRecord:
    return CredentialRecord(
        id=int(row["id"]),
        site_name=row["site_name"] or "",
        username=row["username"] or "",
        encrypted_secret=row["encrypted_secret"] or "",
        comments=row["comments"] or "",
        last_modified=row["last_modified"] or "",
        cloud_synced=bool(row["cloud_synced"]),
    )


def _require_timestamp(value: Any) -> str:
    normalised = normalize_timestamp(value)
    if normalised is None:
        raise ValueError(f"Invalid lastModified timestamp: {value!r}")
    return normalised


# ---------------------------------------------------------------------------
# Listener management
# ---------------------------------------------------------------------------

def _notify_change(record_id: int) -> None:
    with _LISTENER_LOCK:
        listeners = list(_CHANGE_LISTENERS)
    for listener in listeners:
        try:
            listener(record_id)
        except Exception:
            logger.exception("Credential change listener raised an exception")


def add_change_listener(listener: Callable[[int], None]) -> None:
    """Register ``listener`` for user edits (add, update, delete).

    Writes that carry incoming cloud data (:func:`upsert_credential`,
    :func:`insert_downloaded`) never notify listeners.
    """

    if not callable(listener):
        raise TypeError("listener must be callable")
    with _LISTENER_LOCK:
        if listener not in _CHANGE_LISTENERS:
            _CHANGE_LISTENERS.append(listener)


def remove_change_listener(listener: Callable[[int], None]) -> None:
    with _LISTENER_LOCK:
        if listener in _CHANGE_LISTENERS:
            _CHANGE_LISTENERS.remove(listener)


# ---------------------------------------------------------------------------
# Public operations
# ---------------------------------------------------------------------------

def initialize_database() -> None:
    _ensure_database()


def add_credential(fields: Mapping[str, Any], *, cloud_synced: bool = False) -> int:
    """Insert a user-created credential and return its new id."""

    payload = normalize_fields(fields)
    now = utc_now_iso()
    with transaction() as conn:
        cursor = conn.execute(
            "INSERT INTO credentials (site_name, username, encrypted_secret, comments,"
            " last_modified, cloud_synced, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                payload["site_name"],
                payload["username"],
                payload["encrypted_secret"],
                payload["comments"],
                now,
                1 if cloud_synced else 0,
                now,
            ),
        )
        record_id = int(cursor.lastrowid)
    _notify_change(record_id)
    return record_id


def update_credential(record_id: int, fields: Mapping[str, Any]) -> str:
    """Apply a user edit and return the refreshed ``last_modified`` value."""

    existing = fetch_credential(record_id)
    if existing is None:
        raise KeyError(record_id)
    merged = existing.fields()
    merged.update({key: value for key, value in fields.items() if key in RECORD_FIELDS})
    payload = normalize_fields(merged)
    now = utc_now_iso()
    with transaction() as conn:
        conn.execute(
            "UPDATE credentials SET site_name = ?, username = ?, encrypted_secret = ?,"
            " comments = ?, last_modified = ? WHERE id = ?",
            (
                payload["site_name"],
                payload["username"],
                payload["encrypted_secret"],
                payload["comments"],
                now,
                record_id,
            ),
        )
    _notify_change(record_id)
    return now


def upsert_credential(record_id: int, fields: Mapping[str, Any], last_modified: Any) -> None:
    """Insert or overwrite ``record_id`` with cloud data.

    The caller-supplied ``last_modified`` is stored verbatim so the row does
    not look locally modified on the next comparison.
    """

    payload = normalize_fields(fields)
    stamp = _require_timestamp(last_modified)
    with transaction() as conn:
        cursor = conn.execute(
            "UPDATE credentials SET site_name = ?, username = ?, encrypted_secret = ?,"
            " comments = ?, last_modified = ?, cloud_synced = 1 WHERE id = ?",
            (
                payload["site_name"],
                payload["username"],
                payload["encrypted_secret"],
                payload["comments"],
                stamp,
                record_id,
            ),
        )
        if cursor.rowcount == 0:
            conn.execute(
                "INSERT INTO credentials (id, site_name, username, encrypted_secret, comments,"
                " last_modified, cloud_synced, created_at) VALUES (?, ?, ?, ?, ?, ?, 1, ?)",
                (
                    record_id,
                    payload["site_name"],
                    payload["username"],
                    payload["encrypted_secret"],
                    payload["comments"],
                    stamp,
                    utc_now_iso(),
                ),
            )


def insert_downloaded(fields: Mapping[str, Any], last_modified: Any) -> int:
    """Create a new row for a cloud-originated record and return its id."""

    payload = normalize_fields(fields)
    stamp = _require_timestamp(last_modified)
    with transaction() as conn:
        cursor = conn.execute(
            "INSERT INTO credentials (site_name, username, encrypted_secret, comments,"
            " last_modified, cloud_synced, created_at) VALUES (?, ?, ?, ?, ?, 1, ?)",
            (
                payload["site_name"],
                payload["username"],
                payload["encrypted_secret"],
                payload["comments"],
                stamp,
                utc_now_iso(),
            ),
        )
        return int(cursor.lastrowid)


def delete_credential(record_id: int, *, notify: bool = True) -> None:
    with transaction() as conn:
        conn.execute("DELETE FROM credentials WHERE id = ?", (record_id,))
    if notify:
        _notify_change(record_id)


def set_cloud_synced(record_ids: List[int], synced: bool) -> None:
    """Flag rows as mirrored (or not) without touching ``last_modified``."""

    if not record_ids:
        return
    flag = 1 if synced else 0
    with transaction() as conn:
        conn.executemany(
            "UPDATE credentials SET cloud_synced = ? WHERE id = ?",
            [(flag, record_id) for record_id in record_ids],
        )


def fetch_credential(record_id: int) -> Optional[CredentialRecord]:
    with transaction() as conn:
        cursor = conn.execute("SELECT * FROM credentials WHERE id = ?", (record_id,))
        row = cursor.fetchone()
    return _row_to_record(row) if row else None


def list_credentials() -> List[CredentialRecord]:
    with transaction() as conn:
        cursor = conn.execute("SELECT * FROM credentials ORDER BY id")
        rows = cursor.fetchall()
    return [_row_to_record(row) for row in rows]


def count_credentials() -> int:
    with transaction() as conn:
        cursor = conn.execute("SELECT COUNT(*) FROM credentials")
        return int(cursor.fetchone()[0] or 0)


class LocalRecordStore:
    """Object facade over the module functions, handed to the sync engine."""

    def add(self, fields: Mapping[str, Any], *, cloud_synced: bool = False) -> int:
        return add_credential(fields, cloud_synced=cloud_synced)

    def update(self, record_id: int, fields: Mapping[str, Any]) -> str:
        return update_credential(record_id, fields)

    def upsert(self, record_id: int, fields: Mapping[str, Any], last_modified: Any) -> None:
        upsert_credential(record_id, fields, last_modified)

    def insert_downloaded(self, fields: Mapping[str, Any], last_modified: Any) -> int:
        return insert_downloaded(fields, last_modified)

    def delete(self, record_id: int) -> None:
        delete_credential(record_id)

    def discard(self, record_id: int) -> None:
        """Drop a row created by a download without notifying listeners."""

        delete_credential(record_id, notify=False)

    def get(self, record_id: int) -> Optional[CredentialRecord]:
        return fetch_credential(record_id)

    def list(self) -> List[CredentialRecord]:
        return list_credentials()

    def set_cloud_synced(self, record_ids: List[int], synced: bool) -> None:
        set_cloud_synced(record_ids, synced)


__all__ = [
    "CREDENTIAL_COLUMN_DEFINITIONS",
    "DB_PATH",
    "LocalRecordStore",
    "LocalStoreError",
    "add_change_listener",
    "add_credential",
    "count_credentials",
    "delete_credential",
    "fetch_credential",
    "get_connection",
    "initialize_database",
    "insert_downloaded",
    "list_credentials",
    "remove_change_listener",
    "set_cloud_synced",
    "set_database_path",
    "transaction",
    "update_credential",
    "upsert_credential",
]
