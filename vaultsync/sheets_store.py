"""Google Sheets document store for mirrored credentials.

Each remote document is one row of the records worksheet. Rows carry an
``OwnerId`` column so a single spreadsheet can hold several owners' records;
every operation is scoped to one owner.

Worksheet layout (header row is created on first use)::

    RemoteId | OwnerId | LocalId | SiteName | Username | EncryptedSecret |
    Comments | LastModified | CreatedAt | UpdatedAt

``CreatedAt``/``UpdatedAt`` are maintained by this store and play the role of
server-assigned timestamps. :meth:`SheetsRemoteStore.link_local_id` writes the
single ``LocalId`` cell so neither timestamp moves.

The Google client is blocking and not thread-safe, so every call runs in a
worker thread via :func:`asyncio.to_thread` while an :class:`asyncio.Lock`
keeps calls from overlapping.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, MutableSequence, Optional, Sequence, Tuple, TypeVar

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from vaultsync.google_credentials import CredentialsFileInvalidError, load_credentials
from vaultsync.models import RemoteRecord, normalize_timestamp, utc_now_iso
from vaultsync.remote_store import (
    RemoteNetworkError,
    RemoteNotFoundError,
    RemotePermissionError,
    RemoteStoreError,
    prepare_document,
)

logger = logging.getLogger(__name__)

SCOPES: Sequence[str] = ("https://www.googleapis.com/auth/spreadsheets",)

REQUIRED_HEADERS: Tuple[str, ...] = (
    "RemoteId",
    "OwnerId",
    "LocalId",
    "SiteName",
    "Username",
    "EncryptedSecret",
    "Comments",
    "LastModified",
    "CreatedAt",
    "UpdatedAt",
)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# A1 helpers
# ---------------------------------------------------------------------------

def column_letter(index: int) -> str:
    if index < 1:
        raise ValueError("Column index must be >= 1")
    letters: MutableSequence[str] = []
    while index:
        index, remainder = divmod(index - 1, 26)
        letters.append(chr(65 + remainder))
    return "".join(reversed(letters))


def quote_title(title: str) -> str:
    """Return a worksheet title quoted according to A1 notation rules."""

    safe = (title or "").strip()
    if not safe:
        raise RemoteStoreError("Worksheet title must be configured.")
    safe = safe.replace("'", "''")
    return f"'{safe}'"


def a1_range(title: str, range_spec: str) -> str:
    return f"{quote_title(title)}!{range_spec}"


def a1_row_range(title: str, row_index: int, *, columns: int) -> str:
    if row_index < 1:
        raise ValueError("Row index must be >= 1")
    last_column = column_letter(max(1, columns))
    return a1_range(title, f"A{row_index}:{last_column}{row_index}")


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

def _http_status(exc: HttpError) -> Optional[int]:
    status = getattr(getattr(exc, "resp", None), "status", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def translate_error(exc: BaseException) -> RemoteStoreError:
    """Map Google client and transport failures onto the remote error taxonomy."""

    if isinstance(exc, RemoteStoreError):
        return exc
    if isinstance(exc, HttpError):
        status = _http_status(exc)
        if status in (401, 403):
            return RemotePermissionError(f"Sheets API denied access ({status}): {exc}")
        if status == 404:
            return RemoteNotFoundError(f"Sheets API resource not found: {exc}")
        if status == 429 or (status is not None and status >= 500):
            return RemoteNetworkError(f"Sheets API temporarily unavailable ({status}): {exc}")
        return RemoteStoreError(f"Sheets API error ({status}): {exc}")
    if isinstance(exc, RefreshError):
        return RemotePermissionError(f"Google credentials were rejected: {exc}")
    if isinstance(exc, (TransportError, httplib2.HttpLib2Error, TimeoutError, OSError)):
        return RemoteNetworkError(f"Sheets API unreachable: {exc}")
    return RemoteStoreError(str(exc))


# ---------------------------------------------------------------------------
# Service construction
# ---------------------------------------------------------------------------

def build_service(credential_path: Path):
    """Construct a Sheets v4 service from a service-account JSON file."""

    try:
        credentials = load_credentials(Path(credential_path), SCOPES)
    except CredentialsFileInvalidError as exc:
        raise RemotePermissionError(str(exc)) from exc

    try:
        return build("sheets", "v4", credentials=credentials, cache_discovery=False)
    except (HttpError, TransportError, httplib2.HttpLib2Error, OSError) as exc:
        raise translate_error(exc) from exc


def _cell(row: Sequence[Any], index: int) -> str:
    if index >= len(row):
        return ""
    value = row[index]
    return "" if value is None else str(value)


def _parse_local_id(value: str) -> Optional[int]:
    text = (value or "").strip()
    if not text:
        return None
    try:
        return int(float(text))
    except ValueError:
        return None


class _SheetsBackend:
    """Shared plumbing for worksheets accessed through a Sheets service."""

    def __init__(
        self,
        spreadsheet_id: str,
        *,
        credential_path: Optional[Path] = None,
        service=None,
    ) -> None:
        if not spreadsheet_id:
            raise RemoteStoreError("Spreadsheet ID is not configured.")
        self._spreadsheet_id = spreadsheet_id
        self._credential_path = credential_path
        self._service = service
        self._lock = asyncio.Lock()

    def _get_service(self):
        if self._service is None:
            if self._credential_path is None:
                raise RemotePermissionError("No service account credentials configured.")
            self._service = build_service(self._credential_path)
        return self._service

    async def _call(self, func: Callable[..., T], *args: Any) -> T:
        async with self._lock:
            try:
                return await asyncio.to_thread(func, *args)
            except RemoteStoreError:
                raise
            except (HttpError, RefreshError, TransportError, httplib2.HttpLib2Error, OSError) as exc:
                raise translate_error(exc) from exc

    def _get_values(self, range_spec: str) -> List[List[Any]]:
        result = (
            self._get_service()
            .spreadsheets()
            .values()
            .get(spreadsheetId=self._spreadsheet_id, range=range_spec, majorDimension="ROWS")
            .execute()
        )
        values = result.get("values", []) if isinstance(result, dict) else []
        return [list(row) for row in values]

    def _write_values(self, range_spec: str, rows: List[List[Any]]) -> None:
        (
            self._get_service()
            .spreadsheets()
            .values()
            .update(
                spreadsheetId=self._spreadsheet_id,
                range=range_spec,
                valueInputOption="RAW",
                body={"values": rows},
            )
            .execute()
        )

    def _ensure_headers(self, title: str, headers: Sequence[str]) -> None:
        existing = self._get_values(a1_range(title, "1:1"))
        header_row = [str(cell).strip() for cell in existing[0]] if existing else []
        if header_row[: len(headers)] == list(headers):
            return
        last_column = column_letter(len(headers))
        self._write_values(a1_range(title, f"A1:{last_column}1"), [list(headers)])


class SheetsRemoteStore(_SheetsBackend):
    """:class:`~vaultsync.remote_store.RemoteRecordStore` on a Sheets worksheet."""

    def __init__(
        self,
        spreadsheet_id: str,
        *,
        worksheet_title: str = "passwords",
        credential_path: Optional[Path] = None,
        service=None,
    ) -> None:
        super().__init__(spreadsheet_id, credential_path=credential_path, service=service)
        self._title = worksheet_title
        self._headers_ready = False
        self._sheet_id: Optional[int] = None
        self._columns = {header: index for index, header in enumerate(REQUIRED_HEADERS)}

    # ------------------------------------------------------------------
    # RemoteRecordStore
    # ------------------------------------------------------------------
    async def create(self, owner_id: str, fields: Mapping[str, Any]) -> str:
        self._require_owner(owner_id)
        return await self._call(self._create_sync, owner_id, dict(fields))

    async def update(self, owner_id: str, remote_id: str, fields: Mapping[str, Any]) -> None:
        self._require_owner(owner_id)
        await self._call(self._update_sync, owner_id, remote_id, dict(fields))

    async def delete(self, owner_id: str, remote_id: str) -> None:
        self._require_owner(owner_id)
        await self._call(self._delete_sync, owner_id, remote_id)

    async def list(self, owner_id: str) -> List[RemoteRecord]:
        self._require_owner(owner_id)
        return await self._call(self._list_sync, owner_id)

    async def link_local_id(self, owner_id: str, remote_id: str, local_id: int) -> None:
        self._require_owner(owner_id)
        await self._call(self._link_sync, owner_id, remote_id, int(local_id))

    # ------------------------------------------------------------------
    # Blocking implementations
    # ------------------------------------------------------------------
    def _create_sync(self, owner_id: str, fields: Dict[str, Any]) -> str:
        self._prepare()
        remote_id = uuid.uuid4().hex
        now = utc_now_iso()
        row = self._row_from_document(
            {**prepare_document(fields), "remote_id": remote_id, "owner_id": owner_id,
             "created_at": now, "updated_at": now}
        )
        (
            self._get_service()
            .spreadsheets()
            .values()
            .append(
                spreadsheetId=self._spreadsheet_id,
                range=a1_range(self._title, "A1"),
                valueInputOption="RAW",
                insertDataOption="INSERT_ROWS",
                body={"values": [row]},
            )
            .execute()
        )
        logger.debug("Created remote document %s", remote_id)
        return remote_id

    def _update_sync(self, owner_id: str, remote_id: str, fields: Dict[str, Any]) -> None:
        self._prepare()
        row_index, current = self._locate(owner_id, remote_id)
        document = self._document_from_row(current)
        document.update(prepare_document(fields))
        document["updated_at"] = utc_now_iso()
        self._write_values(
            a1_row_range(self._title, row_index, columns=len(REQUIRED_HEADERS)),
            [self._row_from_document(document)],
        )

    def _link_sync(self, owner_id: str, remote_id: str, local_id: int) -> None:
        self._prepare()
        row_index, _current = self._locate(owner_id, remote_id)
        column = column_letter(self._columns["LocalId"] + 1)
        self._write_values(a1_range(self._title, f"{column}{row_index}"), [[local_id]])

    def _delete_sync(self, owner_id: str, remote_id: str) -> None:
        self._prepare()
        row_index, _current = self._locate(owner_id, remote_id)
        request = {
            "deleteDimension": {
                "range": {
                    "sheetId": self._resolve_sheet_id(),
                    "dimension": "ROWS",
                    "startIndex": row_index - 1,
                    "endIndex": row_index,
                }
            }
        }
        (
            self._get_service()
            .spreadsheets()
            .batchUpdate(spreadsheetId=self._spreadsheet_id, body={"requests": [request]})
            .execute()
        )

    def _list_sync(self, owner_id: str) -> List[RemoteRecord]:
        self._prepare()
        owned: List[Tuple[int, RemoteRecord]] = []
        for position, row in enumerate(self._data_rows()):
            document = self._document_from_row(row)
            if not document["remote_id"] or document["owner_id"] != owner_id:
                continue
            owned.append((position, self._to_record(document)))
        owned.sort(key=lambda item: (item[1].created_at or "", item[0]), reverse=True)
        return [record for _position, record in owned]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _require_owner(owner_id: str) -> None:
        if not owner_id:
            raise RemotePermissionError("No authenticated owner")

    def _prepare(self) -> None:
        if self._headers_ready:
            return
        self._ensure_headers(self._title, REQUIRED_HEADERS)
        self._headers_ready = True

    def _data_rows(self) -> List[List[Any]]:
        last_column = column_letter(len(REQUIRED_HEADERS))
        return self._get_values(a1_range(self._title, f"A2:{last_column}"))

    def _locate(self, owner_id: str, remote_id: str) -> Tuple[int, List[Any]]:
        """Return the 1-based sheet row index and cells of ``remote_id``."""

        id_column = self._columns["RemoteId"]
        owner_column = self._columns["OwnerId"]
        for position, row in enumerate(self._data_rows()):
            if _cell(row, id_column) != remote_id:
                continue
            if _cell(row, owner_column) != owner_id:
                raise RemotePermissionError(f"Remote document {remote_id} belongs to another owner")
            return position + 2, row
        raise RemoteNotFoundError(f"Remote document {remote_id} not found")

    def _resolve_sheet_id(self) -> int:
        if self._sheet_id is not None:
            return self._sheet_id
        metadata = (
            self._get_service()
            .spreadsheets()
            .get(spreadsheetId=self._spreadsheet_id, fields="sheets.properties")
            .execute()
        )
        for sheet in metadata.get("sheets", []):
            properties = sheet.get("properties", {})
            if properties.get("title") == self._title:
                self._sheet_id = int(properties.get("sheetId", 0))
                return self._sheet_id
        raise RemoteNotFoundError(f"Worksheet '{self._title}' not found")

    def _document_from_row(self, row: Sequence[Any]) -> Dict[str, Any]:
        columns = self._columns
        return {
            "remote_id": _cell(row, columns["RemoteId"]),
            "owner_id": _cell(row, columns["OwnerId"]),
            "local_id": _parse_local_id(_cell(row, columns["LocalId"])),
            "site_name": _cell(row, columns["SiteName"]),
            "username": _cell(row, columns["Username"]),
            "encrypted_secret": _cell(row, columns["EncryptedSecret"]),
            "comments": _cell(row, columns["Comments"]),
            "last_modified": normalize_timestamp(_cell(row, columns["LastModified"])),
            "created_at": normalize_timestamp(_cell(row, columns["CreatedAt"])),
            "updated_at": normalize_timestamp(_cell(row, columns["UpdatedAt"])),
        }

    @staticmethod
    def _row_from_document(document: Mapping[str, Any]) -> List[Any]:
        values = {
            "RemoteId": document.get("remote_id"),
            "OwnerId": document.get("owner_id"),
            "LocalId": document.get("local_id"),
            "SiteName": document.get("site_name"),
            "Username": document.get("username"),
            "EncryptedSecret": document.get("encrypted_secret"),
            "Comments": document.get("comments"),
            "LastModified": document.get("last_modified"),
            "CreatedAt": document.get("created_at"),
            "UpdatedAt": document.get("updated_at"),
        }
        return ["" if values[header] is None else values[header] for header in REQUIRED_HEADERS]

    @staticmethod
    def _to_record(document: Mapping[str, Any]) -> RemoteRecord:
        return RemoteRecord(
            remote_id=document["remote_id"],
            local_id=document["local_id"],
            site_name=document["site_name"],
            username=document["username"],
            encrypted_secret=document["encrypted_secret"],
            comments=document["comments"],
            last_modified=document["last_modified"],
            created_at=document["created_at"],
            updated_at=document["updated_at"],
        )


class SheetsRemoteConfig(_SheetsBackend):
    """Read ``Key``/``Value`` rows from the config worksheet."""

    def __init__(
        self,
        spreadsheet_id: str,
        *,
        worksheet_title: str = "config",
        credential_path: Optional[Path] = None,
        service=None,
    ) -> None:
        super().__init__(spreadsheet_id, credential_path=credential_path, service=service)
        self._title = worksheet_title

    async def fetch_limits(self) -> Mapping[str, Any]:
        return await self._call(self._fetch_sync)

    def _fetch_sync(self) -> Dict[str, Any]:
        rows = self._get_values(a1_range(self._title, "A2:B"))
        settings: Dict[str, Any] = {}
        for row in rows:
            key = _cell(row, 0).strip()
            if not key:
                continue
            settings[key] = _cell(row, 1).strip()
        if "maxRecords" in settings:
            try:
                settings["maxRecords"] = int(float(settings["maxRecords"]))
            except ValueError:
                logger.warning("Ignoring non-numeric maxRecords value %r", settings["maxRecords"])
                del settings["maxRecords"]
        return settings


__all__ = [
    "REQUIRED_HEADERS",
    "SCOPES",
    "SheetsRemoteConfig",
    "SheetsRemoteStore",
    "a1_range",
    "a1_row_range",
    "build_service",
    "column_letter",
    "quote_title",
    "translate_error",
]
