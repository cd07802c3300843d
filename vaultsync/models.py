"""Data containers shared by the local store, the remote store and the engine."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

RECORD_FIELDS = ("site_name", "username", "encrypted_secret", "comments")
DEFAULT_SITE_NAME = "Untitled"


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_now_iso() -> str:
    return format_timestamp(utc_now())


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Return ``value`` as an aware UTC datetime, or ``None`` when unparseable."""

    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def normalize_timestamp(value: Any) -> Optional[str]:
    parsed = parse_timestamp(value)
    if parsed is None:
        return None
    return format_timestamp(parsed)


def normalize_fields(fields: Mapping[str, Any]) -> Dict[str, str]:
    """Apply the defaults every stored credential carries."""

    site_name = str(fields.get("site_name") or "").strip()
    return {
        "site_name": site_name or DEFAULT_SITE_NAME,
        "username": str(fields.get("username") or ""),
        "encrypted_secret": str(fields.get("encrypted_secret") or ""),
        "comments": str(fields.get("comments") or ""),
    }


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class CredentialRecord:
    """A credential row owned by the local store."""

    id: int
    site_name: str
    username: str
    encrypted_secret: str
    comments: str
    last_modified: str
    cloud_synced: bool = False

    def fields(self) -> Dict[str, str]:
        return {name: getattr(self, name) for name in RECORD_FIELDS}

    def modified_at(self) -> datetime:
        return parse_timestamp(self.last_modified) or EPOCH


@dataclass
class RemoteRecord:
    """A document held by the remote store for one owner."""

    remote_id: str
    local_id: Optional[int]
    site_name: str = ""
    username: str = ""
    encrypted_secret: str = ""
    comments: str = ""
    last_modified: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def fields(self) -> Dict[str, str]:
        return normalize_fields({name: getattr(self, name) for name in RECORD_FIELDS})

    def effective_last_modified(self) -> datetime:
        for candidate in (self.last_modified, self.updated_at, self.created_at):
            parsed = parse_timestamp(candidate)
            if parsed is not None:
                return parsed
        return EPOCH

    def effective_last_modified_iso(self) -> str:
        return format_timestamp(self.effective_last_modified())


# ---------------------------------------------------------------------------
# Queue entries
# ---------------------------------------------------------------------------

class OperationKind(str, Enum):
    ADD = "add"
    EDIT = "edit"
    DELETE = "delete"


@dataclass
class Operation:
    """A pending mutation waiting to be replayed against the remote store."""

    kind: OperationKind
    payload: Dict[str, Any]
    enqueued_at: str = field(default_factory=utc_now_iso)
    op_id: str = ""

    def __post_init__(self) -> None:
        self.kind = OperationKind(self.kind)
        if not self.op_id:
            self.op_id = f"{self.kind.value}_{uuid.uuid4().hex}"
        record_id = self.payload.get("id")
        if record_id not in (None, ""):
            try:
                self.payload["id"] = int(record_id)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"Non-numeric record id {record_id!r} in {self.op_id}") from exc

    @property
    def local_id(self) -> Optional[int]:
        value = self.payload.get("id")
        if value in (None, ""):
            return None
        return int(value)

    def to_json(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "payload": dict(self.payload),
            "enqueued_at": self.enqueued_at,
            "op_id": self.op_id,
        }

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "Operation":
        return cls(
            kind=OperationKind(str(data["kind"])),
            payload=dict(data.get("payload") or {}),
            enqueued_at=str(data.get("enqueued_at") or utc_now_iso()),
            op_id=str(data.get("op_id") or ""),
        )


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class SyncOutcome(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    SKIPPED = "skipped"
    OFFLINE = "offline"
    DISABLED = "disabled"
    QUOTA_EXCEEDED = "quota_exceeded"
    PERMISSION_DENIED = "permission_denied"
    FAILED = "failed"


@dataclass
class ItemFailure:
    """Tagged per-item failure; ``kind`` is network, permission, not_found or quota."""

    kind: str
    message: str
    local_id: Optional[int] = None


@dataclass
class QuotaReport:
    current: int
    pending: int
    limit: int
    exceeded: int

    def to_json(self) -> Dict[str, int]:
        return {
            "current": self.current,
            "pending": self.pending,
            "limit": self.limit,
            "exceeded": self.exceeded,
        }


@dataclass
class SyncResult:
    outcome: SyncOutcome = SyncOutcome.COMPLETED
    uploaded: int = 0
    downloaded: int = 0
    updated_local: int = 0
    updated_remote: int = 0
    errors: int = 0
    drained: int = 0
    retained: int = 0
    quota: Optional[QuotaReport] = None
    failures: List[ItemFailure] = field(default_factory=list)
    message: str = ""

    @property
    def total(self) -> int:
        return self.uploaded + self.downloaded + self.updated_local + self.updated_remote

    @property
    def success(self) -> bool:
        return self.outcome == SyncOutcome.COMPLETED

    def counts(self) -> Dict[str, int]:
        return {
            "uploaded": self.uploaded,
            "downloaded": self.downloaded,
            "updated_local": self.updated_local,
            "updated_remote": self.updated_remote,
            "errors": self.errors,
        }


@dataclass
class SyncStatus:
    is_online: bool
    pending_operations: int
    is_syncing: bool
    last_sync_time: Optional[str]


__all__ = [
    "CredentialRecord",
    "DEFAULT_SITE_NAME",
    "EPOCH",
    "ItemFailure",
    "Operation",
    "OperationKind",
    "QuotaReport",
    "RECORD_FIELDS",
    "RemoteRecord",
    "SyncOutcome",
    "SyncResult",
    "SyncStatus",
    "format_timestamp",
    "normalize_fields",
    "normalize_timestamp",
    "parse_timestamp",
    "utc_now",
    "utc_now_iso",
]
