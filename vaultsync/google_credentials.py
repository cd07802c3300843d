"""Service account loading for the Sheets mirror.

The JSON key file is read once, checked for the fields the token exchange
needs, and turned into scoped :class:`google.oauth2.service_account.Credentials`.
Key files copied through chat clients or spreadsheets often arrive with
escaped ``\\n`` sequences or a byte order mark; both are tolerated.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Sequence, Tuple

from google.oauth2 import service_account

__all__ = [
    "CredentialsFileInvalidError",
    "ServiceAccountSummary",
    "REQUIRED_FIELDS",
    "load_service_account_data",
    "load_credentials",
    "summarize_service_account",
]


class CredentialsFileInvalidError(Exception):
    """Raised when a service account key file cannot be used."""


REQUIRED_FIELDS: Tuple[str, ...] = (
    "type",
    "project_id",
    "private_key_id",
    "private_key",
    "client_email",
    "client_id",
    "token_uri",
)


@dataclass(frozen=True)
class ServiceAccountSummary:
    client_email: str
    project_id: str
    key_id: str


def _read_key_file(path: Path) -> Dict[str, object]:
    try:
        text = path.read_text(encoding="utf-8-sig")
    except OSError as exc:
        raise CredentialsFileInvalidError(f"Cannot read service account file {path}: {exc}") from exc

    text = text.lstrip("\ufeff").strip()
    if not text:
        raise CredentialsFileInvalidError(f"Service account file {path} is empty.")

    try:
        decoded = json.loads(text)
    except json.JSONDecodeError as exc:
        raise CredentialsFileInvalidError(
            f"Service account JSON is invalid (line {exc.lineno}): {exc.msg}"
        ) from exc
    if not isinstance(decoded, dict):
        raise CredentialsFileInvalidError("Service account JSON must be an object.")
    return decoded


def _blank_fields(data: Dict[str, object]) -> list[str]:
    blank = [
        name
        for name in REQUIRED_FIELDS
        if not isinstance(data.get(name), str) or not str(data[name]).strip()
    ]
    if data.get("type") != "service_account" and "type" not in blank:
        blank.append("type")
    return sorted(blank)


def _clean_private_key(key: str) -> str:
    cleaned = key.replace("\\n", "\n").replace("\r\n", "\n").replace("\r", "\n")
    return cleaned if cleaned.endswith("\n") else cleaned + "\n"


def load_service_account_data(path: Path) -> Dict[str, object]:
    """Return the validated key file contents; ``path`` itself is never rewritten."""

    data = _read_key_file(Path(path))
    blank = _blank_fields(data)
    if blank:
        raise CredentialsFileInvalidError(
            f"Service account JSON is missing fields: {', '.join(blank)}"
        )
    data["private_key"] = _clean_private_key(str(data["private_key"]))
    return data


def load_credentials(path: Path, scopes: Sequence[str]) -> service_account.Credentials:
    """Build scoped credentials from the key file at ``path``."""

    data = load_service_account_data(path)
    try:
        return service_account.Credentials.from_service_account_info(data, scopes=list(scopes))
    except ValueError as exc:
        raise CredentialsFileInvalidError(f"Service account key is unusable: {exc}") from exc


def summarize_service_account(path: Path) -> ServiceAccountSummary:
    data = load_service_account_data(path)
    return ServiceAccountSummary(
        client_email=str(data["client_email"]),
        project_id=str(data["project_id"]),
        key_id=str(data["private_key_id"])[:8],
    )
