"""Application configuration helpers for KeyVault."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Dict, Mapping, Tuple

from vaultsync import app_paths


logger = logging.getLogger(__name__)


SYNC_SETTINGS_PATH = str(app_paths.data_path("sync_settings.json"))

DEFAULT_SPREADSHEET_ID = os.getenv("KEYVAULT_SPREADSHEET_ID", "")
DEFAULT_CREDENTIALS_PATH = os.getenv(
    "KEYVAULT_CREDENTIALS_PATH",
    str(app_paths.credentials_path("service_account.json")),
)
DEFAULT_OWNER_ID = os.getenv("KEYVAULT_OWNER_ID", "")
DEFAULT_RECORDS_TAB = "passwords"
DEFAULT_CONFIG_TAB = "config"

# (default, minimum, maximum)
_INT_LIMITS: Dict[str, Tuple[int, int, int]] = {
    "default_record_limit": (50, 1, 100000),
    "batch_size": (50, 1, 500),
    "sync_timeout_seconds": (30, 1, 600),
    "probe_port": (53, 1, 65535),
    "poll_interval_seconds": (5, 1, 300),
}


@dataclass
class SyncSettings:
    spreadsheet_id: str = DEFAULT_SPREADSHEET_ID
    credential_path: str = DEFAULT_CREDENTIALS_PATH
    owner_id: str = DEFAULT_OWNER_ID
    records_tab: str = DEFAULT_RECORDS_TAB
    config_tab: str = DEFAULT_CONFIG_TAB
    cloud_sync_enabled: bool = False
    default_record_limit: int = 50
    batch_size: int = 50
    sync_timeout_seconds: int = 30
    probe_host: str = "8.8.8.8"
    probe_port: int = 53
    poll_interval_seconds: int = 5

    def to_json(self) -> Dict[str, object]:
        return {
            "spreadsheet_id": self.spreadsheet_id,
            "credential_path": self.credential_path,
            "owner_id": self.owner_id,
            "records_tab": self.records_tab,
            "config_tab": self.config_tab,
            "cloud_sync_enabled": self.cloud_sync_enabled,
            "default_record_limit": self.default_record_limit,
            "batch_size": self.batch_size,
            "sync_timeout_seconds": self.sync_timeout_seconds,
            "probe_host": self.probe_host,
            "probe_port": self.probe_port,
            "poll_interval_seconds": self.poll_interval_seconds,
        }


def _clamp_int(key: str, value: object) -> int:
    default, minimum, maximum = _INT_LIMITS[key]
    if isinstance(value, bool):
        logger.warning("Ignoring boolean value for %s", key)
        return default
    try:
        return max(minimum, min(maximum, int(value)))
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid value %r for %s", value, key)
        return default


def _coerce_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return False


def _coerce_title(value: object, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def _ensure_sync_settings(path: str = SYNC_SETTINGS_PATH) -> Dict[str, object]:
    default_settings = SyncSettings().to_json()
    if not os.path.exists(path):
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "w", encoding="utf-8") as handle:
            json.dump(default_settings, handle, indent=2)
        return dict(default_settings)

    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except json.JSONDecodeError:
        logger.warning("Settings file %s is not valid JSON; using defaults", path)
        return dict(default_settings)

    merged: Dict[str, object] = dict(default_settings)
    if isinstance(data, Mapping):
        for key, value in data.items():
            if key in merged:
                merged[key] = value
    return merged


def load_sync_settings(path: str = SYNC_SETTINGS_PATH) -> SyncSettings:
    data = _ensure_sync_settings(path)
    return SyncSettings(
        spreadsheet_id=str(data.get("spreadsheet_id") or DEFAULT_SPREADSHEET_ID).strip(),
        credential_path=str(data.get("credential_path") or DEFAULT_CREDENTIALS_PATH),
        owner_id=str(data.get("owner_id") or DEFAULT_OWNER_ID).strip(),
        records_tab=_coerce_title(data.get("records_tab"), DEFAULT_RECORDS_TAB),
        config_tab=_coerce_title(data.get("config_tab"), DEFAULT_CONFIG_TAB),
        cloud_sync_enabled=_coerce_bool(data.get("cloud_sync_enabled")),
        default_record_limit=_clamp_int("default_record_limit", data.get("default_record_limit")),
        batch_size=_clamp_int("batch_size", data.get("batch_size")),
        sync_timeout_seconds=_clamp_int("sync_timeout_seconds", data.get("sync_timeout_seconds")),
        probe_host=_coerce_title(data.get("probe_host"), "8.8.8.8"),
        probe_port=_clamp_int("probe_port", data.get("probe_port")),
        poll_interval_seconds=_clamp_int("poll_interval_seconds", data.get("poll_interval_seconds")),
    )


def save_sync_settings(settings: SyncSettings, path: str = SYNC_SETTINGS_PATH) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    payload = settings.to_json()

    with open(path, "w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2)


__all__ = [
    "DEFAULT_CONFIG_TAB",
    "DEFAULT_CREDENTIALS_PATH",
    "DEFAULT_OWNER_ID",
    "DEFAULT_RECORDS_TAB",
    "DEFAULT_SPREADSHEET_ID",
    "SYNC_SETTINGS_PATH",
    "SyncSettings",
    "load_sync_settings",
    "save_sync_settings",
]
