"""Where KeyVault keeps its database, sync state, logs and key files.

``KEYVAULT_HOME`` wins when set. Otherwise Windows uses ``%LOCALAPPDATA%``
(or ``%APPDATA%``), other platforms use ``$XDG_DATA_HOME`` and finally
``~/.keyvault``.
"""
from __future__ import annotations

import os
from pathlib import Path


def _base_directory() -> Path:
    override = os.environ.get("KEYVAULT_HOME")
    if override:
        return Path(override).expanduser().resolve()
    for variable, leaf in (("LOCALAPPDATA", "KeyVault"), ("APPDATA", "KeyVault"), ("XDG_DATA_HOME", "keyvault")):
        root = os.environ.get(variable)
        if root:
            return Path(root).expanduser().resolve() / leaf
    return Path.home().resolve() / ".keyvault"


APP_DIR: Path = _base_directory()
LOG_DIR: Path = APP_DIR / "logs"
CREDENTIALS_DIR: Path = APP_DIR / "credentials"


def _under(root: Path, parts: tuple[str, ...]) -> Path:
    target = root.joinpath(*parts)
    target.parent.mkdir(parents=True, exist_ok=True)
    return target


def data_path(*parts: str) -> Path:
    """Path below :data:`APP_DIR`; parent directories are created on demand."""

    return _under(APP_DIR, parts)


def logs_path(*parts: str) -> Path:
    return _under(LOG_DIR, parts)


def credentials_path(*parts: str) -> Path:
    return _under(CREDENTIALS_DIR, parts)


__all__ = [
    "APP_DIR",
    "LOG_DIR",
    "CREDENTIALS_DIR",
    "data_path",
    "logs_path",
    "credentials_path",
]
