"""Logging setup shared by the CLI and long-running watchers."""
from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

from vaultsync import app_paths

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Loggers from the Google client stack that are noisy below WARNING.
_QUIET_LOGGERS = ("googleapiclient.discovery_cache", "googleapiclient.discovery", "google.auth.transport")

_log_path: Optional[Path] = None


def _has_file_handler(root: logging.Logger, target: Path) -> bool:
    wanted = str(target.resolve())
    return any(
        isinstance(handler, logging.FileHandler) and handler.baseFilename == wanted
        for handler in root.handlers
    )


def configure_logging(
    level: int = logging.INFO,
    *,
    log_path: Optional[Path] = None,
    console: bool = False,
) -> Path:
    """Attach the KeyVault file handler to the root logger and return its path.

    Calling this again is harmless: the file handler is only added once per
    path and the root level only ever becomes more verbose. ``console`` adds a
    stderr handler at ``level`` for interactive runs.
    """

    global _log_path

    if _log_path is not None and log_path is None and not console:
        return _log_path

    target = Path(log_path) if log_path is not None else app_paths.logs_path("keyvault.log")
    target.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(level if not root.handlers else min(root.level, level))

    if not _has_file_handler(root, target):
        file_handler = logging.FileHandler(target, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)

    if console and not any(getattr(h, "_keyvault_console", False) for h in root.handlers):
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setLevel(level)
        stream_handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        stream_handler._keyvault_console = True  # type: ignore[attr-defined]
        root.addHandler(stream_handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _log_path = target
    root.debug("Logging to %s", target)
    return target


__all__ = ["LOG_FORMAT", "configure_logging"]
