"""Cloud record quota checks.

The quota only gates uploads: downloads and local updates never grow the
remote record count, so they proceed regardless of the limit.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from vaultsync.kv_store import JsonKeyValueStore
from vaultsync.remote_store import RemoteConfigService, RemoteStoreError

logger = logging.getLogger(__name__)

DEFAULT_RECORD_LIMIT = 50
LIMIT_CACHE_KEY = "cloud_record_limit"
LIMIT_CONFIG_KEY = "maxRecords"


class QuotaExceededError(RemoteStoreError):
    """Creating another remote document would exceed the cloud record limit."""

    kind = "quota"


@dataclass(frozen=True)
class QuotaCheck:
    ok: bool
    exceeded: int


def check_quota(current_remote_count: int, pending_upload_count: int, limit: int) -> QuotaCheck:
    """Return whether ``pending_upload_count`` more records fit under ``limit``."""

    projected = current_remote_count + pending_upload_count
    if projected <= limit:
        return QuotaCheck(ok=True, exceeded=0)
    return QuotaCheck(ok=False, exceeded=projected - limit)


def _coerce_limit(value: Any) -> Optional[int]:
    if value in (None, "") or isinstance(value, bool):
        return None
    try:
        limit = int(float(value))
    except (TypeError, ValueError):
        return None
    if limit < 0:
        return None
    return limit


class QuotaLimitProvider:
    """Resolve the cloud record limit.

    The remote config value wins and is cached in the key-value store. When the
    remote config cannot be read, the last cached value is used, then
    ``default_limit``.
    """

    def __init__(
        self,
        config_service: Optional[RemoteConfigService],
        kv_store: JsonKeyValueStore,
        *,
        default_limit: int = DEFAULT_RECORD_LIMIT,
    ) -> None:
        self._config_service = config_service
        self._kv_store = kv_store
        self._default_limit = default_limit

    async def current_limit(self) -> int:
        if self._config_service is not None:
            try:
                limits = await self._config_service.fetch_limits()
            except RemoteStoreError as exc:
                logger.info("Cloud limit unavailable (%s); using cached value", exc)
            else:
                limit = _coerce_limit(limits.get(LIMIT_CONFIG_KEY))
                if limit is not None:
                    self._kv_store.set(LIMIT_CACHE_KEY, limit)
                    return limit
                logger.warning("Remote config carries no usable %s value", LIMIT_CONFIG_KEY)

        return self.cached_limit()

    def cached_limit(self) -> int:
        cached = _coerce_limit(self._kv_store.get(LIMIT_CACHE_KEY))
        if cached is not None:
            return cached
        return self._default_limit


__all__ = [
    "DEFAULT_RECORD_LIMIT",
    "LIMIT_CACHE_KEY",
    "QuotaCheck",
    "QuotaExceededError",
    "QuotaLimitProvider",
    "check_quota",
]
