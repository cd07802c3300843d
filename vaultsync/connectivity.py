"""Network reachability monitor that triggers sync on offline -> online edges."""
from __future__ import annotations

import asyncio
import errno
import logging
import threading
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_PROBE_HOST = "8.8.8.8"
DEFAULT_PROBE_PORT = 53
DEFAULT_PROBE_TIMEOUT = 3.0
DEFAULT_POLL_INTERVAL = 5.0

_NO_ROUTE_ERRNOS = {errno.ENETUNREACH, errno.ENETDOWN, errno.EHOSTUNREACH}


@dataclass(frozen=True)
class Reachability:
    connected: bool
    internet_reachable: bool

    @property
    def is_online(self) -> bool:
        return self.connected and self.internet_reachable


OFFLINE = Reachability(connected=False, internet_reachable=False)

Probe = Callable[[], Awaitable[Reachability]]
ReachabilityListener = Callable[[Reachability], None]


def socket_probe(
    host: str = DEFAULT_PROBE_HOST,
    port: int = DEFAULT_PROBE_PORT,
    *,
    timeout: float = DEFAULT_PROBE_TIMEOUT,
) -> Probe:
    """Return a probe that opens (and closes) a TCP connection to ``host:port``.

    A missing route counts as disconnected; a timeout or refusal with a route
    available counts as connected without internet access.
    """

    async def probe() -> Reachability:
        try:
            _reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=timeout
            )
        except asyncio.TimeoutError:
            return Reachability(connected=True, internet_reachable=False)
        except OSError as exc:
            if exc.errno in _NO_ROUTE_ERRNOS:
                return OFFLINE
            return Reachability(connected=True, internet_reachable=False)
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return Reachability(connected=True, internet_reachable=True)

    return probe


class ConnectivityMonitor:
    """Poll ``probe`` and report reachability transitions.

    ``on_online`` fires once when the monitor starts and again on every
    offline -> online transition. Listeners registered with :meth:`subscribe`
    receive every change of :attr:`Reachability.is_online`. The monitor never
    retries a sync itself.
    """

    def __init__(
        self,
        probe: Optional[Probe] = None,
        *,
        on_online: Optional[Callable[[], None]] = None,
        interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self._probe = probe or socket_probe()
        self._on_online = on_online
        self._interval = max(0.01, interval)
        self._current: Optional[Reachability] = None
        self._listeners: List[ReachabilityListener] = []
        self._listener_lock = threading.Lock()
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def current(self) -> Reachability:
        return self._current or OFFLINE

    def is_online(self) -> bool:
        return self.current.is_online

    def subscribe(self, listener: ReachabilityListener) -> Callable[[], None]:
        """Register ``listener`` and return a callable that unregisters it."""

        with self._listener_lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._listener_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event = asyncio.Event()
        await self.poll_once()
        self._fire_online()
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            try:
                await self._task
            finally:
                self._task = None

    async def poll_once(self) -> Reachability:
        """Probe once, notify listeners on change and fire ``on_online`` on an edge."""

        try:
            observed = await self._probe()
        except Exception:
            logger.exception("Reachability probe failed")
            observed = OFFLINE

        previous = self._current
        self._current = observed
        if previous is None or previous.is_online != observed.is_online:
            logger.info("Reachability changed: %s", "online" if observed.is_online else "offline")
            self._notify(observed)
            if previous is not None and observed.is_online:
                self._fire_online()
        return observed

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _run(self) -> None:
        assert self._stop_event is not None
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                await self.poll_once()

    def _notify(self, reachability: Reachability) -> None:
        with self._listener_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(reachability)
            except Exception:
                logger.exception("Reachability listener raised an exception")

    def _fire_online(self) -> None:
        if self._on_online is None:
            return
        try:
            self._on_online()
        except Exception:
            logger.exception("Online callback raised an exception")


__all__ = [
    "ConnectivityMonitor",
    "DEFAULT_POLL_INTERVAL",
    "OFFLINE",
    "Probe",
    "Reachability",
    "socket_probe",
]
