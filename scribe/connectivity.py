"""Online/offline signal source.

Listeners subscribe explicitly and get an unsubscribe function back.
Transitions are pushed by the host (set_online / set_offline) or detected
with an HTTP HEAD check against the backend health endpoint.
"""

from __future__ import annotations

import inspect
import logging
import time
from typing import Any, Callable

import httpx

from scribe.config import API_BASE_URL, HEALTH_ENDPOINT

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], Any]

CHECK_TIMEOUT = 5.0


class ConnectivityMonitor:
    """Tracks connectivity and notifies listeners on transitions only.

    Listeners may be plain callables or coroutine functions; coroutine
    listeners are awaited in subscription order.
    """

    def __init__(
        self,
        base_url: str = API_BASE_URL,
        health_endpoint: str = HEALTH_ENDPOINT,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.base_url = base_url.rstrip("/")
        self.health_endpoint = health_endpoint.lstrip("/")
        self._client = client
        self._clock = clock
        self._is_online = True
        self._last_online_at: float | None = clock()
        self._listeners: list[ConnectivityListener] = []

    @property
    def is_online(self) -> bool:
        return self._is_online

    @property
    def last_online_at(self) -> float | None:
        return self._last_online_at

    def on_connectivity_change(self, listener: ConnectivityListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def set_online(self) -> None:
        await self._transition(True)

    async def set_offline(self) -> None:
        await self._transition(False)

    async def check(self) -> bool:
        """HEAD the health endpoint and transition accordingly.

        Any HTTP response counts as reachable; transport errors mean offline.
        """
        url = f"{self.base_url}/{self.health_endpoint}"
        try:
            if self._client is not None:
                await self._client.head(url, timeout=CHECK_TIMEOUT)
            else:
                async with httpx.AsyncClient(timeout=CHECK_TIMEOUT) as client:
                    await client.head(url)
        except httpx.TransportError as e:
            logger.debug("Connectivity check to %s failed: %s", url, e)
            await self._transition(False)
            return False
        await self._transition(True)
        return True

    def clear(self) -> None:
        self._listeners.clear()

    async def _transition(self, online: bool) -> None:
        if online:
            self._last_online_at = self._clock()
        if online == self._is_online:
            return
        self._is_online = online
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        for listener in list(self._listeners):
            try:
                result = listener(online)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning("Connectivity listener failed: %s", e)


def bind_queue(monitor: ConnectivityMonitor, queue: Any) -> Callable[[], None]:
    """Wire an OfflineQueue to a monitor so transitions mark and drain it."""

    async def on_change(online: bool) -> None:
        if online:
            await queue.mark_online()
        else:
            queue.mark_offline()

    if not monitor.is_online:
        queue.mark_offline()
    return monitor.on_connectivity_change(on_change)
