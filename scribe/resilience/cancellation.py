"""Cooperative cancellation for in-flight assist operations.

A CancellationScope is created on every entry into a non-NONE assist mode
(and for every orchestrated call). Leaving the mode cancels it, which
aborts the awaited request and stops further retries. In-flight work must
check its own scope before applying results so stale successes are dropped.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OperationCancelledError(Exception):
    """Raised when work is abandoned because its scope was cancelled."""

    def __init__(self, message: str = "Operation was cancelled", reason: str | None = None):
        super().__init__(message)
        self.reason = reason


class CancellationScope:
    """Lifetime-bound cancellation token.

    Usage:
        scope = CancellationScope(label="modify")
        result = await scope.guard(client.post(...))  # raises if cancelled meanwhile
        scope.cancel("mode switched")

    """

    def __init__(self, label: str = ""):
        self.id = uuid.uuid4().hex
        self.label = label
        self.reason: str | None = None
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        """Signal cancellation. Idempotent."""
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        logger.debug("Scope %s (%s) cancelled: %s", self.id[:8], self.label, reason)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelledError(reason=self.reason)

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable` unless the scope is cancelled first.

        On cancellation the underlying task is cancelled and
        OperationCancelledError is raised.

        """
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if not waiter.done():
                waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, Exception):
            pass  # result of an abandoned request is discarded
        raise OperationCancelledError(reason=self.reason)

    async def sleep(self, delay: float, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> None:
        """Backoff delay that ends early (raising) when the scope is cancelled."""
        await self.guard(sleep(delay))

    def __repr__(self) -> str:
        state = "cancelled" if self.cancelled else "active"
        return f"CancellationScope({self.label!r}, {state})"
