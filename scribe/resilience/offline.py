"""Durable FIFO of state-mutating operations deferred while offline.

The queue is persisted to a key-value store after every mutation and
replayed in enqueue order when connectivity returns. A replay failure
increments the operation's retry count; once it exceeds the ceiling the
operation is dropped and logged (accepted data loss).
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from scribe.config import MAX_REPLAY_RETRIES
from scribe.store import KeyValueStore

logger = logging.getLogger(__name__)

ReplayHandler = Callable[[dict[str, Any]], Awaitable[Any]]


@dataclass
class QueuedOperation:
    """A state mutation waiting for connectivity.

    Attributes:
        id: Unique identifier
        kind: Replay handler name (e.g. "status_update")
        payload: Arguments passed to the handler on replay
        enqueued_at: Unix time of enqueue
        retry_count: Failed replay attempts so far

    """

    kind: str
    payload: dict[str, Any]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    enqueued_at: float = field(default_factory=time.time)
    retry_count: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "payload": self.payload,
            "enqueued_at": self.enqueued_at,
            "retry_count": self.retry_count,
        }

    @classmethod
    def from_dict(cls, data: dict) -> QueuedOperation:
        return cls(
            kind=data["kind"],
            payload=dict(data.get("payload") or {}),
            id=data["id"],
            enqueued_at=float(data.get("enqueued_at", 0.0)),
            retry_count=int(data.get("retry_count", 0)),
        )


@dataclass(frozen=True)
class OfflineStatus:
    """Snapshot for rendering; the queue itself is owned by OfflineQueue."""

    is_online: bool
    last_online_at: float | None
    queue: tuple[QueuedOperation, ...]
    sync_in_progress: bool

    @property
    def pending(self) -> int:
        return len(self.queue)

    def to_dict(self) -> dict:
        return {
            "is_online": self.is_online,
            "last_online_at": self.last_online_at,
            "pending": self.pending,
            "sync_in_progress": self.sync_in_progress,
            "queue": [op.to_dict() for op in self.queue],
        }


@dataclass
class SyncReport:
    """Outcome of one drain pass."""

    replayed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)
    remaining: int = 0
    skipped: bool = False


class OfflineQueue:
    """Persisted queue plus the online/offline status it is drained against.

    Usage:
        queue = OfflineQueue(store)
        await queue.load()
        queue.register_handler("status_update", replay_status_update)
        queue.mark_offline()
        await queue.enqueue("status_update", {"concern_id": "c1", "status": "addressed"})
        await queue.mark_online()  # drains

    """

    STORE_KEY = "offline-queue"

    def __init__(
        self,
        store: KeyValueStore,
        handlers: dict[str, ReplayHandler] | None = None,
        max_retries: int = MAX_REPLAY_RETRIES,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.max_retries = max_retries
        self._clock = clock
        self._handlers: dict[str, ReplayHandler] = dict(handlers or {})
        self._queue: list[QueuedOperation] = []
        self._is_online = True
        self._last_online_at: float | None = clock()
        self._sync_in_progress = False

    @property
    def is_online(self) -> bool:
        return self._is_online

    @property
    def sync_in_progress(self) -> bool:
        return self._sync_in_progress

    def __len__(self) -> int:
        return len(self._queue)

    def status(self) -> OfflineStatus:
        return OfflineStatus(
            is_online=self._is_online,
            last_online_at=self._last_online_at,
            queue=tuple(self._queue),
            sync_in_progress=self._sync_in_progress,
        )

    def register_handler(self, kind: str, handler: ReplayHandler) -> None:
        self._handlers[kind] = handler

    async def load(self) -> int:
        """Restore the persisted queue. Returns the number of pending operations."""
        raw = await self.store.get(self.STORE_KEY)
        if not raw:
            self._queue = []
            return 0
        self._queue = [QueuedOperation.from_dict(item) for item in json.loads(raw)]
        if self._queue:
            logger.info("Restored %d queued offline operations", len(self._queue))
        return len(self._queue)

    async def enqueue(self, kind: str, payload: dict[str, Any]) -> QueuedOperation:
        op = QueuedOperation(kind=kind, payload=dict(payload), enqueued_at=self._clock())
        self._queue.append(op)
        await self._persist()
        logger.info("Queued %s operation %s for replay (%d pending)", kind, op.id[:8], len(self._queue))
        return op

    def mark_offline(self) -> None:
        if not self._is_online:
            return
        self._is_online = False
        self._last_online_at = self._clock()
        logger.warning("Connectivity lost; state changes will be queued")

    async def mark_online(self) -> SyncReport:
        """Record the online transition and drain anything pending."""
        was_offline = not self._is_online
        self._is_online = True
        self._last_online_at = self._clock()
        if was_offline:
            logger.info("Connectivity restored")
        if not self._queue:
            return SyncReport()
        return await self.drain()

    async def drain(self) -> SyncReport:
        """Replay queued operations in enqueue order.

        Skipped while offline or when another drain is already running.
        """
        if self._sync_in_progress or not self._is_online:
            return SyncReport(remaining=len(self._queue), skipped=True)

        self._sync_in_progress = True
        report = SyncReport()
        try:
            for op in list(self._queue):
                if not self._is_online:
                    break
                handler = self._handlers.get(op.kind)
                try:
                    if handler is None:
                        raise LookupError(f"No replay handler registered for {op.kind}")
                    await handler(op.payload)
                except Exception as e:
                    op.retry_count += 1
                    if op.retry_count > self.max_retries:
                        self._queue.remove(op)
                        report.dropped.append(op.id)
                        logger.error(
                            "Dropping queued %s operation %s after %d failed replays: %s",
                            op.kind,
                            op.id[:8],
                            op.retry_count,
                            e,
                        )
                    else:
                        report.failed.append(op.id)
                        logger.warning(
                            "Replay of %s operation %s failed (%d/%d): %s",
                            op.kind,
                            op.id[:8],
                            op.retry_count,
                            self.max_retries,
                            e,
                        )
                else:
                    self._queue.remove(op)
                    report.replayed.append(op.id)
                await self._persist()
        finally:
            self._sync_in_progress = False

        report.remaining = len(self._queue)
        logger.info(
            "Offline sync: %d replayed, %d failed, %d dropped, %d remaining",
            len(report.replayed),
            len(report.failed),
            len(report.dropped),
            report.remaining,
        )
        return report

    async def clear(self) -> None:
        self._queue.clear()
        await self._persist()

    async def _persist(self) -> None:
        await self.store.set(self.STORE_KEY, json.dumps([op.to_dict() for op in self._queue]))
