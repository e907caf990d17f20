"""Tests for the offline queue and its key-value stores."""

import asyncio
import json

import pytest
from unittest.mock import AsyncMock

from scribe.resilience.offline import OfflineQueue, QueuedOperation
from scribe.store import MemoryKeyValueStore, SQLiteKeyValueStore


# ============ Store Tests ============


@pytest.mark.asyncio
async def test_sqlite_store_roundtrip(tmp_path):
    """The SQLite store gets, overwrites and deletes keys."""
    store = SQLiteKeyValueStore(str(tmp_path / "data" / "queue.db"))
    await store.init()
    try:
        assert await store.get("missing") is None
        await store.set("k", "v1")
        await store.set("k", "v2")
        assert await store.get("k") == "v2"
        await store.delete("k")
        assert await store.get("k") is None
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_sqlite_store_persists_across_connections(tmp_path):
    """Saved operations survive a new store instance."""
    path = str(tmp_path / "queue.db")
    first = SQLiteKeyValueStore(path)
    await first.set("offline-queue", "[]")
    await first.close()

    second = SQLiteKeyValueStore(path)
    try:
        assert await second.get("offline-queue") == "[]"
    finally:
        await second.close()


@pytest.mark.asyncio
async def test_sqlite_store_recreates_corrupted_file(tmp_path):
    """A corrupted database is replaced with an empty one."""
    path = tmp_path / "queue.db"
    path.write_bytes(b"definitely not a sqlite database" * 10)

    store = SQLiteKeyValueStore(str(path))
    await store.init()
    try:
        await store.set("k", "v")
        assert await store.get("k") == "v"
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_sqlite_store_concurrent_writes(tmp_path):
    """Concurrent writes to different keys all land."""
    store = SQLiteKeyValueStore(str(tmp_path / "queue.db"))
    await store.init()
    try:
        await asyncio.gather(*(store.set(f"k{i}", str(i)) for i in range(20)))
        values = await asyncio.gather(*(store.get(f"k{i}") for i in range(20)))
        assert values == [str(i) for i in range(20)]
    finally:
        await store.close()


# ============ QueuedOperation Tests ============


def test_queued_operation_dict_shape():
    """QueuedOperation serializes to its stored shape."""
    op = QueuedOperation(kind="status_update", payload={"concern_id": "c1", "status": "addressed"})
    data = op.to_dict()
    assert set(data) == {"id", "kind", "payload", "enqueued_at", "retry_count"}
    assert QueuedOperation.from_dict(data) == op


# ============ OfflineQueue Tests ============


@pytest.mark.asyncio
async def test_offline_transition_records_last_online():
    """Going offline records the last online time."""
    clock = iter([100.0, 200.0, 300.0]).__next__
    queue = OfflineQueue(MemoryKeyValueStore(), clock=clock)

    queue.mark_offline()

    status = queue.status()
    assert status.is_online is False
    assert status.last_online_at == 200.0


@pytest.mark.asyncio
async def test_enqueue_persists_after_every_mutation(memory_store):
    """Every enqueue is written to the store."""
    queue = OfflineQueue(memory_store)
    queue.mark_offline()

    await queue.enqueue("status_update", {"concern_id": "c1", "status": "addressed"})
    await queue.enqueue("status_update", {"concern_id": "c2", "status": "rejected"})

    stored = json.loads(memory_store.data[OfflineQueue.STORE_KEY])
    assert [item["payload"]["concern_id"] for item in stored] == ["c1", "c2"]


@pytest.mark.asyncio
async def test_queue_survives_reload(tmp_path):
    """A new queue loads pending operations from the store."""
    path = str(tmp_path / "queue.db")
    store = SQLiteKeyValueStore(path)
    queue = OfflineQueue(store)
    queue.mark_offline()
    await queue.enqueue("status_update", {"concern_id": "c1", "status": "addressed"})
    await store.close()

    reopened = SQLiteKeyValueStore(path)
    restored = OfflineQueue(reopened)
    try:
        assert await restored.load() == 1
        assert len(restored) == 1
        assert restored.status().queue[0].payload == {"concern_id": "c1", "status": "addressed"}
    finally:
        await reopened.close()


@pytest.mark.asyncio
async def test_replayed_exactly_once_on_reconnect(memory_store):
    """Each operation replays exactly once on reconnect."""
    handler = AsyncMock()
    queue = OfflineQueue(memory_store, handlers={"status_update": handler})
    queue.mark_offline()
    await queue.enqueue("status_update", {"concern_id": "c1", "status": "addressed"})

    report = await queue.mark_online()
    await queue.mark_online()

    handler.assert_awaited_once_with({"concern_id": "c1", "status": "addressed"})
    assert len(report.replayed) == 1
    assert len(queue) == 0
    assert json.loads(memory_store.data[OfflineQueue.STORE_KEY]) == []


@pytest.mark.asyncio
async def test_replay_in_enqueue_order(memory_store):
    """Operations replay in the order they were queued."""
    order = []

    async def handler(payload):
        order.append(payload["concern_id"])

    queue = OfflineQueue(memory_store, handlers={"status_update": handler})
    queue.mark_offline()
    for concern_id in ("c1", "c2", "c3"):
        await queue.enqueue("status_update", {"concern_id": concern_id, "status": "addressed"})

    await queue.mark_online()

    assert order == ["c1", "c2", "c3"]


@pytest.mark.asyncio
async def test_failed_replay_requeued_then_dropped(memory_store):
    """Failed replays are retried then dropped."""
    handler = AsyncMock(side_effect=ConnectionError("still down"))
    queue = OfflineQueue(memory_store, handlers={"status_update": handler})
    op = await queue.enqueue("status_update", {"concern_id": "c1", "status": "addressed"})

    for expected in (1, 2, 3):
        report = await queue.drain()
        assert report.failed == [op.id]
        assert queue.status().queue[0].retry_count == expected

    report = await queue.drain()

    assert report.dropped == [op.id]
    assert len(queue) == 0
    assert handler.await_count == 4


@pytest.mark.asyncio
async def test_missing_handler_counts_as_failure(memory_store):
    """An operation without a handler counts as failed."""
    queue = OfflineQueue(memory_store)
    await queue.enqueue("unknown_kind", {})
    report = await queue.drain()
    assert len(report.failed) == 1


@pytest.mark.asyncio
async def test_drain_skipped_while_offline(memory_store):
    """drain() does nothing while offline."""
    handler = AsyncMock()
    queue = OfflineQueue(memory_store, handlers={"status_update": handler})
    queue.mark_offline()
    await queue.enqueue("status_update", {"concern_id": "c1", "status": "addressed"})

    report = await queue.drain()

    assert report.skipped is True
    handler.assert_not_awaited()


@pytest.mark.asyncio
async def test_concurrent_drains_are_guarded(memory_store):
    """Concurrent drains replay each operation once."""
    release = asyncio.Event()
    calls = []

    async def slow_handler(payload):
        calls.append(payload)
        await release.wait()

    queue = OfflineQueue(memory_store, handlers={"status_update": slow_handler})
    await queue.enqueue("status_update", {"concern_id": "c1", "status": "addressed"})

    first = asyncio.create_task(queue.drain())
    await asyncio.sleep(0)
    assert queue.sync_in_progress is True

    second = await queue.drain()
    release.set()
    await first

    assert second.skipped is True
    assert len(calls) == 1
    assert queue.sync_in_progress is False


@pytest.mark.asyncio
async def test_clear_persists_empty_queue(memory_store):
    """clear() empties the stored queue."""
    queue = OfflineQueue(memory_store)
    await queue.enqueue("status_update", {"concern_id": "c1", "status": "addressed"})
    await queue.clear()
    assert json.loads(memory_store.data[OfflineQueue.STORE_KEY]) == []
