"""Tests for the connectivity monitor and its offline queue binding."""

import httpx
import pytest
from unittest.mock import AsyncMock

from scribe.connectivity import ConnectivityMonitor, bind_queue
from scribe.resilience.offline import OfflineQueue


def mock_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ============ Transition Tests ============


@pytest.mark.asyncio
async def test_listeners_notified_on_transitions_only():
    """Listeners fire only when connectivity changes."""
    monitor = ConnectivityMonitor()
    events = []
    monitor.on_connectivity_change(events.append)

    await monitor.set_online()
    await monitor.set_offline()
    await monitor.set_offline()
    await monitor.set_online()

    assert events == [False, True]


@pytest.mark.asyncio
async def test_unsubscribe_stops_notifications():
    """An unsubscribed listener is not called."""
    monitor = ConnectivityMonitor()
    events = []
    unsubscribe = monitor.on_connectivity_change(events.append)
    unsubscribe()
    unsubscribe()

    await monitor.set_offline()

    assert events == []


@pytest.mark.asyncio
async def test_async_listener_is_awaited():
    """Coroutine listeners are awaited."""
    monitor = ConnectivityMonitor()
    listener = AsyncMock()
    monitor.on_connectivity_change(listener)

    await monitor.set_offline()

    listener.assert_awaited_once_with(False)


@pytest.mark.asyncio
async def test_failing_listener_does_not_block_others():
    """A raising listener does not stop the rest."""
    monitor = ConnectivityMonitor()
    events = []

    def broken(online):
        raise RuntimeError("listener bug")

    monitor.on_connectivity_change(broken)
    monitor.on_connectivity_change(events.append)

    await monitor.set_offline()

    assert events == [False]
    assert monitor.is_online is False


@pytest.mark.asyncio
async def test_last_online_tracks_online_signals():
    """last_online_at follows the latest online signal."""
    now = [1.0]
    monitor = ConnectivityMonitor(clock=lambda: now[0])
    now[0] = 5.0
    await monitor.set_offline()
    assert monitor.last_online_at == 1.0

    now[0] = 9.0
    await monitor.set_online()
    assert monitor.last_online_at == 9.0


# ============ Health check Tests ============


@pytest.mark.asyncio
async def test_check_heads_health_endpoint():
    """check() sends HEAD to the health endpoint."""
    seen = []

    def handler(request):
        seen.append((request.method, str(request.url)))
        return httpx.Response(503)

    client = mock_client(handler)
    monitor = ConnectivityMonitor("http://test/api/", "/health", client=client)
    await monitor.set_offline()

    assert await monitor.check() is True
    assert monitor.is_online is True
    assert seen == [("HEAD", "http://test/api/health")]
    await client.aclose()


@pytest.mark.asyncio
async def test_check_transport_error_goes_offline():
    """A transport error during check() goes offline."""
    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    client = mock_client(handler)
    monitor = ConnectivityMonitor("http://test/api", client=client)

    assert await monitor.check() is False
    assert monitor.is_online is False
    await client.aclose()


# ============ bind_queue Tests ============


@pytest.mark.asyncio
async def test_bind_queue_marks_and_drains(memory_store):
    """A bound queue follows the monitor and drains on reconnect."""
    handler = AsyncMock()
    queue = OfflineQueue(memory_store, handlers={"status_update": handler})
    monitor = ConnectivityMonitor()
    unbind = bind_queue(monitor, queue)

    await monitor.set_offline()
    assert queue.is_online is False
    await queue.enqueue("status_update", {"concern_id": "c1", "status": "addressed"})

    await monitor.set_online()

    assert queue.is_online is True
    handler.assert_awaited_once()
    assert len(queue) == 0

    unbind()
    await monitor.set_offline()
    assert queue.is_online is True


@pytest.mark.asyncio
async def test_bind_queue_to_offline_monitor(memory_store):
    """Binding to an offline monitor marks the queue offline."""
    queue = OfflineQueue(memory_store)
    monitor = ConnectivityMonitor()
    await monitor.set_offline()

    bind_queue(monitor, queue)

    assert queue.is_online is False
