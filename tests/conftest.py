"""Shared fixtures: isolated activity log, instant backoff, scripted transport."""

from __future__ import annotations

from typing import Any

import pytest

from scribe.core.modes import ModeStateMachine
from scribe.resilience.classifier import ErrorClassifier
from scribe.resilience.offline import OfflineQueue
from scribe.resilience.retry import RetryExecutor
from scribe.store import MemoryKeyValueStore


class FakeTransport:
    """Scripted request function.

    Each entry of `script` is consumed per call: an exception instance is
    raised, a callable is awaited/called with (endpoint, method, body), and
    anything else is returned as the response body. The last entry repeats.
    """

    def __init__(self, *script: Any):
        self.script = list(script) or [{"success": True, "content": "ok"}]
        self.calls: list[tuple[str, str, dict | None]] = []
        self.closed = False

    async def request(self, endpoint: str, method: str = "POST", body: dict | None = None) -> Any:
        self.calls.append((endpoint, method, body))
        index = min(len(self.calls) - 1, len(self.script) - 1)
        step = self.script[index]
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            result = step(endpoint, method, body)
            if hasattr(result, "__await__"):
                result = await result
            return result
        return step

    async def close(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def isolated_activity_log(tmp_path, monkeypatch):
    """Keep activity log writes out of the project tree."""
    path = tmp_path / "logs" / "activity.log"
    monkeypatch.setattr("scribe.activity_log.ACTIVITY_LOG_FILE", str(path))
    return path


@pytest.fixture
def delays():
    return []


@pytest.fixture
def fake_sleep(delays):
    async def sleep(delay: float) -> None:
        delays.append(delay)

    return sleep


@pytest.fixture
def classifier():
    return ErrorClassifier()


@pytest.fixture
def executor(classifier, fake_sleep):
    return RetryExecutor(classifier, sleep=fake_sleep)


@pytest.fixture
def machine():
    return ModeStateMachine()


@pytest.fixture
def memory_store():
    return MemoryKeyValueStore()


@pytest.fixture
def offline_queue(memory_store):
    return OfflineQueue(memory_store)


@pytest.fixture
def transport_factory():
    return FakeTransport
