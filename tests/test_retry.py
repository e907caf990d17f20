"""Tests for retry policies and the retry executor."""

import asyncio

import pytest

from scribe.resilience.cancellation import CancellationScope, OperationCancelledError
from scribe.resilience.classifier import ErrorKind, OperationError
from scribe.resilience.retry import (
    AI_SERVICE_POLICY,
    DEFAULT_POLICIES,
    GENERAL_POLICY,
    RetryPolicy,
    RetryStats,
    load_policies,
)
from scribe.transport import TransportHTTPError


def failing_then(results):
    """Build an operation that raises/returns the scripted results in order."""
    calls = []

    async def operation():
        calls.append(len(calls) + 1)
        result = results[min(len(calls) - 1, len(results) - 1)]
        if isinstance(result, BaseException):
            raise result
        return result

    return operation, calls


# ============ CancellationScope Tests ============


def test_cancel_is_idempotent_and_keeps_first_reason():
    """A second cancel() neither re-signals nor overwrites the reason."""
    scope = CancellationScope("modify")
    scope.cancel("mode switched")
    scope.cancel("teardown")

    assert scope.cancelled is True
    assert scope.reason == "mode switched"
    with pytest.raises(OperationCancelledError) as exc_info:
        scope.raise_if_cancelled()
    assert exc_info.value.reason == "mode switched"


# ============ RetryPolicy Tests ============


def test_named_policies():
    """Named policies carry their attempt limits."""
    assert GENERAL_POLICY.max_attempts == 3
    assert AI_SERVICE_POLICY.max_attempts == 2
    assert set(DEFAULT_POLICIES) == {"general", "ai_service"}
    assert ErrorKind.STORAGE in GENERAL_POLICY.retryable_kinds
    assert ErrorKind.STORAGE not in AI_SERVICE_POLICY.retryable_kinds


def test_backoff_is_monotonic_and_capped():
    """Backoff grows and stops at the ceiling."""
    policy = RetryPolicy(name="t", max_attempts=10, base_delay=1.0, max_delay=10.0)
    delays = [policy.delay_for(attempt) for attempt in range(1, 10)]
    assert delays[:4] == [1.0, 2.0, 4.0, 8.0]
    assert all(a <= b for a, b in zip(delays, delays[1:]))
    assert max(delays) == 10.0


def test_rate_limit_uses_wait_hint_and_own_ceiling(classifier):
    """Rate limits use the wait hint and their own ceiling."""
    policy = GENERAL_POLICY
    hinted = classifier.classify(ValueError("rate limit, retry after 20 seconds"), "op")
    assert policy.delay_for(1, hinted) == 20.0

    huge = classifier.classify(ValueError("rate limit, retry after 5 minutes"), "op")
    assert policy.delay_for(1, huge) == policy.rate_limit_max_delay


def test_invalid_policy_rejected():
    """Invalid policy values raise ValueError."""
    with pytest.raises(ValueError):
        RetryPolicy(name="bad", max_attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(name="bad", backoff_multiplier=0.5)


def test_policy_is_immutable():
    """RetryPolicy cannot be mutated."""
    with pytest.raises(Exception):
        GENERAL_POLICY.max_attempts = 10


def test_load_policies_from_yaml(tmp_path):
    """Policies are overridden from a YAML file."""
    path = tmp_path / "policies.yaml"
    path.write_text(
        "general:\n  max_attempts: 5\nai_service:\n  retryable_kinds: [ai_service]\n",
        encoding="utf-8",
    )
    policies = load_policies(str(path))
    assert policies["general"].max_attempts == 5
    assert policies["general"].base_delay == GENERAL_POLICY.base_delay
    assert policies["ai_service"].retryable_kinds == frozenset({ErrorKind.AI_SERVICE})
    # Defaults untouched
    assert GENERAL_POLICY.max_attempts == 3


def test_load_policies_rejects_unknown(tmp_path):
    """Unknown policy names and fields in YAML are rejected."""
    path = tmp_path / "policies.yaml"
    path.write_text("turbo:\n  max_attempts: 5\n", encoding="utf-8")
    with pytest.raises(ValueError, match="Unknown retry policy"):
        load_policies(str(path))

    path.write_text("general:\n  max_tries: 5\n", encoding="utf-8")
    with pytest.raises(ValueError, match="Unknown fields"):
        load_policies(str(path))


def test_load_policies_without_file_returns_defaults():
    """A missing file yields the default policies."""
    assert load_policies("") == DEFAULT_POLICIES


# ============ RetryExecutor Tests ============


@pytest.mark.asyncio
async def test_succeeds_after_two_network_failures(executor, delays):
    """Two network failures then success takes three attempts."""
    operation, calls = failing_then(
        [ValueError("Network request failed"), ValueError("Network request failed"), "done"]
    )
    stats = RetryStats()

    result = await executor.run(operation, GENERAL_POLICY, "prompt", stats=stats)

    assert result == "done"
    assert len(calls) == 3
    assert stats.attempts == 3
    assert delays == [1.0, 2.0]
    assert stats.total_delay == 3.0


@pytest.mark.asyncio
async def test_retry_bound(executor, delays):
    """Attempts never exceed max_attempts."""
    operation, calls = failing_then([ValueError("Network request failed")])

    with pytest.raises(OperationError) as exc_info:
        await executor.run(operation, GENERAL_POLICY, "prompt")

    assert len(calls) == 3
    assert exc_info.value.kind == ErrorKind.NETWORK
    assert exc_info.value.classified.attempts == 3
    assert len(delays) == 2


@pytest.mark.asyncio
async def test_non_retryable_invoked_once(executor, delays):
    """Non-retryable errors are attempted once."""
    operation, calls = failing_then([TransportHTTPError("AI service error: 401", 401)])

    with pytest.raises(OperationError) as exc_info:
        await executor.run(operation, GENERAL_POLICY, "prompt")

    assert len(calls) == 1
    assert exc_info.value.kind == ErrorKind.AUTHENTICATION
    assert delays == []


@pytest.mark.asyncio
async def test_policy_without_kind_does_not_retry(executor):
    """Kinds outside the policy are not retried."""
    operation, calls = failing_then([ValueError("database is locked")])

    with pytest.raises(OperationError) as exc_info:
        await executor.run(operation, AI_SERVICE_POLICY, "analyze")

    assert exc_info.value.kind == ErrorKind.STORAGE
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_timeout_produces_timeout_error(executor):
    """A slow attempt becomes a TIMEOUT error."""
    async def slow():
        await asyncio.sleep(10)

    policy = RetryPolicy(name="fast", max_attempts=1, timeout=0.01)
    with pytest.raises(OperationError) as exc_info:
        await executor.run(slow, policy, "continue")

    assert exc_info.value.kind == ErrorKind.TIMEOUT
    assert "0.01s" in exc_info.value.classified.message


@pytest.mark.asyncio
async def test_cancelled_scope_stops_before_first_attempt(executor):
    """A cancelled scope prevents any attempt."""
    operation, calls = failing_then(["never"])
    scope = CancellationScope("prompt")
    scope.cancel("mode change")

    with pytest.raises(OperationError) as exc_info:
        await executor.run(operation, GENERAL_POLICY, "prompt", scope=scope)

    assert calls == []
    assert exc_info.value.kind == ErrorKind.OPERATION_CANCELLED
    assert exc_info.value.classified.metadata["reason"] == "mode change"


@pytest.mark.asyncio
async def test_cancel_during_backoff_stops_retries(classifier):
    """Cancelling during backoff stops further attempts."""
    from scribe.resilience.retry import RetryExecutor

    scope = CancellationScope("prompt")

    async def cancelling_sleep(delay):
        scope.cancel("user reset")
        await asyncio.sleep(0)

    executor = RetryExecutor(classifier, sleep=cancelling_sleep)
    operation, calls = failing_then([ValueError("Network request failed")])

    with pytest.raises(OperationError) as exc_info:
        await executor.run(operation, GENERAL_POLICY, "prompt", scope=scope)

    assert len(calls) == 1
    assert exc_info.value.kind == ErrorKind.OPERATION_CANCELLED


@pytest.mark.asyncio
async def test_cancel_during_request_aborts_it(executor):
    """Cancelling mid-request aborts the attempt."""
    scope = CancellationScope("analyze")
    started = asyncio.Event()

    async def hanging():
        started.set()
        await asyncio.sleep(10)

    task = asyncio.create_task(executor.run(hanging, GENERAL_POLICY, "analyze", scope=scope))
    await started.wait()
    scope.cancel("mode change")

    with pytest.raises(OperationError) as exc_info:
        await task
    assert exc_info.value.kind == ErrorKind.OPERATION_CANCELLED
