"""Retry execution with classification and exponential backoff.

One executor serves every call site; behaviour differs only through the
RetryPolicy passed in (general assist calls vs. AI analysis calls).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, fields, replace
from typing import Any, Awaitable, Callable, TypeVar

import yaml

from scribe.config import ANALYSIS_TIMEOUT, POLICY_FILE, REQUEST_TIMEOUT
from scribe.resilience.cancellation import CancellationScope, OperationCancelledError
from scribe.resilience.classifier import (
    ClassifiedError,
    ErrorClassifier,
    ErrorKind,
    OperationError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable retry configuration for one operation class.

    Attributes:
        name: Policy name (for logs and overrides)
        max_attempts: Total attempts including the first one
        base_delay: Delay before the second attempt, seconds
        max_delay: Per-delay ceiling for ordinary transient errors, seconds
        backoff_multiplier: Growth factor between consecutive delays
        rate_limit_max_delay: Per-delay ceiling for RATE_LIMIT errors, seconds
        retryable_kinds: Kinds this policy is willing to retry
        timeout: Per-attempt timeout ceiling, seconds

    """

    name: str
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    rate_limit_max_delay: float = 30.0
    retryable_kinds: frozenset[ErrorKind] = field(
        default_factory=lambda: frozenset(
            {ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.RATE_LIMIT}
        )
    )
    timeout: float = REQUEST_TIMEOUT

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"{self.name}: max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0 or self.rate_limit_max_delay < 0:
            raise ValueError(f"{self.name}: delays must be non-negative")
        if self.backoff_multiplier < 1:
            raise ValueError(f"{self.name}: backoff_multiplier must be >= 1")
        object.__setattr__(self, "retryable_kinds", frozenset(self.retryable_kinds))

    def should_retry(self, error: ClassifiedError) -> bool:
        """True if the error is retryable and this policy retries its kind."""
        return error.retryable and error.kind in self.retryable_kinds

    def delay_for(self, attempt: int, error: ClassifiedError | None = None) -> float:
        """Backoff before attempt `attempt + 1`: min(base * mult^(attempt-1), ceiling)."""
        ceiling = self.max_delay
        delay = self.base_delay * self.backoff_multiplier ** (attempt - 1)
        if error is not None and error.kind == ErrorKind.RATE_LIMIT:
            ceiling = self.rate_limit_max_delay
            wait_hint = error.metadata.get("wait_seconds")
            if wait_hint:
                delay = max(delay, float(wait_hint))
        return min(delay, ceiling)


GENERAL_POLICY = RetryPolicy(
    name="general",
    max_attempts=3,
    base_delay=1.0,
    max_delay=10.0,
    backoff_multiplier=2.0,
    rate_limit_max_delay=30.0,
    retryable_kinds=frozenset(
        {
            ErrorKind.NETWORK,
            ErrorKind.TIMEOUT,
            ErrorKind.RATE_LIMIT,
            ErrorKind.AI_SERVICE,
            ErrorKind.STORAGE,
        }
    ),
)

AI_SERVICE_POLICY = RetryPolicy(
    name="ai_service",
    max_attempts=2,
    base_delay=2.0,
    max_delay=8.0,
    backoff_multiplier=2.0,
    rate_limit_max_delay=30.0,
    retryable_kinds=frozenset(
        {
            ErrorKind.AI_SERVICE,
            ErrorKind.NETWORK,
            ErrorKind.TIMEOUT,
            ErrorKind.RATE_LIMIT,
        }
    ),
    timeout=ANALYSIS_TIMEOUT,
)

DEFAULT_POLICIES: dict[str, RetryPolicy] = {
    GENERAL_POLICY.name: GENERAL_POLICY,
    AI_SERVICE_POLICY.name: AI_SERVICE_POLICY,
}


def load_policies(path: str | None = None) -> dict[str, RetryPolicy]:
    """Return the named policy table, applying YAML overrides if a file is given.

    File format:
        general:
          max_attempts: 4
        ai_service:
          timeout: 45
          retryable_kinds: [ai_service, network]

    Raises:
        ValueError: Unknown policy name, unknown field or invalid value

    """
    path = path if path is not None else POLICY_FILE
    policies = dict(DEFAULT_POLICIES)
    if not path:
        return policies

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Policy file {path} must contain a mapping")

    allowed = {f.name for f in fields(RetryPolicy)} - {"name"}
    for name, overrides in data.items():
        if name not in policies:
            raise ValueError(f"Unknown retry policy: {name}")
        overrides = dict(overrides or {})
        unknown = set(overrides) - allowed
        if unknown:
            raise ValueError(f"Unknown fields for policy {name}: {sorted(unknown)}")
        if "retryable_kinds" in overrides:
            overrides["retryable_kinds"] = frozenset(
                ErrorKind(kind) for kind in overrides["retryable_kinds"]
            )
        policies[name] = replace(policies[name], **overrides)
        logger.info("Retry policy %s overridden from %s", name, path)
    return policies


@dataclass
class RetryStats:
    """Statistics collected during retry attempts.

    Attributes:
        attempts: Number of attempts made (including the initial call)
        total_delay: Cumulative backoff time spent waiting, seconds
        delays: Individual backoff delays in order
        errors: Classified error from each failed attempt

    """

    attempts: int = 0
    total_delay: float = 0.0
    delays: list[float] = field(default_factory=list)
    errors: list[ClassifiedError] = field(default_factory=list)


class RetryExecutor:
    """Runs a zero-argument async operation under a RetryPolicy.

    Each attempt races the operation against the policy timeout (and the
    cancellation scope, when given). Failures are classified; non-retryable
    errors and the last attempt raise OperationError immediately, otherwise
    the executor sleeps for the policy backoff and tries again.

    Example:
        executor = RetryExecutor(ErrorClassifier())
        data = await executor.run(lambda: transport.request("continue", "POST", body),
                                  GENERAL_POLICY, "continue", scope=scope)

    """

    def __init__(
        self,
        classifier: ErrorClassifier,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.classifier = classifier
        self._sleep = sleep

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy,
        context: str,
        scope: CancellationScope | None = None,
        stats: RetryStats | None = None,
        timeout: float | None = None,
    ) -> T:
        """Run `operation` with retries.

        Args:
            operation: Zero-argument coroutine factory; called once per attempt
            policy: Retry policy for this operation class
            context: Operation name used for classification and logs
            scope: Cancellation scope observed before/during attempts and backoff
            stats: Optional collector for attempts and delays
            timeout: Overrides the policy timeout

        Returns:
            The operation result from the first successful attempt

        Raises:
            OperationError: Final classified failure (never retried if cancelled)

        """
        stats = stats if stats is not None else RetryStats()
        limit = timeout if timeout is not None else policy.timeout
        attempt = 1

        while True:
            if scope is not None and scope.cancelled:
                raise self._cancelled(context, scope, attempt - 1)

            stats.attempts = attempt
            try:
                return await self._attempt(operation, limit, scope, context)
            except OperationError as e:
                classified = e.classified
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                classified = self.classifier.classify(
                    asyncio.TimeoutError(f"Request timeout after {limit:g}s"), context
                )
            except Exception as e:
                classified = self.classifier.classify(e, context)

            classified = classified.with_attempts(attempt)
            stats.errors.append(classified)

            if classified.kind == ErrorKind.OPERATION_CANCELLED:
                raise OperationError(classified)

            if not policy.should_retry(classified) or attempt >= policy.max_attempts:
                if attempt > 1:
                    logger.warning(
                        "%s failed after %d/%d attempts: %s",
                        context,
                        attempt,
                        policy.max_attempts,
                        classified.message,
                    )
                raise OperationError(classified)

            delay = policy.delay_for(attempt, classified)
            logger.warning(
                "Attempt %d/%d failed for %s (%s), retrying in %.1fs",
                attempt,
                policy.max_attempts,
                context,
                classified.kind.name,
                delay,
            )
            stats.delays.append(delay)
            stats.total_delay += delay
            try:
                if scope is not None:
                    await scope.sleep(delay, self._sleep)
                else:
                    await self._sleep(delay)
            except OperationCancelledError:
                raise self._cancelled(context, scope, attempt) from None
            attempt += 1

    async def _attempt(
        self,
        operation: Callable[[], Awaitable[T]],
        timeout: float,
        scope: CancellationScope | None,
        context: str,
    ) -> T:
        awaitable: Awaitable[Any] = operation()
        if scope is not None:
            awaitable = scope.guard(awaitable)
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except OperationCancelledError as e:
            raise self._cancelled(context, scope, 0, reason=e.reason) from None

    def _cancelled(
        self,
        context: str,
        scope: CancellationScope | None,
        attempts: int,
        reason: str | None = None,
    ) -> OperationError:
        reason = reason or (scope.reason if scope is not None else None)
        classified = self.classifier.make(
            ErrorKind.OPERATION_CANCELLED,
            "Operation was cancelled",
            context,
            reason=reason,
        )
        return OperationError(classified.with_attempts(max(attempts, 1)))
