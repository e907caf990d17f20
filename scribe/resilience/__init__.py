"""Resilience layer for AI-backed operations.

This package provides:
- Error classification into a closed taxonomy with recovery actions
- Cooperative cancellation scopes for in-flight requests
- Policy-driven retry with exponential backoff
- Graceful degradation to local fallbacks (heuristic analysis)
- Durable offline queue for state changes made without connectivity

Architecture:
    ErrorClassifier → decides kind, severity and retryability
    RetryExecutor → retries per RetryPolicy under a CancellationScope
    GracefulDegradationPolicy → runs a local fallback when the AI path fails
    OfflineQueue → persists and replays state mutations
"""

from scribe.resilience.cancellation import CancellationScope, OperationCancelledError
from scribe.resilience.classifier import (
    ClassifiedError,
    ErrorClassifier,
    ErrorHistory,
    ErrorKind,
    OperationError,
    Severity,
)
from scribe.resilience.fallback import DegradedResult, GracefulDegradationPolicy, analyze_locally
from scribe.resilience.offline import OfflineQueue, OfflineStatus, QueuedOperation
from scribe.resilience.retry import RetryExecutor, RetryPolicy, load_policies

__all__ = [
    "CancellationScope",
    "OperationCancelledError",
    "ClassifiedError",
    "ErrorClassifier",
    "ErrorHistory",
    "ErrorKind",
    "OperationError",
    "Severity",
    "DegradedResult",
    "GracefulDegradationPolicy",
    "analyze_locally",
    "OfflineQueue",
    "OfflineStatus",
    "QueuedOperation",
    "RetryExecutor",
    "RetryPolicy",
    "load_policies",
]
