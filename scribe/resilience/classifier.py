"""Error classification for AI assist and analysis operations.

Normalizes any failure (exception, HTTP status, timeout, malformed throw
value) into a ClassifiedError:
- NETWORK / TIMEOUT / RATE_LIMIT / AI_SERVICE / STORAGE: retryable
- AUTHENTICATION / VALIDATION: surfaced immediately
- OPERATION_CANCELLED: silent terminal state of an abandoned operation
- UNKNOWN: catch-all, not retried
"""

from __future__ import annotations

import asyncio
import logging
import re
import sqlite3
import time
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

import httpx
import pydantic

from scribe.config import ERROR_HISTORY_LIMIT
from scribe.resilience.cancellation import OperationCancelledError

logger = logging.getLogger(__name__)


class ErrorKind(Enum):
    """Closed taxonomy of failure kinds."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    AI_SERVICE = "ai_service"
    VALIDATION = "validation"
    STORAGE = "storage"
    OPERATION_CANCELLED = "operation_cancelled"
    UNKNOWN = "unknown"


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryActionType(Enum):
    RETRY = "retry"
    FALLBACK = "fallback"
    CACHE = "cache"
    OFFLINE = "offline"
    MANUAL = "manual"


@dataclass(frozen=True)
class RecoveryAction:
    """Actionable control offered to the user next to a surfaced error."""

    type: RecoveryActionType
    label: str
    description: str


# kind -> (severity, retryable, user message)
KIND_DEFAULTS: dict[ErrorKind, tuple[Severity, bool, str]] = {
    ErrorKind.NETWORK: (
        Severity.HIGH,
        True,
        "Network connection failed. Please check your internet connection and try again.",
    ),
    ErrorKind.TIMEOUT: (
        Severity.MEDIUM,
        True,
        "The operation timed out. Please try again.",
    ),
    ErrorKind.AUTHENTICATION: (
        Severity.CRITICAL,
        False,
        "Authentication failed. Please check your API configuration.",
    ),
    ErrorKind.RATE_LIMIT: (
        Severity.MEDIUM,
        True,
        "Rate limit exceeded. Please wait a moment before trying again.",
    ),
    ErrorKind.AI_SERVICE: (
        Severity.HIGH,
        True,
        "AI service is temporarily unavailable. Please try again later.",
    ),
    ErrorKind.VALIDATION: (
        Severity.LOW,
        False,
        "Please check your input and try again.",
    ),
    ErrorKind.STORAGE: (
        Severity.HIGH,
        True,
        "Database error occurred. Your changes may not be saved.",
    ),
    ErrorKind.OPERATION_CANCELLED: (
        Severity.MEDIUM,
        False,
        "The operation was cancelled.",
    ),
    ErrorKind.UNKNOWN: (
        Severity.MEDIUM,
        False,
        "An unexpected error occurred. Please try again.",
    ),
}

RECOVERY_ACTIONS: dict[ErrorKind, tuple[RecoveryAction, ...]] = {
    ErrorKind.NETWORK: (
        RecoveryAction(RecoveryActionType.RETRY, "Retry", "Try the operation again"),
        RecoveryAction(
            RecoveryActionType.OFFLINE,
            "Work Offline",
            "Continue working offline and sync later",
        ),
    ),
    ErrorKind.TIMEOUT: (
        RecoveryAction(RecoveryActionType.RETRY, "Retry", "Try the operation again"),
    ),
    ErrorKind.AI_SERVICE: (
        RecoveryAction(RecoveryActionType.RETRY, "Retry", "Try the AI request again"),
        RecoveryAction(
            RecoveryActionType.FALLBACK, "Basic Analysis", "Use basic analysis without AI"
        ),
    ),
    ErrorKind.RATE_LIMIT: (
        RecoveryAction(
            RecoveryActionType.RETRY,
            "Wait and Retry",
            "Wait for the rate limit to reset and try again",
        ),
    ),
    ErrorKind.STORAGE: (
        RecoveryAction(RecoveryActionType.RETRY, "Retry Save", "Try saving again"),
        RecoveryAction(RecoveryActionType.CACHE, "Save Locally", "Save changes locally for now"),
    ),
    ErrorKind.VALIDATION: (
        RecoveryAction(
            RecoveryActionType.MANUAL, "Fix Content", "Review and fix the content issues"
        ),
    ),
    ErrorKind.AUTHENTICATION: (
        RecoveryAction(
            RecoveryActionType.MANUAL, "Check Credentials", "Review the API key configuration"
        ),
    ),
}

LOG_LEVELS: dict[ErrorKind, int] = {
    ErrorKind.NETWORK: logging.WARNING,
    ErrorKind.TIMEOUT: logging.WARNING,
    ErrorKind.RATE_LIMIT: logging.WARNING,
    ErrorKind.AI_SERVICE: logging.ERROR,
    ErrorKind.STORAGE: logging.ERROR,
    ErrorKind.AUTHENTICATION: logging.ERROR,
    ErrorKind.UNKNOWN: logging.ERROR,
    ErrorKind.VALIDATION: logging.INFO,
    ErrorKind.OPERATION_CANCELLED: logging.INFO,
}

GENERIC_MESSAGE = "An unexpected error occurred"


@dataclass(frozen=True)
class ClassifiedError:
    """A failure normalized into the taxonomy. Never mutated after creation.

    Attributes:
        kind: Taxonomy bucket
        severity: Severity (kind default unless overridden)
        message: Technical message (kept for diagnostics)
        user_message: Plain-language message shown to the user
        retryable: Whether retrying can help
        operation: Name of the operation that failed
        timestamp: Unix time of classification
        recovery_actions: Controls offered alongside the error
        metadata: Extra context (e.g. wait_seconds for rate limits)
        attempts: Attempts made before the error was surfaced

    """

    kind: ErrorKind
    severity: Severity
    message: str
    user_message: str
    retryable: bool
    operation: str
    timestamp: float = field(default_factory=time.time)
    recovery_actions: tuple[RecoveryAction, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)
    attempts: int = 1

    def __post_init__(self):
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    def with_attempts(self, attempts: int) -> ClassifiedError:
        return replace(self, attempts=attempts, metadata=dict(self.metadata))

    def to_dict(self) -> dict:
        """Convert to dictionary for logging and rendering."""
        return {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "message": self.message,
            "user_message": self.user_message,
            "retryable": self.retryable,
            "operation": self.operation,
            "timestamp": self.timestamp,
            "recovery_actions": [a.type.value for a in self.recovery_actions],
            "metadata": dict(self.metadata),
            "attempts": self.attempts,
        }


class OperationError(Exception):
    """Raised when an operation fails; carries the ClassifiedError."""

    def __init__(self, classified: ClassifiedError):
        super().__init__(classified.message)
        self.classified = classified

    @property
    def kind(self) -> ErrorKind:
        return self.classified.kind


class ErrorHistory:
    """Bounded ring buffer of classified errors, most recent first."""

    def __init__(self, limit: int = ERROR_HISTORY_LIMIT):
        self.limit = limit
        self._entries: deque[ClassifiedError] = deque(maxlen=limit)

    def record(self, error: ClassifiedError) -> None:
        self._entries.appendleft(error)

    def entries(self) -> list[ClassifiedError]:
        return list(self._entries)

    def recent(self, minutes: float = 10, now: float | None = None) -> list[ClassifiedError]:
        cutoff = (now if now is not None else time.time()) - minutes * 60
        return [e for e in self._entries if e.timestamp > cutoff]

    def clear(self) -> None:
        self._entries.clear()

    def statistics(self, window_minutes: float = 60, now: float | None = None) -> dict[str, Any]:
        """Summarize errors inside the time window.

        Returns:
            Dict with total_errors (whole history), errors_by_kind,
            errors_by_operation and recent_error_rate (errors per minute).

        """
        recent = self.recent(window_minutes, now=now)
        by_kind = {kind.value: 0 for kind in ErrorKind}
        by_operation: dict[str, int] = {}
        for error in recent:
            by_kind[error.kind.value] += 1
            by_operation[error.operation] = by_operation.get(error.operation, 0) + 1
        return {
            "total_errors": len(self._entries),
            "errors_by_kind": by_kind,
            "errors_by_operation": by_operation,
            "recent_error_rate": len(recent) / max(window_minutes, 1),
        }

    def __len__(self) -> int:
        return len(self._entries)


class ErrorClassifier:
    """Classifies failures into the ErrorKind taxonomy.

    Checks exception types and HTTP status codes first, then falls back to
    pattern matching on the message. Pattern priority:
    AUTHENTICATION > RATE_LIMIT > TIMEOUT/CANCELLED > NETWORK > AI_SERVICE
    > STORAGE > VALIDATION > UNKNOWN.

    Example:
        classifier = ErrorClassifier()
        classified = classifier.classify(ValueError("Network request failed"), "submit-prompt")
        if classified.retryable:
            ...

    """

    AUTHENTICATION_PATTERNS = [
        r"api.?key",
        r"authenticat",
        r"unauthori[sz]ed",
        r"\b401\b",
        r"\b403\b",
        r"forbidden",
        r"permission.*denied",
        r"access.*denied",
        r"invalid.*credential",
        r"token.*(expired|invalid)",
    ]

    RATE_LIMIT_PATTERNS = [
        r"rate.?limit",
        r"too.*many.*request",
        r"\b429\b",
        r"quota",
        r"throttl",
        r"retry.*after",
        r"requests.*per.*(minute|second)",
    ]

    TIMEOUT_PATTERNS = [
        r"time.?out",
        r"timed.*out",
        r"deadline.*exceeded",
    ]

    CANCELLED_PATTERNS = [
        r"cancell?ed",
        r"aborted",
    ]

    NETWORK_PATTERNS = [
        r"network",
        r"fetch",
        r"connection",
        r"connect.*(refused|reset|error)",
        r"unreachable",
        r"no.*such.*host",
        r"failed.*to.*resolve",
        r"dns",
        r"socket",
        r"offline",
    ]

    AI_SERVICE_PATTERNS = [
        r"\bai\b",
        r"model",
        r"generation",
        r"content.*filter",
        r"safety",
        r"service.*unavailable",
        r"internal.*server.*error",
        r"bad.*gateway",
        r"\b50[0-4]\b",
        r"invalid.*response",
        r"empty.*response",
    ]

    STORAGE_PATTERNS = [
        r"database",
        r"storage",
        r"\bsql",
        r"disk.*(full|i/o)",
        r"supabase",
    ]

    VALIDATION_PATTERNS = [
        r"validation",
        r"invalid",
        r"required",
        r"content",
        r"empty",
        r"too.*(short|long)",
    ]

    def __init__(self, history: ErrorHistory | None = None):
        """Initialize classifier with compiled patterns.

        Args:
            history: Ring buffer receiving every classified error

        """
        self.history = history if history is not None else ErrorHistory()
        self._compiled_patterns: list[tuple[ErrorKind, list[re.Pattern]]] = [
            (kind, [re.compile(p, re.IGNORECASE) for p in patterns])
            for kind, patterns in (
                (ErrorKind.AUTHENTICATION, self.AUTHENTICATION_PATTERNS),
                (ErrorKind.RATE_LIMIT, self.RATE_LIMIT_PATTERNS),
                (ErrorKind.TIMEOUT, self.TIMEOUT_PATTERNS),
                (ErrorKind.OPERATION_CANCELLED, self.CANCELLED_PATTERNS),
                (ErrorKind.NETWORK, self.NETWORK_PATTERNS),
                (ErrorKind.AI_SERVICE, self.AI_SERVICE_PATTERNS),
                (ErrorKind.STORAGE, self.STORAGE_PATTERNS),
                (ErrorKind.VALIDATION, self.VALIDATION_PATTERNS),
            )
        ]

    def classify(
        self,
        error: Any,
        operation: str = "unknown",
        *,
        severity: Severity | None = None,
        retryable: bool | None = None,
        user_message: str | None = None,
    ) -> ClassifiedError:
        """Classify a failure and record it in the history.

        Args:
            error: Exception, message string or any thrown value
            operation: Name of the failing operation
            severity: Overrides the kind's default severity
            retryable: Overrides the kind's default retryability
            user_message: Overrides the kind's default user message

        Returns:
            ClassifiedError (never raises)

        """
        if isinstance(error, OperationError):
            return error.classified
        if isinstance(error, ClassifiedError):
            return error

        try:
            kind, message, metadata = self._detect(error)
        except Exception as e:  # a broken __str__ must not break classification
            logger.debug("Classifier fell back to UNKNOWN: %s", e)
            kind, message, metadata = ErrorKind.UNKNOWN, GENERIC_MESSAGE, {}

        default_severity, default_retryable, default_user_message = KIND_DEFAULTS[kind]
        if kind == ErrorKind.VALIDATION and message != GENERIC_MESSAGE:
            # Validation messages are already actionable
            default_user_message = message

        classified = ClassifiedError(
            kind=kind,
            severity=severity or default_severity,
            message=message,
            user_message=user_message or default_user_message,
            retryable=default_retryable if retryable is None else retryable,
            operation=operation,
            recovery_actions=RECOVERY_ACTIONS.get(kind, ()),
            metadata=metadata,
        )
        self.history.record(classified)
        logger.log(
            LOG_LEVELS.get(kind, logging.ERROR),
            "%s error in %s: %s",
            kind.name,
            operation,
            message,
        )
        return classified

    def make(
        self,
        kind: ErrorKind,
        message: str,
        operation: str,
        **metadata: Any,
    ) -> ClassifiedError:
        """Build a ClassifiedError of a known kind (validation failures, cancellations)."""
        default_severity, default_retryable, default_user_message = KIND_DEFAULTS[kind]
        classified = ClassifiedError(
            kind=kind,
            severity=default_severity,
            message=message,
            user_message=message if kind == ErrorKind.VALIDATION else default_user_message,
            retryable=default_retryable,
            operation=operation,
            recovery_actions=RECOVERY_ACTIONS.get(kind, ()),
            metadata=metadata,
        )
        self.history.record(classified)
        return classified

    def _detect(self, error: Any) -> tuple[ErrorKind, str, dict[str, Any]]:
        if isinstance(error, str):
            message = error
            kind = self._match_message(message) if message else ErrorKind.UNKNOWN
            return kind, message or GENERIC_MESSAGE, self._metadata_for(kind, message)

        if not isinstance(error, BaseException):
            return ErrorKind.UNKNOWN, GENERIC_MESSAGE, {}

        message = str(error) or type(error).__name__
        kind = self._match_type(error)
        if kind is None:
            status = _status_code(error)
            kind = _kind_for_status(status) if status is not None else None
        if kind is None:
            kind = self._match_message(message)
        metadata = self._metadata_for(kind, message)
        status = _status_code(error)
        if status is not None:
            metadata["status_code"] = status
        return kind, message, metadata

    def _match_type(self, error: BaseException) -> ErrorKind | None:
        if isinstance(error, (OperationCancelledError, asyncio.CancelledError)):
            return ErrorKind.OPERATION_CANCELLED
        if isinstance(error, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
            return ErrorKind.TIMEOUT
        if isinstance(error, pydantic.ValidationError):
            # Malformed backend payload, not bad user input
            return ErrorKind.AI_SERVICE
        if isinstance(error, httpx.TransportError):
            return ErrorKind.NETWORK
        if isinstance(error, ConnectionError):
            return ErrorKind.NETWORK
        if isinstance(error, sqlite3.Error):
            return ErrorKind.STORAGE
        return None

    def _match_message(self, message: str) -> ErrorKind:
        for kind, patterns in self._compiled_patterns:
            if any(pattern.search(message) for pattern in patterns):
                return kind
        return ErrorKind.UNKNOWN

    def _metadata_for(self, kind: ErrorKind, message: str) -> dict[str, Any]:
        if kind == ErrorKind.RATE_LIMIT:
            return {"wait_seconds": self._extract_wait_time(message)}
        return {}

    def _extract_wait_time(self, message: str) -> int | None:
        """Extract wait time from rate limit error message.

        Looks for patterns like:
        - "retry after 30 seconds"
        - "try again in 2 minutes"

        Returns:
            Wait time in seconds, None if the message carries no hint

        """
        match = re.search(
            r"(\d+)\s*(seconds?|secs?|s|minutes?|mins?|m|hours?|h)\b", message, re.IGNORECASE
        )
        if not match:
            return None
        value = int(match.group(1))
        unit = match.group(2).lower()
        if unit.startswith("h"):
            return value * 3600
        if unit.startswith("m"):
            return value * 60
        return value


def _status_code(error: BaseException) -> int | None:
    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return status
    response = getattr(error, "response", None)
    if response is not None:
        status = getattr(response, "status_code", None)
        if isinstance(status, int):
            return status
    return None


def _kind_for_status(status: int) -> ErrorKind | None:
    if status in (401, 403):
        return ErrorKind.AUTHENTICATION
    if status == 429:
        return ErrorKind.RATE_LIMIT
    if status in (408, 504):
        return ErrorKind.TIMEOUT
    if status >= 500:
        return ErrorKind.AI_SERVICE
    if status in (400, 413, 422):
        return ErrorKind.VALIDATION
    return None


SUGGESTIONS: dict[ErrorKind, list[str]] = {
    ErrorKind.NETWORK: ["Check your internet connection", "Try again in a few moments"],
    ErrorKind.AI_SERVICE: [
        "The AI service may be temporarily unavailable",
        "Try using basic analysis mode",
    ],
    ErrorKind.RATE_LIMIT: [
        "Wait a few minutes before trying again",
        "Consider analyzing smaller sections",
    ],
    ErrorKind.AUTHENTICATION: [
        "Check your API configuration",
        "Contact support if the issue persists",
    ],
    ErrorKind.VALIDATION: [
        "Review your document content",
        "Ensure sufficient content for analysis",
    ],
}


def user_friendly_message(error: ClassifiedError) -> str:
    """Render the user message followed by recovery suggestions."""
    suggestions = SUGGESTIONS.get(error.kind)
    if not suggestions:
        return error.user_message
    bullets = "\n• ".join(suggestions)
    return f"{error.user_message}\n\nSuggestions:\n• {bullets}"
