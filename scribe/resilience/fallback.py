"""Graceful degradation to local, reduced-capability paths.

When an AI-backed operation fails with AI_SERVICE or RATE_LIMIT and a
fallback is registered for it, the user gets a locally computed result
instead of a bare error:
- analyze: heuristic document analysis (no network)

If the fallback itself fails, a single combined failure naming both
causes is raised.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from scribe.config import GRACEFUL_DEGRADATION
from scribe.core.schemas import AnalysisResponse, Concern
from scribe.resilience.classifier import (
    ClassifiedError,
    ErrorHistory,
    ErrorKind,
    OperationError,
    Severity,
)

logger = logging.getLogger(__name__)

Fallback = Callable[[dict[str, Any]], Any]

_SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]


@dataclass
class DegradedResult:
    """Result returned when an operation degrades gracefully.

    Attributes:
        success: Whether the fallback produced a result
        value: Fallback output
        degraded: Always True for results from a fallback path
        cause: The primary error that triggered degradation
        message: Human-readable description of what happened

    """

    success: bool
    value: Any = None
    degraded: bool = True
    cause: ClassifiedError | None = None
    message: str = ""


class GracefulDegradationPolicy:
    """Decides whether a classified failure falls back, and runs the fallback.

    Example:
        policy = GracefulDegradationPolicy()
        if policy.should_degrade(error, "analyze"):
            result = policy.degrade(error, "analyze", {"content": text})

    """

    DEGRADABLE_KINDS = frozenset({ErrorKind.AI_SERVICE, ErrorKind.RATE_LIMIT})

    def __init__(
        self,
        enabled: bool = GRACEFUL_DEGRADATION,
        fallbacks: dict[str, Fallback] | None = None,
        history: ErrorHistory | None = None,
    ):
        self.enabled = enabled
        self.history = history
        self._fallbacks: dict[str, Fallback] = {"analyze": analyze_locally}
        if fallbacks:
            self._fallbacks.update(fallbacks)

    def register(self, operation: str, fallback: Fallback) -> None:
        self._fallbacks[operation] = fallback

    def has_fallback(self, operation: str) -> bool:
        return operation in self._fallbacks

    def serves_offline(self, operation: str) -> bool:
        """True if `operation` can run locally without the network."""
        return self.enabled and self.has_fallback(operation)

    def should_degrade(self, error: ClassifiedError, operation: str) -> bool:
        return (
            self.enabled
            and error.kind in self.DEGRADABLE_KINDS
            and self.has_fallback(operation)
        )

    def degrade(
        self,
        error: ClassifiedError,
        operation: str,
        params: dict[str, Any],
    ) -> DegradedResult:
        """Run the local fallback for `operation`.

        Raises:
            OperationError: Combined failure if no fallback exists or it fails

        """
        fallback = self._fallbacks.get(operation)
        if fallback is None:
            raise OperationError(error)

        logger.warning(
            "Gracefully degrading %s after %s: %s", operation, error.kind.name, error.message
        )
        try:
            value = fallback(params)
        except Exception as e:
            logger.error("Fallback for %s also failed: %s", operation, e)
            raise OperationError(self._combined(error, operation, e)) from e

        return DegradedResult(
            success=True,
            value=value,
            cause=error,
            message=f"{operation} completed with reduced functionality",
        )

    def _combined(
        self, primary: ClassifiedError, operation: str, fallback_error: Exception
    ) -> ClassifiedError:
        severity = _SEVERITY_ORDER[
            max(_SEVERITY_ORDER.index(primary.severity), _SEVERITY_ORDER.index(Severity.HIGH))
        ]
        combined = ClassifiedError(
            kind=primary.kind,
            severity=severity,
            message=(
                f"Both AI and fallback {operation} failed. "
                f"Primary: {primary.message}. Fallback: {fallback_error}"
            ),
            user_message=f"Both AI and fallback {operation} failed. Please try again later.",
            retryable=primary.retryable,
            operation=operation,
            recovery_actions=primary.recovery_actions,
            metadata={
                "primary_error": primary.message,
                "fallback_error": str(fallback_error),
                "fallback_used": True,
            },
            attempts=primary.attempts,
        )
        if self.history is not None:
            self.history.record(combined)
        return combined


# --- local heuristic analysis ---------------------------------------------

LONG_SENTENCE_WORDS = 30
LONG_PARAGRAPH_WORDS = 150
SHORT_DOCUMENT_CHARS = 500

_HEADING_RE = re.compile(r"^#{1,6}\s+", re.MULTILINE)
_INTRO_RE = re.compile(r"\b(introduction|this (paper|essay|study|article)|we (present|propose))\b", re.I)
_CONCLUSION_RE = re.compile(r"\b(conclusion|in summary|to conclude|in conclusion)\b", re.I)
_CITATION_RE = re.compile(r"\([A-Z][A-Za-z\-]+(?: et al\.)?,? \d{4}[a-z]?\)|\[\d+(?:[,\-–]\s*\d+)*\]")


def _concern(category: str, severity: str, title: str, description: str, suggestions: list[str]) -> Concern:
    return Concern(
        id=uuid.uuid4().hex,
        category=category,
        severity=severity,
        title=title,
        description=description,
        suggestions=suggestions,
        status="to_be_done",
    )


def heuristic_concerns(content: str) -> list[Concern]:
    """Structural, readability and completeness checks without AI."""
    concerns: list[Concern] = []
    sentences = [s for s in re.split(r"[.!?]+", content) if s.strip()]
    paragraphs = [p for p in re.split(r"\n\s*\n", content) if p.strip()]

    if len(content) < SHORT_DOCUMENT_CHARS:
        concerns.append(
            _concern(
                "completeness",
                "medium",
                "Document appears to be very short",
                "The document is quite brief and may need more detailed content.",
                ["Consider expanding on key points", "Add more detailed explanations"],
            )
        )

    long_sentences = [s for s in sentences if len(s.split()) > LONG_SENTENCE_WORDS]
    if long_sentences:
        concerns.append(
            _concern(
                "clarity",
                "low",
                "Some sentences may be too long",
                f"Found {len(long_sentences)} sentences with more than {LONG_SENTENCE_WORDS} words.",
                [
                    "Consider breaking long sentences into shorter ones",
                    "Use punctuation to improve readability",
                ],
            )
        )

    long_paragraphs = [p for p in paragraphs if len(p.split()) > LONG_PARAGRAPH_WORDS]
    if long_paragraphs:
        concerns.append(
            _concern(
                "structure",
                "low",
                "Some paragraphs are very long",
                f"Found {len(long_paragraphs)} paragraphs with more than {LONG_PARAGRAPH_WORDS} words.",
                ["Split long paragraphs around a single idea each"],
            )
        )

    if len(content) > 1000 and not _HEADING_RE.search(content):
        concerns.append(
            _concern(
                "structure",
                "medium",
                "Document lacks clear structure",
                "No headings found in the document.",
                [
                    "Add section headings to organize content",
                    "Use markdown formatting for better structure",
                ],
            )
        )

    if len(content) > SHORT_DOCUMENT_CHARS and not _INTRO_RE.search(content):
        concerns.append(
            _concern(
                "structure",
                "low",
                "No clear introduction",
                "The document does not seem to introduce its topic or aims.",
                ["Open with a paragraph stating the purpose of the work"],
            )
        )

    if len(content) > 1000 and not _CONCLUSION_RE.search(content):
        concerns.append(
            _concern(
                "completeness",
                "low",
                "No clear conclusion",
                "The document does not seem to end with a conclusion.",
                ["Summarize the main findings in a closing section"],
            )
        )

    if len(content) > 1000 and not _CITATION_RE.search(content):
        concerns.append(
            _concern(
                "citation",
                "medium",
                "No citations found",
                "Academic writing usually supports its claims with references.",
                ["Cite the sources your arguments rely on"],
            )
        )

    return concerns


def analyze_locally(params: dict[str, Any]) -> AnalysisResponse:
    """Fallback for `analyze`: heuristic analysis of params["content"]."""
    content = params.get("content")
    if not isinstance(content, str):
        raise ValueError("Local analysis requires document content")

    started = time.monotonic()
    concerns = heuristic_concerns(content)
    by_category: dict[str, int] = {}
    by_severity: dict[str, int] = {}
    for concern in concerns:
        by_category[concern.category] = by_category.get(concern.category, 0) + 1
        by_severity[concern.severity] = by_severity.get(concern.severity, 0) + 1

    return AnalysisResponse(
        success=True,
        concerns=concerns,
        analysis={
            "total_concerns": len(concerns),
            "concerns_by_category": by_category,
            "concerns_by_severity": by_severity,
        },
        metadata={
            "model_used": "offline-analysis",
            "processing_time": time.monotonic() - started,
            "content_length": len(content),
        },
        fallback_used=True,
    )
