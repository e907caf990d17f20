"""Operation orchestration: the façade the presentation layer talks to.

Every user intent goes through the same pipeline:

    validate input (no network on failure)
      → activate mode, open a cancellation scope
      → record descriptor (manual retry)
      → offline with a local fallback: serve it locally, no network
      → optimistic update
      → RetryExecutor.run(request) under the operation-class policy
      → success: apply result, reset mode
      → failure: degrade if a fallback exists, otherwise surface the error

Concern status updates are the only state-mutating call; while offline
(or after a connectivity failure) they go to the OfflineQueue instead of
being surfaced.
"""

from __future__ import annotations

import hashlib
import logging
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

from pydantic import BaseModel

from scribe import activity_log
from scribe.config import ANALYSIS_CACHE_TTL
from scribe.connectivity import ConnectivityMonitor, bind_queue
from scribe.core.modes import AssistMode, ErrorState, ModeStateMachine, ProcessingState
from scribe.core.schemas import AnalysisResponse, AssistResponse
from scribe.core.selection import TextSelection
from scribe.progress import CONNECTING, PROCESSING_RESPONSE, ProgressReporter
from scribe.resilience.cancellation import CancellationScope
from scribe.resilience.classifier import (
    ClassifiedError,
    ErrorClassifier,
    ErrorHistory,
    ErrorKind,
    OperationError,
)
from scribe.resilience.fallback import DegradedResult, GracefulDegradationPolicy
from scribe.resilience.offline import OfflineQueue, OfflineStatus, QueuedOperation
from scribe.resilience.retry import RetryExecutor, RetryPolicy, RetryStats, load_policies
from scribe.store import MemoryKeyValueStore
from scribe.transport import HttpTransport

logger = logging.getLogger(__name__)

STATUS_UPDATE = "status_update"
CONCERN_STATUSES = frozenset({"to_be_done", "addressed", "rejected"})


class ModificationType(Enum):
    PROMPT = "prompt"
    EXPAND = "expand"
    SHORTEN = "shorten"
    REPHRASE = "rephrase"
    CORRECT = "correct"
    TONE = "tone"
    FORMAT = "format"
    REWRITE = "rewrite"
    SUMMARIZE = "summarize"
    IMPROVE_CLARITY = "improve_clarity"


_MODIFY_VERBS = {
    ModificationType.REWRITE: "Rewriting",
    ModificationType.EXPAND: "Expanding",
    ModificationType.SUMMARIZE: "Summarizing",
    ModificationType.IMPROVE_CLARITY: "Improving clarity",
    ModificationType.PROMPT: "Modifying",
}


@dataclass(frozen=True)
class OperationDescriptor:
    """Everything needed to replay an intent (manual retry, forced fallback)."""

    intent: str
    mode: AssistMode
    endpoint: str
    body: Mapping[str, Any]
    policy: str
    status_message: str
    method: str = "POST"

    def __post_init__(self):
        object.__setattr__(self, "body", MappingProxyType(dict(self.body)))


@dataclass(frozen=True)
class OptimisticUpdate:
    """Speculative document patch shown while a call is in flight.

    Carries its own undo payload; applying and reverting never mutate it.
    """

    mode: AssistMode
    estimated_content: str
    position: int
    original_document: str
    replace_length: int = 0
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.time)

    def apply(self, document: str) -> str:
        end = self.position + self.replace_length
        return document[: self.position] + self.estimated_content + document[end:]

    def revert(self) -> str:
        return self.original_document


@dataclass(frozen=True)
class OperationOutcome:
    """Result-or-classified-error returned by every intent.

    Attributes:
        success: True for a normal or degraded result
        value: Parsed response (AssistResponse / AnalysisResponse) or queued operation
        error: Surfaced error, or the cause of a degradation / queueing
        degraded: Result came from a local fallback path
        queued: State change deferred to the offline queue
        attempts: Network attempts made

    """

    success: bool
    value: Any = None
    error: ClassifiedError | None = None
    degraded: bool = False
    queued: bool = False
    attempts: int = 0

    @property
    def cancelled(self) -> bool:
        return self.error is not None and self.error.kind == ErrorKind.OPERATION_CANCELLED

    @property
    def fallback_used(self) -> bool:
        return self.degraded or bool(getattr(self.value, "fallback_used", False))


class AnalysisCache:
    """Successful analysis results keyed by SHA-256 of the analyzed content."""

    def __init__(self, ttl: float = ANALYSIS_CACHE_TTL, max_entries: int = 100, clock=time.time):
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, AnalysisResponse]] = OrderedDict()

    @staticmethod
    def key(content: str) -> str:
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    def get(self, content: str) -> AnalysisResponse | None:
        key = self.key(content)
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, result = entry
        if self._clock() - stored_at > self.ttl:
            del self._entries[key]
            return None
        return result

    def put(self, content: str, result: AnalysisResponse) -> None:
        key = self.key(content)
        self._entries[key] = (self._clock(), result)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class BackendRejectedError(Exception):
    """Backend answered 2xx with success=false."""


class OperationOrchestrator:
    """Turns user intents into cancellable, retried, degradable backend calls.

    Usage:
        orchestrator = OperationOrchestrator(HttpTransport())
        orchestrator.update_document(text)
        outcome = await orchestrator.submit_prompt("Write an abstract", cursor=0)
        if not outcome.success:
            print(orchestrator.error_state.error.user_message)

    """

    def __init__(
        self,
        transport: HttpTransport,
        machine: ModeStateMachine | None = None,
        classifier: ErrorClassifier | None = None,
        executor: RetryExecutor | None = None,
        degradation: GracefulDegradationPolicy | None = None,
        offline_queue: OfflineQueue | None = None,
        connectivity: ConnectivityMonitor | None = None,
        policies: dict[str, RetryPolicy] | None = None,
        cache: AnalysisCache | None = None,
        reporter: ProgressReporter | None = None,
    ):
        self.transport = transport
        self.machine = machine or ModeStateMachine()
        self.classifier = classifier or ErrorClassifier()
        self.executor = executor or RetryExecutor(self.classifier)
        self.degradation = degradation or GracefulDegradationPolicy(history=self.history)
        self.offline_queue = (
            offline_queue if offline_queue is not None else OfflineQueue(MemoryKeyValueStore())
        )
        self.connectivity = connectivity
        self.policies = policies if policies is not None else load_policies()
        self.cache = cache if cache is not None else AnalysisCache()
        self.reporter = reporter or ProgressReporter(self.machine)

        self._last_operation: OperationDescriptor | None = None
        self._optimistic: dict[AssistMode, OptimisticUpdate] = {}
        self.offline_queue.register_handler(STATUS_UPDATE, self._replay_status_update)
        self._unbind_connectivity = (
            bind_queue(connectivity, self.offline_queue) if connectivity is not None else None
        )

    # --- read-only state -------------------------------------------------

    @property
    def history(self) -> ErrorHistory:
        return self.classifier.history

    @property
    def error_state(self) -> ErrorState:
        return self.machine.error_state

    @property
    def processing_state(self) -> ProcessingState:
        return self.machine.processing_state

    @property
    def offline_status(self) -> OfflineStatus:
        return self.offline_queue.status()

    @property
    def last_operation(self) -> OperationDescriptor | None:
        return self._last_operation

    def optimistic_update(self, mode: AssistMode) -> OptimisticUpdate | None:
        return self._optimistic.get(mode)

    @property
    def preview_content(self) -> str:
        """Document with the current mode's optimistic update applied."""
        update = self._optimistic.get(self.machine.current_mode)
        document = self.machine.document_content
        return update.apply(document) if update is not None else document

    # --- state-machine surface -------------------------------------------

    def can_enter(self, mode: AssistMode) -> bool:
        return self.machine.can_enter(mode)

    def enter_mode(self, mode: AssistMode) -> bool:
        return self.machine.enter(mode)

    def reset_mode(self) -> None:
        self.machine.reset()

    def update_selection(self, selection: TextSelection | None) -> None:
        self.machine.update_selection(selection)

    def update_document(self, content: str) -> None:
        self.machine.update_document(content)

    # --- intents ---------------------------------------------------------

    async def submit_prompt(self, text: str, cursor: int | None = None) -> OperationOutcome:
        """Generate content for `text` at `cursor` (default: end of document)."""
        if text is None or not text.strip():
            return self._reject("prompt", "Prompt cannot be empty")
        document = self.machine.document_content
        cursor = len(document) if cursor is None else cursor
        if not 0 <= cursor <= len(document):
            return self._reject("prompt", "Cursor position is outside the document")

        descriptor = OperationDescriptor(
            intent="prompt",
            mode=AssistMode.PROMPT,
            endpoint="prompt",
            body={"prompt": text.strip(), "content": document, "cursor_position": cursor},
            policy="general",
            status_message="Generating content...",
        )
        return await self._run(descriptor)

    async def continue_writing(
        self, cursor: int | None = None, selection: TextSelection | None = None
    ) -> OperationOutcome:
        """Continue the document from `cursor`, optionally steered by a selection."""
        document = self.machine.document_content
        if not document.strip():
            return self._reject("continue", "No content to continue from")
        cursor = len(document) if cursor is None else cursor
        if not 0 <= cursor <= len(document):
            return self._reject("continue", "Cursor position is outside the document")

        body: dict[str, Any] = {"content": document, "cursor_position": cursor}
        if selection is not None and selection.text.strip():
            body["selected_text"] = selection.text
        descriptor = OperationDescriptor(
            intent="continue",
            mode=AssistMode.CONTINUE,
            endpoint="continue",
            body=body,
            policy="general",
            status_message="Continuing your writing...",
        )
        return await self._run(descriptor)

    async def modify_selection(
        self,
        text: str,
        kind: ModificationType | str,
        custom_prompt: str | None = None,
    ) -> OperationOutcome:
        """Transform the selected `text`; `custom_prompt` is used only for PROMPT."""
        reason = self.machine.validator.reason(text)
        if reason:
            return self._reject("modify", reason)
        try:
            kind = ModificationType(kind) if not isinstance(kind, ModificationType) else kind
        except ValueError:
            return self._reject("modify", f"Unknown modification type: {kind}")

        body: dict[str, Any] = {
            "selected_text": text,
            "modification_type": kind.value,
            "content": self.machine.document_content,
        }
        if kind == ModificationType.PROMPT:
            if not custom_prompt or not custom_prompt.strip():
                return self._reject("modify", "Custom prompt is required for prompt modifications")
            body["custom_prompt"] = custom_prompt.strip()

        self._adopt_selection(text)
        descriptor = OperationDescriptor(
            intent="modify",
            mode=AssistMode.MODIFY,
            endpoint="modify",
            body=body,
            policy="general",
            status_message=f"Applying {kind.value.replace('_', ' ')}...",
        )
        return await self._run(descriptor)

    async def analyze_document(self, content: str) -> OperationOutcome:
        """Proofreading analysis of `content`; falls back to cache or heuristics."""
        reason = self.machine.validator.reason(content)
        if reason:
            return self._reject("analyze", reason)

        self._adopt_selection(content)
        descriptor = OperationDescriptor(
            intent="analyze",
            mode=AssistMode.ANALYZE,
            endpoint="analyze",
            body={"content": content},
            policy="ai_service",
            status_message="Analyzing document...",
        )
        return await self._run(descriptor)

    async def update_concern_status(self, concern_id: str, status: str) -> OperationOutcome:
        """Persist a concern status, queueing it while offline."""
        operation = "update_concern_status"
        if not concern_id:
            return self._reject(operation, "Concern id is required")
        if status not in CONCERN_STATUSES:
            return self._reject(operation, f"Invalid concern status: {status}")

        payload = {"concern_id": concern_id, "status": status}
        if not self.offline_queue.is_online:
            return await self._queue_status_update(payload)

        stats = RetryStats()
        try:
            value = await self.executor.run(
                lambda: self._replay_status_update(payload),
                self.policies["general"],
                operation,
                stats=stats,
            )
        except OperationError as e:
            error = e.classified
            if error.kind == ErrorKind.NETWORK:
                await self._go_offline()
                return await self._queue_status_update(payload, cause=error)
            self.machine.set_error(error, can_retry=False)
            return OperationOutcome(False, error=error, attempts=stats.attempts)
        return OperationOutcome(True, value=value, attempts=stats.attempts)

    # --- recovery surface ------------------------------------------------

    async def retry_last_operation(self) -> OperationOutcome | None:
        """Replay the last intent. Returns None if nothing was recorded."""
        descriptor = self._last_operation
        if descriptor is None:
            logger.info("Retry requested but there is no operation to retry")
            return None
        retry_count = self.machine.error_state.retry_count + 1
        logger.info("Manual retry #%d of %s", retry_count, descriptor.intent)
        if descriptor.mode in (AssistMode.MODIFY, AssistMode.ANALYZE):
            self._adopt_selection(descriptor.body.get("selected_text") or descriptor.body["content"])
        return await self._run(descriptor, retry_count=retry_count)

    def clear_error(self) -> None:
        self.machine.clear_error()

    async def force_graceful_degradation(self) -> OperationOutcome | None:
        """Run the last intent's local fallback regardless of the error kind."""
        descriptor = self._last_operation
        if descriptor is None or not self.degradation.has_fallback(descriptor.intent):
            logger.info("No fallback available for the last operation")
            return None
        cause = self.machine.error_state.error or self.classifier.make(
            ErrorKind.AI_SERVICE, "Reduced functionality requested by user", descriptor.intent
        )
        if self.machine.processing_state.is_processing:
            self.machine.reset()
        try:
            result = self._fallback(cause, descriptor)
        except OperationError as e:
            self.machine.set_error(e.classified, can_retry=False)
            return OperationOutcome(False, error=e.classified)
        return self._finish_degraded(descriptor, result, attempts=0)

    async def close(self) -> None:
        """Teardown: cancel in-flight work and drop subscriptions."""
        if self._unbind_connectivity is not None:
            self._unbind_connectivity()
            self._unbind_connectivity = None
        self._optimistic.clear()
        self.machine.close()
        await self.transport.close()

    # --- pipeline --------------------------------------------------------

    async def _run(self, descriptor: OperationDescriptor, retry_count: int = 0) -> OperationOutcome:
        scope = self._activate(descriptor.mode)
        if scope is None:
            message = (
                "Another AI operation is already in progress"
                if self.machine.processing_state.is_processing
                else f"Cannot start {descriptor.intent} in the current state"
            )
            return self._reject(descriptor.intent, message)

        self.machine.clear_error()
        self._last_operation = descriptor
        if not self.offline_queue.is_online and self.degradation.serves_offline(descriptor.intent):
            return self._run_offline(descriptor)

        update = self._apply_optimistic(descriptor)
        self.reporter.start(descriptor.status_message)
        activity_log.log_operation_start(descriptor.intent, _describe(descriptor))
        started = time.monotonic()
        policy = self.policies[descriptor.policy]
        stats = RetryStats()

        try:
            value = await self.executor.run(
                lambda: self._call(descriptor, scope),
                policy,
                descriptor.intent,
                scope=scope,
                stats=stats,
            )
        except OperationError as e:
            return self._fail(descriptor, e.classified, scope, update, retry_count, stats, started)

        if scope.cancelled:
            logger.info("Discarding stale %s result", descriptor.intent)
            self._rollback(update)
            activity_log.log_operation_end(
                descriptor.intent, False, time.monotonic() - started, "cancelled"
            )
            return OperationOutcome(
                False,
                error=self.classifier.make(
                    ErrorKind.OPERATION_CANCELLED, "Operation was cancelled", descriptor.intent
                ),
                attempts=stats.attempts,
            )

        self._optimistic.pop(descriptor.mode, None)
        if descriptor.intent == "analyze":
            self.cache.put(descriptor.body["content"], value)
        self.reporter.complete()
        activity_log.log_operation_end(descriptor.intent, True, time.monotonic() - started)
        self.machine.reset()
        return OperationOutcome(True, value=value, attempts=stats.attempts)

    def _run_offline(self, descriptor: OperationDescriptor) -> OperationOutcome:
        """Serve the intent from its local fallback without touching the network."""
        logger.info("Offline, running %s locally", descriptor.intent)
        cause = self.classifier.make(
            ErrorKind.NETWORK, "Offline: using local fallback", descriptor.intent
        )
        activity_log.log_operation_start(descriptor.intent, _describe(descriptor))
        try:
            result = self._fallback(cause, descriptor)
        except OperationError as e:
            self.machine.reset()
            self.machine.set_error(e.classified, can_retry=False)
            return OperationOutcome(False, error=e.classified)
        activity_log.log_operation_end(descriptor.intent, True, 0.0)
        return self._finish_degraded(descriptor, result, attempts=0)

    def _activate(self, mode: AssistMode) -> CancellationScope | None:
        if self.machine.processing_state.is_processing:
            return None
        if self.machine.current_mode == mode:
            return self.machine.open_scope()
        if self.machine.enter(mode):
            return self.machine.scope
        return None

    async def _call(self, descriptor: OperationDescriptor, scope: CancellationScope) -> BaseModel:
        current = self.machine.scope is scope
        if current:
            self.reporter.checkpoint(CONNECTING, "Connecting to AI service...")
        data = await self.transport.request(
            descriptor.endpoint, descriptor.method, dict(descriptor.body)
        )
        if current and not scope.cancelled:
            self.reporter.checkpoint(PROCESSING_RESPONSE, "Processing response...")

        model = AnalysisResponse if descriptor.intent == "analyze" else AssistResponse
        parsed = model.model_validate(data)
        if not parsed.success:
            raise BackendRejectedError(parsed.error or "AI service returned an unsuccessful response")
        return parsed

    def _fail(
        self,
        descriptor: OperationDescriptor,
        error: ClassifiedError,
        scope: CancellationScope,
        update: OptimisticUpdate | None,
        retry_count: int,
        stats: RetryStats,
        started: float,
    ) -> OperationOutcome:
        self._rollback(update)
        duration = time.monotonic() - started

        if error.kind == ErrorKind.OPERATION_CANCELLED or scope.cancelled:
            # Silent terminal state, never surfaced as an error
            logger.info("%s cancelled: %s", descriptor.intent, error.metadata.get("reason"))
            activity_log.log_operation_end(descriptor.intent, False, duration, "cancelled")
            if self.machine.scope is scope:
                self.reporter.fail("Cancelled")
                self.machine.reset()
            return OperationOutcome(False, error=error, attempts=stats.attempts)

        if self._can_degrade(error, descriptor):
            try:
                result = self._fallback(error, descriptor)
            except OperationError as e:
                error = e.classified
            else:
                activity_log.log_operation_end(descriptor.intent, True, duration)
                return self._finish_degraded(descriptor, result, attempts=stats.attempts)

        policy = self.policies[descriptor.policy]
        can_retry = policy.should_retry(error) and error.attempts < policy.max_attempts
        self.reporter.fail(error.user_message)
        activity_log.log_operation_end(descriptor.intent, False, duration, error.message)
        self.machine.reset()
        self.machine.set_error(error, can_retry=can_retry, retry_count=retry_count)
        return OperationOutcome(False, error=error, attempts=stats.attempts)

    def _can_degrade(self, error: ClassifiedError, descriptor: OperationDescriptor) -> bool:
        return self.degradation.should_degrade(error, descriptor.intent)

    def _fallback(self, error: ClassifiedError, descriptor: OperationDescriptor) -> DegradedResult:
        """Cached analysis first, then the registered local fallback."""
        if descriptor.intent == "analyze":
            cached = self.cache.get(descriptor.body["content"])
            if cached is not None:
                logger.info("Using cached analysis after %s", error.kind.name)
                return DegradedResult(
                    success=True,
                    value=cached.model_copy(update={"fallback_used": True, "cache_used": True}),
                    cause=error,
                    message="Showing cached analysis",
                )
        return self.degradation.degrade(error, descriptor.intent, dict(descriptor.body))

    def _finish_degraded(
        self, descriptor: OperationDescriptor, result: DegradedResult, attempts: int
    ) -> OperationOutcome:
        cause = result.cause
        self.reporter.degraded(result.message)
        activity_log.log_operation_degraded(
            descriptor.intent,
            cause.kind.name if cause is not None else "MANUAL",
            "cache" if getattr(result.value, "cache_used", False) else "local",
        )
        self.machine.reset()
        return OperationOutcome(
            True, value=result.value, error=cause, degraded=True, attempts=attempts
        )

    def _reject(self, operation: str, message: str) -> OperationOutcome:
        error = self.classifier.make(ErrorKind.VALIDATION, message, operation)
        logger.info("Rejected %s: %s", operation, message)
        self.machine.set_error(error, can_retry=False)
        return OperationOutcome(False, error=error)

    def _adopt_selection(self, text: str) -> None:
        current = self.machine.selection
        if current is not None and current.text == text:
            return
        start = self.machine.document_content.find(text)
        self.machine.update_selection(TextSelection.of(text, start=max(start, 0)))

    # --- optimistic updates ----------------------------------------------

    def _apply_optimistic(self, descriptor: OperationDescriptor) -> OptimisticUpdate | None:
        body = descriptor.body
        document = self.machine.document_content
        if descriptor.mode == AssistMode.PROMPT:
            prompt = body["prompt"]
            estimate = f'[Generating content for: "{prompt[:50]}{"..." if len(prompt) > 50 else ""}"]'
            update = OptimisticUpdate(
                AssistMode.PROMPT, estimate, body["cursor_position"], document
            )
        elif descriptor.mode == AssistMode.CONTINUE:
            sentences = [s.strip() for s in document.replace("!", ".").replace("?", ".").split(".")]
            sentences = [s for s in sentences if s]
            estimate = (
                f'[Continuing from: "{sentences[-1][:30]}..."]'
                if sentences
                else "[Generating continuation...]"
            )
            update = OptimisticUpdate(
                AssistMode.CONTINUE, estimate, body["cursor_position"], document
            )
        elif descriptor.mode == AssistMode.MODIFY:
            text = body["selected_text"]
            preview = text[:30] + ("..." if len(text) > 30 else "")
            verb = _MODIFY_VERBS.get(ModificationType(body["modification_type"]), "Processing")
            selection = self.machine.selection
            position = selection.start if selection is not None else 0
            update = OptimisticUpdate(
                AssistMode.MODIFY,
                f'[{verb}: "{preview}"]',
                position,
                document,
                replace_length=len(text),
            )
        else:
            return None
        self._optimistic[descriptor.mode] = update
        return update

    def _rollback(self, update: OptimisticUpdate | None) -> None:
        if update is None:
            return
        current = self._optimistic.get(update.mode)
        if current is not None and current.id == update.id:
            del self._optimistic[update.mode]
            logger.debug("Rolled back optimistic %s update %s", update.mode.value, update.id[:8])

    # --- offline ---------------------------------------------------------

    async def _replay_status_update(self, payload: dict[str, Any]) -> Any:
        return await self.transport.request(
            f"concerns/{payload['concern_id']}/status", "PUT", {"status": payload["status"]}
        )

    async def _queue_status_update(
        self, payload: dict[str, Any], cause: ClassifiedError | None = None
    ) -> OperationOutcome:
        op: QueuedOperation = await self.offline_queue.enqueue(STATUS_UPDATE, payload)
        activity_log.log_operation_queued(
            STATUS_UPDATE, f"{payload['concern_id']} → {payload['status']}"
        )
        return OperationOutcome(True, value=op, error=cause, queued=True)

    async def _go_offline(self) -> None:
        if self.connectivity is not None:
            await self.connectivity.set_offline()
        else:
            self.offline_queue.mark_offline()


def _describe(descriptor: OperationDescriptor) -> str:
    body = descriptor.body
    if "prompt" in body:
        return body["prompt"]
    if "selected_text" in body:
        return f"{len(body['selected_text'])} chars selected"
    return f"{len(body.get('content', ''))} chars"
