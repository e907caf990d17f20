"""Assist mode state machine.

States: NONE -> {PROMPT, CONTINUE, MODIFY, ANALYZE} -> NONE.

Exactly one mode is active at a time. Entering a mode cancels the
previous mode's cancellation scope before anything else happens, so at
most one live network operation exists per machine. Losing a valid
selection while in MODIFY/ANALYZE drops the machine back to NONE.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable

from scribe.core.selection import SelectionValidator, TextSelection
from scribe.resilience.cancellation import CancellationScope
from scribe.resilience.classifier import ClassifiedError

logger = logging.getLogger(__name__)


class AssistMode(Enum):
    NONE = "none"
    PROMPT = "prompt"
    CONTINUE = "continue"
    MODIFY = "modify"
    ANALYZE = "analyze"


SELECTION_MODES = frozenset({AssistMode.MODIFY, AssistMode.ANALYZE})


@dataclass(frozen=True)
class ProcessingState:
    """Lifecycle of the current call, rendered by the presentation layer."""

    is_processing: bool = False
    current_mode: AssistMode = AssistMode.NONE
    progress: int | None = None
    status_message: str | None = None

    def to_dict(self) -> dict:
        return {
            "is_processing": self.is_processing,
            "current_mode": self.current_mode.value,
            "progress": self.progress,
            "status_message": self.status_message,
        }


@dataclass(frozen=True)
class ErrorState:
    """Last surfaced error plus what the user can do about it."""

    has_error: bool = False
    error: ClassifiedError | None = None
    can_retry: bool = False
    retry_count: int = 0


StateListener = Callable[["ModeStateMachine"], None]
SelectionListener = Callable[[TextSelection | None], None]


class ModeStateMachine:
    """Holds the assist mode, processing state, selection and error state.

    Usage:
        machine = ModeStateMachine()
        machine.update_selection(TextSelection.of("valid text"))
        if machine.can_enter(AssistMode.MODIFY):
            machine.enter(AssistMode.MODIFY)

    """

    def __init__(
        self,
        validator: SelectionValidator | None = None,
        document_content: str = "",
    ):
        self.validator = validator or SelectionValidator()
        self.document_content = document_content
        self._mode = AssistMode.NONE
        self._processing = ProcessingState()
        self._selection: TextSelection | None = None
        self._error_state = ErrorState()
        self._scope: CancellationScope | None = None
        self._listeners: list[StateListener] = []
        self._selection_listeners: list[SelectionListener] = []

    # --- read-only state -------------------------------------------------

    @property
    def current_mode(self) -> AssistMode:
        return self._mode

    @property
    def processing_state(self) -> ProcessingState:
        return self._processing

    @property
    def selection(self) -> TextSelection | None:
        return self._selection

    @property
    def error_state(self) -> ErrorState:
        return self._error_state

    @property
    def scope(self) -> CancellationScope | None:
        return self._scope

    @property
    def has_valid_selection(self) -> bool:
        return self.validator.is_valid(self._selection)

    # --- transitions -----------------------------------------------------

    def can_enter(self, mode: AssistMode) -> bool:
        if mode == AssistMode.NONE:
            return True
        if self._processing.is_processing:
            return False
        if mode == AssistMode.PROMPT:
            return True
        if mode == AssistMode.CONTINUE:
            return bool(self.document_content.strip())
        if mode in SELECTION_MODES:
            return self.has_valid_selection
        return False

    def enter(self, mode: AssistMode) -> bool:
        """Switch to `mode`. Returns False (and logs) if the guard refuses."""
        if not self.can_enter(mode):
            logger.warning(
                "Cannot activate mode %s from %s; current state does not allow it",
                mode.name,
                self._mode.name,
            )
            return False

        self._cancel_scope(f"mode change to {mode.value}")
        previous = self._mode
        self._mode = mode
        self._scope = CancellationScope(mode.value) if mode != AssistMode.NONE else None
        self._processing = ProcessingState(current_mode=mode)
        self._error_state = ErrorState()
        if previous != mode:
            logger.info("Assist mode %s -> %s", previous.name, mode.name)
        self._notify()
        return True

    def reset(self) -> None:
        self.enter(AssistMode.NONE)
        self.clear_error()

    def open_scope(self) -> CancellationScope:
        """Replace the current scope with a fresh one for a new call in the same mode."""
        self._cancel_scope("superseded by a new operation")
        self._scope = CancellationScope(self._mode.value)
        return self._scope

    def update_selection(self, selection: TextSelection | None) -> None:
        self._selection = selection
        for listener in list(self._selection_listeners):
            listener(selection)
        if self._mode in SELECTION_MODES and not self.validator.is_valid(selection):
            logger.info("Selection no longer valid, leaving %s mode", self._mode.name)
            self.reset()

    def update_document(self, content: str) -> None:
        self.document_content = content

    # --- processing / errors (driven by the orchestrator) ----------------

    def begin_processing(self, status_message: str) -> None:
        self._processing = ProcessingState(
            is_processing=True,
            current_mode=self._mode,
            progress=0,
            status_message=status_message,
        )
        self._notify()

    def report_progress(self, progress: int, status_message: str | None = None) -> None:
        if not self._processing.is_processing:
            return
        self._processing = replace(
            self._processing,
            progress=max(0, min(100, progress)),
            status_message=status_message or self._processing.status_message,
        )
        self._notify()

    def end_processing(self) -> None:
        self._processing = ProcessingState(current_mode=self._mode)
        self._notify()

    def set_error(self, error: ClassifiedError, can_retry: bool, retry_count: int = 0) -> None:
        self._error_state = ErrorState(
            has_error=True,
            error=error,
            can_retry=can_retry,
            retry_count=retry_count,
        )
        self._notify()

    def clear_error(self) -> None:
        if self._error_state.has_error:
            self._error_state = ErrorState()
            self._notify()

    # --- subscriptions ---------------------------------------------------

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Listen to mode/processing/error changes. Returns an unsubscribe function."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def on_selection_change(self, listener: SelectionListener) -> Callable[[], None]:
        self._selection_listeners.append(listener)
        return lambda: (
            self._selection_listeners.remove(listener)
            if listener in self._selection_listeners
            else None
        )

    def close(self) -> None:
        """Teardown: cancel in-flight work and drop all listeners."""
        self._cancel_scope("teardown")
        self._scope = None
        self._listeners.clear()
        self._selection_listeners.clear()

    def _cancel_scope(self, reason: str) -> None:
        if self._scope is not None and not self._scope.cancelled:
            self._scope.cancel(reason)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.warning("State listener failed: %s", e)
