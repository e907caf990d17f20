"""Progress reporting for in-flight assist operations.

The orchestrator reports lifecycle checkpoints here; the reporter writes
them into the ModeStateMachine's ProcessingState and forwards a rendered
line to an optional output callback (the CLI prints it).

Checkpoints:
- 0   started
- 10  connecting to the backend
- 60  processing the response
- 100 complete
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Callable

from scribe.core.modes import AssistMode, ModeStateMachine

logger = logging.getLogger(__name__)

CONNECTING = 10
PROCESSING_RESPONSE = 60
COMPLETE = 100


class ProgressState(Enum):
    IDLE = auto()
    RUNNING = auto()
    COMPLETED = auto()
    FAILED = auto()
    DEGRADED = auto()


@dataclass
class ProgressUpdate:
    """Progress update message."""

    timestamp: float = field(default_factory=time.time)
    state: ProgressState = ProgressState.IDLE
    mode: AssistMode = AssistMode.NONE
    progress: int = 0
    message: str = ""

    def to_string(self) -> str:
        """Convert to a single human-readable line with a progress bar."""
        state_emoji = {
            ProgressState.IDLE: "⏸️",
            ProgressState.RUNNING: "⚙️",
            ProgressState.COMPLETED: "✅",
            ProgressState.FAILED: "❌",
            ProgressState.DEGRADED: "⚠️",
        }
        emoji = state_emoji.get(self.state, "📌")
        filled = self.progress // 10
        bar = "[" + "=" * filled + "-" * (10 - filled) + "]"
        stamp = time.strftime("%H:%M:%S", time.localtime(self.timestamp))
        line = f"[{stamp}] {bar} {emoji} {self.mode.value.upper()} {self.progress}%"
        if self.message:
            line += f" {self.message}"
        return line


class ProgressReporter:
    """Publishes processing checkpoints to the state machine and an output callback.

    Usage:
        reporter = ProgressReporter(machine, output=print)
        reporter.start("Analyzing document...")
        reporter.checkpoint(CONNECTING, "Connecting to AI service...")
        reporter.complete()

    """

    def __init__(
        self,
        machine: ModeStateMachine,
        output: Callable[[str], None] | None = None,
    ):
        self.machine = machine
        self.output = output
        self.state = ProgressState.IDLE
        self.start_time: float | None = None
        self.end_time: float | None = None
        self._update_counter = 0

    def start(self, message: str) -> None:
        self.state = ProgressState.RUNNING
        self.start_time = time.time()
        self.end_time = None
        self.machine.begin_processing(message)
        self._send(0, message)

    def checkpoint(self, progress: int, message: str | None = None) -> None:
        self.machine.report_progress(progress, message)
        self._send(progress, message or "")

    def complete(self, message: str = "Complete") -> None:
        """Report 100% and clear the processing state."""
        self.machine.report_progress(COMPLETE, message)
        self.state = ProgressState.COMPLETED
        self.end_time = time.time()
        self._send(COMPLETE, self._with_duration(message))
        self.machine.end_processing()

    def degraded(self, message: str) -> None:
        self.state = ProgressState.DEGRADED
        self.end_time = time.time()
        self._send(COMPLETE, message)
        self.machine.end_processing()

    def fail(self, message: str) -> None:
        self.state = ProgressState.FAILED
        self.end_time = time.time()
        progress = self.machine.processing_state.progress or 0
        self._send(progress, message)
        self.machine.end_processing()

    def get_status(self) -> dict:
        """Get current status as dictionary."""
        duration = 0.0
        if self.end_time and self.start_time:
            duration = self.end_time - self.start_time
        elif self.start_time:
            duration = time.time() - self.start_time
        return {
            "state": self.state.name,
            "processing": self.machine.processing_state.to_dict(),
            "duration": round(duration, 2),
            "updates": self._update_counter,
        }

    def _with_duration(self, message: str) -> str:
        if not self.start_time or not self.end_time:
            return message
        return f"{message} ({self.end_time - self.start_time:.1f}s)"

    def _send(self, progress: int, message: str) -> None:
        self._update_counter += 1
        if self.output is None:
            return
        update = ProgressUpdate(
            state=self.state,
            mode=self.machine.current_mode,
            progress=max(0, min(100, progress)),
            message=message,
        )
        try:
            self.output(update.to_string())
        except Exception as e:
            logger.error("Failed to send progress update: %s", e)
