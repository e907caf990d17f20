"""Tests for progress reporting."""

import pytest

from scribe.core.modes import AssistMode, ModeStateMachine
from scribe.progress import (
    CONNECTING,
    PROCESSING_RESPONSE,
    ProgressReporter,
    ProgressState,
    ProgressUpdate,
)


class TestProgressUpdate:
    """Test ProgressUpdate dataclass."""

    def test_progress_update_default_values(self):
        """ProgressUpdate has sensible defaults."""
        update = ProgressUpdate()

        assert update.state == ProgressState.IDLE
        assert update.mode == AssistMode.NONE
        assert update.progress == 0
        assert update.message == ""

    def test_progress_update_to_string(self):
        """to_string() renders bar, mode and percentage."""
        update = ProgressUpdate(
            state=ProgressState.RUNNING,
            mode=AssistMode.ANALYZE,
            progress=60,
            message="Processing response...",
        )

        result = update.to_string()

        assert "[======----]" in result
        assert "ANALYZE" in result
        assert "60%" in result
        assert result.endswith("Processing response...")


class TestProgressReporter:
    """Test ProgressReporter against a real state machine."""

    @pytest.fixture
    def machine(self):
        machine = ModeStateMachine()
        machine.enter(AssistMode.PROMPT)
        return machine

    @pytest.fixture
    def lines(self):
        return []

    @pytest.fixture
    def reporter(self, machine, lines):
        return ProgressReporter(machine, output=lines.append)

    def test_start_begins_processing(self, reporter, machine, lines):
        """start() marks the machine as processing at 0%."""
        reporter.start("Generating content...")

        state = machine.processing_state
        assert state.is_processing is True
        assert state.progress == 0
        assert state.status_message == "Generating content..."
        assert reporter.state == ProgressState.RUNNING
        assert "PROMPT 0%" in lines[0]

    def test_checkpoints_update_processing_state(self, reporter, machine):
        """Checkpoints are written into the processing state."""
        reporter.start("Generating content...")
        reporter.checkpoint(CONNECTING, "Connecting to AI service...")
        assert machine.processing_state.progress == CONNECTING

        reporter.checkpoint(PROCESSING_RESPONSE)
        assert machine.processing_state.progress == PROCESSING_RESPONSE
        assert machine.processing_state.status_message == "Connecting to AI service..."

    def test_complete_ends_processing(self, reporter, machine, lines):
        """complete() reports 100% and clears the processing flag."""
        reporter.start("Generating content...")
        reporter.complete()

        assert machine.processing_state.is_processing is False
        assert reporter.state == ProgressState.COMPLETED
        assert "100%" in lines[-1]
        assert "Complete (" in lines[-1]

    def test_fail_keeps_last_progress_in_output(self, reporter, machine, lines):
        """fail() renders the last known progress."""
        reporter.start("Generating content...")
        reporter.checkpoint(CONNECTING)
        reporter.fail("Network connection failed")

        assert reporter.state == ProgressState.FAILED
        assert machine.processing_state.is_processing is False
        assert "10%" in lines[-1]
        assert "Network connection failed" in lines[-1]

    def test_degraded_state(self, reporter, machine):
        """degraded() ends processing in the DEGRADED state."""
        reporter.start("Analyzing document...")
        reporter.degraded("Showing basic analysis")

        assert reporter.state == ProgressState.DEGRADED
        assert machine.processing_state.is_processing is False

    def test_get_status(self, reporter):
        """get_status() returns a serializable dict."""
        reporter.start("Generating content...")
        reporter.complete()

        status = reporter.get_status()

        assert status["state"] == "COMPLETED"
        assert status["processing"]["current_mode"] == "prompt"
        assert status["updates"] == 2
        assert status["duration"] >= 0

    def test_output_errors_are_swallowed(self, machine):
        """A broken output callback never breaks the operation."""

        def broken(line):
            raise RuntimeError("terminal closed")

        reporter = ProgressReporter(machine, output=broken)
        reporter.start("Generating content...")
        reporter.complete()

        assert machine.processing_state.is_processing is False

    def test_no_output_still_drives_machine(self, machine):
        """Without an output callback the machine is still updated."""
        reporter = ProgressReporter(machine)
        reporter.start("Generating content...")
        assert machine.processing_state.is_processing is True
