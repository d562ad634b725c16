"""Tests for the event hub."""

from __future__ import annotations

import logging

import pytest

from gdsflow.events import EventHub, LogEvent, ProgressEvent, Severity, StageCompletedEvent


class TestEventHub:
    def test_channels_are_independent(self) -> None:
        hub = EventHub()
        logs: list[LogEvent] = []
        progress: list[ProgressEvent] = []
        completed: list[StageCompletedEvent] = []
        hub.subscribe_log(logs.append)
        hub.subscribe_progress(progress.append)
        hub.subscribe_stage_completed(completed.append)

        hub.log("Starting Synthesis...")
        hub.progress("Synthesis", 30)
        hub.stage_completed("Synthesis", "Cells", "42", "✓ Pass")

        assert logs == [LogEvent("Starting Synthesis...", Severity.INFO)]
        assert progress == [ProgressEvent("Synthesis", 30)]
        assert completed == [StageCompletedEvent("Synthesis", "Cells", "42", "✓ Pass")]

    def test_unsubscribe(self) -> None:
        hub = EventHub()
        seen: list[LogEvent] = []
        unsubscribe = hub.subscribe_log(seen.append)
        hub.log("one")
        unsubscribe()
        unsubscribe()
        hub.log("two")
        assert [event.message for event in seen] == ["one"]

    def test_log_is_forwarded_to_logging(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO, logger="gdsflow.events"):
            EventHub().log("Floorplan failed: boom", Severity.ERROR)
        assert caplog.records[-1].levelno == logging.ERROR
        assert caplog.records[-1].getMessage() == "Floorplan failed: boom"

    @pytest.mark.parametrize("percent", [-1, 101])
    def test_progress_bounds(self, percent: int) -> None:
        with pytest.raises(ValueError):
            ProgressEvent("Routing", percent)
