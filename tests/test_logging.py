"""Tests for the structured run log and logging setup."""

import json
import logging
from datetime import datetime

from storyloop.utils.logging import (
    EventType,
    LogEntry,
    RunLogger,
    configure_logging,
    new_session_name,
)


class TestRunLogger:
    """Tests for RunLogger."""

    def test_lazy_open(self, tmp_path):
        """Test nothing is created until the first write."""
        run_log = RunLogger(tmp_path / "logs", "run-1")
        assert not (tmp_path / "logs").exists()
        run_log.log(EventType.RUN_START, mode="balanced")
        run_log.close()
        assert run_log.log_file == tmp_path / "logs" / "run-1.jsonl"
        assert run_log.log_file.exists()

    def test_jsonl_format(self, tmp_path):
        """Test one JSON object per line, without null fields."""
        with RunLogger(tmp_path, "run-1") as run_log:
            run_log.log(EventType.RUN_START, mode="balanced")
            run_log.log(EventType.STORY_START, "US-1", title="Add endpoint")

        lines = run_log.log_file.read_text().splitlines()
        first, second = (json.loads(line) for line in lines)
        assert first["event_type"] == "run_start"
        assert first["session"] == "run-1"
        assert "story_id" not in first
        assert second["story_id"] == "US-1"
        assert second["data"] == {"title": "Add endpoint"}
        assert LogEntry.model_validate(second).event_type == EventType.STORY_START

    def test_appends(self, tmp_path):
        """Test a second logger for the same session appends."""
        for _ in range(2):
            with RunLogger(tmp_path, "run-1") as run_log:
                run_log.log(EventType.ERROR, error="boom")
        assert len(run_log.log_file.read_text().splitlines()) == 2

    def test_close_idempotent(self, tmp_path):
        """Test close without writes or twice is safe."""
        run_log = RunLogger(tmp_path, "run-1")
        run_log.close()
        run_log.close()


def test_session_name():
    """Test session names are timestamped."""
    assert new_session_name(datetime(2026, 1, 2, 3, 4, 5)) == "run-20260102-030405"
    assert new_session_name().startswith("run-")


def test_configure_logging_levels():
    """Test debug toggles the root level on repeated calls."""
    root = logging.getLogger()
    previous = root.level
    try:
        configure_logging(debug=True)
        assert root.level == logging.DEBUG
        configure_logging(debug=False)
        assert root.level == logging.WARNING
    finally:
        root.setLevel(previous)
