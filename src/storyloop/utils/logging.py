"""
Structured run log in JSONL format.

One file per run session, written to ``<project>/.storyloop/logs/<session>.jsonl``
with one JSON object per line for easy streaming and parsing.

Example:
    >>> run_log = RunLogger(project_dir / ".storyloop" / "logs", "run-20260101-120000")
    >>> run_log.log(EventType.RUN_START, mode="balanced")
    >>> run_log.log(EventType.STORY_START, story_id="US-001")
    >>> run_log.close()
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import IO, Any

from pydantic import BaseModel, Field

LOGS_DIRNAME = "logs"


class EventType(str, Enum):
    """Run log event types."""

    RUN_START = "run_start"
    RUN_END = "run_end"
    STORY_START = "story_start"
    STORY_END = "story_end"
    ATTEMPT_START = "attempt_start"
    ATTEMPT_END = "attempt_end"
    CLI_RESOLVED = "cli_resolved"
    MODEL_SELECTED = "model_selected"
    VERIFICATION = "verification"
    API_STATUS = "api_status"
    ERROR = "error"


class LogEntry(BaseModel):
    """One line of a run log."""

    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(),
        description="Event timestamp in ISO 8601 format (UTC)",
    )
    event_type: EventType
    session: str
    story_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


def new_session_name(now: datetime | None = None) -> str:
    now = now or datetime.now()
    return f"run-{now.strftime('%Y%m%d-%H%M%S')}"


def configure_logging(debug: bool = False) -> None:
    """Root logging setup for the command line. Safe to call more than once."""
    logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger().setLevel(logging.DEBUG if debug else logging.WARNING)


class RunLogger:
    """
    Append-only JSONL writer for one run session.

    The file is opened lazily on the first write.
    """

    def __init__(self, log_dir: Path, session: str | None = None) -> None:
        self.log_dir = log_dir
        self.session = session or new_session_name()
        self.log_file = log_dir / f"{self.session}.jsonl"
        self._file_handle: IO[str] | None = None

    def write(self, entry: LogEntry) -> None:
        if self._file_handle is None:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            self._file_handle = self.log_file.open("a", encoding="utf-8")
        json.dump(entry.model_dump(mode="json", exclude_none=True), self._file_handle, default=str)
        self._file_handle.write("\n")
        self._file_handle.flush()

    def log(self, event_type: EventType, story_id: str | None = None, **data: Any) -> LogEntry:
        entry = LogEntry(event_type=event_type, session=self.session, story_id=story_id, data=data)
        self.write(entry)
        return entry

    def close(self) -> None:
        if self._file_handle is not None:
            self._file_handle.close()
            self._file_handle = None

    def __enter__(self) -> RunLogger:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
