"""Shared utilities: project discovery and the structured run log."""

from storyloop.utils.logging import EventType, LogEntry, RunLogger, configure_logging
from storyloop.utils.project import find_project_root, resolve_project_dir

__all__ = [
    "EventType",
    "LogEntry",
    "RunLogger",
    "configure_logging",
    "find_project_root",
    "resolve_project_dir",
]
