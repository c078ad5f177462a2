"""CLI selection: health checks and the priority-chain resolver."""

from .health import HealthCache, HealthEntry, run_version_check
from .selector import CLISelector, Resolution, SelectionSource

__all__ = [
    "CLISelector",
    "HealthCache",
    "HealthEntry",
    "Resolution",
    "SelectionSource",
    "run_version_check",
]
