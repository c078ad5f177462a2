"""
Harness layer: the supported CLI whitelist, output stream parsing and the
process runner that owns one agent subprocess at a time.
"""

from .clis import (
    CLI_WHITELIST,
    SUPPORTED_CLIS,
    CLISpec,
    Invocation,
    build_invocation,
    get_cli_spec,
    is_installed,
    is_whitelisted,
)
from .models import ExitResult, OutputEvent, OutputKind, ProcessState, TokenUsage
from .runner import ProcessHandle, ProcessRunner

__all__ = [
    "CLI_WHITELIST",
    "SUPPORTED_CLIS",
    "CLISpec",
    "ExitResult",
    "Invocation",
    "OutputEvent",
    "OutputKind",
    "ProcessHandle",
    "ProcessRunner",
    "ProcessState",
    "TokenUsage",
    "build_invocation",
    "get_cli_spec",
    "is_installed",
    "is_whitelisted",
]
