"""
Process management utilities for safe subprocess spawning and cleanup.

This module provides utilities for:
- One-shot process execution with timeout (health checks, test commands)
- Process group management for clean termination
- Graceful shutdown with escalation from SIGTERM to SIGKILL
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
import time
from pathlib import Path
from typing import Any

from pydantic import BaseModel

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"
IS_UNIX = not IS_WINDOWS


class ProcessResult(BaseModel):
    """Structured result from one-shot process execution."""

    success: bool
    """Whether the process completed successfully (exit code 0)."""

    exit_code: int | None
    """Process exit code, or None if killed/timed out/not started."""

    stdout: str
    stderr: str

    duration_ms: int

    timed_out: bool = False

    error: str | None = None
    """Error message if the process could not run to completion."""


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


async def _communicate(
    process: asyncio.subprocess.Process,
    started: float,
    timeout: float | None,
    input_data: str | None,
    grace_seconds: float,
) -> ProcessResult:
    input_bytes = input_data.encode("utf-8") if input_data is not None else None
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            process.communicate(input_bytes), timeout=timeout
        )
    except asyncio.TimeoutError:
        await terminate_process(process, grace_seconds=grace_seconds)
        return ProcessResult(
            success=False,
            exit_code=None,
            stdout="",
            stderr="",
            duration_ms=_elapsed_ms(started),
            timed_out=True,
            error=f"Process timed out after {timeout}s",
        )

    stdout = stdout_bytes.decode("utf-8", errors="replace") if stdout_bytes else ""
    stderr = stderr_bytes.decode("utf-8", errors="replace") if stderr_bytes else ""
    return ProcessResult(
        success=process.returncode == 0,
        exit_code=process.returncode,
        stdout=stdout,
        stderr=stderr,
        duration_ms=_elapsed_ms(started),
    )


async def run_process(
    command: list[str],
    *,
    timeout: float | None = None,
    cwd: str | Path | None = None,
    input_data: str | None = None,
    grace_seconds: float = 1.0,
) -> ProcessResult:
    """
    Run a subprocess to completion with a timeout.

    Args:
        command: Command and arguments as a list (e.g., ["claude", "--version"])
        timeout: Optional timeout in seconds. None means no timeout.
        cwd: Optional working directory for the process.
        input_data: Optional string to send to stdin.
        grace_seconds: SIGTERM grace period when the timeout fires.

    Returns:
        ProcessResult with output, exit code, and timing information.
    """
    started = time.monotonic()
    process: asyncio.subprocess.Process | None = None

    kwargs: dict[str, Any] = {
        "stdout": asyncio.subprocess.PIPE,
        "stderr": asyncio.subprocess.PIPE,
        "stdin": asyncio.subprocess.PIPE if input_data is not None else asyncio.subprocess.DEVNULL,
        "cwd": str(cwd) if cwd is not None else None,
    }
    if IS_UNIX:
        kwargs["start_new_session"] = True

    try:
        logger.debug("Running process: %s", " ".join(command))
        process = await asyncio.create_subprocess_exec(*command, **kwargs)
        return await _communicate(process, started, timeout, input_data, grace_seconds)
    except FileNotFoundError:
        return ProcessResult(
            success=False,
            exit_code=None,
            stdout="",
            stderr="",
            duration_ms=_elapsed_ms(started),
            error=f"Command not found: {command[0]}",
        )
    except OSError as e:
        return ProcessResult(
            success=False,
            exit_code=None,
            stdout="",
            stderr="",
            duration_ms=_elapsed_ms(started),
            error=f"Failed to start {command[0]}: {e}",
        )
    finally:
        if process is not None:
            await terminate_process(process, grace_seconds=grace_seconds)


async def run_shell(
    command: str,
    *,
    timeout: float | None = None,
    cwd: str | Path | None = None,
    grace_seconds: float = 1.0,
) -> ProcessResult:
    """
    Run a shell command string to completion with a timeout.

    Used for acceptance-criteria test commands, which are shell snippets
    authored in the PRD.
    """
    started = time.monotonic()
    process: asyncio.subprocess.Process | None = None

    kwargs: dict[str, Any] = {
        "stdout": asyncio.subprocess.PIPE,
        "stderr": asyncio.subprocess.PIPE,
        "stdin": asyncio.subprocess.DEVNULL,
        "cwd": str(cwd) if cwd is not None else None,
    }
    if IS_UNIX:
        kwargs["start_new_session"] = True

    try:
        logger.debug("Running shell command: %s", command)
        process = await asyncio.create_subprocess_shell(command, **kwargs)
        return await _communicate(process, started, timeout, None, grace_seconds)
    except OSError as e:
        return ProcessResult(
            success=False,
            exit_code=None,
            stdout="",
            stderr="",
            duration_ms=_elapsed_ms(started),
            error=f"Failed to start shell: {e}",
        )
    finally:
        if process is not None:
            await terminate_process(process, grace_seconds=grace_seconds)


def signal_process_group(process: asyncio.subprocess.Process, sig: int) -> bool:
    """
    Send ``sig`` to the process group (Unix) or the process itself.

    Returns False if the process is already gone.
    """
    if process.returncode is not None:
        return False
    try:
        if IS_UNIX:
            os.killpg(os.getpgid(process.pid), sig)
        elif sig == signal.SIGTERM:
            process.terminate()
        else:
            process.kill()
        return True
    except (ProcessLookupError, PermissionError, OSError) as e:
        logger.debug("Signal %s to %s failed (process may be dead): %s", sig, process.pid, e)
        return False


async def terminate_process(
    process: asyncio.subprocess.Process, *, grace_seconds: float = 5.0
) -> int | None:
    """
    Terminate a process, escalating from SIGTERM to SIGKILL.

    1. Send SIGTERM to the process group
    2. Wait up to ``grace_seconds`` for exit
    3. Send SIGKILL if still running

    Safe to call on a process that has already exited.

    Returns:
        The final return code, or None if it could not be reaped.
    """
    if process.returncode is not None:
        return process.returncode

    logger.debug("Terminating process %s gracefully", process.pid)
    signal_process_group(process, signal.SIGTERM)
    if IS_UNIX:
        # A stopped process cannot handle SIGTERM until continued
        signal_process_group(process, signal.SIGCONT)

    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds)
        return process.returncode
    except asyncio.TimeoutError:
        logger.debug("Process %s did not exit after %ss, killing", process.pid, grace_seconds)

    signal_process_group(process, signal.SIGKILL if IS_UNIX else signal.SIGTERM)
    try:
        await asyncio.wait_for(process.wait(), timeout=5.0)
    except asyncio.TimeoutError:
        logger.warning("Process %s could not be reaped after SIGKILL", process.pid)
    return process.returncode
