"""
Process runner for one agent CLI at a time.

ProcessRunner owns the lifecycle of a single external process: spawn in the
project root, incremental parsing of stdout into OutputEvents, and graceful
then forced termination. Events flow through a bounded asyncio.Queue; when
the consumer falls behind, the stdout pump blocks (and with it the child's
pipe) rather than dropping events.

Usage:
    >>> runner = ProcessRunner(grace_seconds=5.0)
    >>> handle = await runner.start(["claude", "-p"], cwd, stdin=prompt,
    ...                             parser=parse_claude_line)
    >>> async for event in handle:
    ...     render(event)
    >>> result = await handle.wait()
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

from storyloop.core.errors import ProcessSpawnError, StoryloopError

from .models import ExitResult, OutputEvent, OutputKind, ProcessState
from .process import IS_UNIX, signal_process_group, terminate_process
from .stream import LineParser, parse_plain_line

logger = logging.getLogger(__name__)

StateListener = Callable[[ProcessState, "str | None"], None]

# Long stream-json lines (large tool results) exceed asyncio's 64 KiB default
STREAM_LIMIT = 16 * 1024 * 1024

_EOF = object()


class ProcessHandle:
    """
    A running (or finished) process started by ProcessRunner.

    Iterate it for OutputEvents; await ``wait()`` for the ExitResult.
    Only one consumer may iterate a handle.
    """

    def __init__(self, runner: ProcessRunner, argv: list[str], queue: asyncio.Queue[Any]) -> None:
        self.argv = argv
        self._runner = runner
        self._queue = queue
        self._done: asyncio.Future[ExitResult] = asyncio.get_running_loop().create_future()
        self._exhausted = False
        self._iterating = False

    @property
    def result(self) -> ExitResult | None:
        """ExitResult once the process has finished, else None."""
        if self._done.done():
            return self._done.result()
        return None

    def __aiter__(self) -> AsyncIterator[OutputEvent]:
        return self._events()

    async def _events(self) -> AsyncIterator[OutputEvent]:
        if self._iterating or self._exhausted:
            return
        self._iterating = True
        try:
            while True:
                item = await self._queue.get()
                if item is _EOF:
                    self._exhausted = True
                    return
                yield item
        finally:
            self._iterating = False

    async def wait(self) -> ExitResult:
        """Drain any unread events, then return the ExitResult."""
        if not self._exhausted and not self._iterating:
            async for _ in self:
                pass
        return await asyncio.shield(self._done)

    async def stop(self) -> None:
        await self._runner.stop()


class ProcessRunner:
    """
    Lifecycle owner for one external CLI process.

    At most one process runs per runner; ``start`` while RUNNING, STOPPING
    or PAUSED raises. ``stop`` is idempotent and safe on an exited process.

    Attributes:
        grace_seconds: Wait after SIGTERM before SIGKILL.
        queue_size: Buffered events before the stdout pump blocks.
    """

    def __init__(self, *, grace_seconds: float = 5.0, queue_size: int = 256) -> None:
        self.grace_seconds = grace_seconds
        self.queue_size = queue_size
        self._state = ProcessState.IDLE
        self._listeners: list[StateListener] = []
        self._process: asyncio.subprocess.Process | None = None
        self._stop_task: asyncio.Task[None] | None = None
        self._supervisor: asyncio.Task[None] | None = None
        self._stop_requested = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def is_active(self) -> bool:
        """True while a child process is running, paused or stopping."""
        return self._state in (ProcessState.RUNNING, ProcessState.STOPPING, ProcessState.PAUSED)

    def add_state_listener(self, listener: StateListener) -> Callable[[], None]:
        """Subscribe to state changes. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_state(self, state: ProcessState, error: str | None = None) -> None:
        if state == self._state and error is None:
            return
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state, error)
            except Exception:  # Non-fatal
                logger.exception("Process state listener failed")

    def set_external(self, active: bool) -> None:
        """Track an agent session this runner did not spawn."""
        if self.is_active:
            return
        if active:
            self._set_state(ProcessState.EXTERNAL)
        elif self._state == ProcessState.EXTERNAL:
            self._set_state(ProcessState.IDLE)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(
        self,
        argv: list[str],
        cwd: Path,
        *,
        stdin: str | None = None,
        parser: LineParser = parse_plain_line,
        timeout: float | None = None,
        env: dict[str, str] | None = None,
    ) -> ProcessHandle:
        """
        Spawn ``argv`` in ``cwd`` and start streaming its output.

        Args:
            argv: Executable and arguments. Never run through a shell.
            cwd: Working directory (the project root).
            stdin: Text written to the child's stdin, then closed.
            parser: Turns stdout lines into OutputEvents.
            timeout: Stop the process after this many seconds.
            env: Full environment for the child (defaults to inherited).

        Raises:
            StoryloopError: If a process is already active.
            ProcessSpawnError: If the executable cannot be started.
        """
        if self.is_active:
            raise StoryloopError("A process is already running for this project")

        kwargs: dict[str, Any] = {
            "cwd": str(cwd),
            "stdin": asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            "stdout": asyncio.subprocess.PIPE,
            "stderr": asyncio.subprocess.PIPE,
            "limit": STREAM_LIMIT,
            "env": env,
        }
        if IS_UNIX:
            kwargs["start_new_session"] = True

        try:
            process = await asyncio.create_subprocess_exec(*argv, **kwargs)
        except OSError as e:
            logger.warning("Failed to spawn %s: %s", argv[0], e)
            raise ProcessSpawnError(argv[0], str(e)) from e

        logger.info("Started %s (pid %s) in %s", argv[0], process.pid, cwd)
        self._process = process
        self._stop_requested = False
        self._stop_task = None
        self._set_state(ProcessState.RUNNING)

        queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=self.queue_size)
        handle = ProcessHandle(self, argv, queue)
        self._supervisor = asyncio.create_task(
            self._supervise(process, handle, queue, parser, stdin, timeout)
        )
        return handle

    async def _write_stdin(self, process: asyncio.subprocess.Process, data: str) -> None:
        if process.stdin is None:
            return
        try:
            process.stdin.write(data.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug("stdin closed early: %s", e)
        finally:
            try:
                process.stdin.close()
            except (BrokenPipeError, ConnectionResetError):
                pass

    async def _pump(
        self,
        reader: asyncio.StreamReader | None,
        queue: asyncio.Queue[Any],
        parser: LineParser,
        from_stderr: bool,
    ) -> None:
        if reader is None:
            return
        while True:
            raw = await reader.readline()
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace")
            if from_stderr:
                text = line.rstrip("\r\n")
                events = (
                    [OutputEvent(kind=OutputKind.SYSTEM, text=text, is_error=True)]
                    if text.strip()
                    else []
                )
            else:
                try:
                    events = parser(line)
                except Exception:  # Non-fatal: degrade to plain text
                    logger.debug("Parser failed on line, emitting as text", exc_info=True)
                    events = parse_plain_line(line)
            for event in events:
                await queue.put(event)

    async def _supervise(
        self,
        process: asyncio.subprocess.Process,
        handle: ProcessHandle,
        queue: asyncio.Queue[Any],
        parser: LineParser,
        stdin: str | None,
        timeout: float | None,
    ) -> None:
        started = time.monotonic()
        timed_out = False
        error: str | None = None

        pumps = [
            asyncio.create_task(self._pump(process.stdout, queue, parser, False)),
            asyncio.create_task(self._pump(process.stderr, queue, parser, True)),
        ]
        if stdin is not None:
            pumps.append(asyncio.create_task(self._write_stdin(process, stdin)))

        try:
            try:
                await asyncio.wait_for(process.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                timed_out = True
                error = f"Timed out after {timeout}s"
                logger.warning("%s timed out after %ss, stopping", handle.argv[0], timeout)
                await self.stop()

            # Give pumps a bounded window to flush after exit
            done, pending = await asyncio.wait(pumps, timeout=self.grace_seconds)
            for task in pending:
                task.cancel()
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.debug("Output pump failed: %s", task.exception())
        except Exception as e:  # pragma: no cover
            error = str(e)
            logger.exception("Process supervisor failed")
            await terminate_process(process, grace_seconds=self.grace_seconds)
        finally:
            if self._stop_task is not None:
                await asyncio.shield(self._stop_task)
            result = ExitResult(
                code=process.returncode,
                duration_ms=int((time.monotonic() - started) * 1000),
                timed_out=timed_out,
                stopped=self._stop_requested and not timed_out,
                error=error,
            )
            await queue.put(_EOF)
            if not handle._done.done():
                handle._done.set_result(result)
            if self._process is process:
                self._process = None
            logger.info(
                "%s exited with code %s after %sms", handle.argv[0], result.code, result.duration_ms
            )
            self._set_state(ProcessState.IDLE, error)

    async def stop(self) -> None:
        """
        Request termination: SIGTERM, then SIGKILL after the grace period.

        Idempotent; concurrent callers await the same termination.
        """
        process = self._process
        if process is None or process.returncode is not None:
            return
        if self._stop_task is None:
            self._stop_requested = True
            self._set_state(ProcessState.STOPPING)
            self._stop_task = asyncio.create_task(
                self._terminate(process), name=f"stop-{process.pid}"
            )
        await asyncio.shield(self._stop_task)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        await terminate_process(process, grace_seconds=self.grace_seconds)

    def pause(self) -> bool:
        """Suspend the running process (SIGSTOP). Returns False if not running."""
        if not IS_UNIX or self._process is None or self._state != ProcessState.RUNNING:
            return False
        if signal_process_group(self._process, signal.SIGSTOP):
            self._set_state(ProcessState.PAUSED)
            return True
        return False

    def resume(self) -> bool:
        """Continue a paused process (SIGCONT)."""
        if not IS_UNIX or self._process is None or self._state != ProcessState.PAUSED:
            return False
        if signal_process_group(self._process, signal.SIGCONT):
            self._set_state(ProcessState.RUNNING)
            return True
        return False
