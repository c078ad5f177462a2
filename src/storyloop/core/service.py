"""
Orchestrator service: the command interface a dashboard drives.

Orchestrator wraps one project's RetryController behind two mutating
commands (``run`` and ``stop``) and passive subscriptions for process
state and agent output. RunManager holds one Orchestrator per project and
enforces the concurrent-run ceiling.

Usage:
    >>> orchestrator = Orchestrator(Path("/work/app"))
    >>> unsubscribe = orchestrator.on_output(lambda event: print(event.text))
    >>> await orchestrator.run()
    >>> result = await orchestrator.wait()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from storyloop.core.config.env import read_layered_env
from storyloop.core.config.loader import load_config, load_settings
from storyloop.core.config.models import Settings, StoryloopConfig
from storyloop.core.errors import MalformedPRDError, RunLimitError
from storyloop.core.harness.models import OutputEvent, ProcessState
from storyloop.core.harness.process import run_process
from storyloop.core.harness.runner import ProcessRunner
from storyloop.core.learning.recorder import LearningRecorder
from storyloop.core.prd.store import PRDStore
from storyloop.core.quota.status import ApiStatusChecker
from storyloop.core.quota.tracker import QuotaTracker, default_snapshot_path
from storyloop.core.run.loop import RetryController
from storyloop.core.run.models import RunConfig, RunEvent, RunEventType, RunResult
from storyloop.core.selector.selector import CLISelector
from storyloop.utils.project import tmux_session_name

logger = logging.getLogger(__name__)

StatusCallback = Callable[[ProcessState, "str | None"], None]
OutputCallback = Callable[[OutputEvent], None]
EventCallback = Callable[[RunEvent], None]
ControllerFactory = Callable[..., RetryController]

EXTERNAL_CHECK_INTERVAL = 3.0
TMUX_TIMEOUT_SECONDS = 2.0


def _subscribe(listeners: list[Any], callback: Any) -> Callable[[], None]:
    listeners.append(callback)

    def unsubscribe() -> None:
        if callback in listeners:
            listeners.remove(callback)

    return unsubscribe


class Orchestrator:
    """
    Run handle for one project.

    At most one run is active at a time; ``run`` while a run is active (or
    an external session owns the project) is a no-op, not queued.

    Args:
        project_dir: Project root holding the PRD.
        app_config: Layered configuration (loaded for the project if None).
        settings: Settings file contents (loaded if None).
        selector: CLI selector; its health cache outlives each run.
        recorder: Learning recorder shared across runs.
        quota_tracker: Quota tracker shared across runs.
        status_checker: API status checker shared across runs.
        controller_factory: Builds the RetryController (injectable for tests).

    Collaborators not passed in are built once, on first use, and reused by
    every later run of this orchestrator.
    """

    def __init__(
        self,
        project_dir: Path,
        *,
        app_config: StoryloopConfig | None = None,
        settings: Settings | None = None,
        selector: CLISelector | None = None,
        recorder: LearningRecorder | None = None,
        quota_tracker: QuotaTracker | None = None,
        status_checker: ApiStatusChecker | None = None,
        controller_factory: ControllerFactory = RetryController,
    ) -> None:
        self.project_dir = Path(project_dir).resolve()
        self.app_config = app_config or load_config(self.project_dir, use_cache=False)
        self.settings = settings
        self.selector = selector or CLISelector.from_config(self.app_config.cli)
        self.recorder = recorder
        self.quota_tracker = quota_tracker
        self.status_checker = status_checker
        self._controller_factory = controller_factory
        self.runner = ProcessRunner(
            grace_seconds=self.app_config.process.grace_seconds,
            queue_size=self.app_config.process.queue_size,
        )
        self.runner.add_state_listener(self._emit_status)

        self._status_listeners: list[StatusCallback] = []
        self._output_listeners: list[OutputCallback] = []
        self._event_listeners: list[EventCallback] = []
        self._controller: RetryController | None = None
        self._task: asyncio.Task[RunResult] | None = None
        self._monitor: asyncio.Task[None] | None = None
        self.last_result: RunResult | None = None

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on_status_change(self, callback: StatusCallback) -> Callable[[], None]:
        """Subscribe to process state changes. Returns an unsubscribe callable."""
        return _subscribe(self._status_listeners, callback)

    def on_output(self, callback: OutputCallback) -> Callable[[], None]:
        """Subscribe to agent output events. Returns an unsubscribe callable."""
        return _subscribe(self._output_listeners, callback)

    def on_event(self, callback: EventCallback) -> Callable[[], None]:
        """Subscribe to every run event. Returns an unsubscribe callable."""
        return _subscribe(self._event_listeners, callback)

    def _emit_status(self, state: ProcessState, error: str | None = None) -> None:
        for callback in list(self._status_listeners):
            try:
                callback(state, error)
            except Exception:  # Non-fatal
                logger.exception("Status subscriber failed")

    def _dispatch(self, event: RunEvent) -> None:
        for callback in list(self._event_listeners):
            try:
                callback(event)
            except Exception:  # Non-fatal
                logger.exception("Event subscriber failed")
        if event.event_type == RunEventType.OUTPUT and event.output is not None:
            for out_callback in list(self._output_listeners):
                try:
                    out_callback(event.output)
                except Exception:  # Non-fatal
                    logger.exception("Output subscriber failed")

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ProcessState:
        return self.runner.state

    @property
    def is_running(self) -> bool:
        """True while a run is in progress (between attempts included)."""
        return self._task is not None and not self._task.done()

    @property
    def controller(self) -> RetryController | None:
        return self._controller

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def run(self, config: RunConfig | None = None) -> bool:
        """
        Start a run in the background.

        Returns:
            True if a run was started; False if one was already active.

        Raises:
            ValueError: If ``config`` names a different project directory.
        """
        if config is not None and Path(config.project_dir).resolve() != self.project_dir:
            raise ValueError(
                f"RunConfig is for {config.project_dir}, "
                f"but this orchestrator runs {self.project_dir}"
            )
        if self.is_running or self.runner.state in (
            ProcessState.RUNNING,
            ProcessState.STOPPING,
            ProcessState.PAUSED,
        ):
            logger.info("Run already active for %s; ignoring run request", self.project_dir)
            return False
        if self.runner.state == ProcessState.EXTERNAL:
            logger.warning("External session owns %s; ignoring run request", self.project_dir)
            return False

        config = config or RunConfig(
            project_dir=str(self.project_dir),
            attempt_timeout_seconds=self.app_config.process.attempt_timeout_minutes * 60,
        )
        self._ensure_shared()
        self._controller = self._controller_factory(
            config,
            app_config=self.app_config,
            runner=self.runner,
            settings=self.settings or load_settings(),
            selector=self.selector,
            recorder=self.recorder,
            quota_tracker=self.quota_tracker,
            status_checker=self.status_checker,
        )
        self._task = asyncio.create_task(
            self._consume(self._controller), name=f"storyloop-run-{self.project_dir.name}"
        )
        return True

    def _ensure_shared(self) -> None:
        if self.recorder is None:
            self.recorder = LearningRecorder()
        if self.quota_tracker is None:
            self.quota_tracker = QuotaTracker.from_config(
                self.app_config.quota,
                env=read_layered_env(project_dir=self.project_dir),
                snapshot_path=default_snapshot_path(),
            )
        if self.status_checker is None:
            self.status_checker = ApiStatusChecker.from_config(self.app_config.quota)

    async def _consume(self, controller: RetryController) -> RunResult:
        async for event in controller.execute():
            self._dispatch(event)
            if event.event_type == RunEventType.RUN_FAILED:
                self._emit_status(ProcessState.IDLE, event.error)
        self.last_result = controller.get_result()
        return self.last_result

    async def stop(self) -> None:
        """Stop the active run. Idempotent and safe when nothing runs."""
        if self._controller is not None and self.is_running:
            await self._controller.stop()
        else:
            await self.runner.stop()

    async def wait(self) -> RunResult | None:
        """Wait for the active run (if any) and return its result."""
        if self._task is None:
            return self.last_result
        return await self._task

    # ------------------------------------------------------------------
    # External sessions
    # ------------------------------------------------------------------

    def session_name(self) -> str:
        store = PRDStore.for_project(self.project_dir, self.app_config.paths)
        try:
            branch = store.load().branch_name
        except MalformedPRDError:
            branch = None
        return tmux_session_name(branch, self.project_dir.name)

    async def check_external(self) -> bool:
        """Detect a tmux session for this project that this process did not start."""
        if self.runner.is_active:
            return False
        result = await run_process(
            ["tmux", "has-session", "-t", self.session_name()], timeout=TMUX_TIMEOUT_SECONDS
        )
        self.runner.set_external(result.success)
        return result.success

    def start_external_monitor(self, interval: float = EXTERNAL_CHECK_INTERVAL) -> None:
        if self._monitor is not None and not self._monitor.done():
            return

        async def monitor() -> None:
            while True:
                if not self.is_running:
                    await self.check_external()
                await asyncio.sleep(interval)

        self._monitor = asyncio.create_task(monitor(), name="storyloop-external-monitor")

    async def dispose(self) -> None:
        """Stop the external monitor and any active run."""
        if self._monitor is not None:
            self._monitor.cancel()
            try:
                await self._monitor
            except asyncio.CancelledError:
                pass
            self._monitor = None
        await self.stop()


class RunManager:
    """
    One Orchestrator per project, with a ceiling on concurrent runs.

    The manager owns one CLI selector, learning recorder, quota tracker and
    API status checker, and hands the same instances to every orchestrator
    it creates: CLI health, learning records and quota snapshots are
    machine-wide, not per project.

    Attributes:
        max_concurrent: Maximum projects running at once.
    """

    def __init__(
        self,
        max_concurrent: int | None = None,
        *,
        app_config: StoryloopConfig | None = None,
        selector: CLISelector | None = None,
        recorder: LearningRecorder | None = None,
        quota_tracker: QuotaTracker | None = None,
        status_checker: ApiStatusChecker | None = None,
        factory: Callable[[Path], Orchestrator] | None = None,
    ) -> None:
        self.app_config = app_config or load_config()
        self.max_concurrent = max_concurrent or self.app_config.runner.max_concurrent_projects
        self.selector = selector or CLISelector.from_config(self.app_config.cli)
        self.recorder = recorder if recorder is not None else LearningRecorder()
        self.quota_tracker = quota_tracker or QuotaTracker.from_config(
            self.app_config.quota, env=read_layered_env(), snapshot_path=default_snapshot_path()
        )
        self.status_checker = status_checker or ApiStatusChecker.from_config(self.app_config.quota)
        self._factory = factory or self._build
        self._orchestrators: dict[Path, Orchestrator] = {}

    def _build(self, project_dir: Path) -> Orchestrator:
        return Orchestrator(
            project_dir,
            selector=self.selector,
            recorder=self.recorder,
            quota_tracker=self.quota_tracker,
            status_checker=self.status_checker,
        )

    def get(self, project_dir: Path) -> Orchestrator:
        key = Path(project_dir).resolve()
        if key not in self._orchestrators:
            self._orchestrators[key] = self._factory(key)
        return self._orchestrators[key]

    def active(self) -> list[Orchestrator]:
        return [o for o in self._orchestrators.values() if o.is_running]

    async def run(self, project_dir: Path, config: RunConfig | None = None) -> bool:
        """
        Start a run for ``project_dir``.

        Raises:
            RunLimitError: If ``max_concurrent`` other projects are running.
        """
        orchestrator = self.get(project_dir)
        if orchestrator.is_running:
            return False
        if len(self.active()) >= self.max_concurrent:
            raise RunLimitError(self.max_concurrent)
        return await orchestrator.run(config)

    async def stop(self, project_dir: Path) -> None:
        key = Path(project_dir).resolve()
        if key in self._orchestrators:
            await self._orchestrators[key].stop()

    async def stop_all(self) -> None:
        await asyncio.gather(*(o.stop() for o in self._orchestrators.values()))
