"""
Retry controller: the per-project run state machine.

For each pending story: detect the task type, route to a model, resolve a
healthy CLI, run it, verify the acceptance criteria, then complete, retry
with the failure detail, or fail after the attempt cap and move on. One
unsolvable story never halts the run.

The controller is an async generator of RunEvents; the consumer (operator
CLI, dashboard service) renders them and owns signal handling.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from storyloop.core.config.env import read_layered_env
from storyloop.core.config.loader import get_state_dir, load_config, load_settings
from storyloop.core.config.models import Settings, StoryloopConfig
from storyloop.core.errors import (
    MalformedPRDError,
    NoCLIAvailableError,
    ProcessExitNonZeroError,
    ProcessSpawnError,
    QuotaExhaustedError,
    RetryLimitExceededError,
    StoryloopError,
    StoryNotFoundError,
)
from storyloop.core.harness.clis import build_invocation, get_cli_spec, serves_provider
from storyloop.core.harness.models import ExitResult, TokenUsage
from storyloop.core.harness.runner import ProcessRunner
from storyloop.core.learning.models import AttemptOutcome
from storyloop.core.learning.recorder import LearningRecorder
from storyloop.core.prd.models import PRD, UserStory
from storyloop.core.prd.store import PRDStore
from storyloop.core.quota.models import ProviderQuota
from storyloop.core.quota.status import ApiStatusChecker
from storyloop.core.quota.tracker import QuotaTracker, default_snapshot_path
from storyloop.core.routing.catalog import estimate_cost, provider_for_model
from storyloop.core.routing.matrix import recommend
from storyloop.core.routing.models import LearningHints, ModelRef, Provider, Recommendation
from storyloop.core.routing.task_types import detect_story_task_type
from storyloop.core.selector.selector import CLISelector, Resolution
from storyloop.core.verify.service import AcceptanceVerifier, VerificationResult
from storyloop.utils.logging import LOGS_DIRNAME, EventType, RunLogger, new_session_name

from .models import RunConfig, RunEvent, RunEventType, RunResult, StoryPhase, StoryState
from .prompt_builder import PRINCIPLES_FILENAME, generate_story_prompt, load_custom_principles

logger = logging.getLogger(__name__)


@dataclass
class _Attempt:
    """What one attempt produced."""

    exit: ExitResult | None = None
    error: str | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    verification: VerificationResult | None = None
    stopped: bool = False
    duration_ms: int = 0


class RetryController:
    """
    Run state machine for one project.

    Collaborators are injectable; anything not passed is built from the
    layered configuration.

    Attributes:
        config: Run configuration (immutable).
        states: Per-story state, keyed by story ID, for stories touched this run.
    """

    def __init__(
        self,
        config: RunConfig,
        *,
        app_config: StoryloopConfig | None = None,
        settings: Settings | None = None,
        store: PRDStore | None = None,
        runner: ProcessRunner | None = None,
        selector: CLISelector | None = None,
        verifier: AcceptanceVerifier | None = None,
        recorder: LearningRecorder | None = None,
        quota_tracker: QuotaTracker | None = None,
        status_checker: ApiStatusChecker | None = None,
        run_logger: RunLogger | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        self.config = config
        self.project_dir = Path(config.project_dir).resolve()
        self.app_config = app_config or load_config(self.project_dir, use_cache=False)
        self.settings = settings or load_settings()

        paths = self.app_config.paths
        self.state_dir = self.project_dir / paths.state_dir_name
        if store is None and config.prd_path:
            store = PRDStore(
                Path(config.prd_path),
                archive_dir_name=paths.archive_dir_name,
                backup_dir=self.state_dir / "backups",
                backup_limit=paths.backup_limit,
            )
        self.store = store or PRDStore.for_project(self.project_dir, paths)
        self.runner = runner or ProcessRunner(
            grace_seconds=self.app_config.process.grace_seconds,
            queue_size=self.app_config.process.queue_size,
        )
        self.selector = selector or CLISelector.from_config(self.app_config.cli)
        self.verifier = verifier or AcceptanceVerifier(
            self.project_dir,
            self._save,
            timeout_seconds=self.app_config.verify.timeout_seconds,
            max_parallel=self.app_config.verify.max_parallel,
            error_max_chars=self.app_config.verify.error_max_chars,
        )
        self.recorder = recorder if recorder is not None else LearningRecorder()
        self.quota_tracker = quota_tracker
        self.status_checker = status_checker
        self._env = env

        self.run_id = config.session_name or new_session_name()
        self.run_logger = run_logger or RunLogger(self.state_dir / LOGS_DIRNAME, self.run_id)
        self.mode = config.mode or self.settings.execution_mode or self.app_config.routing.mode

        self.states: dict[str, StoryState] = {}
        self._result = RunResult(run_id=self.run_id)
        self._phase = "initializing"
        self._error: str | None = None
        self._stop_requested = False
        self._cli: str | None = None
        self._quotas: dict[Provider, ProviderQuota] | None = None
        self._principles: str | None = None

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    async def stop(self) -> None:
        """Terminate the current attempt and end the run. Idempotent."""
        if not self._stop_requested:
            logger.info("Stop requested for run %s", self.run_id)
        self._stop_requested = True
        await self.runner.stop()

    def get_result(self) -> RunResult:
        """Summary of the run. Call after the generator is consumed."""
        self._result.phase = self._phase
        self._result.error = self._error
        self._result.states = dict(self.states)
        return self._result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _make_event(self, event_type: RunEventType, message: str = "", **kwargs: Any) -> RunEvent:
        return RunEvent(event_type=event_type, message=message, **kwargs)

    def _log(self, event_type: EventType, story_id: str | None = None, **data: Any) -> None:
        try:
            self.run_logger.log(event_type, story_id, **data)
        except Exception:  # Non-fatal
            logger.warning("Failed to write run log entry", exc_info=True)

    def _child_env(self) -> dict[str, str]:
        if self._env is None:
            self._env = read_layered_env(project_dir=self.project_dir)
        return self._env

    def _save(self, prd: PRD) -> None:
        """
        Persist the PRD, keeping completion signals written to disk mid-run.

        A legacy story marked complete externally must not be reverted by a
        save of the in-memory copy.
        """
        try:
            on_disk: PRD | None = self.store.load()
        except MalformedPRDError:
            on_disk = None
        if on_disk is not None:
            for story in prd.user_stories:
                if story.passes or story.is_testable:
                    continue
                disk_story = on_disk.get_story(story.id)
                if disk_story is not None and disk_story.passes:
                    story.passes = True
        self.store.save(prd)

    def _legacy_signalled(self, story: UserStory) -> bool:
        try:
            on_disk = self.store.load()
        except MalformedPRDError:
            return False
        disk_story = on_disk.get_story(story.id)
        if disk_story is not None and disk_story.passes:
            story.passes = True
        return story.passes

    def _select_stories(self, prd: PRD) -> list[UserStory]:
        if self.config.story_id:
            story = prd.get_story(self.config.story_id)
            if story is None:
                raise StoryNotFoundError(self.config.story_id)
            return [story]
        return prd.ordered_stories()

    async def _resolve_cli(self, prd: PRD) -> Resolution:
        return await self.selector.resolve(
            self.config.cli_override or prd.cli,
            self.settings.preferred_cli,
            prd.cli_fallback_order,
            global_fallback_chain=self.settings.cli_fallback_order,
        )

    async def _refresh_quotas(self) -> None:
        if not self.config.check_quotas:
            return
        if self.quota_tracker is None:
            self.quota_tracker = QuotaTracker.from_config(
                self.app_config.quota,
                env=self._child_env(),
                snapshot_path=default_snapshot_path(),
            )
        try:
            self._quotas = await self.quota_tracker.refresh()
        except Exception:  # Quota is advisory
            logger.warning("Quota refresh failed; routing without quota data", exc_info=True)
            self._quotas = None

    async def _check_api_status(self, cli: str) -> AsyncIterator[RunEvent]:
        """Warn, then pause briefly, when the Claude API is degraded or down."""
        quota_config = self.app_config.quota
        if not self.config.check_api_status or quota_config.ignore_api_status:
            return
        if not serves_provider(cli, Provider.ANTHROPIC):
            return
        if self.status_checker is None:
            self.status_checker = ApiStatusChecker.from_config(quota_config)
        report = await self.status_checker.check()
        if not report.should_warn:
            return

        delay = quota_config.api_status_delay_seconds
        yield self._make_event(
            RunEventType.API_STATUS,
            f"Warning: {report.describe()}. Starting in {delay:g}s; "
            "pass --ignore-api-status or set STORYLOOP_IGNORE_API_STATUS=true to skip",
            data={
                "status": report.status.value,
                "message": report.message,
                "incidents": report.incidents,
            },
        )
        self._log(
            EventType.API_STATUS,
            status=report.status.value,
            message=report.message,
            incidents=report.incidents,
        )
        if delay > 0:
            await asyncio.sleep(delay)

    def _hints(self, story_state: StoryState) -> LearningHints | None:
        if not (self.config.use_learning and self.app_config.routing.use_learning):
            return None
        return self.recorder.hints_for(
            story_state.task_type, self.app_config.routing.min_learning_runs
        )

    def _pick_model(self, cli: str, recommendation: Recommendation) -> ModelRef | None:
        """
        Model to pass to ``cli``.

        A forced model always wins. Otherwise the first recommended candidate
        the CLI can serve; None lets the CLI use its own default.
        """
        if self.config.model_override:
            override = self.config.model_override
            return ModelRef(override, provider_for_model(override) or recommendation.provider)
        for ref in [recommendation.ref, *recommendation.fallbacks]:
            if serves_provider(cli, ref.provider):
                return ref
        return None

    def _record(
        self,
        story: UserStory,
        state: StoryState,
        ref: ModelRef,
        attempt: _Attempt,
        success: bool,
    ) -> None:
        usage = attempt.usage
        cost = (
            usage.cost_usd
            if usage.cost_usd is not None
            else estimate_cost(ref.model_id, usage.input_tokens, usage.output_tokens)
        )
        self._result.total_cost_usd += cost
        verification = attempt.verification
        try:
            self.recorder.record(
                AttemptOutcome(
                    project=self.project_dir.name,
                    story_id=story.id,
                    story_title=story.title,
                    task_type=state.task_type,
                    complexity=story.complexity,
                    provider=ref.provider,
                    model_id=ref.model_id,
                    duration_minutes=attempt.duration_ms / 60000,
                    input_tokens=usage.input_tokens,
                    output_tokens=usage.output_tokens,
                    cost_usd=cost,
                    success=success,
                    retry_count=state.attempt - 1,
                    ac_total=len(story.criteria),
                    ac_passed=verification.passed_count if verification else 0,
                )
            )
        except Exception:  # Non-fatal
            logger.warning("Failed to record learning data for %s", story.id, exc_info=True)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def execute(self) -> AsyncIterator[RunEvent]:
        """
        Run every pending story, yielding events.

        Yields:
            RunEvent objects for each state transition, ending with exactly
            one of RUN_COMPLETED, RUN_FAILED or RUN_STOPPED.

        Example:
            >>> controller = RetryController(RunConfig(project_dir="."))
            >>> async for event in controller.execute():
            ...     if event.event_type == RunEventType.STORY_COMPLETED:
            ...         print(f"Done: {event.story_id}")
        """
        started = time.monotonic()
        self._phase = "running"
        try:
            yield self._make_event(
                RunEventType.RUN_STARTED,
                f"Starting run: {self.run_id}",
                data={
                    "run_id": self.run_id,
                    "project_dir": str(self.project_dir),
                    "mode": self.mode.value,
                },
            )
            self._log(EventType.RUN_START, project=str(self.project_dir), mode=self.mode.value)

            try:
                async for event in self._run():
                    yield event
            except Exception as e:
                logger.exception("Run %s failed unexpectedly", self.run_id)
                self._phase = "failed"
                self._error = f"Unexpected error: {e}"

            yield self._finish(started)
        finally:
            self.run_logger.close()

    async def _run(self) -> AsyncIterator[RunEvent]:
        try:
            prd = self.store.load()
            stories = self._select_stories(prd)
            resolution = await self._resolve_cli(prd)
        except (MalformedPRDError, NoCLIAvailableError, StoryNotFoundError) as e:
            logger.error("Cannot start run for %s: %s", self.project_dir, e)
            self._phase = "failed"
            self._error = str(e)
            self._log(EventType.ERROR, error=str(e), error_type=type(e).__name__)
            return

        self._cli = resolution.cli
        yield self._make_event(
            RunEventType.CLI_RESOLVED,
            f"Using {resolution.cli} ({resolution.source.value})",
            data={"cli": resolution.cli, "source": resolution.source.value},
        )
        self._log(EventType.CLI_RESOLVED, cli=resolution.cli, source=resolution.source.value)

        async for event in self._check_api_status(resolution.cli):
            yield event

        try:
            self.store.create_backup()
        except OSError as e:
            logger.warning("Could not back up PRD before run: %s", e)

        self._principles = load_custom_principles(
            self.state_dir / PRINCIPLES_FILENAME, get_state_dir() / PRINCIPLES_FILENAME
        )

        for story in stories:
            if self._stop_requested:
                self._phase = "stopped"
                break
            if story.passes:
                self._result.stories_skipped += 1
                yield self._make_event(
                    RunEventType.STORY_SKIPPED,
                    f"{story.id} already passes",
                    story_id=story.id,
                )
                continue
            async for event in self._run_story(prd, story):
                yield event
            if self._phase in ("failed", "stopped"):
                break

        if self._phase == "running" and self._stop_requested:
            self._phase = "stopped"
        if self._phase == "running" and prd.all_passed and self._result.stories_completed:
            try:
                self._result.archive_path = str(self.store.archive())
            except OSError as e:
                logger.warning("Could not archive completed PRD: %s", e)

    async def _run_story(self, prd: PRD, story: UserStory) -> AsyncIterator[RunEvent]:
        state = StoryState(
            story_id=story.id, title=story.title, task_type=detect_story_task_type(story)
        )
        self.states[story.id] = state

        yield self._make_event(
            RunEventType.STORY_SELECTED,
            f"Selected {story.id}: {story.title}",
            story_id=story.id,
            state=state,
            data={"task_type": state.task_type.value, "complexity": story.complexity.value},
        )

        await self._refresh_quotas()
        recommendation = recommend(
            state.task_type,
            self.mode,
            self._quotas,
            learned=self._hints(state),
            low_reliability=self.app_config.routing.low_reliability_threshold,
            min_runs=self.app_config.routing.min_learning_runs,
        )
        if recommendation.quota_exhausted:
            exhausted = QuotaExhaustedError(recommendation.provider.value, recommendation.model_id)
            logger.warning("%s; no candidate has quota, trying it anyway", exhausted)
            self._log(
                EventType.ERROR,
                story.id,
                error=str(exhausted),
                error_type=type(exhausted).__name__,
            )

        yield self._make_event(
            RunEventType.STORY_STARTED,
            f"Starting {story.id}: {story.title}",
            story_id=story.id,
            state=state,
        )
        self._log(EventType.STORY_START, story.id, title=story.title, task_type=state.task_type.value)

        failure_detail: str | None = None
        while state.attempt < self.config.max_attempts:
            if self._stop_requested:
                state.transition(StoryPhase.PENDING)
                self._phase = "stopped"
                self._log(EventType.STORY_END, story.id, outcome="stopped", attempts=state.attempt)
                return

            try:
                resolution = await self._resolve_cli(prd)
            except NoCLIAvailableError as e:
                logger.error("No CLI available for %s: %s", story.id, e)
                state.transition(StoryPhase.PENDING)
                self._phase = "failed"
                self._error = str(e)
                self._log(EventType.ERROR, story.id, error=str(e), error_type=type(e).__name__)
                return
            cli = resolution.cli
            if cli != self._cli:
                self._cli = cli
                yield self._make_event(
                    RunEventType.CLI_RESOLVED,
                    f"Using {cli} ({resolution.source.value})",
                    story_id=story.id,
                    data={"cli": cli, "source": resolution.source.value},
                )
                self._log(EventType.CLI_RESOLVED, story.id, cli=cli, source=resolution.source.value)

            ref = self._pick_model(cli, recommendation)
            state.attempt += 1
            state.cli = cli
            state.model_id = ref.model_id if ref else None
            state.provider = ref.provider.value if ref else None
            state.transition(StoryPhase.RUNNING)
            self._result.total_attempts += 1

            yield self._make_event(
                RunEventType.MODEL_SELECTED,
                f"Model {state.model_id or f'{cli} default'}: {recommendation.reason}",
                story_id=story.id,
                attempt=state.attempt,
                state=state,
                data={
                    "model_id": state.model_id,
                    "provider": state.provider,
                    "reason": recommendation.reason,
                    "confidence": recommendation.confidence,
                    "quota_exhausted": recommendation.quota_exhausted,
                },
            )
            self._log(
                EventType.MODEL_SELECTED,
                story.id,
                model_id=state.model_id,
                reason=recommendation.reason,
            )
            yield self._make_event(
                RunEventType.ATTEMPT_STARTED,
                f"Attempt {state.attempt}/{self.config.max_attempts} for {story.id}",
                story_id=story.id,
                attempt=state.attempt,
                state=state,
            )
            self._log(EventType.ATTEMPT_START, story.id, attempt=state.attempt, cli=cli)

            attempt = _Attempt()
            async for event in self._attempt(prd, story, state, cli, ref, failure_detail, attempt):
                yield event

            state.last_exit_code = attempt.exit.code if attempt.exit else None
            state.last_error = attempt.error
            yield self._make_event(
                RunEventType.ATTEMPT_FINISHED,
                f"Attempt {state.attempt} exited with code {state.last_exit_code}",
                story_id=story.id,
                attempt=state.attempt,
                exit_code=state.last_exit_code,
                error=attempt.error,
                state=state,
                data={"duration_ms": attempt.duration_ms},
            )
            self._log(
                EventType.ATTEMPT_END,
                story.id,
                attempt=state.attempt,
                exit_code=state.last_exit_code,
                error=attempt.error,
                duration_ms=attempt.duration_ms,
            )

            if attempt.stopped:
                state.transition(StoryPhase.PENDING)
                self._phase = "stopped"
                self._log(EventType.STORY_END, story.id, outcome="stopped", attempts=state.attempt)
                return

            used = ref or ModelRef(cli, min(get_cli_spec(cli).providers, key=lambda p: p.value))
            verification = attempt.verification

            if verification is not None and verification.all_passed is None:
                signalled = self._legacy_signalled(story)
                self._record(story, state, used, attempt, signalled)
                if signalled:
                    async for event in self._complete(story, state):
                        yield event
                    return
                state.transition(StoryPhase.PENDING)
                self._result.stories_skipped += 1
                yield self._make_event(
                    RunEventType.STORY_SKIPPED,
                    f"{story.id} has free-text criteria; awaiting completion signal",
                    story_id=story.id,
                    state=state,
                )
                self._log(EventType.STORY_END, story.id, outcome="pending", attempts=state.attempt)
                return

            success = bool(verification is not None and verification.all_passed)
            self._record(story, state, used, attempt, success)
            if success:
                async for event in self._complete(story, state):
                    yield event
                return

            if verification is not None:
                failure_detail = verification.failure_summary()
            else:
                failure_detail = attempt.error or "The CLI did not exit cleanly"

            if state.attempt < self.config.max_attempts:
                state.transition(StoryPhase.RETRYING)
                logger.info(
                    "Retrying %s (attempt %d of %d failed)",
                    story.id,
                    state.attempt,
                    self.config.max_attempts,
                )
                yield self._make_event(
                    RunEventType.RETRYING,
                    f"Retrying {story.id} after failed attempt {state.attempt}",
                    story_id=story.id,
                    attempt=state.attempt,
                    error=failure_detail,
                    state=state,
                )

        failure = RetryLimitExceededError(story.id, state.attempt, failure_detail)
        logger.warning("%s", failure)
        story.passes = False
        state.transition(StoryPhase.FAILED)
        self._result.stories_failed += 1
        yield self._make_event(
            RunEventType.STORY_FAILED,
            str(failure),
            story_id=story.id,
            attempt=state.attempt,
            error=failure_detail,
            state=state,
        )
        self._log(
            EventType.STORY_END,
            story.id,
            outcome="failed",
            attempts=state.attempt,
            error=failure_detail,
        )

    async def _complete(self, story: UserStory, state: StoryState) -> AsyncIterator[RunEvent]:
        state.transition(StoryPhase.COMPLETE)
        self._result.stories_completed += 1
        logger.info("%s complete after %d attempt(s)", story.id, state.attempt)
        yield self._make_event(
            RunEventType.STORY_COMPLETED,
            f"Completed {story.id}: {story.title}",
            story_id=story.id,
            attempt=state.attempt,
            state=state,
        )
        self._log(EventType.STORY_END, story.id, outcome="complete", attempts=state.attempt)

    async def _attempt(
        self,
        prd: PRD,
        story: UserStory,
        state: StoryState,
        cli: str,
        ref: ModelRef | None,
        failure_detail: str | None,
        attempt: _Attempt,
    ) -> AsyncIterator[RunEvent]:
        prompt = generate_story_prompt(
            story,
            attempt=state.attempt,
            max_attempts=self.config.max_attempts,
            failure_detail=failure_detail,
            principles=self._principles,
        )
        invocation = build_invocation(cli, prompt.text, ref.model_id if ref else None)
        started = time.monotonic()

        try:
            handle = await self.runner.start(
                invocation.argv,
                self.project_dir,
                stdin=invocation.stdin,
                parser=get_cli_spec(cli).parser,
                timeout=self.config.attempt_timeout_seconds,
                env=self._child_env(),
            )
        except ProcessSpawnError as e:
            attempt.error = str(e)
            attempt.duration_ms = int((time.monotonic() - started) * 1000)
            return

        async for output in handle:
            if output.usage is not None:
                attempt.usage.add(output.usage)
            yield self._make_event(
                RunEventType.OUTPUT,
                output.text,
                story_id=story.id,
                attempt=state.attempt,
                output=output,
            )

        result = await handle.wait()
        attempt.exit = result
        attempt.duration_ms = result.duration_ms
        if result.stopped or self._stop_requested:
            attempt.stopped = True
            attempt.error = "Stopped"
            return
        if not result.success:
            attempt.error = result.error or str(ProcessExitNonZeroError(cli, result.code))
            return

        state.transition(StoryPhase.VERIFYING)
        try:
            verification = await self.verifier.verify(prd, story)
        except StoryloopError as e:
            attempt.error = str(e)
            return
        attempt.verification = verification
        state.criteria = list(verification.per_criterion)

        if verification.all_passed is None:
            message = f"{story.id}: free-text criteria, not auto-verified"
        else:
            message = (
                f"{story.id}: {verification.passed_count}/{len(verification.per_criterion)} "
                "criteria passed"
            )
        yield self._make_event(
            RunEventType.VERIFICATION_RESULT,
            message,
            story_id=story.id,
            attempt=state.attempt,
            state=state,
            data={
                "all_passed": verification.all_passed,
                "passed": verification.passed_count,
                "total": len(verification.per_criterion),
            },
        )
        self._log(
            EventType.VERIFICATION,
            story.id,
            attempt=state.attempt,
            all_passed=verification.all_passed,
            results=[
                {"criterion_id": r.criterion_id, "passed": r.passed, "exit_code": r.exit_code}
                for r in verification.per_criterion
            ],
        )

    def _finish(self, started: float) -> RunEvent:
        if self._phase == "running":
            self._phase = "completed"
        duration = time.monotonic() - started
        self._result.total_duration_seconds = duration
        result = self.get_result()

        final_event_type = {
            "completed": RunEventType.RUN_COMPLETED,
            "failed": RunEventType.RUN_FAILED,
            "stopped": RunEventType.RUN_STOPPED,
        }.get(self._phase, RunEventType.RUN_COMPLETED)

        if self._phase == "failed":
            message = f"Run failed: {self._error}"
        else:
            message = (
                f"Run {self._phase}: {result.stories_completed} completed, "
                f"{result.stories_failed} failed"
            )
        self._log(
            EventType.RUN_END,
            phase=self._phase,
            stories_completed=result.stories_completed,
            stories_failed=result.stories_failed,
            total_cost_usd=round(result.total_cost_usd, 4),
            error=self._error,
        )
        return self._make_event(
            final_event_type,
            message,
            error=self._error,
            data={
                "phase": self._phase,
                "stories_completed": result.stories_completed,
                "stories_failed": result.stories_failed,
                "stories_skipped": result.stories_skipped,
                "total_attempts": result.total_attempts,
                "total_cost_usd": result.total_cost_usd,
                "archive_path": result.archive_path,
                "duration_seconds": duration,
            },
        )
