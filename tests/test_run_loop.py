"""
Tests for the retry controller.

A fake ``claude`` executable on PATH stands in for the agent CLI. It counts
its invocations in ``count`` and saves each prompt to ``prompt-<n>.txt`` in
the project directory, so acceptance commands can depend on how many
attempts have run.
"""

from __future__ import annotations

import json

import httpx
import pytest

from storyloop.core.config.models import QuotaConfig, StoryloopConfig
from storyloop.core.learning.recorder import LearningRecorder
from storyloop.core.prd.store import PRDStore
from storyloop.core.quota.status import ApiStatusChecker
from storyloop.core.routing.models import TaskType
from storyloop.core.run.loop import RetryController
from storyloop.core.run.models import MAX_ATTEMPTS, RunConfig, RunEventType, StoryPhase, StoryState
from storyloop.core.selector.health import HealthCache
from storyloop.core.selector.selector import CLISelector

pytestmark = pytest.mark.integration

COUNTING_AGENT = """\
n=$(cat count 2>/dev/null || echo 0)
n=$((n + 1))
echo $n > count
cat > "prompt-$n.txt"
echo "attempt $n"
"""


async def _healthy(cli: str, timeout: float) -> tuple[bool, str]:
    return True, f"{cli} 1.0.0"


async def _unhealthy(cli: str, timeout: float) -> tuple[bool, str]:
    return False, "exit code 1"


def _write_prd(project, *stories: dict) -> None:
    (project / "prd.json").write_text(
        json.dumps({"project": "demo", "cli": "claude", "userStories": list(stories)})
    )


def _story(story_id: str, *commands: str, **extra) -> dict:
    return {
        "id": story_id,
        "title": f"Add endpoint {story_id}",
        "acceptanceCriteria": [
            {"id": f"AC-{i}", "text": f"criterion {i}", "testCommand": cmd}
            for i, cmd in enumerate(commands, 1)
        ],
        **extra,
    }


@pytest.fixture
def agent(make_script, fake_path):
    make_script("claude", COUNTING_AGENT)


@pytest.fixture
def make_controller(project_dir, tmp_path):
    def factory(check_fn=_healthy, **config) -> RetryController:
        config.setdefault("check_quotas", False)
        config.setdefault("check_api_status", False)
        checker = config.pop("status_checker", None)
        return RetryController(
            RunConfig(project_dir=str(project_dir), session_name="run-test", **config),
            app_config=StoryloopConfig(quota=QuotaConfig(api_status_delay_seconds=0)),
            status_checker=checker,
            selector=CLISelector(
                HealthCache(check_fn=check_fn),
                which=lambda cli: f"/usr/bin/{cli}" if cli == "claude" else None,
            ),
            recorder=LearningRecorder(tmp_path / "learning.jsonl"),
        )

    return factory


async def _drain(controller: RetryController) -> list:
    return [event async for event in controller.execute()]


def _types(events) -> list[RunEventType]:
    return [e.event_type for e in events if e.event_type != RunEventType.OUTPUT]


class TestHappyPath:
    """Tests for stories that pass."""

    @pytest.mark.asyncio
    async def test_story_passes_first_attempt(self, agent, project_dir, make_controller):
        """Test a story whose criteria pass is completed in one attempt."""
        _write_prd(project_dir, _story("US-1", "test -f count", "true"))
        controller = make_controller()

        events = await _drain(controller)

        assert _types(events) == [
            RunEventType.RUN_STARTED,
            RunEventType.CLI_RESOLVED,
            RunEventType.STORY_SELECTED,
            RunEventType.STORY_STARTED,
            RunEventType.MODEL_SELECTED,
            RunEventType.ATTEMPT_STARTED,
            RunEventType.VERIFICATION_RESULT,
            RunEventType.ATTEMPT_FINISHED,
            RunEventType.STORY_COMPLETED,
            RunEventType.RUN_COMPLETED,
        ]
        outputs = [e for e in events if e.event_type == RunEventType.OUTPUT]
        assert outputs[0].message == "attempt 1"

        result = controller.get_result()
        assert result.success is True
        assert result.stories_completed == 1
        assert result.total_attempts == 1
        assert result.states["US-1"].phase == StoryPhase.COMPLETE

        prd = PRDStore.for_project(project_dir).load()
        story = prd.get_story("US-1")
        assert story.passes is True
        assert all(c.passes and c.last_run for c in story.criteria)

    @pytest.mark.asyncio
    async def test_side_effects(self, agent, project_dir, make_controller, tmp_path):
        """Test backup, archive, run log and learning record are written."""
        _write_prd(project_dir, _story("US-1", "true"))
        controller = make_controller()
        await _drain(controller)

        store = PRDStore.for_project(project_dir)
        assert store.list_backups()
        assert controller.get_result().archive_path is not None
        assert len(store.list_archives()) == 1

        log_file = project_dir / ".storyloop" / "logs" / "run-test.jsonl"
        entries = [json.loads(line) for line in log_file.read_text().splitlines()]
        assert entries[0]["event_type"] == "run_start"
        assert entries[-1]["event_type"] == "run_end"

        records = LearningRecorder(tmp_path / "learning.jsonl").records
        assert len(records) == 1
        assert records[0].success is True
        assert records[0].provider.value == "anthropic"

    @pytest.mark.asyncio
    async def test_passes_on_third_attempt(self, agent, project_dir, make_controller):
        """Test failures feed the next prompt until the criteria pass."""
        _write_prd(project_dir, _story("US-1", 'test "$(cat count)" -ge 3'))
        controller = make_controller()

        events = await _drain(controller)

        retries = [e for e in events if e.event_type == RunEventType.RETRYING]
        assert len(retries) == 2
        state = controller.get_result().states["US-1"]
        assert state.attempt == 3
        assert state.phase == StoryPhase.COMPLETE
        assert StoryPhase.RETRYING in state.history

        assert "Previous Attempt Failed" not in (project_dir / "prompt-1.txt").read_text()
        second = (project_dir / "prompt-2.txt").read_text()
        assert "Previous Attempt Failed (attempt 1 of 3)" in second
        assert "AC-1" in second


class TestFailures:
    """Tests for stories and runs that fail."""

    @pytest.mark.asyncio
    async def test_unsolvable_story_does_not_halt_run(self, agent, project_dir, make_controller):
        """Test a story failing three times is marked failed and the next one runs."""
        _write_prd(project_dir, _story("US-1", "false"), _story("US-2", "true"))
        controller = make_controller()

        events = await _drain(controller)

        failed = [e for e in events if e.event_type == RunEventType.STORY_FAILED]
        assert [e.story_id for e in failed] == ["US-1"]
        assert "3 attempts" in failed[0].message
        assert events[-1].event_type == RunEventType.RUN_COMPLETED

        result = controller.get_result()
        assert result.stories_failed == 1
        assert result.stories_completed == 1
        assert result.total_attempts == 4
        assert result.success is False
        assert result.archive_path is None

        prd = PRDStore.for_project(project_dir).load()
        assert prd.get_story("US-1").passes is False
        assert prd.get_story("US-2").passes is True

    @pytest.mark.asyncio
    async def test_cli_nonzero_exit(self, make_script, fake_path, project_dir, make_controller):
        """Test a CLI that exits nonzero fails the attempt without verifying."""
        make_script("claude", "cat > /dev/null\necho 'auth failed' >&2\nexit 2\n")
        _write_prd(project_dir, _story("US-1", "true"))
        controller = make_controller(max_attempts=1)

        events = await _drain(controller)

        finished = next(e for e in events if e.event_type == RunEventType.ATTEMPT_FINISHED)
        assert finished.exit_code == 2
        assert RunEventType.VERIFICATION_RESULT not in _types(events)
        assert controller.get_result().states["US-1"].phase == StoryPhase.FAILED

    @pytest.mark.asyncio
    async def test_no_cli_available(self, project_dir, make_controller):
        """Test the run fails when no CLI is healthy."""
        _write_prd(project_dir, _story("US-1", "true"))
        controller = make_controller(check_fn=_unhealthy)

        events = await _drain(controller)

        assert _types(events) == [RunEventType.RUN_STARTED, RunEventType.RUN_FAILED]
        assert "claude" in events[-1].error
        assert controller.get_result().phase == "failed"

    @pytest.mark.asyncio
    async def test_unknown_story(self, agent, project_dir, make_controller):
        """Test a story filter naming an unknown story fails the run."""
        _write_prd(project_dir, _story("US-1", "true"))
        controller = make_controller(story_id="US-404")

        events = await _drain(controller)

        assert events[-1].event_type == RunEventType.RUN_FAILED
        assert "US-404" in events[-1].error

    @pytest.mark.asyncio
    async def test_malformed_prd(self, project_dir, make_controller):
        """Test a malformed PRD fails the run and is left untouched."""
        (project_dir / "prd.json").write_text("{oops")
        controller = make_controller()

        events = await _drain(controller)

        assert events[-1].event_type == RunEventType.RUN_FAILED
        assert (project_dir / "prd.json").read_text() == "{oops"


class TestStorySelection:
    """Tests for which stories run."""

    @pytest.mark.asyncio
    async def test_passing_story_skipped(self, agent, project_dir, make_controller):
        """Test stories that already pass are skipped."""
        done = _story("US-1", "true", passes=True)
        done["acceptanceCriteria"][0]["passes"] = True
        _write_prd(project_dir, done, _story("US-2", "true"))
        controller = make_controller()

        events = await _drain(controller)

        skipped = [e.story_id for e in events if e.event_type == RunEventType.STORY_SKIPPED]
        assert skipped == ["US-1"]
        assert controller.get_result().stories_skipped == 1
        assert (project_dir / "count").read_text().strip() == "1"

    @pytest.mark.asyncio
    async def test_story_filter(self, agent, project_dir, make_controller):
        """Test --story runs only the named story."""
        _write_prd(project_dir, _story("US-1", "true"), _story("US-2", "true"))
        controller = make_controller(story_id="US-2")

        await _drain(controller)

        assert list(controller.get_result().states) == ["US-2"]

    @pytest.mark.asyncio
    async def test_priority_order(self, agent, project_dir, make_controller):
        """Test prioritized stories run before the rest."""
        _write_prd(
            project_dir,
            _story("US-1", "true"),
            _story("US-2", "true", priority=1),
        )
        controller = make_controller()

        events = await _drain(controller)

        started = [e.story_id for e in events if e.event_type == RunEventType.STORY_STARTED]
        assert started == ["US-2", "US-1"]

    @pytest.mark.asyncio
    async def test_legacy_story_awaits_signal(self, agent, project_dir, make_controller):
        """Test a free-text story runs once and stays pending."""
        _write_prd(
            project_dir,
            {"id": "US-1", "title": "Write README", "acceptanceCriteria": ["Explains setup"]},
        )
        controller = make_controller()

        events = await _drain(controller)

        assert RunEventType.STORY_SKIPPED in _types(events)
        assert controller.get_result().total_attempts == 1
        assert controller.get_result().states["US-1"].phase == StoryPhase.PENDING
        assert PRDStore.for_project(project_dir).load().get_story("US-1").passes is False


class TestStop:
    """Tests for stopping a run."""

    @pytest.mark.asyncio
    async def test_stop_mid_attempt(self, make_script, fake_path, project_dir, make_controller):
        """Test stop() ends the attempt and the run without failing the story."""
        make_script("claude", "cat > /dev/null\necho started\nsleep 30\n")
        _write_prd(project_dir, _story("US-1", "true"), _story("US-2", "true"))
        controller = make_controller()

        events = []
        async for event in controller.execute():
            events.append(event)
            if event.event_type == RunEventType.OUTPUT and event.message == "started":
                await controller.stop()

        assert events[-1].event_type == RunEventType.RUN_STOPPED
        result = controller.get_result()
        assert result.phase == "stopped"
        assert result.stories_failed == 0
        assert result.states["US-1"].phase == StoryPhase.PENDING
        assert "US-2" not in result.states
        assert controller.stop_requested is True


def _status_checker(indicator: str, description: str) -> ApiStatusChecker:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("incidents.json"):
            return httpx.Response(200, json={"incidents": []})
        return httpx.Response(
            200, json={"status": {"indicator": indicator, "description": description}}
        )

    return ApiStatusChecker(transport=httpx.MockTransport(handler))


class TestApiStatus:
    """Tests for the pre-run Claude API status warning."""

    @pytest.mark.asyncio
    async def test_degraded_api_warns_and_runs(self, agent, project_dir, make_controller):
        """Test a degraded API yields a warning event and the run still completes."""
        _write_prd(project_dir, _story("US-1", "true"))
        controller = make_controller(
            check_api_status=True,
            status_checker=_status_checker("major", "Partial Outage"),
        )

        events = await _drain(controller)

        types = _types(events)
        assert types.index(RunEventType.API_STATUS) == types.index(RunEventType.CLI_RESOLVED) + 1
        warning = next(e for e in events if e.event_type == RunEventType.API_STATUS)
        assert warning.data["status"] == "degraded"
        assert "Partial Outage" in warning.message
        assert "--ignore-api-status" in warning.message
        assert events[-1].event_type == RunEventType.RUN_COMPLETED

    @pytest.mark.asyncio
    async def test_operational_api_is_silent(self, agent, project_dir, make_controller):
        """Test no event is emitted while the API is operational."""
        _write_prd(project_dir, _story("US-1", "true"))
        controller = make_controller(
            check_api_status=True,
            status_checker=_status_checker("none", "All Systems Operational"),
        )

        events = await _drain(controller)

        assert RunEventType.API_STATUS not in _types(events)

    @pytest.mark.asyncio
    async def test_ignore_flag_skips_check(self, agent, project_dir, make_controller):
        """Test check_api_status=False never contacts the status page."""
        _write_prd(project_dir, _story("US-1", "true"))
        checker = _status_checker("critical", "Major Outage")
        controller = make_controller(check_api_status=False, status_checker=checker)

        events = await _drain(controller)

        assert RunEventType.API_STATUS not in _types(events)
        assert checker.last_report is None

    @pytest.mark.asyncio
    async def test_config_ignore_skips_check(self, agent, project_dir, tmp_path):
        """Test quota.ignore_api_status turns the check off even when the run asks for it."""
        _write_prd(project_dir, _story("US-1", "true"))
        checker = _status_checker("critical", "Major Outage")
        controller = RetryController(
            RunConfig(project_dir=str(project_dir), check_quotas=False),
            app_config=StoryloopConfig(quota=QuotaConfig(ignore_api_status=True)),
            status_checker=checker,
            selector=CLISelector(
                HealthCache(check_fn=_healthy),
                which=lambda cli: f"/usr/bin/{cli}" if cli == "claude" else None,
            ),
            recorder=LearningRecorder(tmp_path / "learning.jsonl"),
        )

        events = await _drain(controller)

        assert RunEventType.API_STATUS not in _types(events)
        assert checker.last_report is None


class TestStoryState:
    """Tests for per-story state built by the controller."""

    def test_task_type_defaults_to_unknown(self):
        """Test a fresh StoryState has a task type before detection runs."""
        assert StoryState(story_id="US-1").task_type == TaskType.UNKNOWN

    @pytest.mark.asyncio
    async def test_task_type_detected(self, agent, project_dir, make_controller):
        """Test the controller records the detected task type on the state."""
        _write_prd(project_dir, _story("US-1", "true"))
        controller = make_controller()

        await _drain(controller)

        assert controller.get_result().states["US-1"].task_type == TaskType.BACKEND_API

    @pytest.mark.asyncio
    async def test_passing_flag_with_failing_criteria_runs(
        self, agent, project_dir, make_controller
    ):
        """Test a story marked passing whose criteria do not pass is run, not skipped."""
        _write_prd(project_dir, _story("US-1", "true", passes=True))
        controller = make_controller()

        events = await _drain(controller)

        assert RunEventType.STORY_SKIPPED not in _types(events)
        assert controller.get_result().stories_completed == 1
        assert (project_dir / "count").read_text().strip() == "1"


class TestRunConfig:
    """Tests for RunConfig validation."""

    @pytest.mark.parametrize("attempts", [0, -1, MAX_ATTEMPTS + 1])
    def test_attempts_out_of_range(self, project_dir, attempts):
        """Test max_attempts outside 1..MAX_ATTEMPTS is rejected at construction."""
        with pytest.raises(ValueError, match="max_attempts"):
            RunConfig(project_dir=str(project_dir), max_attempts=attempts)

    def test_attempts_in_range(self, project_dir):
        """Test the bounds themselves are accepted."""
        assert RunConfig(project_dir=str(project_dir), max_attempts=1).max_attempts == 1
        assert RunConfig(project_dir=str(project_dir)).max_attempts == MAX_ATTEMPTS
