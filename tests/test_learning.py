"""Tests for the cost & learning recorder."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from storyloop.core.learning.models import (
    AttemptOutcome,
    PerformanceRecord,
    efficiency_score,
    reliability_score,
    speed_score,
)
from storyloop.core.learning.recorder import LearningRecorder, aggregate, percentile
from storyloop.core.routing.models import Provider, TaskType


def _outcome(**overrides) -> AttemptOutcome:
    data = {
        "project": "demo",
        "story_id": "US-1",
        "story_title": "Fix crash",
        "task_type": TaskType.BUGFIX,
        "provider": Provider.ANTHROPIC,
        "model_id": "claude-sonnet-4-20250514",
        "duration_minutes": 2.0,
        "input_tokens": 1000,
        "output_tokens": 500,
        "cost_usd": 0.5,
        "success": True,
        "retry_count": 0,
        "ac_total": 2,
        "ac_passed": 2,
    }
    data.update(overrides)
    return AttemptOutcome(**data)


@pytest.fixture
def recorder(tmp_path) -> LearningRecorder:
    return LearningRecorder(tmp_path / "learning.jsonl")


class TestScores:
    """Tests for per-attempt scoring."""

    def test_efficiency(self):
        """Test free runs score 100 and zero pass rate scores 0."""
        assert efficiency_score(0.0, 0.0) == 100.0
        assert efficiency_score(1.0, 0.0) == 0.0
        assert efficiency_score(0.01, 1.0) == pytest.approx(100.0)
        assert efficiency_score(0.5, 1.0) == pytest.approx(2.0)
        assert efficiency_score(2.0, 0.5) == pytest.approx(0.25)

    def test_speed(self):
        """Test speed is 100 over minutes, capped at 100."""
        assert speed_score(0) == 100.0
        assert speed_score(0.5) == 100.0
        assert speed_score(4.0) == 25.0

    def test_reliability(self):
        """Test failures halve and retries discount reliability."""
        assert reliability_score(1.0, True, 0) == 100.0
        assert reliability_score(1.0, False, 0) == 50.0
        assert reliability_score(1.0, True, 2) == pytest.approx(80.0)
        assert reliability_score(1.0, True, 20) == 0.0

    def test_record_from_outcome(self):
        """Test derived fields on a record."""
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        rec = PerformanceRecord.from_outcome(_outcome(ac_passed=1), now=now)
        assert rec.id == f"US-1-{int(now.timestamp() * 1000)}"
        assert rec.total_tokens == 1500
        assert rec.ac_pass_rate == 0.5
        assert rec.model_key == "anthropic:claude-sonnet-4-20250514"

    def test_zero_criteria(self):
        """Test a story without criteria has a zero pass rate."""
        rec = PerformanceRecord.from_outcome(_outcome(ac_total=0, ac_passed=0))
        assert rec.ac_pass_rate == 0.0


class TestAggregation:
    """Tests for percentile and aggregate."""

    def test_percentile(self):
        """Test linear interpolation."""
        assert percentile([], 50) == 0.0
        assert percentile([7.0], 90) == 7.0
        assert percentile([1.0, 2.0, 3.0, 4.0], 50) == 2.5
        assert percentile([1.0, 2.0, 3.0, 4.0, 5.0], 90) == pytest.approx(4.6)

    def test_aggregate(self):
        """Test success rate and cost per success."""
        records = [
            PerformanceRecord.from_outcome(_outcome(success=True, cost_usd=1.0)),
            PerformanceRecord.from_outcome(_outcome(success=False, cost_usd=1.0, ac_passed=0)),
        ]
        learning = aggregate(records)
        assert learning.total_runs == 2
        assert learning.successful_runs == 1
        assert learning.success_rate == 0.5
        assert learning.cost_per_success == 2.0
        assert learning.avg_ac_pass_rate == 0.5

    def test_no_successes(self):
        """Test cost per success is None without successes."""
        learning = aggregate([PerformanceRecord.from_outcome(_outcome(success=False))])
        assert learning.cost_per_success is None


class TestLearningRecorder:
    """Tests for recording and querying."""

    def test_record_appends_jsonl(self, recorder):
        """Test each record is one camelCase JSON line."""
        recorder.record(_outcome())
        recorder.record(_outcome(story_id="US-2"))
        lines = recorder.path.read_text().splitlines()
        assert len(lines) == 2
        data = json.loads(lines[0])
        assert data["storyId"] == "US-1"
        assert data["costUSD"] == 0.5
        assert data["taskType"] == "bugfix"

    def test_get_stats(self, recorder):
        """Test per-model stats after recording."""
        recorder.record(_outcome())
        stats = recorder.get_stats(Provider.ANTHROPIC, "claude-sonnet-4-20250514", TaskType.BUGFIX)
        assert stats is not None
        assert stats.total_runs == 1
        assert recorder.get_stats(Provider.OPENAI, "gpt-5.2-codex", TaskType.BUGFIX) is None

    def test_stats_filter_and_order(self, recorder):
        """Test stats() filters by task type and sorts by overall score."""
        recorder.record(_outcome(cost_usd=0.0, provider=Provider.LOCAL, model_id="qwen"))
        recorder.record(_outcome(success=False, ac_passed=0))
        recorder.record(_outcome(task_type=TaskType.TESTING))

        bugfix = recorder.stats(TaskType.BUGFIX)
        assert len(bugfix) == 2
        assert bugfix[0].model_key == "local:qwen"
        assert len(recorder.stats()) == 3

    def test_best_requires_min_runs(self, recorder):
        """Test best_model_for_task ignores models below min_runs."""
        for _ in range(2):
            recorder.record(_outcome())
        assert recorder.best_model_for_task(TaskType.BUGFIX) is None
        recorder.record(_outcome())
        best = recorder.best_model_for_task(TaskType.BUGFIX)
        assert best is not None
        assert best.total_runs == 3

    def test_best_cache_invalidated(self, recorder):
        """Test a new record changes the cached recommendation."""
        for _ in range(3):
            recorder.record(_outcome(success=False, ac_passed=0, cost_usd=1.0))
        first = recorder.best_model_for_task(TaskType.BUGFIX)
        assert first.model_key == "anthropic:claude-sonnet-4-20250514"

        for _ in range(3):
            recorder.record(
                _outcome(provider=Provider.OPENAI, model_id="gpt-5.2-codex", cost_usd=0.0)
            )
        assert recorder.best_model_for_task(TaskType.BUGFIX).model_key == "openai:gpt-5.2-codex"

    def test_hints_for(self, recorder):
        """Test routing hints carry the best model and reliability."""
        for _ in range(3):
            recorder.record(_outcome())
        hints = recorder.hints_for(TaskType.BUGFIX)
        assert hints.best == "anthropic:claude-sonnet-4-20250514"
        assert hints.reliability[hints.best].runs == 3
        assert recorder.hints_for(TaskType.DATABASE).best is None

    def test_rebuild_from_file(self, recorder):
        """Test a new recorder rebuilds aggregates from the JSONL file."""
        recorder.record(_outcome())
        recorder.record(_outcome(success=False))
        fresh = LearningRecorder(recorder.path)
        stats = fresh.get_stats(Provider.ANTHROPIC, "claude-sonnet-4-20250514", TaskType.BUGFIX)
        assert stats.total_runs == 2
        assert stats.success_rate == 0.5

    def test_malformed_lines_skipped(self, recorder):
        """Test invalid lines are skipped on load."""
        recorder.record(_outcome())
        with recorder.path.open("a") as f:
            f.write("{not json}\n\n")
            f.write(json.dumps({"id": "x"}) + "\n")
        assert LearningRecorder(recorder.path).rebuild() == 1

    def test_clear(self, recorder):
        """Test clear empties the file and aggregates."""
        recorder.record(_outcome())
        recorder.clear()
        assert recorder.stats() == []
        assert recorder.records == []
        assert recorder.path.read_text() == ""

    def test_export(self, recorder):
        """Test export includes runs and learnings."""
        recorder.record(_outcome())
        data = recorder.export()
        assert len(data["runs"]) == 1
        assert data["runs"][0]["storyId"] == "US-1"
        assert data["learnings"][0]["task_type"] == "bugfix"
        json.dumps(data)

    def test_default_path_in_state_dir(self, storyloop_home):
        """Test the default file lives in the storyloop home."""
        assert LearningRecorder().path == storyloop_home / "learning.jsonl"
