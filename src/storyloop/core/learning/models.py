"""
Learning data models.

A PerformanceRecord is written for every attempt. ModelLearning is the
aggregate for one (model, task type) pair and is always re-derivable from
the records.
"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from storyloop.core.prd.models import Complexity
from storyloop.core.routing.models import ModelRef, Provider, TaskType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def efficiency_score(cost_usd: float, ac_pass_rate: float) -> float:
    """Value for money: free runs score 100, runs with no passing criteria 0."""
    if cost_usd == 0:
        return 100.0
    if ac_pass_rate == 0:
        return 0.0
    return min(100.0, max(0.0, (ac_pass_rate * 100) / (cost_usd * 100)))


def speed_score(duration_minutes: float) -> float:
    if duration_minutes <= 0:
        return 100.0
    return min(100.0, max(0.0, 100 / duration_minutes))


def reliability_score(ac_pass_rate: float, success: bool, retry_count: int) -> float:
    """Pass rate scaled down by half for failures and 10% per retry."""
    success_weight = 1.0 if success else 0.5
    retry_penalty = max(0.0, 1 - retry_count * 0.1)
    return ac_pass_rate * 100 * success_weight * retry_penalty


def overall_score(reliability: float, efficiency: float, speed: float) -> float:
    return reliability * 0.4 + efficiency * 0.35 + speed * 0.25


class AttemptOutcome(BaseModel):
    """What the retry controller knows about one finished attempt."""

    project: str
    story_id: str
    story_title: str = ""
    task_type: TaskType
    complexity: Complexity = Complexity.MEDIUM
    provider: Provider
    model_id: str
    duration_minutes: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    success: bool = False
    retry_count: int = 0
    ac_total: int = 0
    ac_passed: int = 0


class PerformanceRecord(BaseModel):
    """One line of learning.jsonl."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    timestamp: datetime = Field(default_factory=_utcnow)

    project: str
    story_id: str = Field(alias="storyId")
    story_title: str = Field(default="", alias="storyTitle")
    task_type: TaskType = Field(alias="taskType")
    complexity: Complexity = Complexity.MEDIUM

    provider: Provider
    model_id: str = Field(alias="modelId")

    duration_minutes: float = Field(default=0.0, alias="durationMinutes")
    input_tokens: int = Field(default=0, alias="inputTokens")
    output_tokens: int = Field(default=0, alias="outputTokens")
    total_tokens: int = Field(default=0, alias="totalTokens")
    cost_usd: float = Field(default=0.0, alias="costUSD")

    success: bool = False
    retry_count: int = Field(default=0, alias="retryCount")
    ac_total: int = Field(default=0, alias="acTotal")
    ac_passed: int = Field(default=0, alias="acPassed")
    ac_pass_rate: float = Field(default=0.0, alias="acPassRate")

    efficiency_score: float = Field(default=0.0, alias="efficiencyScore")
    speed_score: float = Field(default=0.0, alias="speedScore")
    reliability_score: float = Field(default=0.0, alias="reliabilityScore")

    @property
    def model_key(self) -> str:
        return ModelRef(self.model_id, self.provider).key

    @classmethod
    def from_outcome(cls, outcome: AttemptOutcome, now: datetime | None = None) -> PerformanceRecord:
        """Build a scored record from an attempt outcome."""
        now = now or _utcnow()
        pass_rate = outcome.ac_passed / outcome.ac_total if outcome.ac_total else 0.0
        return cls(
            id=f"{outcome.story_id}-{int(now.timestamp() * 1000)}",
            timestamp=now,
            project=outcome.project,
            story_id=outcome.story_id,
            story_title=outcome.story_title,
            task_type=outcome.task_type,
            complexity=outcome.complexity,
            provider=outcome.provider,
            model_id=outcome.model_id,
            duration_minutes=outcome.duration_minutes,
            input_tokens=outcome.input_tokens,
            output_tokens=outcome.output_tokens,
            total_tokens=outcome.input_tokens + outcome.output_tokens,
            cost_usd=outcome.cost_usd,
            success=outcome.success,
            retry_count=outcome.retry_count,
            ac_total=outcome.ac_total,
            ac_passed=outcome.ac_passed,
            ac_pass_rate=pass_rate,
            efficiency_score=efficiency_score(outcome.cost_usd, pass_rate),
            speed_score=speed_score(outcome.duration_minutes),
            reliability_score=reliability_score(pass_rate, outcome.success, outcome.retry_count),
        )


class ModelLearning(BaseModel):
    """Aggregate performance of one model on one task type."""

    model_id: str
    provider: Provider
    task_type: TaskType

    total_runs: int
    successful_runs: int
    success_rate: float

    avg_duration_minutes: float
    duration_p50: float
    duration_p90: float
    avg_cost_usd: float
    cost_per_success: float | None
    avg_tokens: float
    avg_ac_pass_rate: float

    efficiency_score: float
    speed_score: float
    reliability_score: float
    overall_score: float

    last_updated: datetime = Field(default_factory=_utcnow)

    @property
    def model_key(self) -> str:
        return ModelRef(self.model_id, self.provider).key
