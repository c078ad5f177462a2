"""
Execution planner.

Builds a pre-run cost and duration estimate for a PRD: the detected task
type and recommended model per story, token estimates by complexity,
cheaper or stronger alternatives, quota sufficiency, and a comparison
against single-model and per-mode strategies.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from storyloop.core.prd.models import PRD, Complexity, UserStory
from storyloop.core.quota.models import ProviderQuota, QuotaStatus, QuotaType

from .catalog import estimate_cost
from .matrix import SONNET, get_route, quota_status, recommend
from .models import ExecutionMode, LearningHints, Provider, TaskType
from .task_types import detect_story_task_type

Quotas = Mapping[Provider, ProviderQuota]

DEFAULT_CONFIDENCE = 0.8
LOCAL_SLOWDOWN = 1.5


class TokenEstimate(BaseModel):
    input: int
    output: int
    duration_minutes: int

    @property
    def total(self) -> int:
        return self.input + self.output


TOKEN_ESTIMATES: dict[Complexity, TokenEstimate] = {
    Complexity.SIMPLE: TokenEstimate(input=5_000, output=2_000, duration_minutes=15),
    Complexity.MEDIUM: TokenEstimate(input=15_000, output=6_000, duration_minutes=30),
    Complexity.COMPLEX: TokenEstimate(input=40_000, output=15_000, duration_minutes=60),
}


class RecommendedModel(BaseModel):
    provider: Provider
    model_id: str
    reason: str
    confidence: float = DEFAULT_CONFIDENCE


class AlternativeModel(BaseModel):
    provider: Provider
    model_id: str
    estimated_cost: float
    tradeoff: str


class StoryAllocation(BaseModel):
    """Planned model and estimates for one story."""

    story_id: str
    title: str
    task_type: TaskType
    complexity: Complexity
    recommended_model: RecommendedModel
    estimated_tokens: int
    estimated_cost: float
    estimated_duration: float
    alternatives: list[AlternativeModel] = Field(default_factory=list)


class PlanSummary(BaseModel):
    total_stories: int
    estimated_total_cost: float
    estimated_total_duration: float
    models_used: list[str]
    can_complete_with_current_quotas: bool
    quota_warnings: list[str] = Field(default_factory=list)


class StrategyEstimate(BaseModel):
    cost: float
    duration: float


class ExecutionPlan(BaseModel):
    project_path: str = ""
    prd_name: str
    mode: ExecutionMode
    generated_at: datetime
    stories: list[StoryAllocation]
    summary: PlanSummary
    comparisons: dict[str, StrategyEstimate]


def _alternatives(
    task_type: TaskType,
    mode: ExecutionMode,
    current_model: str,
    estimate: TokenEstimate,
) -> list[AlternativeModel]:
    route = get_route(task_type, mode)
    current_cost = estimate_cost(current_model, estimate.input, estimate.output)
    alternatives: list[AlternativeModel] = []
    for ref in route.candidates:
        if ref.model_id == current_model:
            continue
        cost = estimate_cost(ref.model_id, estimate.input, estimate.output)
        if cost < current_cost:
            tradeoff = f"{(1 - cost / current_cost) * 100:.0f}% cheaper"
        elif cost > current_cost:
            label = "higher quality" if ref == route.primary else "fallback option"
            if current_cost > 0:
                tradeoff = f"{(cost / current_cost - 1) * 100:.0f}% more expensive but {label}"
            else:
                tradeoff = f"More expensive but {label}"
        else:
            tradeoff = "Similar cost"
        alternatives.append(
            AlternativeModel(
                provider=ref.provider, model_id=ref.model_id, estimated_cost=cost, tradeoff=tradeoff
            )
        )
    return alternatives


def allocate_story(
    story: UserStory,
    quotas: Quotas | None = None,
    mode: ExecutionMode = ExecutionMode.BALANCED,
    learned: Mapping[TaskType, LearningHints] | None = None,
) -> StoryAllocation:
    task_type = detect_story_task_type(story)
    rec = recommend(task_type, mode, quotas, learned=(learned or {}).get(task_type))
    estimate = TOKEN_ESTIMATES[story.complexity]
    return StoryAllocation(
        story_id=story.id,
        title=story.title,
        task_type=task_type,
        complexity=story.complexity,
        recommended_model=RecommendedModel(
            provider=rec.provider,
            model_id=rec.model_id,
            reason=rec.reason,
            confidence=rec.confidence,
        ),
        estimated_tokens=estimate.total,
        estimated_cost=estimate_cost(rec.model_id, estimate.input, estimate.output),
        estimated_duration=estimate.duration_minutes,
        alternatives=_alternatives(task_type, mode, rec.model_id, estimate),
    )


def _per_provider(stories: list[StoryAllocation]) -> dict[Provider, tuple[int, float]]:
    usage: dict[Provider, tuple[int, float]] = {}
    for s in stories:
        count, cost = usage.get(s.recommended_model.provider, (0, 0.0))
        usage[s.recommended_model.provider] = (count + 1, cost + s.estimated_cost)
    return usage


def _quota_for(quotas: Quotas, provider: Provider) -> ProviderQuota | None:
    return quotas.get(provider) or quotas.get(provider.value)  # type: ignore[call-overload]


def check_quota_sufficiency(stories: list[StoryAllocation], quotas: Quotas | None) -> bool:
    """
    Whether the plan fits current quotas.

    Without quota information the plan is assumed to fit.
    """
    if quotas is None:
        return True
    for provider, (_, cost) in _per_provider(stories).items():
        quota = _quota_for(quotas, provider)
        if quota is None:
            continue
        if quota.quota_type == QuotaType.CREDITS and quota.credits_remaining is not None:
            if quota.credits_remaining < cost:
                return False
        if quota.status in (QuotaStatus.EXHAUSTED, QuotaStatus.UNAVAILABLE):
            return False
    return True


def quota_warnings(stories: list[StoryAllocation], quotas: Quotas | None) -> list[str]:
    warnings: list[str] = []
    if quotas is None:
        return warnings
    for provider, (count, cost) in _per_provider(stories).items():
        p = provider.value
        quota = _quota_for(quotas, provider)
        if quota is None:
            warnings.append(f"{p}: No quota information available ({count} stories planned)")
            continue
        status = quota_status(quotas, provider)
        if status == QuotaStatus.EXHAUSTED.value:
            warnings.append(f"{p}: Quota exhausted but {count} stories planned (${cost:.2f})")
        elif status == QuotaStatus.LIMITED.value:
            warnings.append(f"{p}: Limited quota with {count} stories planned (${cost:.2f})")
        elif status == QuotaStatus.UNAVAILABLE.value:
            warnings.append(f"{p}: Unavailable ({count} stories planned)")
        if quota.quota_type == QuotaType.CREDITS and quota.credits_remaining is not None:
            if quota.credits_remaining < cost:
                warnings.append(
                    f"{p}: Insufficient credits (${quota.credits_remaining:.2f} remaining, "
                    f"${cost:.2f} needed)"
                )
    return warnings


def _single_model_strategy(stories: list[UserStory], model_id: str) -> StrategyEstimate:
    cost = 0.0
    duration = 0.0
    for story in stories:
        estimate = TOKEN_ESTIMATES[story.complexity]
        cost += estimate_cost(model_id, estimate.input, estimate.output)
        duration += estimate.duration_minutes
    return StrategyEstimate(cost=round(cost, 2), duration=duration)


def _all_local_strategy(stories: list[UserStory]) -> StrategyEstimate:
    duration = sum(TOKEN_ESTIMATES[s.complexity].duration_minutes * LOCAL_SLOWDOWN for s in stories)
    return StrategyEstimate(cost=0.0, duration=duration)


def _totals(allocations: list[StoryAllocation]) -> StrategyEstimate:
    return StrategyEstimate(
        cost=round(sum(a.estimated_cost for a in allocations), 2),
        duration=sum(a.estimated_duration for a in allocations),
    )


def generate_execution_plan(
    prd: PRD,
    quotas: Quotas | None = None,
    *,
    mode: ExecutionMode = ExecutionMode.BALANCED,
    learned: Mapping[TaskType, LearningHints] | None = None,
    project_path: str = "",
    now: datetime | None = None,
) -> ExecutionPlan:
    """
    Build an execution plan for every story in ``prd``, in execution order.

    Args:
        prd: Loaded PRD.
        quotas: Provider quotas; None skips sufficiency checks.
        mode: Execution mode used for the optimized plan.
        learned: Learning hints per task type.
        project_path: Recorded in the plan for display.
        now: Timestamp override.
    """
    stories = prd.ordered_stories()
    allocations = [allocate_story(s, quotas, mode, learned) for s in stories]
    totals = _totals(allocations)

    models_used: list[str] = []
    for a in allocations:
        if a.recommended_model.model_id not in models_used:
            models_used.append(a.recommended_model.model_id)

    summary = PlanSummary(
        total_stories=len(allocations),
        estimated_total_cost=totals.cost,
        estimated_total_duration=totals.duration,
        models_used=models_used,
        can_complete_with_current_quotas=check_quota_sufficiency(allocations, quotas),
        quota_warnings=quota_warnings(allocations, quotas),
    )

    comparisons: dict[str, StrategyEstimate] = {
        "all-claude": _single_model_strategy(stories, SONNET.model_id),
        "all-local": _all_local_strategy(stories),
        "optimized": totals,
    }
    for other in ExecutionMode:
        if other == mode:
            comparisons[other.value] = totals
        else:
            comparisons[other.value] = _totals(
                [allocate_story(s, quotas, other, learned) for s in stories]
            )

    return ExecutionPlan(
        project_path=project_path,
        prd_name=prd.project,
        mode=mode,
        generated_at=now or datetime.now(timezone.utc),
        stories=allocations,
        summary=summary,
        comparisons=comparisons,
    )
