"""
Capability matrix: static model routing per execution mode and task type.

ROUTES is a single table keyed by ``(mode, task_type)``. ``recommend`` walks
a route's candidates in order and returns the first whose provider quota is
``available``; when none are, the primary is returned anyway and flagged.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING

from .models import (
    ExecutionMode,
    LearningHints,
    ModelRef,
    Provider,
    Recommendation,
    Route,
    TaskType,
)

if TYPE_CHECKING:
    from storyloop.core.quota.models import ProviderQuota

logger = logging.getLogger(__name__)

OPUS = ModelRef("claude-opus-4-20250514", Provider.ANTHROPIC)
SONNET = ModelRef("claude-sonnet-4-20250514", Provider.ANTHROPIC)
HAIKU = ModelRef("claude-3-5-haiku-20241022", Provider.ANTHROPIC)
CODEX = ModelRef("gpt-5.2-codex", Provider.OPENAI)
CODEX_MINI = ModelRef("gpt-5.1-codex-mini", Provider.OPENAI)
GPT = ModelRef("gpt-5.2", Provider.OPENAI)
FLASH = ModelRef("gemini-2.0-flash", Provider.GEMINI)
GEMINI_PRO = ModelRef("gemini-1.5-pro", Provider.GEMINI)
DEEPSEEK = ModelRef("deepseek-coder", Provider.OPENROUTER)
QWEN = ModelRef("qwen-2.5-coder", Provider.LOCAL)

DEFAULT_CONFIDENCE = 0.8
LEARNED_CONFIDENCE = 0.9
LOW_RELIABILITY_THRESHOLD = 40.0
MIN_LEARNING_RUNS = 3


def _r(primary: ModelRef, *fallbacks: ModelRef) -> Route:
    return Route(primary, fallbacks)


T = TaskType

_BALANCED: dict[TaskType, Route] = {
    T.COMPLEX_INTEGRATION: _r(OPUS, SONNET, CODEX),
    T.MATHEMATICAL: _r(GPT, OPUS, GEMINI_PRO),
    T.BACKEND_API: _r(SONNET, CODEX, DEEPSEEK),
    T.BACKEND_LOGIC: _r(SONNET, CODEX, DEEPSEEK),
    T.FRONTEND_UI: _r(SONNET, FLASH, CODEX_MINI),
    T.FRONTEND_LOGIC: _r(SONNET, CODEX_MINI, FLASH),
    T.DATABASE: _r(SONNET, CODEX, DEEPSEEK),
    T.TESTING: _r(CODEX, HAIKU, QWEN),
    T.DOCUMENTATION: _r(FLASH, SONNET, HAIKU),
    T.REFACTORING: _r(SONNET, CODEX, DEEPSEEK),
    T.BUGFIX: _r(SONNET, CODEX, DEEPSEEK),
    T.DEVOPS: _r(HAIKU, CODEX_MINI, FLASH),
    T.CONFIG: _r(HAIKU, CODEX_MINI, QWEN),
    T.UNKNOWN: _r(SONNET, CODEX, FLASH),
}

# Cheapest capable model first; complex and math tasks keep a quality floor
_CHEAP = _r(HAIKU, CODEX_MINI, DEEPSEEK, QWEN)
_SUPER_SAVER: dict[TaskType, Route] = {
    T.COMPLEX_INTEGRATION: _r(SONNET, CODEX, DEEPSEEK),
    T.MATHEMATICAL: _r(GPT, SONNET),
    T.BACKEND_API: _CHEAP,
    T.BACKEND_LOGIC: _CHEAP,
    T.FRONTEND_UI: _r(FLASH, HAIKU, QWEN),
    T.FRONTEND_LOGIC: _CHEAP,
    T.DATABASE: _CHEAP,
    T.TESTING: _r(CODEX_MINI, HAIKU, QWEN),
    T.DOCUMENTATION: _r(FLASH, CODEX_MINI, QWEN),
    T.REFACTORING: _CHEAP,
    T.BUGFIX: _CHEAP,
    T.DEVOPS: _CHEAP,
    T.CONFIG: _CHEAP,
    T.UNKNOWN: _CHEAP,
}

_PREMIUM = _r(SONNET, CODEX, OPUS)
_FAST_DELIVERY: dict[TaskType, Route] = {
    **{t: _PREMIUM for t in TaskType},
    T.COMPLEX_INTEGRATION: _r(OPUS, SONNET, CODEX),
    T.MATHEMATICAL: _r(GPT, OPUS),
    T.TESTING: _r(CODEX, SONNET),
    T.UNKNOWN: _r(OPUS, CODEX, SONNET),
}

ROUTES: dict[tuple[ExecutionMode, TaskType], Route] = {
    (mode, task_type): route
    for mode, table in (
        (ExecutionMode.BALANCED, _BALANCED),
        (ExecutionMode.SUPER_SAVER, _SUPER_SAVER),
        (ExecutionMode.FAST_DELIVERY, _FAST_DELIVERY),
    )
    for task_type, route in table.items()
}


def get_route(task_type: TaskType, mode: ExecutionMode = ExecutionMode.BALANCED) -> Route:
    return ROUTES[(ExecutionMode(mode), TaskType(task_type))]


def quota_status(quotas: Mapping[Provider | str, ProviderQuota], provider: Provider) -> str | None:
    """Status value for ``provider``, accepting Provider or plain string keys."""
    quota = quotas.get(provider)
    if quota is None:
        quota = quotas.get(provider.value)
    if quota is None:
        return None
    return str(getattr(quota.status, "value", quota.status))


def rank_candidates(
    route: Route,
    hints: LearningHints | None = None,
    *,
    low_reliability: float = LOW_RELIABILITY_THRESHOLD,
    min_runs: int = MIN_LEARNING_RUNS,
) -> list[ModelRef]:
    """
    Order a route's candidates, blending in learning hints.

    Candidates with trusted low reliability move behind the rest (keeping
    relative order); the learned best model moves to the front if it is
    already a candidate. Without hints the static order is returned.
    """
    candidates = route.candidates
    if hints is None or hints.empty:
        return candidates

    def is_weak(ref: ModelRef) -> bool:
        stat = hints.reliability.get(ref.key)
        return stat is not None and stat.runs >= min_runs and stat.reliability < low_reliability

    ranked = [c for c in candidates if not is_weak(c)] + [c for c in candidates if is_weak(c)]
    if hints.best is not None:
        best = next((c for c in ranked if c.key == hints.best), None)
        if best is not None and not is_weak(best):
            ranked.remove(best)
            ranked.insert(0, best)
    return ranked


def recommend(
    task_type: TaskType,
    mode: ExecutionMode = ExecutionMode.BALANCED,
    quotas: Mapping[Provider | str, ProviderQuota] | None = None,
    *,
    learned: LearningHints | None = None,
    low_reliability: float = LOW_RELIABILITY_THRESHOLD,
    min_runs: int = MIN_LEARNING_RUNS,
) -> Recommendation:
    """
    Recommend a model for a task type.

    Args:
        task_type: Detected task type.
        mode: Execution mode selecting the mapping.
        quotas: Current provider quotas. None skips quota checks.
        learned: Optional learning hints for this task type.

    Returns:
        Recommendation. ``quota_exhausted`` is True when no candidate had
        available quota and the primary is returned anyway; callers must
        treat a subsequent invocation failure as an attempt failure.
    """
    task_type = TaskType(task_type)
    route = get_route(task_type, mode)
    candidates = rank_candidates(
        route, learned, low_reliability=low_reliability, min_runs=min_runs
    )
    reordered = candidates != route.candidates
    confidence = LEARNED_CONFIDENCE if reordered else DEFAULT_CONFIDENCE
    primary = candidates[0]

    def build(ref: ModelRef, reason: str, *, exhausted: bool = False) -> Recommendation:
        return Recommendation(
            model_id=ref.model_id,
            provider=ref.provider,
            reason=reason,
            quota_exhausted=exhausted,
            confidence=confidence,
            fallbacks=[c for c in candidates if c != ref],
        )

    if quotas is None:
        reason = "Learned best model for task type" if reordered else "Primary model for task type"
        return build(primary, reason)

    for index, ref in enumerate(candidates):
        if quota_status(quotas, ref.provider) != "available":
            continue
        if index == 0:
            return build(ref, "Primary model with available quota")
        primary_status = quota_status(quotas, primary.provider) or "unknown"
        logger.info(
            "Routing %s to fallback %s (%s quota %s)",
            task_type.value,
            ref.model_id,
            primary.provider.value,
            primary_status,
        )
        return build(ref, f"Fallback model (primary quota {primary_status})")

    logger.warning(
        "No provider quota available for %s; using primary %s", task_type.value, primary.model_id
    )
    return build(
        primary, "Primary model (warning: all quotas may be exhausted)", exhausted=True
    )
