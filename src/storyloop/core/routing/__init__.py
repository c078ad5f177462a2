"""
Model routing: task types, execution modes, the model catalog and the
capability matrix.

The execution planner lives in ``storyloop.core.routing.planner``.
"""

from .catalog import MODEL_CATALOG, ModelInfo, estimate_cost, get_model_info
from .matrix import ROUTES, get_route, rank_candidates, recommend
from .models import (
    ExecutionMode,
    LearningHints,
    ModelCapability,
    ModelReliability,
    ModelRef,
    Provider,
    Recommendation,
    Route,
    TaskType,
)
from .task_types import TASK_KEYWORDS, detect_story_task_type, detect_task_type

__all__ = [
    "MODEL_CATALOG",
    "ROUTES",
    "TASK_KEYWORDS",
    "ExecutionMode",
    "LearningHints",
    "ModelCapability",
    "ModelInfo",
    "ModelReliability",
    "ModelRef",
    "Provider",
    "Recommendation",
    "Route",
    "TaskType",
    "detect_story_task_type",
    "detect_task_type",
    "estimate_cost",
    "get_model_info",
    "get_route",
    "rank_candidates",
    "recommend",
]
