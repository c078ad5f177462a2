"""
Cost & learning recorder.

Public API:
- LearningRecorder: JSONL-backed record store with per-(model, task type) aggregates
- AttemptOutcome: input describing one finished attempt
- PerformanceRecord: one scored attempt
- ModelLearning: aggregate for one model on one task type
"""

from storyloop.core.learning.models import (
    AttemptOutcome,
    ModelLearning,
    PerformanceRecord,
    efficiency_score,
    overall_score,
    reliability_score,
    speed_score,
)
from storyloop.core.learning.recorder import LearningRecorder, aggregate, percentile

__all__ = [
    "AttemptOutcome",
    "LearningRecorder",
    "ModelLearning",
    "PerformanceRecord",
    "aggregate",
    "efficiency_score",
    "overall_score",
    "percentile",
    "reliability_score",
    "speed_score",
]
