"""
Cost & learning recorder.

Appends one PerformanceRecord per attempt to ``learning.jsonl`` (the source
of truth) and keeps an in-memory aggregation per (model, task type). The
aggregation is rebuilt from the file on load, updated for the affected key
on each new record, and the cached best-model recommendation for that task
type is invalidated.

Thread-safe: all state changes happen under a threading.Lock.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from storyloop.core.config.loader import get_state_dir
from storyloop.core.routing.models import (
    LearningHints,
    ModelReliability,
    Provider,
    TaskType,
)

from .models import (
    AttemptOutcome,
    ModelLearning,
    PerformanceRecord,
    overall_score,
)

logger = logging.getLogger(__name__)

LEARNING_FILENAME = "learning.jsonl"
DEFAULT_MIN_RUNS = 3

AggregateKey = tuple[str, TaskType]


def default_learning_path() -> Path:
    return get_state_dir() / LEARNING_FILENAME


def percentile(values: list[float], pct: float) -> float:
    """Linear-interpolated percentile of ``values`` (0 for an empty list)."""
    if not values:
        return 0.0
    ordered = sorted(values)
    if len(ordered) == 1:
        return ordered[0]
    rank = (len(ordered) - 1) * pct / 100
    lower = int(rank)
    upper = min(lower + 1, len(ordered) - 1)
    return ordered[lower] + (ordered[upper] - ordered[lower]) * (rank - lower)


def aggregate(records: list[PerformanceRecord]) -> ModelLearning | None:
    """Aggregate records that share one model and task type."""
    if not records:
        return None
    first = records[0]
    n = len(records)
    successes = [r for r in records if r.success]
    durations = [r.duration_minutes for r in records]
    total_cost = sum(r.cost_usd for r in records)

    efficiency = sum(r.efficiency_score for r in records) / n
    speed = sum(r.speed_score for r in records) / n
    reliability = sum(r.reliability_score for r in records) / n

    return ModelLearning(
        model_id=first.model_id,
        provider=first.provider,
        task_type=first.task_type,
        total_runs=n,
        successful_runs=len(successes),
        success_rate=len(successes) / n,
        avg_duration_minutes=sum(durations) / n,
        duration_p50=percentile(durations, 50),
        duration_p90=percentile(durations, 90),
        avg_cost_usd=total_cost / n,
        cost_per_success=total_cost / len(successes) if successes else None,
        avg_tokens=sum(r.total_tokens for r in records) / n,
        avg_ac_pass_rate=sum(r.ac_pass_rate for r in records) / n,
        efficiency_score=efficiency,
        speed_score=speed,
        reliability_score=reliability,
        overall_score=overall_score(reliability, efficiency, speed),
        last_updated=datetime.now(timezone.utc),
    )


class LearningRecorder:
    """
    Records attempt outcomes and answers "which model does best here?".

    Args:
        path: JSONL file; defaults to ``<state dir>/learning.jsonl``.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or default_learning_path()
        self._lock = threading.Lock()
        self._records: list[PerformanceRecord] = []
        self._learnings: dict[AggregateKey, ModelLearning] = {}
        self._best_cache: dict[tuple[TaskType, int], ModelLearning | None] = {}
        self.rebuild()

    @property
    def records(self) -> list[PerformanceRecord]:
        with self._lock:
            return list(self._records)

    def _read_records(self) -> list[PerformanceRecord]:
        if not self.path.exists():
            return []
        records: list[PerformanceRecord] = []
        with self.path.open(encoding="utf-8") as f:
            for line_no, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(PerformanceRecord.model_validate_json(line))
                except ValidationError as e:
                    logger.warning(
                        "Skipping malformed learning record at %s:%d: %s",
                        self.path,
                        line_no,
                        e.errors()[0].get("msg", "invalid") if e.errors() else "invalid",
                    )
        return records

    def _aggregate_key(self, key: AggregateKey) -> None:
        model_key, task_type = key
        relevant = [
            r for r in self._records if r.model_key == model_key and r.task_type == task_type
        ]
        learning = aggregate(relevant)
        if learning is None:
            self._learnings.pop(key, None)
        else:
            self._learnings[key] = learning

    def rebuild(self) -> int:
        """
        Re-derive every aggregate from the JSONL file.

        Returns:
            Number of records loaded.
        """
        try:
            records = self._read_records()
        except OSError as e:
            logger.warning("Could not read learning data %s: %s", self.path, e)
            records = []
        with self._lock:
            self._records = records
            self._learnings.clear()
            self._best_cache.clear()
            for key in {(r.model_key, r.task_type) for r in records}:
                self._aggregate_key(key)
        logger.debug("Loaded %d learning records from %s", len(records), self.path)
        return len(records)

    def record(self, outcome: AttemptOutcome) -> PerformanceRecord:
        """Score, persist and aggregate one attempt."""
        rec = PerformanceRecord.from_outcome(outcome)
        line = rec.model_dump_json(by_alias=True)
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as f:
                    f.write(line + "\n")
            except OSError as e:
                logger.warning("Failed to persist learning record %s: %s", rec.id, e)
            self._records.append(rec)
            self._aggregate_key((rec.model_key, rec.task_type))
            for cache_key in [k for k in self._best_cache if k[0] == rec.task_type]:
                del self._best_cache[cache_key]
        logger.debug(
            "Recorded %s on %s (%s): success=%s",
            rec.story_id,
            rec.model_key,
            rec.task_type.value,
            rec.success,
        )
        return rec

    def get_stats(
        self, provider: Provider, model_id: str, task_type: TaskType
    ) -> ModelLearning | None:
        key = (f"{Provider(provider).value}:{model_id}", TaskType(task_type))
        with self._lock:
            return self._learnings.get(key)

    def stats(self, task_type: TaskType | None = None) -> list[ModelLearning]:
        """Aggregates, best overall score first."""
        with self._lock:
            items = [
                m for (_, t), m in self._learnings.items() if task_type is None or t == task_type
            ]
        return sorted(items, key=lambda m: m.overall_score, reverse=True)

    def best_model_for_task(
        self, task_type: TaskType, min_runs: int = DEFAULT_MIN_RUNS
    ) -> ModelLearning | None:
        """Highest overall score among models with at least ``min_runs`` runs."""
        task_type = TaskType(task_type)
        with self._lock:
            cache_key = (task_type, min_runs)
            if cache_key in self._best_cache:
                return self._best_cache[cache_key]
            candidates = [
                m
                for (_, t), m in self._learnings.items()
                if t == task_type and m.total_runs >= min_runs
            ]
            best = max(candidates, key=lambda m: m.overall_score) if candidates else None
            self._best_cache[cache_key] = best
            return best

    def hints_for(self, task_type: TaskType, min_runs: int = DEFAULT_MIN_RUNS) -> LearningHints:
        """Advisory routing input for one task type."""
        best = self.best_model_for_task(task_type, min_runs)
        reliability = {
            m.model_key: ModelReliability(reliability=m.reliability_score, runs=m.total_runs)
            for m in self.stats(task_type)
        }
        return LearningHints(best=best.model_key if best else None, reliability=reliability)

    def clear(self) -> None:
        """Delete every record."""
        with self._lock:
            if self.path.exists():
                self.path.write_text("", encoding="utf-8")
            self._records.clear()
            self._learnings.clear()
            self._best_cache.clear()
        logger.info("Cleared learning data at %s", self.path)

    def export(self) -> dict[str, object]:
        """Whole database as a JSON-ready dict."""
        with self._lock:
            return {
                "runs": [r.model_dump(mode="json", by_alias=True) for r in self._records],
                "learnings": [m.model_dump(mode="json") for m in self._learnings.values()],
            }
