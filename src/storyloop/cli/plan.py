"""
storyloop CLI - Plan command.

Preview which model each story would be routed to, with token, cost and
duration estimates, before spending anything.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from storyloop.core.learning.recorder import LearningRecorder
from storyloop.core.routing.models import ExecutionMode, LearningHints, TaskType
from storyloop.core.routing.planner import ExecutionPlan, generate_execution_plan

from .common import load_prd_or_exit, open_project, write_json
from .quota import refresh_quotas

console = Console()


def print_plan(plan: ExecutionPlan) -> None:
    table = Table(
        title=f"Execution Plan: {plan.prd_name} ({plan.mode.value})",
        show_header=True,
        header_style="bold",
    )
    table.add_column("Story", style="cyan")
    table.add_column("Type", style="dim")
    table.add_column("Complexity")
    table.add_column("Model", style="magenta")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Minutes", justify="right")
    for story in plan.stories:
        table.add_row(
            story.story_id,
            story.task_type.value,
            story.complexity.value,
            f"{story.recommended_model.provider.value}:{story.recommended_model.model_id}",
            f"{story.estimated_tokens:,}",
            f"${story.estimated_cost:.2f}",
            f"{story.estimated_duration:.0f}",
        )
    console.print(table)

    summary = plan.summary
    console.print(
        f"\n[bold]Total:[/bold] {summary.total_stories} stories, "
        f"${summary.estimated_total_cost:.2f}, "
        f"{summary.estimated_total_duration:.0f} min"
    )
    if not summary.can_complete_with_current_quotas:
        console.print("[yellow]Current quotas may not cover this plan[/yellow]")
    for warning in summary.quota_warnings:
        console.print(f"[yellow]⚠[/yellow] {warning}")

    comparison = Table(title="Strategy Comparison", show_header=True, header_style="bold")
    comparison.add_column("Strategy", style="cyan")
    comparison.add_column("Cost", justify="right")
    comparison.add_column("Minutes", justify="right")
    for name, estimate in plan.comparisons.items():
        comparison.add_row(name, f"${estimate.cost:.2f}", f"{estimate.duration:.0f}")
    console.print(comparison)


def plan(
    project: Annotated[
        Path | None,
        typer.Argument(help="Project directory (defaults to the discovered project root)"),
    ] = None,
    mode: Annotated[
        ExecutionMode | None,
        typer.Option("--mode", "-m", help="Execution mode for model routing"),
    ] = None,
    with_quota: Annotated[
        bool,
        typer.Option("--quota", help="Poll provider quotas and check the plan fits"),
    ] = False,
    no_learning: Annotated[
        bool,
        typer.Option("--no-learning", help="Ignore learned model performance"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output the plan as JSON"),
    ] = False,
) -> None:
    """
    Preview model routing and estimates for every story.

    Examples:

        storyloop plan

        storyloop plan --mode super-saver --quota

        storyloop plan --json > plan.json
    """
    project_dir, config, store = open_project(project)
    prd = load_prd_or_exit(store)

    learned: dict[TaskType, LearningHints] = {}
    if config.routing.use_learning and not no_learning:
        recorder = LearningRecorder()
        for task_type in TaskType:
            hints = recorder.hints_for(task_type, config.routing.min_learning_runs)
            if not hints.empty:
                learned[task_type] = hints

    quotas = asyncio.run(refresh_quotas()) if with_quota else None

    execution_plan = generate_execution_plan(
        prd,
        quotas,
        mode=mode or config.routing.mode,
        learned=learned,
        project_path=str(project_dir),
    )

    if json_output:
        write_json(execution_plan.model_dump(mode="json"))
        return

    print_plan(execution_plan)
