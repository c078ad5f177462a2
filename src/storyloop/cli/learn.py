"""
storyloop CLI - Learn commands.

Inspect and manage the per-model performance data recorded after every
attempt.
"""

from __future__ import annotations

from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from storyloop.core.learning.models import ModelLearning
from storyloop.core.learning.recorder import DEFAULT_MIN_RUNS, LearningRecorder
from storyloop.core.routing.models import TaskType

from .common import write_json

app = typer.Typer(
    name="learn",
    help="Inspect learned model performance",
    no_args_is_help=True,
)

console = Console()


def learning_table(learnings: list[ModelLearning], title: str) -> Table:
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Model", style="magenta")
    table.add_column("Task Type", style="cyan")
    table.add_column("Runs", justify="right")
    table.add_column("Success", justify="right")
    table.add_column("Avg Min", justify="right")
    table.add_column("Avg Cost", justify="right")
    table.add_column("Reliability", justify="right")
    table.add_column("Score", justify="right")
    for m in learnings:
        table.add_row(
            m.model_key,
            m.task_type.value,
            str(m.total_runs),
            f"{m.success_rate:.0%}",
            f"{m.avg_duration_minutes:.1f}",
            f"${m.avg_cost_usd:.3f}",
            f"{m.reliability_score:.0f}",
            f"{m.overall_score:.0f}",
        )
    return table


@app.command(name="stats")
def stats_command(
    task_type: Annotated[
        TaskType | None,
        typer.Option("--task-type", "-t", help="Only show this task type"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """
    Show aggregated performance per model and task type.

    Examples:

        storyloop learn stats

        storyloop learn stats --task-type backend-api
    """
    learnings = LearningRecorder().stats(task_type)

    if json_output:
        write_json([m.model_dump(mode="json") for m in learnings])
        return

    if not learnings:
        console.print("[dim]No learning data recorded yet. Run some stories first.[/dim]")
        return
    console.print(learning_table(learnings, "Model Performance"))


@app.command(name="best")
def best_command(
    task_type: Annotated[TaskType, typer.Argument(help="Task type to look up")],
    min_runs: Annotated[
        int,
        typer.Option("--min-runs", min=1, help="Minimum runs before a model qualifies"),
    ] = DEFAULT_MIN_RUNS,
) -> None:
    """Show the best learned model for a task type."""
    best = LearningRecorder().best_model_for_task(task_type, min_runs)
    if best is None:
        console.print(
            f"[dim]No model has {min_runs}+ runs for {task_type.value} yet[/dim]"
        )
        raise typer.Exit(1)
    console.print(
        f"[bold]{task_type.value}[/bold]: [magenta]{best.model_key}[/magenta] "
        f"(score {best.overall_score:.0f}, {best.total_runs} runs, "
        f"{best.success_rate:.0%} success)"
    )


@app.command(name="export")
def export_command() -> None:
    """Print every recorded run and aggregate as JSON."""
    write_json(LearningRecorder().export())


@app.command(name="clear")
def clear_command(
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip confirmation"),
    ] = False,
) -> None:
    """Delete all recorded performance data."""
    recorder = LearningRecorder()
    if not yes:
        confirm = typer.confirm(f"Delete all learning data in {recorder.path}?")
        if not confirm:
            console.print("[dim]Cancelled[/dim]")
            raise typer.Exit(0)
    recorder.clear()
    console.print("[green]✓[/green] Learning data cleared")
