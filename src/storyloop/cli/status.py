"""
storyloop CLI - Status commands.

Show story progress for a project and record external completion signals.
"""

import asyncio
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.table import Table

from storyloop.core.errors import StoryloopError
from storyloop.core.prd.models import PRD, UserStory
from storyloop.core.routing.task_types import detect_story_task_type
from storyloop.core.service import Orchestrator

from .common import load_prd_or_exit, open_project, write_json
from .errors import print_storyloop_error

console = Console()


def _criteria_progress(story: UserStory) -> str:
    if not story.is_testable:
        return f"{len(story.acceptance_criteria)} (manual)"
    passed = sum(1 for c in story.criteria if c.passes)
    return f"{passed}/{len(story.criteria)}"


def _status_dict(prd: PRD, external: bool) -> dict[str, Any]:
    stories = prd.ordered_stories()
    return {
        "project": prd.project,
        "branch": prd.branch_name,
        "cli": prd.cli,
        "external_session": external,
        "total": len(stories),
        "passed": sum(1 for s in stories if s.passes),
        "stories": [
            {
                "id": s.id,
                "title": s.title,
                "passes": s.passes,
                "complexity": s.complexity.value,
                "task_type": detect_story_task_type(s).value,
                "criteria": _criteria_progress(s),
            }
            for s in stories
        ],
    }


def status(
    project: Annotated[
        Path | None,
        typer.Argument(help="Project directory (defaults to the discovered project root)"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output status as JSON"),
    ] = False,
    check_external: Annotated[
        bool,
        typer.Option(
            "--check-external/--no-check-external",
            help="Look for an agent tmux session started outside storyloop",
        ),
    ] = True,
) -> None:
    """
    Show story progress for a project.

    Examples:

        storyloop status

        storyloop status ../my-app --json
    """
    project_dir, config, store = open_project(project)
    prd = load_prd_or_exit(store)

    external = False
    if check_external:
        orchestrator = Orchestrator(project_dir, app_config=config)
        external = asyncio.run(orchestrator.check_external())

    data = _status_dict(prd, external)
    if json_output:
        write_json(data)
        return

    console.print(f"[bold]{prd.project}[/bold]", end="")
    if prd.branch_name:
        console.print(f" [dim]({prd.branch_name})[/dim]", end="")
    console.print()
    if external:
        console.print("[yellow]An external agent session is running for this project[/yellow]")

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Type", style="dim")
    table.add_column("Criteria", justify="right")
    table.add_column("Status")
    for story in data["stories"]:
        status_text = "[green]passed[/green]" if story["passes"] else "[yellow]pending[/yellow]"
        table.add_row(
            story["id"],
            story["title"],
            story["task_type"],
            story["criteria"],
            status_text,
        )
    console.print(table)
    console.print(f"\n{data['passed']}/{data['total']} stories passed")


def complete(
    story_id: Annotated[str, typer.Argument(help="Story to mark complete")],
    project: Annotated[
        Path | None,
        typer.Option("--project", "-p", help="Project directory"),
    ] = None,
) -> None:
    """
    Mark a story complete.

    Stories with plain-text acceptance criteria cannot be verified
    automatically; this is how they are signed off. Stories with test
    commands are accepted only when every criterion already passes.
    """
    _, _, store = open_project(project)
    try:
        store.mark_story_complete(story_id)
    except StoryloopError as e:
        raise typer.Exit(print_storyloop_error(e)) from e
    console.print(f"[green]✓[/green] Marked {story_id} complete")
