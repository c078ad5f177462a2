"""
storyloop CLI - Run command.

Run every pending story of a project's PRD through the retry controller,
rendering events as they happen.
"""

from __future__ import annotations

import asyncio
import contextlib
import signal
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from storyloop.core.harness.clis import CLI_WHITELIST, is_whitelisted
from storyloop.core.harness.models import OutputKind
from storyloop.core.routing.models import ExecutionMode
from storyloop.core.run.loop import RetryController
from storyloop.core.run.models import MAX_ATTEMPTS, RunConfig, RunEvent, RunEventType, RunResult
from storyloop.core.service import Orchestrator
from storyloop.utils.logging import configure_logging
from storyloop.utils.project import resolve_project_dir

from .errors import ExitCode, print_error, print_invalid_option_error

console = Console()

_STORY_STYLES = {
    RunEventType.STORY_STARTED: "bold cyan",
    RunEventType.STORY_COMPLETED: "bold green",
    RunEventType.STORY_FAILED: "bold red",
    RunEventType.STORY_SKIPPED: "dim",
    RunEventType.RETRYING: "yellow",
    RunEventType.CLI_RESOLVED: "cyan",
    RunEventType.MODEL_SELECTED: "magenta",
    RunEventType.ATTEMPT_STARTED: "blue",
    RunEventType.API_STATUS: "bold yellow",
}


def render_event(event: RunEvent, *, quiet: bool = False) -> None:
    """Print one run event."""
    kind = event.event_type
    if kind == RunEventType.OUTPUT:
        if quiet or event.output is None:
            return
        output = event.output
        if output.kind == OutputKind.TOOL_START:
            console.print(f"  [cyan]⚙ {output.text}[/cyan]", markup=True, highlight=False)
        elif output.kind == OutputKind.RESULT:
            return
        elif output.is_error:
            console.print(f"  [red]{output.text}[/red]", highlight=False)
        elif output.thinking:
            console.print(f"  [dim italic]{output.text}[/dim italic]", highlight=False)
        elif output.text:
            console.print(f"  {output.text}", markup=False, highlight=False)
        return

    if kind == RunEventType.STORY_STARTED:
        console.rule(f"[bold cyan]{event.message}[/bold cyan]")
        return
    if kind == RunEventType.VERIFICATION_RESULT:
        passed = event.data.get("all_passed")
        if passed:
            console.print(f"[green]✓ {event.message}[/green]")
        elif passed is None:
            console.print(f"[yellow]? {event.message}[/yellow]")
        else:
            console.print(f"[red]✗ {event.message}[/red]")
        if event.state is not None:
            for result in event.state.criteria:
                mark = "[green]✓[/green]" if result.passed else "[red]✗[/red]"
                detail = "" if result.passed else f" [dim]{result.error or ''}[/dim]"
                console.print(f"    {mark} {result.criterion_id}{detail}")
        return
    if kind in (RunEventType.RUN_STARTED, RunEventType.STORY_SELECTED, RunEventType.ATTEMPT_FINISHED):
        if kind == RunEventType.ATTEMPT_FINISHED and event.error:
            console.print(f"[red]{event.error}[/red]")
        return
    if kind in (RunEventType.RUN_COMPLETED, RunEventType.RUN_STOPPED, RunEventType.RUN_FAILED):
        return

    style = _STORY_STYLES.get(kind, "white")
    console.print(f"[{style}]{event.message}[/{style}]")


def print_summary(result: RunResult) -> None:
    table = Table(title="Run Summary", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Outcome", result.phase)
    table.add_row("Completed", f"[green]{result.stories_completed}[/green]")
    table.add_row("Failed", f"[red]{result.stories_failed}[/red]" if result.stories_failed else "0")
    table.add_row("Skipped", str(result.stories_skipped))
    table.add_row("Attempts", str(result.total_attempts))
    table.add_row("Estimated cost", f"${result.total_cost_usd:.4f}")
    table.add_row("Duration", f"{result.total_duration_seconds:.1f}s")
    if result.archive_path:
        table.add_row("Archived to", result.archive_path)
    console.print(table)


async def _execute(controller: RetryController, quiet: bool) -> RunResult:
    loop = asyncio.get_running_loop()

    def request_stop() -> None:
        console.print("\n[yellow]Stopping after the current attempt is terminated...[/yellow]")
        asyncio.ensure_future(controller.stop())

    with contextlib.suppress(NotImplementedError, RuntimeError):
        loop.add_signal_handler(signal.SIGINT, request_stop)
    try:
        async for event in controller.execute():
            render_event(event, quiet=quiet)
    finally:
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.remove_signal_handler(signal.SIGINT)
    return controller.get_result()


def run(
    project: Annotated[
        Path | None,
        typer.Argument(help="Project directory (defaults to the discovered project root)"),
    ] = None,
    mode: Annotated[
        ExecutionMode | None,
        typer.Option("--mode", "-m", help="Execution mode for model routing"),
    ] = None,
    cli: Annotated[
        str | None,
        typer.Option("--cli", help="Force a CLI (overrides the PRD's cli)"),
    ] = None,
    model: Annotated[
        str | None,
        typer.Option("--model", help="Force a model for every attempt"),
    ] = None,
    story: Annotated[
        str | None,
        typer.Option("--story", "-s", help="Run only this story"),
    ] = None,
    max_attempts: Annotated[
        int,
        typer.Option("--max-attempts", min=1, max=MAX_ATTEMPTS, help="Attempts per story"),
    ] = MAX_ATTEMPTS,
    no_quota: Annotated[
        bool,
        typer.Option("--no-quota", help="Skip provider quota checks"),
    ] = False,
    no_learning: Annotated[
        bool,
        typer.Option("--no-learning", help="Ignore learned model performance"),
    ] = False,
    ignore_api_status: Annotated[
        bool,
        typer.Option(
            "--ignore-api-status",
            help="Skip the Claude API status check (or set STORYLOOP_IGNORE_API_STATUS=true)",
        ),
    ] = False,
    quiet: Annotated[
        bool,
        typer.Option("--quiet", "-q", help="Hide agent output"),
    ] = False,
    debug: Annotated[
        bool,
        typer.Option("--debug", help="Enable debug logging"),
    ] = False,
) -> None:
    """
    Run the project's pending stories.

    Each story is sent to an AI coding CLI, verified against its acceptance
    test commands, and retried with the failure detail up to 3 times.

    Examples:

        storyloop run

        storyloop run ../my-app --mode super-saver

        storyloop run --cli codex --story US-003
    """
    if debug:
        configure_logging(debug=True)

    if cli is not None and not is_whitelisted(cli):
        print_invalid_option_error(cli, list(CLI_WHITELIST))
        raise typer.Exit(ExitCode.USER_ERROR)

    project_dir = resolve_project_dir(project)
    orchestrator = Orchestrator(project_dir)
    if asyncio.run(orchestrator.check_external()):
        session = orchestrator.session_name()
        print_error(
            "An agent session is already running for this project",
            reason=f"tmux session '{session}' was started outside storyloop",
            solution=f"tmux attach -t {session}",
        )
        raise typer.Exit(ExitCode.GENERAL_ERROR)

    config = RunConfig(
        project_dir=str(project_dir),
        mode=mode,
        cli_override=cli,
        model_override=model,
        story_id=story,
        max_attempts=max_attempts,
        use_learning=not no_learning,
        check_quotas=not no_quota,
        check_api_status=not ignore_api_status,
    )
    controller = RetryController(config)
    result = asyncio.run(_execute(controller, quiet))

    console.print()
    print_summary(result)

    if result.phase == "failed":
        print_error("Run failed", reason=result.error)
        raise typer.Exit(ExitCode.GENERAL_ERROR)
    if result.phase == "stopped":
        raise typer.Exit(ExitCode.SIGINT)
    if result.stories_failed:
        raise typer.Exit(ExitCode.GENERAL_ERROR)
