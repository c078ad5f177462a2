"""
storyloop CLI - CLI management commands.

List the supported AI coding CLIs, check their health, and show which one
a project run would use.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from storyloop.core.config.loader import load_settings
from storyloop.core.errors import StoryloopError
from storyloop.core.harness.clis import CLI_WHITELIST, SUPPORTED_CLIS
from storyloop.core.selector.health import HealthCache
from storyloop.core.selector.selector import CLISelector

from .common import load_prd_or_exit, open_project
from .errors import print_storyloop_error

app = typer.Typer(
    name="cli",
    help="Inspect the AI coding CLIs storyloop can drive",
    no_args_is_help=True,
)

console = Console()


def _selector(timeout: float, ttl: float) -> CLISelector:
    return CLISelector(HealthCache(ttl_seconds=ttl, timeout_seconds=timeout))


@app.command(name="list")
def list_command() -> None:
    """List supported CLIs and whether each is on PATH."""
    installed = set(CLISelector().installed())
    table = Table(show_header=True, header_style="bold")
    table.add_column("CLI", style="cyan")
    table.add_column("Installed")
    table.add_column("Providers", style="dim")
    table.add_column("Output")
    for name in CLI_WHITELIST:
        spec = SUPPORTED_CLIS[name]
        table.add_row(
            name,
            "[green]yes[/green]" if name in installed else "[dim]no[/dim]",
            ", ".join(sorted(p.value for p in spec.providers)),
            "stream-json" if spec.streams_json else "text",
        )
    console.print(table)


@app.command(name="doctor")
def doctor_command() -> None:
    """
    Health-check every installed CLI.

    A CLI is healthy when ``<cli> --version`` exits 0 within the configured
    timeout.
    """
    _, config, _ = open_project(None)
    selector = _selector(config.cli.health_timeout_seconds, config.cli.health_ttl_seconds)
    installed = selector.installed()
    if not installed:
        console.print("[red]No supported AI CLI found on PATH[/red]")
        console.print(f"[dim]Supported: {', '.join(CLI_WHITELIST)}[/dim]")
        raise typer.Exit(1)

    async def check_all() -> list[bool]:
        return await asyncio.gather(*(selector.health.check(cli) for cli in installed))

    with console.status("[bold]Checking CLI health...[/bold]"):
        results = asyncio.run(check_all())

    for cli, healthy in zip(installed, results):
        entry = selector.health.get(cli)
        detail = entry.reason if entry else ""
        if healthy:
            console.print(f"[green]✓[/green] {cli} [dim]{detail}[/dim]")
        else:
            console.print(f"[red]✗[/red] {cli}: {detail}")

    if not any(results):
        raise typer.Exit(1)


@app.command(name="resolve")
def resolve_command(
    project: Annotated[
        Path | None,
        typer.Argument(help="Project directory (defaults to the discovered project root)"),
    ] = None,
    cli: Annotated[
        str | None,
        typer.Option("--cli", help="Project override to test"),
    ] = None,
) -> None:
    """Show which CLI a run of this project would use, and why."""
    _, config, store = open_project(project)
    prd = load_prd_or_exit(store)
    settings = load_settings()
    selector = _selector(config.cli.health_timeout_seconds, config.cli.health_ttl_seconds)

    try:
        resolution = asyncio.run(
            selector.resolve(
                cli or prd.cli,
                settings.preferred_cli,
                prd.cli_fallback_order,
                global_fallback_chain=settings.cli_fallback_order,
            )
        )
    except StoryloopError as e:
        raise typer.Exit(print_storyloop_error(e)) from e

    console.print(
        f"[bold cyan]{resolution.cli}[/bold cyan] [dim](via {resolution.source.value})[/dim]"
    )
