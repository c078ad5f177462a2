"""
storyloop CLI - Backup commands.

Snapshot and restore a project's PRD file.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from storyloop.core.errors import StoryloopError

from .common import open_project
from .errors import print_error, print_storyloop_error

app = typer.Typer(
    name="backup",
    help="Snapshot and restore the PRD",
    no_args_is_help=True,
)

console = Console()

ProjectOption = Annotated[
    Path | None,
    typer.Option("--project", "-p", help="Project directory"),
]


@app.command(name="create")
def create_command(project: ProjectOption = None) -> None:
    """Back up the PRD now."""
    _, _, store = open_project(project)
    path = store.create_backup()
    if path is None:
        print_error(f"No PRD to back up at {store.path}")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] Backed up to {path}")


@app.command(name="list")
def list_command(project: ProjectOption = None) -> None:
    """List PRD backups, newest first."""
    _, _, store = open_project(project)
    backups = store.list_backups()
    if not backups:
        console.print("[dim]No backups yet[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Name", style="cyan")
    table.add_column("Created")
    table.add_column("Size", justify="right")
    for info in backups:
        table.add_row(
            info.name,
            info.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            f"{info.size_bytes:,} B",
        )
    console.print(table)


@app.command(name="restore")
def restore_command(
    name: Annotated[
        str | None,
        typer.Argument(help="Backup to restore (defaults to the latest)"),
    ] = None,
    project: ProjectOption = None,
) -> None:
    """Restore the PRD from a backup."""
    _, _, store = open_project(project)
    try:
        source = store.restore_backup(name)
    except StoryloopError as e:
        raise typer.Exit(print_storyloop_error(e)) from e
    console.print(f"[green]✓[/green] Restored {store.path} from {source.name}")
