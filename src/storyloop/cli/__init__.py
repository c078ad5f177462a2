"""
storyloop CLI - Main application entry point.

This module sets up the Typer CLI application with all subcommands.
"""

import typer
from rich.console import Console

from storyloop import __version__
from storyloop.cli import backup, clis, learn, plan, quota, run, status
from storyloop.core.config.env import load_layered_env
from storyloop.utils.logging import configure_logging
from storyloop.utils.project import find_project_root

# Help panel names for command grouping
PANEL_RUN = "Run Stories"
PANEL_ROUTING = "Model Routing"
PANEL_MANAGE = "Manage Projects and CLIs"

app = typer.Typer(
    name="storyloop",
    help="Run PRD user stories through AI coding CLIs until their tests pass",
    no_args_is_help=True,
    add_completion=True,
    context_settings={"help_option_names": ["--help", "-h"]},
)

console = Console()


@app.callback()
def main(
    ctx: typer.Context,
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Enable debug output with detailed logging",
    ),
) -> None:
    """
    storyloop - PRD story runner.

    Each user story in prd.json is handed to an AI coding CLI (claude,
    codex, opencode, ...), checked against its acceptance test commands,
    and retried with the failure output until it passes or runs out of
    attempts.

    Quick Start:
        1. storyloop cli doctor      # Check which CLIs are usable
        2. storyloop plan            # Preview model routing and cost
        3. storyloop run             # Work through pending stories
    """
    # Precedence: OS env > project .env > user .env
    load_layered_env(project_dir=find_project_root())
    if debug:
        configure_logging(debug=True)
    ctx.obj = {"debug": debug}


app.command(name="run", rich_help_panel=PANEL_RUN)(run.run)
app.command(name="status", rich_help_panel=PANEL_RUN)(status.status)
app.command(name="complete", rich_help_panel=PANEL_RUN)(status.complete)

app.command(name="plan", rich_help_panel=PANEL_ROUTING)(plan.plan)
app.command(name="quota", rich_help_panel=PANEL_ROUTING)(quota.quota)
app.add_typer(learn.app, name="learn", rich_help_panel=PANEL_ROUTING)

app.add_typer(clis.app, name="cli", rich_help_panel=PANEL_MANAGE)
app.add_typer(backup.app, name="backup", rich_help_panel=PANEL_MANAGE)


@app.command(rich_help_panel=PANEL_MANAGE)
def version() -> None:
    """Show storyloop version and exit."""
    console.print(f"storyloop version {__version__}")
    raise typer.Exit(0)


def cli_main() -> None:
    """Main CLI entry point."""
    app()


__all__ = ["app", "cli_main"]
