"""
storyloop CLI - Quota command.

Show remaining capacity per model provider.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from storyloop.core.config.env import read_layered_env
from storyloop.core.config.loader import load_config
from storyloop.core.quota.models import ProviderQuota, QuotaStatus
from storyloop.core.quota.tracker import QuotaTracker, default_snapshot_path, load_snapshot
from storyloop.core.routing.models import Provider
from storyloop.utils.project import find_project_root

from .common import write_json

console = Console()

STATUS_STYLES = {
    QuotaStatus.AVAILABLE: "green",
    QuotaStatus.LIMITED: "yellow",
    QuotaStatus.EXHAUSTED: "red",
    QuotaStatus.UNAVAILABLE: "dim",
    QuotaStatus.UNKNOWN: "dim",
    QuotaStatus.ERROR: "red",
}


async def refresh_quotas() -> dict[Provider, ProviderQuota]:
    """Poll every provider and persist the snapshot."""
    project_dir = find_project_root()
    config = load_config(project_dir)
    tracker = QuotaTracker.from_config(
        config.quota,
        env=read_layered_env(project_dir=project_dir),
        snapshot_path=default_snapshot_path(),
    )
    return await tracker.refresh(force=True)


def quotas_table(quotas: Mapping[Provider, ProviderQuota]) -> Table:
    table = Table(title="Provider Quotas", show_header=True, header_style="bold")
    table.add_column("Provider", style="cyan")
    table.add_column("Status")
    table.add_column("Type", style="dim")
    table.add_column("Remaining", justify="right")
    table.add_column("Details")
    for provider in Provider:
        quota = quotas.get(provider)
        if quota is None:
            continue
        style = STATUS_STYLES.get(quota.status, "white")
        percent = quota.usage_percent
        table.add_row(
            provider.value,
            f"[{style}]{quota.status.value}[/{style}]",
            quota.quota_type.value,
            f"{percent:.0f}%" if percent is not None else "-",
            quota.summary(),
        )
    return table


def quota(
    refresh: Annotated[
        bool,
        typer.Option("--refresh", "-r", help="Poll providers instead of showing the last snapshot"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output quotas as JSON"),
    ] = False,
) -> None:
    """
    Show remaining capacity per model provider.

    Without --refresh the last saved snapshot is shown; providers are
    polled only when no snapshot exists yet.

    Examples:

        storyloop quota

        storyloop quota --refresh --json
    """
    quotas = {} if refresh else load_snapshot()
    if not quotas:
        with console.status("[bold]Checking provider quotas...[/bold]"):
            quotas = asyncio.run(refresh_quotas())

    if json_output:
        data = {
            p.value: q.model_dump(mode="json", by_alias=True, exclude_none=True)
            for p, q in quotas.items()
        }
        write_json(data)
        return

    console.print(quotas_table(quotas))
