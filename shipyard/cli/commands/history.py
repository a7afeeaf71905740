"""``shipyard history`` — list recent runs, newest first."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from shipyard.cli.commands.status import open_history
from shipyard.cli.render import RunRenderer

console = Console()


def history_cmd(
    limit: int = typer.Option(
        20,
        "--limit",
        "-n",
        min=1,
        help="Maximum number of runs to show.",
    ),
    history_db: Path = typer.Option(
        None,
        "--history",
        "-H",
        help="Path to the run history SQLite database.",
    ),
) -> None:
    """Show the most recent pipeline runs."""
    history = open_history(history_db)
    runs = history.list_runs(limit=limit)
    if not runs:
        console.print("[dim]No runs recorded.[/dim]")
        return
    RunRenderer(console=console).print_history(runs)
