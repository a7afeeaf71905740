"""``shipyard verify RUN_ID`` — check a run's history hash chain."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from shipyard.cli.commands.status import open_history
from shipyard.core.run_history import HistoryIntegrityError

console = Console()


def verify_cmd(
    run_id: str = typer.Argument(
        ...,
        help="The pipeline run ID to verify.",
    ),
    history_db: Path = typer.Option(
        None,
        "--history",
        "-H",
        help="Path to the run history SQLite database.",
    ),
) -> None:
    """Recompute every record hash for RUN_ID and check the chain links."""
    history = open_history(history_db)
    entries = history.get_entries(run_id)
    if not entries:
        console.print(f"[bold red]Run not found:[/bold red] {run_id}")
        raise typer.Exit(code=1)
    try:
        history.verify_chain(run_id)
    except HistoryIntegrityError as exc:
        console.print(f"[bold red]Chain BROKEN:[/bold red] {exc}")
        raise typer.Exit(code=1)
    console.print(f"[bold green]Chain valid[/bold green] for {run_id} ({len(entries)} records)")
