"""``shipyard status RUN_ID`` — show a recorded run and its step results."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from shipyard.cli.render import RunRenderer
from shipyard.config import ShipyardSettings
from shipyard.core.run_history import RunHistory

console = Console()


def open_history(history_db: Path | None) -> RunHistory:
    """Open an existing history database or exit 1 if there is none."""
    db_path = history_db or ShipyardSettings().history_path
    if not Path(db_path).exists():
        console.print(f"[bold red]History not found:[/bold red] {db_path}")
        console.print("[dim]Trigger a run first with: shipyard run SOURCE_REF BRANCH[/dim]")
        raise typer.Exit(code=1)
    return RunHistory(db_path)


def status_cmd(
    run_id: str = typer.Argument(
        ...,
        help="The pipeline run ID to show.",
    ),
    history_db: Path = typer.Option(
        None,
        "--history",
        "-H",
        help="Path to the run history SQLite database.",
    ),
) -> None:
    """Print a PipelineRun and its StepResults; exit 1 if the run is unknown."""
    history = open_history(history_db)
    run = history.get_run(run_id)
    if run is None:
        console.print(f"[bold red]Run not found:[/bold red] {run_id}")
        recent = history.list_runs(limit=10)
        if recent:
            console.print("\n[bold]Recent runs:[/bold]")
            for r in recent:
                console.print(f"  [cyan]{r.run_id}[/cyan]")
        raise typer.Exit(code=1)

    RunRenderer(console=console).print_run(run)
