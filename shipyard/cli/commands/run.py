"""``shipyard run SOURCE_REF BRANCH`` — trigger one pipeline run.

Exit codes let operators script on the outcome alone:

- 0 — SUCCEEDED, or the branch did not match and nothing ran
- 1 — FAILED (including configuration errors)
- 2 — ROLLED_BACK
"""

from __future__ import annotations

from pathlib import Path

import typer
from pydantic import ValidationError
from rich.console import Console

from shipyard.cli.render import RunRenderer
from shipyard.cli.wiring import build_orchestrator
from shipyard.config import ShipyardSettings, load_pipeline_config
from shipyard.core.errors import ConfigError
from shipyard.core.trigger import TriggerListener
from shipyard.models.events import TriggerEvent
from shipyard.models.runs import RunStatus

console = Console()

EXIT_CODES: dict[RunStatus, int] = {
    RunStatus.SUCCEEDED: 0,
    RunStatus.FAILED: 1,
    RunStatus.ROLLED_BACK: 2,
}


def run_cmd(
    source_ref: str = typer.Argument(
        ...,
        help="Commit SHA (or other tree identifier) to build and deploy.",
    ),
    branch: str = typer.Argument(
        ...,
        help="Branch the change landed on; filtered by the branch pattern.",
    ),
    config_path: Path = typer.Option(
        None,
        "--config",
        "-c",
        help="Pipeline YAML file. Defaults to SHIPYARD_CONFIG_PATH or built-in defaults.",
    ),
    history_db: Path = typer.Option(
        None,
        "--history",
        "-H",
        help="Path to the run history SQLite database.",
    ),
) -> None:
    """Build, publish, render, and roll out SOURCE_REF if BRANCH matches."""
    settings = ShipyardSettings()
    try:
        config = load_pipeline_config(config_path or settings.config_path)
    except ConfigError as exc:
        console.print(f"[bold red]Configuration error:[/bold red] {exc}")
        raise typer.Exit(code=1)

    try:
        event = TriggerEvent(source_ref=source_ref, branch=branch)
    except ValidationError as exc:
        console.print(f"[bold red]Invalid trigger:[/bold red] {exc}")
        raise typer.Exit(code=1)

    try:
        orchestrator = build_orchestrator(settings, config, history_db)
    except ConfigError as exc:
        console.print(f"[bold red]Configuration error:[/bold red] {exc}")
        raise typer.Exit(code=1)
    listener = TriggerListener(orchestrator)
    run = listener.handle(event)
    if run is None:
        console.print(
            f"[dim]Branch {branch!r} does not match {listener.pattern!r}; nothing to do.[/dim]"
        )
        raise typer.Exit(code=0)

    RunRenderer(console=console).print_run(run)
    raise typer.Exit(code=EXIT_CODES.get(run.status, 1))
