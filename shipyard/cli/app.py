"""Main Typer application — registers the ``shipyard`` subcommands.

Entry point: ``shipyard`` (configured via pyproject.toml project.scripts).
"""

from __future__ import annotations

import typer

from shipyard.cli.commands.history import history_cmd
from shipyard.cli.commands.run import run_cmd
from shipyard.cli.commands.status import status_cmd
from shipyard.cli.commands.verify import verify_cmd
from shipyard.config import ShipyardSettings, configure_logging

app = typer.Typer(
    name="shipyard",
    help="Shipyard: build, publish, and roll out container images on every push.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


@app.callback()
def main_callback(
    log_level: str = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Logging level (DEBUG, INFO, WARNING, ERROR). Defaults to SHIPYARD_LOG_LEVEL.",
    ),
) -> None:
    configure_logging(log_level or ShipyardSettings().log_level)


# Register subcommands
app.command(name="run", help="Run the pipeline for a source ref pushed to a branch.")(run_cmd)
app.command(name="status", help="Show a pipeline run and its step results.")(status_cmd)
app.command(name="history", help="List recent pipeline runs.")(history_cmd)
app.command(name="verify", help="Verify the history hash chain of a run.")(verify_cmd)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
