"""Rich terminal rendering for pipeline runs.

Color scheme
------------
- green     : SUCCEEDED / CACHED
- red       : FAILED
- yellow    : RUNNING / ROLLED_BACK
- dim       : PENDING / CANCELLED
"""

from __future__ import annotations

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table

from shipyard.models.runs import PipelineRun, RunStatus, StepStatus

_RUN_STYLES: dict[RunStatus, str] = {
    RunStatus.PENDING: "dim",
    RunStatus.RUNNING: "bold yellow",
    RunStatus.SUCCEEDED: "bold green",
    RunStatus.FAILED: "bold red",
    RunStatus.ROLLED_BACK: "bold yellow",
}

_STEP_LABELS: dict[StepStatus, str] = {
    StepStatus.SUCCEEDED: "[green]SUCCEEDED[/green]",
    StepStatus.CACHED: "[green]CACHED[/green]",
    StepStatus.FAILED: "[bold red]FAILED[/bold red]",
    StepStatus.CANCELLED: "[dim]CANCELLED[/dim]",
}


def run_status_markup(status: RunStatus) -> str:
    style = _RUN_STYLES.get(status, "")
    label = status.value.upper()
    return f"[{style}]{label}[/{style}]" if style else label


class RunRenderer:
    """Prints PipelineRuns and run history tables."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def render_run(self, run: PipelineRun) -> Panel:
        table = Table(show_header=True, header_style="bold", expand=True)
        table.add_column("#", justify="right", width=3)
        table.add_column("Step", style="cyan")
        table.add_column("Status", justify="center")
        table.add_column("Output")
        table.add_column("Error", style="red")

        for index, step in enumerate(run.steps, start=1):
            table.add_row(
                str(index),
                step.step_id,
                _STEP_LABELS.get(step.status, step.status.value),
                step.output_ref or "",
                step.error or "",
            )

        finished = run.finished_at.isoformat(timespec="seconds") if run.finished_at else "-"
        header = (
            f"[bold]Run:[/bold] {run.run_id}   "
            f"[bold]Status:[/bold] {run_status_markup(run.status)}\n"
            f"[bold]Source:[/bold] {run.source_ref}   "
            f"[bold]Branch:[/bold] {run.branch or '-'}   "
            f"[bold]Deployment:[/bold] {run.deployment_name or '-'}\n"
            f"[bold]Started:[/bold] {run.started_at.isoformat(timespec='seconds')}   "
            f"[bold]Finished:[/bold] {finished}"
        )
        return Panel(
            Group(header, table),
            title="[bold]Pipeline Run[/bold]",
            title_align="left",
            border_style=_RUN_STYLES.get(run.status, "white").replace("bold ", ""),
        )

    def print_run(self, run: PipelineRun) -> None:
        self.console.print(self.render_run(run))

    def print_history(self, runs: list[PipelineRun]) -> None:
        table = Table(title="Run History", show_header=True, header_style="bold")
        table.add_column("Run ID", style="cyan")
        table.add_column("Status", justify="center")
        table.add_column("Source")
        table.add_column("Branch")
        table.add_column("Steps", justify="right")
        table.add_column("Started")

        for run in runs:
            table.add_row(
                run.run_id,
                run_status_markup(run.status),
                run.source_ref,
                run.branch or "-",
                str(len(run.steps)),
                run.started_at.isoformat(timespec="seconds"),
            )
        self.console.print(table)
