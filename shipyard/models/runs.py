"""Pipeline run and step result models.

A ``PipelineRun`` is immutable like every other Shipyard model.  The
orchestrator advances a run by deriving a new copy via ``with_step()`` and
``with_status()``; once the run reaches a terminal status neither method
accepts further changes.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class RunFinalizedError(RuntimeError):
    """Raised when a terminal PipelineRun is asked to change."""


class RunStatus(str, Enum):
    """Overall status of a pipeline run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_STATUSES


TERMINAL_RUN_STATUSES: frozenset[RunStatus] = frozenset(
    {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ROLLED_BACK}
)


class StepStatus(str, Enum):
    """Outcome of a single pipeline step."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CACHED = "cached"  # build/publish short-circuited by an existing artifact
    CANCELLED = "cancelled"

    @property
    def is_success(self) -> bool:
        return self in (StepStatus.SUCCEEDED, StepStatus.CACHED)


class StepResult(BaseModel):
    """The recorded outcome of one step within a run."""

    model_config = ConfigDict(frozen=True)

    step_id: str
    status: StepStatus
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    error: str | None = None
    output_ref: str | None = None  # artifact tag, digest, or rollout revision


class PipelineRun(BaseModel):
    """One end-to-end execution of build -> publish -> render -> rollout."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    source_ref: str
    branch: str = ""
    deployment_name: str = ""
    steps: list[StepResult] = []
    status: RunStatus = RunStatus.PENDING
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def step_ids(self) -> list[str]:
        return [s.step_id for s in self.steps]

    @property
    def failed_step(self) -> StepResult | None:
        """The step that ended the run, if any step failed or was cancelled."""
        for step in self.steps:
            if not step.status.is_success:
                return step
        return None

    def with_step(self, result: StepResult) -> PipelineRun:
        """Return a copy of this run with *result* appended."""
        if self.is_terminal:
            raise RunFinalizedError(
                f"Run {self.run_id} is {self.status.value}; cannot append {result.step_id}"
            )
        return self.model_copy(update={"steps": [*self.steps, result]})

    def with_status(self, status: RunStatus) -> PipelineRun:
        """Return a copy of this run in *status*, stamping finished_at when terminal."""
        if self.is_terminal:
            raise RunFinalizedError(
                f"Run {self.run_id} is already {self.status.value}"
            )
        update: dict[str, object] = {"status": status}
        if status.is_terminal:
            update["finished_at"] = datetime.now(timezone.utc)
        return self.model_copy(update=update)
