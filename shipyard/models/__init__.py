"""Shipyard data models — all Pydantic v2, all frozen (immutable)."""

from shipyard.models.artifacts import (
    Artifact,
    ArtifactError,
    BuildContext,
    BuildResult,
)
from shipyard.models.config import (
    DEFAULT_STEP_DEFINITIONS,
    KNOWN_STEPS,
    PipelineConfig,
    RetryPolicy,
    StepDefinition,
)
from shipyard.models.deployment import (
    VALID_ROLLOUT_TRANSITIONS,
    ControlPlaneStatus,
    DeploymentRevision,
    Manifest,
    RevisionStatus,
    RolloutOutcome,
    RolloutState,
)
from shipyard.models.events import TriggerEvent
from shipyard.models.runs import (
    PipelineRun,
    RunFinalizedError,
    RunStatus,
    StepResult,
    StepStatus,
)

__all__ = [
    # artifacts
    "Artifact",
    "ArtifactError",
    "BuildContext",
    "BuildResult",
    # config
    "DEFAULT_STEP_DEFINITIONS",
    "KNOWN_STEPS",
    "PipelineConfig",
    "RetryPolicy",
    "StepDefinition",
    # deployment
    "VALID_ROLLOUT_TRANSITIONS",
    "ControlPlaneStatus",
    "DeploymentRevision",
    "Manifest",
    "RevisionStatus",
    "RolloutOutcome",
    "RolloutState",
    # events
    "TriggerEvent",
    # runs
    "PipelineRun",
    "RunFinalizedError",
    "RunStatus",
    "StepResult",
    "StepStatus",
]
