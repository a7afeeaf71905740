"""Deployment models and the rollout state machine table."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict


class RolloutState(str, Enum):
    """Per-deployment-name rollout state."""

    IDLE = "idle"
    SUBMITTED = "submitted"
    PROGRESSING = "progressing"
    AVAILABLE = "available"
    FAILED = "failed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"


# Valid rollout transitions, enforced by RolloutController.
# Terminal outcomes return to IDLE once the next rollout begins.
VALID_ROLLOUT_TRANSITIONS: dict[RolloutState, set[RolloutState]] = {
    RolloutState.IDLE: {RolloutState.SUBMITTED},
    RolloutState.SUBMITTED: {RolloutState.PROGRESSING, RolloutState.FAILED},
    RolloutState.PROGRESSING: {RolloutState.AVAILABLE, RolloutState.FAILED},
    RolloutState.AVAILABLE: {RolloutState.IDLE},
    RolloutState.FAILED: {RolloutState.ROLLING_BACK, RolloutState.ROLLBACK_FAILED},
    RolloutState.ROLLING_BACK: {RolloutState.ROLLED_BACK, RolloutState.ROLLBACK_FAILED},
    RolloutState.ROLLED_BACK: {RolloutState.IDLE},
    RolloutState.ROLLBACK_FAILED: {RolloutState.IDLE},
}

# States during which the per-name rollout lock is held.
IN_FLIGHT_STATES: frozenset[RolloutState] = frozenset(
    {
        RolloutState.SUBMITTED,
        RolloutState.PROGRESSING,
        RolloutState.FAILED,
        RolloutState.ROLLING_BACK,
    }
)


class RevisionStatus(str, Enum):
    """Cluster-reported status of a deployment revision."""

    PROGRESSING = "progressing"
    AVAILABLE = "available"
    FAILED = "failed"


class Manifest(BaseModel):
    """A concrete deployment descriptor ready to submit to the control plane."""

    model_config = ConfigDict(frozen=True)

    deployment_name: str
    image: str  # always a digest reference
    replicas: int
    body: dict[str, Any] = {}


class DeploymentRevision(BaseModel):
    """A numbered snapshot of the manifest applied to the cluster."""

    model_config = ConfigDict(frozen=True)

    deployment_name: str
    revision: int
    image: str
    replicas: int
    status: RevisionStatus = RevisionStatus.PROGRESSING


class ControlPlaneStatus(BaseModel):
    """A single status observation returned by the control plane."""

    model_config = ConfigDict(frozen=True)

    revision: int
    ready_replicas: int
    desired_replicas: int
    state: RevisionStatus = RevisionStatus.PROGRESSING
    restart_count: int = 0

    @property
    def fully_ready(self) -> bool:
        return (
            self.desired_replicas > 0
            and self.ready_replicas >= self.desired_replicas
            and self.state != RevisionStatus.FAILED
        )


class RolloutOutcome(BaseModel):
    """What the rollout controller reports for one rollout attempt."""

    model_config = ConfigDict(frozen=True)

    deployment_name: str
    state: RolloutState
    revision: int | None = None
    rolled_back_to: int | None = None
    reason: str = ""
    transitions: list[str] = []  # "from->to" strings in order

    @property
    def succeeded(self) -> bool:
        return self.state == RolloutState.AVAILABLE

    @property
    def rolled_back(self) -> bool:
        return self.state == RolloutState.ROLLED_BACK
