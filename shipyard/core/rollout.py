"""Rollout Controller — submits a manifest and waits for it to become available.

State machine per deployment name::

    IDLE -> SUBMITTED -> PROGRESSING -> AVAILABLE
                     \\-> FAILED -> ROLLING_BACK -> ROLLED_BACK
                                 \\-> ROLLBACK_FAILED

Enforces:
- Valid transitions only (VALID_ROLLOUT_TRANSITIONS table).
- At most one rollout in flight per deployment name.  The per-name lock is
  held from SUBMITTED until a terminal state; a second rollout for the same
  name queues on it (or raises ``RolloutInProgressError`` with ``wait=False``).
  With a history attached, the same exclusion holds across processes through
  the history's rollout lease.
- AVAILABLE only after every desired replica has been ready for the whole
  stabilization window.
- On FAILED, the last AVAILABLE manifest for the name is resubmitted.  If
  there is none, or the rollback does not converge, the outcome is
  ROLLBACK_FAILED and no further action is taken.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable

from shipyard.backends.base import ControlPlane
from shipyard.core.errors import (
    InvalidTransitionError,
    RolloutError,
    RolloutInProgressError,
)
from shipyard.core.run_history import RunHistory
from shipyard.models.deployment import (
    IN_FLIGHT_STATES,
    VALID_ROLLOUT_TRANSITIONS,
    Manifest,
    RevisionStatus,
    RolloutOutcome,
    RolloutState,
)

logger = logging.getLogger(__name__)


class RolloutController:
    """Drives rollouts against the cluster control plane.

    Parameters
    ----------
    control_plane:
        Accepts manifests and reports status.
    rollout_timeout_seconds:
        Upper bound on waiting for a revision to become available.
    poll_interval_seconds:
        Delay between status polls.
    stabilization_window_seconds:
        How long a revision must stay fully ready before it counts as
        AVAILABLE.
    crash_loop_threshold:
        A restart count above this fails the rollout immediately.
    history:
        Optional run history; AVAILABLE revisions are recorded there and
        read back as rollback targets after a restart.
    lease_ttl_seconds:
        Age after which another process's rollout lease counts as abandoned.
        Defaults to twice the longest a rollout plus rollback can take.
    clock / sleep:
        Injected for tests.
    """

    def __init__(
        self,
        control_plane: ControlPlane,
        *,
        rollout_timeout_seconds: float = 300,
        poll_interval_seconds: float = 5,
        stabilization_window_seconds: float = 10,
        crash_loop_threshold: int = 3,
        history: RunHistory | None = None,
        lease_ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._control_plane = control_plane
        self._timeout = rollout_timeout_seconds
        self._poll_interval = poll_interval_seconds
        self._stabilization = stabilization_window_seconds
        self._crash_loop_threshold = crash_loop_threshold
        self._history = history
        if lease_ttl_seconds is None:
            lease_ttl_seconds = 2 * (
                2 * (rollout_timeout_seconds + poll_interval_seconds)
                + stabilization_window_seconds
            )
        self._lease_ttl = lease_ttl_seconds
        self._holder = uuid.uuid4().hex
        self._clock = clock
        self._sleep = sleep

        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._states: dict[str, RolloutState] = {}
        self._known_good: dict[str, tuple[int, Manifest]] = {}

    # ------------------------------------------------------------------
    # State queries
    # ------------------------------------------------------------------

    def state_of(self, deployment_name: str) -> RolloutState:
        with self._guard:
            return self._states.get(deployment_name, RolloutState.IDLE)

    def in_flight(self, deployment_name: str) -> bool:
        return self.state_of(deployment_name) in IN_FLIGHT_STATES

    def known_good(self, deployment_name: str) -> tuple[int, Manifest] | None:
        """The last AVAILABLE (revision, manifest) for a deployment, if any."""
        with self._guard:
            cached = self._known_good.get(deployment_name)
        if cached is None and self._history is not None:
            cached = self._history.last_available(deployment_name)
        return cached

    # ------------------------------------------------------------------
    # Rollout
    # ------------------------------------------------------------------

    def rollout(self, manifest: Manifest, *, wait: bool = True) -> RolloutOutcome:
        """Submit *manifest* and drive it to a terminal state.

        Raises ``RolloutError`` if the control plane rejects the manifest
        outright, and ``RolloutInProgressError`` if *wait* is False and a
        rollout for the same name is already in flight.
        """
        name = manifest.deployment_name
        lock = self._lock_for(name)
        if not lock.acquire(blocking=wait):
            raise RolloutInProgressError(f"A rollout of {name!r} is already in flight")
        try:
            self._acquire_lease(name, wait)
            try:
                return self._run(manifest)
            finally:
                self._release_lease(name)
        finally:
            if self.in_flight(name):
                # Only reachable when a collaborator raised something unexpected.
                logger.error("rollout of %s aborted in %s", name, self.state_of(name).value)
                with self._guard:
                    self._states[name] = RolloutState.IDLE
            lock.release()

    def _run(self, manifest: Manifest) -> RolloutOutcome:
        name = manifest.deployment_name
        transitions: list[str] = []
        if self.state_of(name) != RolloutState.IDLE:
            self._transition(name, RolloutState.IDLE, [])

        revision = self._control_plane.apply(manifest)
        self._transition(name, RolloutState.SUBMITTED, transitions)
        self._record(manifest, revision, RevisionStatus.PROGRESSING)
        logger.info("%s revision %d submitted (%s)", name, revision, manifest.image)

        self._transition(name, RolloutState.PROGRESSING, transitions)
        available, reason = self._await_available(name, revision)
        if available:
            self._transition(name, RolloutState.AVAILABLE, transitions)
            self._remember_available(manifest, revision)
            return RolloutOutcome(
                deployment_name=name,
                state=RolloutState.AVAILABLE,
                revision=revision,
                transitions=transitions,
            )

        self._transition(name, RolloutState.FAILED, transitions)
        self._record(manifest, revision, RevisionStatus.FAILED)
        logger.warning("%s revision %d failed: %s", name, revision, reason)
        return self._rollback(name, revision, reason, transitions)

    def _rollback(
        self, name: str, failed_revision: int, reason: str, transitions: list[str]
    ) -> RolloutOutcome:
        target = self.known_good(name)
        if target is None:
            self._transition(name, RolloutState.ROLLBACK_FAILED, transitions)
            return RolloutOutcome(
                deployment_name=name,
                state=RolloutState.ROLLBACK_FAILED,
                revision=failed_revision,
                reason=f"{reason}; no known-good revision to roll back to",
                transitions=transitions,
            )

        good_revision, good_manifest = target
        self._transition(name, RolloutState.ROLLING_BACK, transitions)
        logger.info("%s rolling back to the manifest of revision %d", name, good_revision)
        try:
            rollback_revision = self._control_plane.apply(good_manifest)
        except RolloutError as exc:
            self._transition(name, RolloutState.ROLLBACK_FAILED, transitions)
            return RolloutOutcome(
                deployment_name=name,
                state=RolloutState.ROLLBACK_FAILED,
                revision=failed_revision,
                reason=f"{reason}; rollback rejected: {exc}",
                transitions=transitions,
            )

        recovered, rollback_reason = self._await_available(name, rollback_revision)
        if not recovered:
            self._transition(name, RolloutState.ROLLBACK_FAILED, transitions)
            self._record(good_manifest, rollback_revision, RevisionStatus.FAILED)
            logger.error("%s rollback failed: %s", name, rollback_reason)
            return RolloutOutcome(
                deployment_name=name,
                state=RolloutState.ROLLBACK_FAILED,
                revision=failed_revision,
                reason=f"{reason}; rollback failed: {rollback_reason}",
                transitions=transitions,
            )

        self._transition(name, RolloutState.ROLLED_BACK, transitions)
        self._remember_available(good_manifest, rollback_revision)
        return RolloutOutcome(
            deployment_name=name,
            state=RolloutState.ROLLED_BACK,
            revision=failed_revision,
            rolled_back_to=rollback_revision,
            reason=reason,
            transitions=transitions,
        )

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def _await_available(self, name: str, revision: int) -> tuple[bool, str]:
        """Poll until *revision* is stable, fails, or the timeout elapses.

        Returns ``(True, "")`` on success, else ``(False, reason)``.
        """
        deadline = self._clock() + self._timeout
        ready_since: float | None = None
        last = "no status observed"
        while True:
            try:
                status = self._control_plane.get_status(name)
            except RolloutError as exc:
                return False, f"status unavailable: {exc}"

            if status.revision > revision:
                return False, f"revision {revision} superseded by {status.revision}"
            if status.state == RevisionStatus.FAILED:
                return False, f"control plane reported revision {revision} failed"
            if status.restart_count > self._crash_loop_threshold:
                return False, (
                    f"crash loop: {status.restart_count} restarts "
                    f"exceeds threshold {self._crash_loop_threshold}"
                )

            now = self._clock()
            last = f"{status.ready_replicas}/{status.desired_replicas} ready"
            if status.revision == revision and status.fully_ready:
                if ready_since is None:
                    ready_since = now
                if now - ready_since >= self._stabilization:
                    return True, ""
            else:
                ready_since = None

            if now >= deadline:
                return False, (
                    f"revision {revision} not available after {self._timeout:g}s ({last})"
                )
            self._sleep(self._poll_interval)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _acquire_lease(self, name: str, wait: bool) -> None:
        if self._history is None:
            return
        while not self._history.acquire_lease(name, self._holder, self._lease_ttl):
            if not wait:
                raise RolloutInProgressError(
                    f"A rollout of {name!r} is already in flight in another process"
                )
            logger.debug("waiting for the rollout lease on %s", name)
            self._sleep(self._poll_interval)

    def _release_lease(self, name: str) -> None:
        if self._history is not None:
            self._history.release_lease(name, self._holder)

    def _lock_for(self, name: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(name, threading.Lock())

    def _transition(
        self, name: str, target: RolloutState, transitions: list[str]
    ) -> None:
        with self._guard:
            current = self._states.get(name, RolloutState.IDLE)
            allowed = VALID_ROLLOUT_TRANSITIONS.get(current, set())
            if target not in allowed:
                raise InvalidTransitionError(
                    f"Cannot transition {name} from {current.value} to {target.value}. "
                    f"Allowed: {sorted(s.value for s in allowed)}"
                )
            self._states[name] = target
        transitions.append(f"{current.value}->{target.value}")
        logger.debug("%s: %s -> %s", name, current.value, target.value)

    def _remember_available(self, manifest: Manifest, revision: int) -> None:
        with self._guard:
            self._known_good[manifest.deployment_name] = (revision, manifest)
        self._record(manifest, revision, RevisionStatus.AVAILABLE)

    def _record(self, manifest: Manifest, revision: int, status: RevisionStatus) -> None:
        if self._history is not None:
            self._history.record_revision(manifest, revision, status)
