"""Tests for the RolloutController — state machine, stabilization, rollback, exclusion."""

from __future__ import annotations

import threading
import time

import pytest

from conftest import (
    CRASHING,
    REPORTS_FAILED,
    STUCK,
    UNREACHABLE,
    FakeClock,
    ScriptedControlPlane,
)
from shipyard.core.errors import RolloutError, RolloutInProgressError
from shipyard.core.rollout import RolloutController
from shipyard.core.run_history import RunHistory
from shipyard.models.deployment import (
    ControlPlaneStatus,
    Manifest,
    RolloutState,
)


def _manifest(source_ref: str, name: str = "hello", replicas: int = 3) -> Manifest:
    return Manifest(
        deployment_name=name,
        image=f"registry.test/{name}@sha256:{source_ref}",
        replicas=replicas,
        body={"metadata": {"annotations": {"shipyard/source-ref": source_ref}}},
    )


def _controller(
    control_plane, clock: FakeClock, history: RunHistory | None = None, **kwargs
) -> RolloutController:
    kwargs.setdefault("rollout_timeout_seconds", 60)
    kwargs.setdefault("poll_interval_seconds", 5)
    kwargs.setdefault("stabilization_window_seconds", 10)
    return RolloutController(
        control_plane, history=history, clock=clock, sleep=clock.sleep, **kwargs
    )


class TestRolloutHappyPath:
    def test_reaches_available(self, clock: FakeClock):
        controller = _controller(ScriptedControlPlane(), clock)
        outcome = controller.rollout(_manifest("good"))
        assert outcome.succeeded
        assert outcome.revision == 1
        assert outcome.transitions == [
            "idle->submitted",
            "submitted->progressing",
            "progressing->available",
        ]
        assert controller.state_of("hello") == RolloutState.AVAILABLE
        assert not controller.in_flight("hello")

    def test_available_only_after_stabilization_window(self, clock: FakeClock):
        controller = _controller(ScriptedControlPlane(), clock, stabilization_window_seconds=10)
        controller.rollout(_manifest("good"))
        # ready at t=0, still ready at t=5 and t=10
        assert clock.now == 10
        assert clock.sleeps == [5, 5]

    def test_zero_window_is_immediate(self, clock: FakeClock):
        controller = _controller(ScriptedControlPlane(), clock, stabilization_window_seconds=0)
        assert controller.rollout(_manifest("good")).succeeded
        assert clock.sleeps == []

    def test_next_rollout_starts_from_idle(self, clock: FakeClock):
        controller = _controller(ScriptedControlPlane(), clock)
        controller.rollout(_manifest("v1"))
        outcome = controller.rollout(_manifest("v2"))
        assert outcome.succeeded
        assert outcome.revision == 2
        assert outcome.transitions[0] == "idle->submitted"

    def test_remembers_known_good(self, clock: FakeClock, history: RunHistory):
        controller = _controller(ScriptedControlPlane(), clock, history=history)
        controller.rollout(_manifest("v1"))
        revision, manifest = controller.known_good("hello")
        assert revision == 1
        assert manifest.image.endswith("v1")
        assert history.last_available("hello") == (1, manifest)


class TestStabilization:
    def test_flapping_readiness_resets_window(self, clock: FakeClock):
        statuses = iter(
            [
                ControlPlaneStatus(revision=1, ready_replicas=3, desired_replicas=3),
                ControlPlaneStatus(revision=1, ready_replicas=2, desired_replicas=3),
                ControlPlaneStatus(revision=1, ready_replicas=3, desired_replicas=3),
                ControlPlaneStatus(revision=1, ready_replicas=3, desired_replicas=3),
                ControlPlaneStatus(revision=1, ready_replicas=3, desired_replicas=3),
            ]
        )

        class Flapping(ScriptedControlPlane):
            def get_status(self, deployment_name):
                return next(statuses)

        controller = _controller(Flapping(), clock, stabilization_window_seconds=10)
        assert controller.rollout(_manifest("v1")).succeeded
        # readiness restarted at t=10, so stable at t=20
        assert clock.now == 20


class TestRolloutFailure:
    def _with_known_good(self, control_plane, clock, **kwargs) -> RolloutController:
        controller = _controller(control_plane, clock, **kwargs)
        assert controller.rollout(_manifest("good")).succeeded
        return controller

    def test_timeout_rolls_back(self, clock: FakeClock):
        control_plane = ScriptedControlPlane(behaviors={"bad": STUCK})
        controller = self._with_known_good(control_plane, clock)

        outcome = controller.rollout(_manifest("bad"))
        assert outcome.state == RolloutState.ROLLED_BACK
        assert outcome.revision == 2
        assert outcome.rolled_back_to == 3
        assert "not available after 60s (2/3 ready)" in outcome.reason
        assert outcome.transitions == [
            "idle->submitted",
            "submitted->progressing",
            "progressing->failed",
            "failed->rolling_back",
            "rolling_back->rolled_back",
        ]
        assert control_plane.applied[-1].image.endswith("good")

    def test_timeout_bounded(self, clock: FakeClock):
        control_plane = ScriptedControlPlane(behaviors={"bad": STUCK})
        controller = self._with_known_good(control_plane, clock)
        start = clock.now
        controller.rollout(_manifest("bad"))
        # 60s waiting on the bad revision, 10s stabilizing the rollback
        assert clock.now - start == 70

    @pytest.mark.parametrize(
        "behavior, reason",
        [
            (CRASHING, "crash loop"),
            (REPORTS_FAILED, "reported revision 2 failed"),
            (UNREACHABLE, "status unavailable"),
        ],
    )
    def test_failure_modes_roll_back(self, clock: FakeClock, behavior: str, reason: str):
        control_plane = ScriptedControlPlane(behaviors={"bad": behavior})
        controller = self._with_known_good(control_plane, clock)
        outcome = controller.rollout(_manifest("bad"))
        assert outcome.rolled_back
        assert reason in outcome.reason

    def test_no_known_good_revision(self, clock: FakeClock):
        controller = _controller(ScriptedControlPlane(behaviors={"bad": STUCK}), clock)
        outcome = controller.rollout(_manifest("bad"))
        assert outcome.state == RolloutState.ROLLBACK_FAILED
        assert "no known-good revision" in outcome.reason
        assert controller.state_of("hello") == RolloutState.ROLLBACK_FAILED
        assert not controller.in_flight("hello")

    def test_rollback_that_also_fails(self, clock: FakeClock):
        control_plane = ScriptedControlPlane()
        controller = self._with_known_good(control_plane, clock)
        # the previously good image no longer converges either
        control_plane.behaviors["good"] = STUCK
        control_plane.behaviors["bad"] = STUCK
        outcome = controller.rollout(_manifest("bad"))
        assert outcome.state == RolloutState.ROLLBACK_FAILED
        assert "rollback failed" in outcome.reason

    def test_rollback_rejected(self, clock: FakeClock):
        control_plane = ScriptedControlPlane(behaviors={"bad": STUCK})
        controller = self._with_known_good(control_plane, clock)
        control_plane.reject.add("good")
        outcome = controller.rollout(_manifest("bad"))
        assert outcome.state == RolloutState.ROLLBACK_FAILED
        assert "rollback rejected" in outcome.reason

    def test_apply_rejection_raises(self, clock: FakeClock):
        controller = _controller(ScriptedControlPlane(reject={"bad"}), clock)
        with pytest.raises(RolloutError, match="admission webhook"):
            controller.rollout(_manifest("bad"))
        assert controller.state_of("hello") == RolloutState.IDLE
        assert not controller.in_flight("hello")

    def test_known_good_survives_restart(self, clock: FakeClock, history: RunHistory):
        control_plane = ScriptedControlPlane(behaviors={"bad": STUCK})
        _controller(control_plane, clock, history=history).rollout(_manifest("good"))

        fresh = _controller(control_plane, clock, history=history)
        outcome = fresh.rollout(_manifest("bad"))
        assert outcome.rolled_back
        assert control_plane.applied[-1].image.endswith("good")

    def test_failed_revision_recorded(self, clock: FakeClock, history: RunHistory):
        control_plane = ScriptedControlPlane(behaviors={"bad": STUCK})
        controller = _controller(control_plane, clock, history=history)
        controller.rollout(_manifest("bad"))
        assert history.last_available("hello") is None


class _GatedControlPlane(ScriptedControlPlane):
    """Blocks ``get_status`` until released, to hold a rollout in flight."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def get_status(self, deployment_name: str) -> ControlPlaneStatus:
        self.entered.set()
        self.release.wait(timeout=5)
        return super().get_status(deployment_name)


class TestMutualExclusion:
    def test_wait_false_raises_while_in_flight(self):
        control_plane = _GatedControlPlane()
        controller = RolloutController(
            control_plane, stabilization_window_seconds=0, poll_interval_seconds=0
        )
        outcomes = []
        worker = threading.Thread(target=lambda: outcomes.append(controller.rollout(_manifest("v1"))))
        worker.start()
        assert control_plane.entered.wait(timeout=5)

        assert controller.in_flight("hello")
        with pytest.raises(RolloutInProgressError):
            controller.rollout(_manifest("v2"), wait=False)

        control_plane.release.set()
        worker.join(timeout=5)
        assert outcomes and outcomes[0].succeeded
        # only the first manifest reached the control plane
        assert len(control_plane.applied) == 1

    def test_other_deployments_not_blocked(self):
        control_plane = _GatedControlPlane()
        controller = RolloutController(
            control_plane, stabilization_window_seconds=0, poll_interval_seconds=0
        )
        worker = threading.Thread(target=controller.rollout, args=(_manifest("v1"),))
        worker.start()
        assert control_plane.entered.wait(timeout=5)
        control_plane.release.set()
        outcome = controller.rollout(_manifest("v1", name="other"), wait=False)
        worker.join(timeout=5)
        assert outcome.succeeded

    def test_concurrent_rollouts_serialize(self):
        class Slow(ScriptedControlPlane):
            def get_status(self, deployment_name):
                time.sleep(0.005)
                return super().get_status(deployment_name)

        class Recording(RolloutController):
            def __init__(self, *args, **kwargs):
                super().__init__(*args, **kwargs)
                self.log: list[tuple[int, RolloutState]] = []
                self._log_lock = threading.Lock()

            def _transition(self, name, target, transitions):
                super()._transition(name, target, transitions)
                with self._log_lock:
                    self.log.append((threading.get_ident(), target))

        controller = Recording(
            Slow(), stabilization_window_seconds=0.02, poll_interval_seconds=0.005
        )
        threads = [
            threading.Thread(target=controller.rollout, args=(_manifest(f"v{i}"),))
            for i in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        holder = None
        for thread_id, target in controller.log:
            if target == RolloutState.SUBMITTED:
                assert holder is None, "two rollouts in flight at once"
                holder = thread_id
            elif target == RolloutState.IDLE:
                assert holder is None
            else:
                assert holder == thread_id
                if target == RolloutState.AVAILABLE:
                    holder = None
        assert sum(1 for _, t in controller.log if t == RolloutState.SUBMITTED) == 4
        assert controller.state_of("hello") == RolloutState.AVAILABLE


class TestSharedHistoryLease:
    """Controllers sharing one history exclude each other, as separate CLI processes do."""

    def test_lease_released_after_rollout(self, clock: FakeClock, history: RunHistory):
        controller = _controller(ScriptedControlPlane(), clock, history)
        assert controller.rollout(_manifest("good")).succeeded
        assert history.lease_holder("hello") is None

    def test_lease_released_after_rejection(self, clock: FakeClock, history: RunHistory):
        controller = _controller(ScriptedControlPlane(reject={"bad"}), clock, history)
        with pytest.raises(RolloutError):
            controller.rollout(_manifest("bad"))
        assert history.lease_holder("hello") is None

    def test_wait_false_when_held_elsewhere(self, clock: FakeClock, history: RunHistory):
        history.acquire_lease("hello", "another-process", ttl_seconds=3600)
        control_plane = ScriptedControlPlane()
        controller = _controller(control_plane, clock, history)
        with pytest.raises(RolloutInProgressError, match="another process"):
            controller.rollout(_manifest("good"), wait=False)
        assert control_plane.applied == []
        assert history.lease_holder("hello") == "another-process"

    def test_waits_until_released(self, clock: FakeClock, history: RunHistory):
        history.acquire_lease("hello", "another-process", ttl_seconds=3600)
        control_plane = ScriptedControlPlane()
        applied_while_held = []

        def sleep(seconds: float) -> None:
            applied_while_held.append(len(control_plane.applied))
            history.release_lease("hello", "another-process")
            clock.sleep(seconds)

        controller = RolloutController(
            control_plane,
            history=history,
            poll_interval_seconds=5,
            stabilization_window_seconds=0,
            clock=clock,
            sleep=sleep,
        )
        assert controller.rollout(_manifest("good")).succeeded
        assert applied_while_held[0] == 0
        assert len(control_plane.applied) == 1

    def test_stale_lease_taken_over(self, clock: FakeClock, history: RunHistory):
        history.acquire_lease("hello", "crashed-process", ttl_seconds=3600)
        controller = _controller(ScriptedControlPlane(), clock, history, lease_ttl_seconds=0)
        assert controller.rollout(_manifest("good"), wait=False).succeeded

    def test_second_controller_excluded(self, history: RunHistory):
        control_plane = _GatedControlPlane()
        first, second = (
            RolloutController(
                control_plane,
                history=history,
                stabilization_window_seconds=0,
                poll_interval_seconds=0,
            )
            for _ in range(2)
        )
        outcomes = []
        worker = threading.Thread(target=lambda: outcomes.append(first.rollout(_manifest("v1"))))
        worker.start()
        assert control_plane.entered.wait(timeout=5)

        with pytest.raises(RolloutInProgressError):
            second.rollout(_manifest("v2"), wait=False)

        control_plane.release.set()
        worker.join(timeout=5)
        assert outcomes and outcomes[0].succeeded
        assert second.rollout(_manifest("v2"), wait=False).succeeded
        assert len(control_plane.applied) == 2
