"""Shared test fixtures for Shipyard.

The collaborator fakes here are scripted: each test states exactly how the
build backend, registry, and control plane should behave, and a FakeClock
makes every timeout and backoff deterministic.
"""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from shipyard.core.errors import PublishError, RolloutError
from shipyard.core.hasher import sha256_hex
from shipyard.core.orchestrator import PipelineOrchestrator
from shipyard.core.run_history import RunHistory
from shipyard.models.artifacts import BuildContext, BuildResult
from shipyard.models.config import PipelineConfig
from shipyard.models.deployment import ControlPlaneStatus, Manifest, RevisionStatus


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instantly."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------


class FakeBuildBackend:
    """Build backend that replays scripted failure reasons, then succeeds.

    Parameters
    ----------
    failures:
        BuildFailureReason values (strings) returned by successive builds
        before the first success.
    known_refs:
        If given, only these refs resolve.
    """

    def __init__(
        self,
        failures: list[str] | None = None,
        known_refs: set[str] | None = None,
    ) -> None:
        self.failures = list(failures or [])
        self.known_refs = known_refs
        self.builds: list[tuple[str, str]] = []

    def resolve(self, source_ref: str) -> bool:
        return self.known_refs is None or source_ref in self.known_refs

    def build(self, source_ref: str, image_tag: str, context: BuildContext) -> BuildResult:
        self.builds.append((source_ref, image_tag))
        if self.failures:
            reason = self.failures.pop(0)
            return BuildResult(
                image_tag=image_tag,
                success=False,
                failure_reason=reason,
                message=f"scripted {reason}",
            )
        return BuildResult(image_tag=image_tag, success=True, log_ref=f"fake://{image_tag}")


class FakeRegistry:
    """Registry that raises scripted PublishErrors before accepting pushes.

    Parameters
    ----------
    digest:
        Fixed digest for every push.  When None, each tag gets its own
        deterministic digest.
    push_errors:
        Errors raised by successive ``push`` calls before the first success.
    invisible_polls:
        Number of ``exists`` calls after a push that still report False.
    """

    def __init__(
        self,
        digest: str | None = None,
        push_errors: list[PublishError] | None = None,
        invisible_polls: int = 0,
    ) -> None:
        self.fixed_digest = digest
        self.push_errors = list(push_errors or [])
        self.invisible_polls = invisible_polls
        self.images: dict[str, str] = {}
        self.pushes: list[str] = []
        self._pending_polls = 0

    def push(self, image_tag: str) -> str:
        self.pushes.append(image_tag)
        if self.push_errors:
            raise self.push_errors.pop(0)
        digest = self.fixed_digest or f"sha256:{sha256_hex(image_tag.encode('utf-8'))}"
        self.images[image_tag] = digest
        self._pending_polls = self.invisible_polls
        return digest

    def exists(self, image_tag: str) -> bool:
        if image_tag in self.images and self._pending_polls > 0:
            self._pending_polls -= 1
            return False
        return image_tag in self.images

    def digest(self, image_tag: str) -> str | None:
        return self.images.get(image_tag)


# Behaviors a ScriptedControlPlane can play for an applied manifest.
HEALTHY = "healthy"  # every replica ready at once
STUCK = "stuck"  # one replica short, forever
CRASHING = "crashing"  # restart count keeps climbing
REPORTS_FAILED = "failed"  # control plane reports the revision failed
UNREACHABLE = "unreachable"  # get_status raises RolloutError


class ScriptedControlPlane:
    """Control plane whose status depends on the applied manifest's source ref.

    Parameters
    ----------
    behaviors:
        Maps a source ref (read from the ``shipyard/source-ref``
        annotation) to one of the behaviors above.  Unlisted refs are
        HEALTHY.
    reject:
        Source refs whose manifests ``apply`` refuses.
    """

    def __init__(
        self,
        behaviors: dict[str, str] | None = None,
        reject: set[str] | None = None,
    ) -> None:
        self.behaviors = dict(behaviors or {})
        self.reject = set(reject or ())
        self.applied: list[Manifest] = []
        self.events: list[tuple[str, str, int]] = []
        self._lock = threading.Lock()
        self._revision: dict[str, int] = {}
        self._current: dict[str, Manifest] = {}
        self._polls: dict[str, int] = {}

    @staticmethod
    def source_ref_of(manifest: Manifest) -> str:
        return manifest.body.get("metadata", {}).get("annotations", {}).get(
            "shipyard/source-ref", ""
        )

    def apply(self, manifest: Manifest) -> int:
        if self.source_ref_of(manifest) in self.reject:
            raise RolloutError(f"admission webhook denied {manifest.image}")
        with self._lock:
            name = manifest.deployment_name
            revision = self._revision.get(name, 0) + 1
            self._revision[name] = revision
            self._current[name] = manifest
            self._polls[name] = 0
            self.applied.append(manifest)
            self.events.append(("apply", name, revision))
        return revision

    def get_status(self, deployment_name: str) -> ControlPlaneStatus:
        with self._lock:
            manifest = self._current[deployment_name]
            revision = self._revision[deployment_name]
            self._polls[deployment_name] += 1
            polls = self._polls[deployment_name]
            self.events.append(("status", deployment_name, revision))
        behavior = self.behaviors.get(self.source_ref_of(manifest), HEALTHY)
        desired = manifest.replicas

        if behavior == UNREACHABLE:
            raise RolloutError("connection refused")
        if behavior == STUCK:
            return ControlPlaneStatus(
                revision=revision, ready_replicas=desired - 1, desired_replicas=desired
            )
        if behavior == CRASHING:
            return ControlPlaneStatus(
                revision=revision,
                ready_replicas=0,
                desired_replicas=desired,
                restart_count=polls * 2,
            )
        if behavior == REPORTS_FAILED:
            return ControlPlaneStatus(
                revision=revision,
                ready_replicas=0,
                desired_replicas=desired,
                state=RevisionStatus.FAILED,
            )
        return ControlPlaneStatus(
            revision=revision,
            ready_replicas=desired,
            desired_replicas=desired,
            state=RevisionStatus.AVAILABLE,
        )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test databases."""
    return tmp_path


@pytest.fixture
def history(tmp_dir: Path) -> RunHistory:
    """Provide a fresh RunHistory backed by a temp SQLite database."""
    return RunHistory(tmp_dir / "history.db")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> PipelineConfig:
    """Pipeline config with short, round timings for fake-clock tests."""
    return PipelineConfig(
        image_name="registry.test/hello",
        deployment_name="hello",
        replicas=3,
        rollout_timeout_seconds=60,
        poll_interval_seconds=5,
        max_retries=3,
        stabilization_window_seconds=10,
        publish_confirm_timeout_seconds=30,
    )


@pytest.fixture
def build_backend() -> FakeBuildBackend:
    return FakeBuildBackend()


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def control_plane() -> ScriptedControlPlane:
    return ScriptedControlPlane()


@pytest.fixture
def orchestrator(
    config: PipelineConfig,
    build_backend: FakeBuildBackend,
    registry: FakeRegistry,
    control_plane: ScriptedControlPlane,
    history: RunHistory,
    clock: FakeClock,
) -> PipelineOrchestrator:
    """Provide a PipelineOrchestrator wired to the scripted fakes."""
    return PipelineOrchestrator(
        config,
        build_backend=build_backend,
        registry=registry,
        control_plane=control_plane,
        history=history,
        clock=clock,
        sleep=clock.sleep,
    )
