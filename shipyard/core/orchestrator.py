"""Pipeline orchestrator — the central coordinator for Shipyard runs.

The PipelineOrchestrator wires the ArtifactBuilder, RegistryPublisher,
ManifestRenderer, and RolloutController into one fail-fast pipeline and
records every step in the RunHistory.

Run lifecycle:
1. A PENDING run is recorded, then moved to RUNNING.
2. Steps execute in the step graph's order (build, publish, render,
   rollout).  Each executed step appends exactly one StepResult.
3. The first failing step ends the run.  The run is ROLLED_BACK if the
   rollout failed and the controller restored the previous revision,
   otherwise FAILED.  With no failure the run is SUCCEEDED.

A source ref that already has a published artifact in the registry skips
the build and publish work: both steps are recorded as CACHED.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from shipyard.backends.base import BuildBackend, ControlPlane, Registry
from shipyard.core.builder import ArtifactBuilder
from shipyard.core.errors import RolloutError, ShipyardError
from shipyard.core.publisher import RegistryPublisher
from shipyard.core.renderer import ManifestRenderer
from shipyard.core.rollout import RolloutController
from shipyard.core.run_history import RunHistory
from shipyard.core.step_graph import pipeline_step_graph
from shipyard.models.artifacts import Artifact, BuildContext
from shipyard.models.config import (
    STEP_BUILD,
    STEP_PUBLISH,
    STEP_RENDER,
    STEP_ROLLOUT,
    PipelineConfig,
)
from shipyard.models.deployment import Manifest
from shipyard.models.runs import PipelineRun, RunStatus, StepResult, StepStatus

logger = logging.getLogger(__name__)


def new_run_id() -> str:
    """A fresh run ID, also usable as an image tag."""
    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"sy-{ts}-{uuid.uuid4().hex[:6]}"


@dataclass
class _RunContext:
    """Per-run working state passed between step handlers."""

    run_id: str
    source_ref: str
    artifact: Artifact | None = None
    cached: bool = False
    manifest: Manifest | None = None
    rolled_back: bool = False


class PipelineOrchestrator:
    """Runs build -> publish -> render -> rollout for one deployment.

    Parameters
    ----------
    config:
        Pipeline configuration, fixed for the orchestrator's lifetime.
    build_backend / registry / control_plane:
        External collaborators.
    history:
        Run history every run is recorded into.
    build_context:
        Passed to the build backend on every build.
    controller:
        Share one RolloutController between orchestrators so rollouts of
        the same deployment name queue on a single lock.  Created from
        *config* and *control_plane* when omitted.
    """

    def __init__(
        self,
        config: PipelineConfig,
        *,
        build_backend: BuildBackend,
        registry: Registry,
        control_plane: ControlPlane,
        history: RunHistory,
        build_context: BuildContext | None = None,
        controller: RolloutController | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.graph = pipeline_step_graph(config.steps)
        self.history = history
        self.build_context = build_context or BuildContext()

        self.builder = ArtifactBuilder(
            build_backend,
            config.image_name,
            config.step(STEP_BUILD).retry,
            sleep=sleep,
        )
        self.publisher = RegistryPublisher(
            registry,
            max_retries=config.max_retries,
            backoff=config.step(STEP_PUBLISH).retry,
            poll_interval_seconds=config.poll_interval_seconds,
            confirm_timeout_seconds=config.publish_confirm_timeout_seconds,
            clock=clock,
            sleep=sleep,
        )
        self.renderer = ManifestRenderer(config.deployment_name)
        self.controller = controller or RolloutController(
            control_plane,
            rollout_timeout_seconds=config.rollout_timeout_seconds,
            poll_interval_seconds=config.poll_interval_seconds,
            stabilization_window_seconds=config.stabilization_window_seconds,
            crash_loop_threshold=config.crash_loop_threshold,
            history=history,
            clock=clock,
            sleep=sleep,
        )

        self._handlers: dict[str, Callable[[_RunContext], tuple[StepStatus, str | None]]] = {
            STEP_BUILD: self._build,
            STEP_PUBLISH: self._publish,
            STEP_RENDER: self._render,
            STEP_ROLLOUT: self._rollout,
        }
        self._cancel_lock = threading.Lock()
        self._cancelled: set[str] = set()

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def run(
        self, source_ref: str, branch: str = "", run_id: str | None = None
    ) -> PipelineRun:
        """Execute one pipeline run to a terminal status and return it."""
        run_id = run_id or new_run_id()
        if self.history.get_run(run_id) is not None:
            raise ShipyardError(f"Run {run_id} already exists")

        run = PipelineRun(
            run_id=run_id,
            source_ref=source_ref,
            branch=branch,
            deployment_name=self.config.deployment_name,
        )
        self.history.append_run(run)
        run = self._advance(run, RunStatus.RUNNING)
        logger.info("run %s started for %s (%s)", run_id, source_ref, branch or "-")

        ctx = _RunContext(run_id=run_id, source_ref=source_ref)
        final_status = RunStatus.SUCCEEDED
        try:
            for step_id in self.graph.step_ids:
                if self._is_cancelled(run_id):
                    logger.info("run %s cancelled before %s", run_id, step_id)
                    run = self._append(run, StepResult(
                        step_id=step_id,
                        status=StepStatus.CANCELLED,
                        error=f"run cancelled before {step_id}",
                    ))
                    final_status = RunStatus.FAILED
                    break

                result = self._execute(step_id, ctx)
                run = self._append(run, result)
                if not result.status.is_success:
                    final_status = (
                        RunStatus.ROLLED_BACK if ctx.rolled_back else RunStatus.FAILED
                    )
                    skipped = self.graph.get_dependents(step_id)
                    if skipped:
                        logger.info("run %s: skipping %s", run_id, ", ".join(skipped))
                    break
        finally:
            with self._cancel_lock:
                self._cancelled.discard(run_id)

        run = self._advance(run, final_status)
        logger.info("run %s finished: %s", run_id, final_status.value)
        return run

    def cancel(self, run_id: str) -> None:
        """Request cancellation; honored before the run's next step starts.

        An in-flight step, including a rollout already submitted to the
        cluster, is never interrupted.
        """
        with self._cancel_lock:
            self._cancelled.add(run_id)

    def _is_cancelled(self, run_id: str) -> bool:
        with self._cancel_lock:
            return run_id in self._cancelled

    # ------------------------------------------------------------------
    # Step execution
    # ------------------------------------------------------------------

    def _execute(self, step_id: str, ctx: _RunContext) -> StepResult:
        handler = self._handlers[step_id]
        started = datetime.now(timezone.utc)
        logger.info("run %s: %s", ctx.run_id, self.graph.get_step_definition(step_id).display_name)
        try:
            status, output_ref = handler(ctx)
        except ShipyardError as exc:
            logger.warning("run %s: %s failed: %s", ctx.run_id, step_id, exc)
            return StepResult(
                step_id=step_id,
                status=StepStatus.FAILED,
                started_at=started,
                error=str(exc),
            )
        except Exception as exc:
            logger.exception("run %s: %s raised unexpectedly", ctx.run_id, step_id)
            return StepResult(
                step_id=step_id,
                status=StepStatus.FAILED,
                started_at=started,
                error=f"{type(exc).__name__}: {exc}",
            )
        return StepResult(
            step_id=step_id,
            status=status,
            started_at=started,
            output_ref=output_ref,
        )

    def _build(self, ctx: _RunContext) -> tuple[StepStatus, str | None]:
        cached = self._find_cached(ctx.source_ref)
        if cached is not None:
            ctx.artifact = cached
            ctx.cached = True
            logger.info("run %s: cache hit %s for %s", ctx.run_id, cached.reference, ctx.source_ref)
            return StepStatus.CACHED, cached.reference

        ctx.artifact = self.builder.build(ctx.source_ref, self.build_context, ctx.run_id)
        return StepStatus.SUCCEEDED, ctx.artifact.reference

    def _publish(self, ctx: _RunContext) -> tuple[StepStatus, str | None]:
        if ctx.artifact is None:
            raise ShipyardError("publish requires a built artifact")
        if ctx.cached:
            return StepStatus.CACHED, ctx.artifact.digest

        ctx.artifact = self.publisher.publish(ctx.artifact)
        self.history.record_artifact(ctx.artifact)
        return StepStatus.SUCCEEDED, ctx.artifact.digest

    def _render(self, ctx: _RunContext) -> tuple[StepStatus, str | None]:
        if ctx.artifact is None or not ctx.artifact.is_published:
            raise ShipyardError("render requires a published artifact")
        ctx.manifest = self.renderer.render(
            self.config.manifest_template, ctx.artifact, self.config.replicas
        )
        return StepStatus.SUCCEEDED, ctx.manifest.image

    def _rollout(self, ctx: _RunContext) -> tuple[StepStatus, str | None]:
        if ctx.manifest is None:
            raise ShipyardError("rollout requires a rendered manifest")
        outcome = self.controller.rollout(ctx.manifest)
        if outcome.succeeded:
            return StepStatus.SUCCEEDED, f"revision {outcome.revision}"

        ctx.rolled_back = outcome.rolled_back
        if outcome.rolled_back:
            raise RolloutError(
                f"rollout of {outcome.deployment_name} revision {outcome.revision} failed: "
                f"{outcome.reason}; rolled back to revision {outcome.rolled_back_to}"
            )
        raise RolloutError(
            f"rollout of {outcome.deployment_name} revision {outcome.revision} failed: "
            f"{outcome.reason}"
        )

    def _find_cached(self, source_ref: str) -> Artifact | None:
        recorded = self.history.find_artifact(source_ref, self.config.image_name)
        if recorded is None:
            return None
        return self.publisher.lookup(recorded)

    # ------------------------------------------------------------------
    # History helpers
    # ------------------------------------------------------------------

    def _append(self, run: PipelineRun, result: StepResult) -> PipelineRun:
        run = run.with_step(result)
        self.history.append_step(run.run_id, result)
        return run

    def _advance(self, run: PipelineRun, status: RunStatus) -> PipelineRun:
        run = run.with_status(status)
        self.history.append_run(run)
        return run
