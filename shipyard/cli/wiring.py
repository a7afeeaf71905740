"""Builds an orchestrator from settings for the CLI commands."""

from __future__ import annotations

from pathlib import Path

from shipyard.backends.local import LocalBuildBackend, LocalRegistry, SimulatedControlPlane
from shipyard.config import ShipyardSettings
from shipyard.core.errors import ConfigError
from shipyard.core.orchestrator import PipelineOrchestrator
from shipyard.core.run_history import RunHistory
from shipyard.models.artifacts import BuildContext
from shipyard.models.config import PipelineConfig


def build_orchestrator(
    settings: ShipyardSettings,
    config: PipelineConfig,
    history_path: Path | None = None,
) -> PipelineOrchestrator:
    """Wire collaborators for ``settings.backend`` into a PipelineOrchestrator.

    Raises ``ConfigError`` for the simulated ``local`` backend in production.
    """
    if settings.is_production and settings.backend == "local":
        raise ConfigError("the local backend simulates deployments and cannot run in production")
    history = RunHistory(history_path or settings.history_path)

    if settings.backend == "docker":
        from shipyard.backends.docker import DockerBuildBackend, DockerRegistry
        from shipyard.backends.kubectl import KubectlControlPlane

        build_backend = DockerBuildBackend(settings.repo_dir)
        registry = DockerRegistry()
        control_plane = KubectlControlPlane(
            namespace=settings.kube_namespace, context=settings.kube_context
        )
    else:
        build_backend = LocalBuildBackend()
        registry = LocalRegistry(settings.local_registry_path)
        control_plane = SimulatedControlPlane(ramp=config.replicas)

    return PipelineOrchestrator(
        config,
        build_backend=build_backend,
        registry=registry,
        control_plane=control_plane,
        history=history,
        build_context=BuildContext(context_dir=settings.repo_dir),
    )
