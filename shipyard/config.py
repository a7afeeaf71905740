"""Runtime settings and pipeline configuration loading.

Two layers:

- ``ShipyardSettings`` — process-level settings from ``SHIPYARD_*``
  environment variables or a ``.env`` file (pydantic-settings).
- ``PipelineConfig`` — the per-pipeline YAML file named by
  ``ShipyardSettings.config_path``, loaded with ``load_pipeline_config``.

Examples
--------
Override via environment::

    export SHIPYARD_LOG_LEVEL=DEBUG
    export SHIPYARD_HISTORY_PATH=/data/history.db
    export SHIPYARD_BACKEND=docker

A pipeline file::

    imageName: gcr.io/acme/hello-app
    deploymentName: hello-app
    replicas: 3
    rolloutTimeoutSeconds: 300
    pollIntervalSeconds: 5
    maxRetries: 3
    branchPattern: ^main$
    stabilizationWindowSeconds: 10
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Literal

import yaml
from pydantic import ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict
from rich.logging import RichHandler

from shipyard.core.errors import ConfigError, TemplateError
from shipyard.core.renderer import load_template
from shipyard.core.step_graph import pipeline_step_graph
from shipyard.models.config import PipelineConfig


class ShipyardSettings(BaseSettings):
    """Process settings with environment variable overrides."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="SHIPYARD_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = "development"
    log_level: str = "INFO"

    # Storage paths
    history_path: Path = Path(".shipyard/history.db")
    config_path: Path | None = None  # pipeline YAML; defaults apply when unset
    local_registry_path: Path = Path(".shipyard/registry.json")

    # Collaborator backends
    backend: Literal["local", "docker"] = "local"
    repo_dir: Path = Path(".")
    kube_namespace: str = "default"
    kube_context: str | None = None

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


def load_pipeline_config(path: Path | None) -> PipelineConfig:
    """Load and validate a pipeline YAML file.

    ``None`` returns the default configuration.  A ``manifestTemplatePath``
    key is resolved relative to the file and loaded as the manifest
    template.  Any problem raises ``ConfigError``.
    """
    if path is None:
        return PipelineConfig()

    path = Path(path)
    try:
        with path.open(encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except OSError as exc:
        raise ConfigError(f"Cannot read pipeline config {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Pipeline config {path} is not valid YAML: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"Pipeline config {path} must be a mapping")

    template_path = raw.pop("manifestTemplatePath", None) or raw.pop("manifest_template_path", None)
    if template_path is not None:
        try:
            raw["manifest_template"] = load_template(path.parent / template_path)
        except TemplateError as exc:
            raise ConfigError(str(exc)) from exc

    try:
        config = PipelineConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid pipeline config {path}:\n{exc}") from exc

    # Raises ConfigError for a cyclic or out-of-order step graph.
    pipeline_step_graph(config.steps)
    return config


def configure_logging(level: str = "INFO") -> None:
    """Route stdlib logging through Rich.  Safe to call more than once."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, RichHandler):
            root.removeHandler(handler)
    root.addHandler(RichHandler(rich_tracebacks=True, show_path=False))
    root.setLevel(level.upper())
