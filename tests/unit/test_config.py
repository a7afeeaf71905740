"""Tests for ShipyardSettings and pipeline YAML loading."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest
from rich.logging import RichHandler

from shipyard.config import ShipyardSettings, configure_logging, load_pipeline_config
from shipyard.core.errors import ConfigError
from shipyard.core.step_graph import CyclicDependencyError


class TestShipyardSettings:
    def test_defaults(self, monkeypatch):
        for var in ("SHIPYARD_BACKEND", "SHIPYARD_LOG_LEVEL", "SHIPYARD_ENVIRONMENT"):
            monkeypatch.delenv(var, raising=False)
        settings = ShipyardSettings(_env_file=None)
        assert settings.backend == "local"
        assert settings.log_level == "INFO"
        assert settings.history_path == Path(".shipyard/history.db")
        assert not settings.is_production

    def test_env_overrides(self, monkeypatch, tmp_dir: Path):
        monkeypatch.setenv("SHIPYARD_ENVIRONMENT", "production")
        monkeypatch.setenv("SHIPYARD_BACKEND", "docker")
        monkeypatch.setenv("SHIPYARD_HISTORY_PATH", str(tmp_dir / "h.db"))
        settings = ShipyardSettings(_env_file=None)
        assert settings.is_production
        assert settings.backend == "docker"
        assert settings.history_path == tmp_dir / "h.db"

    def test_unknown_backend_rejected(self, monkeypatch):
        monkeypatch.setenv("SHIPYARD_BACKEND", "podman")
        with pytest.raises(ValueError):
            ShipyardSettings(_env_file=None)


class TestLoadPipelineConfig:
    def test_none_gives_defaults(self):
        assert load_pipeline_config(None).branch_pattern == "^main$"

    def test_camel_case_yaml(self, tmp_dir: Path):
        path = tmp_dir / "pipeline.yaml"
        path.write_text(
            "imageName: gcr.io/acme/hello\n"
            "deploymentName: hello\n"
            "replicas: 2\n"
            "rolloutTimeoutSeconds: 120\n"
            "pollIntervalSeconds: 2\n"
            "maxRetries: 5\n"
            "branchPattern: ^release/.*$\n"
            "stabilizationWindowSeconds: 0\n",
            encoding="utf-8",
        )
        cfg = load_pipeline_config(path)
        assert cfg.image_name == "gcr.io/acme/hello"
        assert cfg.deployment_name == "hello"
        assert cfg.rollout_timeout_seconds == 120
        assert cfg.max_retries == 5
        assert cfg.branch_pattern == "^release/.*$"
        assert cfg.stabilization_window_seconds == 0

    def test_template_path_relative_to_file(self, tmp_dir: Path):
        (tmp_dir / "k8s").mkdir()
        (tmp_dir / "k8s" / "deploy.yaml").write_text(
            "kind: Deployment\nspec:\n  replicas: ${replicas}\n", encoding="utf-8"
        )
        path = tmp_dir / "pipeline.yaml"
        path.write_text("manifestTemplatePath: k8s/deploy.yaml\n", encoding="utf-8")
        cfg = load_pipeline_config(path)
        assert cfg.manifest_template["kind"] == "Deployment"

    def test_missing_template_is_config_error(self, tmp_dir: Path):
        path = tmp_dir / "pipeline.yaml"
        path.write_text("manifestTemplatePath: nowhere.yaml\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_pipeline_config(path)

    def test_missing_file(self, tmp_dir: Path):
        with pytest.raises(ConfigError, match="Cannot read"):
            load_pipeline_config(tmp_dir / "absent.yaml")

    def test_invalid_yaml(self, tmp_dir: Path):
        path = tmp_dir / "pipeline.yaml"
        path.write_text("replicas: [1, 2\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="not valid YAML"):
            load_pipeline_config(path)

    def test_non_mapping(self, tmp_dir: Path):
        path = tmp_dir / "pipeline.yaml"
        path.write_text("- main\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="mapping"):
            load_pipeline_config(path)

    def test_invalid_values(self, tmp_dir: Path):
        path = tmp_dir / "pipeline.yaml"
        path.write_text("rolloutTimeoutSeconds: -1\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="Invalid pipeline config"):
            load_pipeline_config(path)

    def test_invalid_branch_pattern(self, tmp_dir: Path):
        path = tmp_dir / "pipeline.yaml"
        path.write_text("branchPattern: '[main'\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_pipeline_config(path)

    def test_cyclic_steps(self, tmp_dir: Path):
        path = tmp_dir / "pipeline.yaml"
        path.write_text(
            "steps:\n"
            "  - {stepId: build, displayName: Build, ordinal: 0, prerequisites: [rollout]}\n"
            "  - {stepId: publish, displayName: Publish, ordinal: 1, prerequisites: [build]}\n"
            "  - {stepId: render, displayName: Render, ordinal: 2, prerequisites: [publish]}\n"
            "  - {stepId: rollout, displayName: Rollout, ordinal: 3, prerequisites: [render]}\n",
            encoding="utf-8",
        )
        with pytest.raises(CyclicDependencyError):
            load_pipeline_config(path)

    def test_out_of_order_steps(self, tmp_dir: Path):
        path = tmp_dir / "pipeline.yaml"
        path.write_text(
            "steps:\n"
            "  - {stepId: publish, displayName: Publish, ordinal: 0}\n"
            "  - {stepId: build, displayName: Build, ordinal: 1}\n"
            "  - {stepId: render, displayName: Render, ordinal: 2, prerequisites: [publish]}\n"
            "  - {stepId: rollout, displayName: Rollout, ordinal: 3, prerequisites: [render]}\n",
            encoding="utf-8",
        )
        with pytest.raises(ConfigError, match="must run in the order"):
            load_pipeline_config(path)


class TestConfigureLogging:
    def test_single_rich_handler(self):
        root = logging.getLogger()
        configure_logging("DEBUG")
        configure_logging("warning")
        handlers = [h for h in root.handlers if isinstance(h, RichHandler)]
        assert len(handlers) == 1
        assert root.level == logging.WARNING
