"""Pipeline configuration models.

Loaded from a YAML file by ``shipyard.config.load_pipeline_config``.  Keys
may be written in snake_case or in the camelCase used by trigger payloads
(``rolloutTimeoutSeconds``, ``pollIntervalSeconds``, ...).
"""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

STEP_BUILD = "build"
STEP_PUBLISH = "publish"
STEP_RENDER = "render"
STEP_ROLLOUT = "rollout"

KNOWN_STEPS: tuple[str, ...] = (STEP_BUILD, STEP_PUBLISH, STEP_RENDER, STEP_ROLLOUT)

_MODEL_CONFIG = ConfigDict(
    frozen=True,
    populate_by_name=True,
    alias_generator=to_camel,
    extra="forbid",
)


class RetryPolicy(BaseModel):
    """How many times a step may be attempted and how long to wait between."""

    model_config = _MODEL_CONFIG

    max_attempts: int = Field(default=1, ge=1)
    backoff_base_seconds: float = Field(default=1.0, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1)

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number *attempt* (0-based)."""
        return self.backoff_base_seconds * (self.backoff_factor ** attempt)


class StepDefinition(BaseModel):
    """A pipeline step and the steps that must succeed before it."""

    model_config = _MODEL_CONFIG

    step_id: str
    display_name: str
    ordinal: int
    prerequisites: list[str] = []
    retry: RetryPolicy = RetryPolicy()


DEFAULT_STEP_DEFINITIONS: list[StepDefinition] = [
    StepDefinition(
        step_id=STEP_BUILD,
        display_name="Build",
        ordinal=0,
        # a build timeout is retried once
        retry=RetryPolicy(max_attempts=2, backoff_base_seconds=0.0),
    ),
    StepDefinition(
        step_id=STEP_PUBLISH,
        display_name="Publish",
        ordinal=1,
        prerequisites=[STEP_BUILD],
        retry=RetryPolicy(backoff_base_seconds=1.0, backoff_factor=2.0),
    ),
    StepDefinition(
        step_id=STEP_RENDER,
        display_name="Render",
        ordinal=2,
        prerequisites=[STEP_PUBLISH],
    ),
    StepDefinition(
        step_id=STEP_ROLLOUT,
        display_name="Rollout",
        ordinal=3,
        prerequisites=[STEP_RENDER],
    ),
]


def default_manifest_template() -> dict[str, Any]:
    """A minimal Kubernetes Deployment with Shipyard placeholders."""
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "name": "${deployment_name}",
            "labels": {"app": "${deployment_name}"},
            "annotations": {"shipyard/source-ref": "${source_ref}"},
        },
        "spec": {
            "replicas": "${replicas}",
            "selector": {"matchLabels": {"app": "${deployment_name}"}},
            "template": {
                "metadata": {"labels": {"app": "${deployment_name}"}},
                "spec": {
                    "containers": [
                        {"name": "${deployment_name}", "image": "${image}"},
                    ],
                },
            },
        },
    }


class PipelineConfig(BaseModel):
    """Static configuration for pipeline runs; immutable during a run."""

    model_config = _MODEL_CONFIG

    image_name: str = "shipyard/app"
    deployment_name: str = "app"
    replicas: int = Field(default=3, ge=1)
    manifest_template: dict[str, Any] = Field(default_factory=default_manifest_template)
    steps: list[StepDefinition] = Field(
        default_factory=lambda: list(DEFAULT_STEP_DEFINITIONS)
    )

    rollout_timeout_seconds: int = Field(default=300, gt=0)
    poll_interval_seconds: int = Field(default=5, gt=0)
    max_retries: int = Field(default=3, ge=0)
    branch_pattern: str = "^main$"
    stabilization_window_seconds: int = Field(default=10, ge=0)
    crash_loop_threshold: int = Field(default=3, ge=0)
    publish_confirm_timeout_seconds: int = Field(default=30, gt=0)

    @field_validator("branch_pattern")
    @classmethod
    def _valid_regex(cls, pattern: str) -> str:
        try:
            re.compile(pattern)
        except re.error as exc:
            raise ValueError(f"branch_pattern {pattern!r} is not a valid regex: {exc}") from exc
        return pattern

    @field_validator("steps")
    @classmethod
    def _known_steps_only(cls, steps: list[StepDefinition]) -> list[StepDefinition]:
        ids = [s.step_id for s in steps]
        unknown = sorted(set(ids) - set(KNOWN_STEPS))
        if unknown:
            raise ValueError(f"Unknown step(s): {unknown}. Known: {list(KNOWN_STEPS)}")
        if len(ids) != len(set(ids)):
            dupes = sorted({x for x in ids if ids.count(x) > 1})
            raise ValueError(f"Duplicate step_id(s): {dupes}")
        missing = [s for s in KNOWN_STEPS if s not in ids]
        if missing:
            raise ValueError(f"Missing step(s): {missing}")
        return steps

    def step(self, step_id: str) -> StepDefinition:
        for definition in self.steps:
            if definition.step_id == step_id:
                return definition
        raise KeyError(step_id)
