"""Collaborator protocols for the build backend, registry, and control plane.

Shipyard never reaches for ambient CLI state or global credentials; every
external system is an object satisfying one of these Protocols, injected
into the component that uses it.

Failure signalling
------------------
- ``BuildBackend.build`` reports failure through ``BuildResult.success``
  and ``failure_reason`` (a ``BuildFailureReason`` value).
- ``Registry.push`` raises ``PublishError`` with a ``PublishFailureReason``.
- ``ControlPlane.apply`` / ``get_status`` raise ``RolloutError``.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from shipyard.models.artifacts import BuildContext, BuildResult
from shipyard.models.deployment import ControlPlaneStatus, Manifest


@runtime_checkable
class BuildBackend(Protocol):
    """Produces a container image from a source tree."""

    def resolve(self, source_ref: str) -> bool:
        """Return ``True`` if *source_ref* names an existing, readable tree."""
        ...

    def build(self, source_ref: str, image_tag: str, context: BuildContext) -> BuildResult:
        """Build *source_ref* into an image tagged *image_tag*."""
        ...


@runtime_checkable
class Registry(Protocol):
    """Stores and serves tagged images."""

    def push(self, image_tag: str) -> str:
        """Push *image_tag* and return the digest the registry assigned."""
        ...

    def exists(self, image_tag: str) -> bool:
        """Return ``True`` if *image_tag* is queryable in the registry."""
        ...

    def digest(self, image_tag: str) -> str | None:
        """Return the digest stored for *image_tag*, or ``None``."""
        ...


@runtime_checkable
class ControlPlane(Protocol):
    """Accepts deployment manifests and reports rollout status."""

    def apply(self, manifest: Manifest) -> int:
        """Submit *manifest*; return the new revision number."""
        ...

    def get_status(self, deployment_name: str) -> ControlPlaneStatus:
        """Return the current rollout status of *deployment_name*."""
        ...
