"""Container image artifact models.

An artifact's tag is fixed when it is built (derived from the run ID) and
its digest is assigned once, by the registry, at push time.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict


class ArtifactError(ValueError):
    """Raised when an artifact's immutable digest would be overwritten."""


class Artifact(BaseModel):
    """A built container image, identified by tag and (after push) digest."""

    model_config = ConfigDict(frozen=True)

    repository: str
    tag: str
    digest: str | None = None  # "sha256:<hex>", assigned by the registry
    source_ref: str = ""

    @property
    def reference(self) -> str:
        """Mutable tag reference, e.g. ``registry/app:sy-run``."""
        return f"{self.repository}:{self.tag}"

    @property
    def pinned_reference(self) -> str:
        """Immutable digest reference, e.g. ``registry/app@sha256:...``."""
        if not self.digest:
            raise ArtifactError(f"{self.reference} has not been published")
        return f"{self.repository}@{self.digest}"

    @property
    def is_published(self) -> bool:
        return bool(self.digest)

    def with_digest(self, digest: str) -> Artifact:
        """Return a copy carrying *digest*.

        Re-assigning the same digest is a no-op; a different digest raises
        ``ArtifactError``.
        """
        if self.digest and self.digest != digest:
            raise ArtifactError(
                f"{self.reference} already has digest {self.digest}, refusing {digest}"
            )
        return self.model_copy(update={"digest": digest})


class BuildContext(BaseModel):
    """Inputs for the build backend beyond the source reference."""

    model_config = ConfigDict(frozen=True)

    context_dir: Path = Path(".")
    dockerfile: str = "Dockerfile"
    build_args: dict[str, str] = {}


class BuildResult(BaseModel):
    """What a build backend reports back for one build invocation."""

    model_config = ConfigDict(frozen=True)

    image_tag: str
    success: bool
    log_ref: str = ""
    failure_reason: str | None = None  # a BuildFailureReason value when success is False
    message: str = ""
