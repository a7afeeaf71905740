"""Docker CLI build backend and registry.

Both shell out to ``docker``; credentials come from whatever the docker
client is configured with, never from Shipyard.  Source refs are resolved
with ``git`` inside the build context.
"""

from __future__ import annotations

import logging
from pathlib import Path

from shipyard.backends._process import CommandTimeout, run_command
from shipyard.core.errors import BuildFailureReason, PublishError, PublishFailureReason
from shipyard.models.artifacts import BuildContext, BuildResult

logger = logging.getLogger(__name__)

_SYNTAX_MARKERS = ("dockerfile parse error", "unknown instruction", "syntax error")
_AUTH_MARKERS = ("unauthorized", "denied", "authentication required")
_QUOTA_MARKERS = ("quota", "toomanyrequests", "rate limit")


def classify_build_failure(stderr: str) -> BuildFailureReason:
    """Map docker build stderr to a BuildFailureReason."""
    text = stderr.lower()
    if any(marker in text for marker in _SYNTAX_MARKERS):
        return BuildFailureReason.SYNTAX_ERROR
    return BuildFailureReason.DEPENDENCY_FAILURE


def classify_push_failure(stderr: str) -> PublishFailureReason:
    """Map docker push stderr to a PublishFailureReason."""
    text = stderr.lower()
    if any(marker in text for marker in _AUTH_MARKERS):
        return PublishFailureReason.AUTH_FAILURE
    if any(marker in text for marker in _QUOTA_MARKERS):
        return PublishFailureReason.QUOTA_EXCEEDED
    return PublishFailureReason.NETWORK_FAILURE


class DockerBuildBackend:
    """Builds images with ``docker build``.

    Parameters
    ----------
    repo_dir:
        Git checkout that source refs are resolved against.
    build_timeout_seconds:
        Wall-clock limit for one ``docker build``.
    """

    def __init__(self, repo_dir: Path = Path("."), build_timeout_seconds: float = 1800) -> None:
        self._repo_dir = Path(repo_dir)
        self._timeout = build_timeout_seconds

    def resolve(self, source_ref: str) -> bool:
        if not source_ref.strip():
            return False
        result = run_command(
            "git", "-C", str(self._repo_dir), "cat-file", "-e", f"{source_ref}^{{tree}}",
            timeout=30,
        )
        return result.returncode == 0

    def build(self, source_ref: str, image_tag: str, context: BuildContext) -> BuildResult:
        args = [
            "docker", "build",
            "-t", image_tag,
            "-f", str(context.context_dir / context.dockerfile),
            "--label", f"org.opencontainers.image.revision={source_ref}",
        ]
        for key, value in sorted(context.build_args.items()):
            args += ["--build-arg", f"{key}={value}"]
        args.append(str(context.context_dir))

        try:
            result = run_command(*args, timeout=self._timeout)
        except CommandTimeout as exc:
            return BuildResult(
                image_tag=image_tag,
                success=False,
                failure_reason=BuildFailureReason.TIMEOUT.value,
                message=str(exc),
            )

        if result.returncode != 0:
            reason = classify_build_failure(result.stderr)
            logger.warning("docker build of %s failed: %s", image_tag, reason.value)
            return BuildResult(
                image_tag=image_tag,
                success=False,
                failure_reason=reason.value,
                message=result.stderr.strip()[-2000:],
            )
        return BuildResult(image_tag=image_tag, success=True, log_ref=f"docker://{image_tag}")


class DockerRegistry:
    """Pushes and inspects images with ``docker push`` / ``docker manifest``."""

    def __init__(self, push_timeout_seconds: float = 600) -> None:
        self._timeout = push_timeout_seconds

    def push(self, image_tag: str) -> str:
        try:
            result = run_command("docker", "push", image_tag, timeout=self._timeout)
        except CommandTimeout as exc:
            raise PublishError(PublishFailureReason.NETWORK_FAILURE, str(exc)) from exc
        if result.returncode != 0:
            raise PublishError(classify_push_failure(result.stderr), result.stderr.strip())

        digest = self.digest(image_tag)
        if digest is None:
            raise PublishError(
                PublishFailureReason.NOT_CONFIRMED,
                f"pushed {image_tag} but no repo digest was recorded",
            )
        return digest

    def exists(self, image_tag: str) -> bool:
        result = run_command("docker", "manifest", "inspect", image_tag, timeout=60)
        return result.returncode == 0

    def digest(self, image_tag: str) -> str | None:
        result = run_command(
            "docker", "image", "inspect", "--format", "{{join .RepoDigests \"\\n\"}}", image_tag,
            timeout=60,
        )
        if result.returncode != 0:
            return None
        repository = image_tag.rsplit(":", 1)[0]
        for line in result.stdout.splitlines():
            repo, _, digest = line.strip().partition("@")
            if repo == repository and digest:
                return digest
        return None
