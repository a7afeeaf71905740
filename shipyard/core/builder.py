"""Artifact Builder — turns a source ref into a tagged, unpublished image.

The tag is derived from the run ID (``{image_name}:{run_id}``), so a
retried build or a retried push always targets the same tag.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from shipyard.backends.base import BuildBackend
from shipyard.core.errors import BuildError, BuildFailureReason
from shipyard.models.artifacts import Artifact, BuildContext
from shipyard.models.config import RetryPolicy

logger = logging.getLogger(__name__)


class ArtifactBuilder:
    """Invokes the build backend with retry for timeouts only.

    Parameters
    ----------
    backend:
        The container build backend.
    image_name:
        Repository the image is tagged into (e.g. ``gcr.io/proj/app``).
    retry:
        Attempt budget.  Only ``TIMEOUT`` failures consume extra attempts.
    sleep:
        Injected for tests.
    """

    def __init__(
        self,
        backend: BuildBackend,
        image_name: str,
        retry: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._backend = backend
        self._image_name = image_name
        self._retry = retry or RetryPolicy(max_attempts=2, backoff_base_seconds=0.0)
        self._sleep = sleep

    def tag_for(self, run_id: str) -> str:
        return f"{self._image_name}:{run_id}"

    def build(self, source_ref: str, build_context: BuildContext, run_id: str) -> Artifact:
        """Build *source_ref* and return an Artifact with no digest.

        Raises ``BuildError`` when the source does not resolve or the
        backend reports failure after the allowed attempts.
        """
        if not source_ref or not self._backend.resolve(source_ref):
            raise BuildError(
                BuildFailureReason.SOURCE_NOT_FOUND,
                f"source ref {source_ref!r} does not resolve to a readable tree",
            )

        image_tag = self.tag_for(run_id)
        attempt = 0
        while True:
            attempt += 1
            result = self._backend.build(source_ref, image_tag, build_context)
            if result.success:
                logger.info("built %s from %s (attempt %d)", image_tag, source_ref, attempt)
                return Artifact(
                    repository=self._image_name,
                    tag=run_id,
                    source_ref=source_ref,
                )

            error = BuildError(
                _coerce_reason(result.failure_reason),
                result.message or f"build of {image_tag} failed",
            )
            if not error.retryable or attempt >= self._retry.max_attempts:
                raise error

            delay = self._retry.delay_for(attempt - 1)
            logger.warning(
                "build of %s timed out (attempt %d/%d), retrying in %.1fs",
                image_tag, attempt, self._retry.max_attempts, delay,
            )
            if delay:
                self._sleep(delay)


def _coerce_reason(value: str | None) -> BuildFailureReason:
    try:
        return BuildFailureReason(value)
    except ValueError:
        logger.warning(
            "build backend reported unrecognised failure reason %r; treating as %s",
            value, BuildFailureReason.DEPENDENCY_FAILURE.value,
        )
        return BuildFailureReason.DEPENDENCY_FAILURE
