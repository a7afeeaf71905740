"""Registry Publisher — pushes an artifact and confirms it landed.

Pushes are at-least-once: the tag is deterministic, so re-pushing after a
partial failure targets the same tag and is idempotent.  A push is only
reported complete once ``registry.exists(tag)`` confirms it.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from shipyard.backends.base import Registry
from shipyard.core.errors import PublishError, PublishFailureReason
from shipyard.models.artifacts import Artifact
from shipyard.models.config import RetryPolicy

logger = logging.getLogger(__name__)


class RegistryPublisher:
    """Publishes artifacts with bounded, exponentially backed-off retries.

    Parameters
    ----------
    registry:
        The image registry.
    max_retries:
        Retries allowed for retryable failures (network, unconfirmed push)
        on top of the first attempt.
    backoff:
        Supplies ``delay_for(n)`` between retries.
    poll_interval_seconds / confirm_timeout_seconds:
        Cadence and bound of the post-push existence poll.
    clock / sleep:
        Injected for tests.
    """

    def __init__(
        self,
        registry: Registry,
        *,
        max_retries: int = 3,
        backoff: RetryPolicy | None = None,
        poll_interval_seconds: float = 5,
        confirm_timeout_seconds: float = 30,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._registry = registry
        self._max_retries = max_retries
        self._backoff = backoff or RetryPolicy()
        self._poll_interval = poll_interval_seconds
        self._confirm_timeout = confirm_timeout_seconds
        self._clock = clock
        self._sleep = sleep

    def publish(self, artifact: Artifact) -> Artifact:
        """Push *artifact* and return a copy carrying its registry digest."""
        retries = 0
        while True:
            try:
                digest = self._registry.push(artifact.reference)
                self._confirm(artifact.reference)
                published = artifact.with_digest(digest)
                logger.info("published %s as %s", artifact.reference, digest)
                return published
            except PublishError as exc:
                if not exc.retryable or retries >= self._max_retries:
                    logger.error("publish of %s failed: %s", artifact.reference, exc)
                    raise
                delay = self._backoff.delay_for(retries)
                retries += 1
                logger.warning(
                    "publish of %s failed (%s), retry %d/%d in %.1fs",
                    artifact.reference, exc.reason.value, retries, self._max_retries, delay,
                )
                if delay:
                    self._sleep(delay)

    def _confirm(self, image_tag: str) -> None:
        """Block until *image_tag* is queryable or the confirm timeout passes."""
        deadline = self._clock() + self._confirm_timeout
        while True:
            if self._registry.exists(image_tag):
                return
            if self._clock() >= deadline:
                raise PublishError(
                    PublishFailureReason.NOT_CONFIRMED,
                    f"{image_tag} not queryable after {self._confirm_timeout}s",
                )
            self._sleep(self._poll_interval)

    def lookup(self, artifact: Artifact) -> Artifact | None:
        """Return *artifact* with its digest if the registry still holds the tag.

        Returns ``None`` when the tag is gone or now points at a different
        digest than the one recorded.
        """
        if not self._registry.exists(artifact.reference):
            return None
        digest = self._registry.digest(artifact.reference)
        if digest is None:
            return None
        if artifact.digest and artifact.digest != digest:
            logger.warning(
                "%s now resolves to %s, recorded %s; ignoring cached artifact",
                artifact.reference, digest, artifact.digest,
            )
            return None
        return artifact.with_digest(digest)
