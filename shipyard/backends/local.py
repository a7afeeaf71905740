"""In-process backends for development, demos, and the ``local`` CLI mode.

None of these talk to a real build daemon, registry, or cluster:

- ``LocalBuildBackend`` accepts any non-blank source ref (or only those in
  an allowlist) and "builds" instantly.
- ``LocalRegistry`` assigns deterministic digests and can persist them to
  a JSON file so cache hits survive across CLI invocations.
- ``SimulatedControlPlane`` numbers revisions per deployment and ramps
  ready replicas up by a fixed step on every status poll.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path

from shipyard.core.hasher import sha256_hex
from shipyard.models.artifacts import BuildContext, BuildResult
from shipyard.models.deployment import ControlPlaneStatus, Manifest, RevisionStatus

logger = logging.getLogger(__name__)


class LocalBuildBackend:
    """Pretend build backend.

    Parameters
    ----------
    known_refs:
        If given, only these source refs resolve.  Otherwise any
        non-blank ref resolves.
    """

    def __init__(self, known_refs: set[str] | None = None) -> None:
        self._known_refs = set(known_refs) if known_refs is not None else None

    def resolve(self, source_ref: str) -> bool:
        if not source_ref.strip():
            return False
        return self._known_refs is None or source_ref in self._known_refs

    def build(self, source_ref: str, image_tag: str, context: BuildContext) -> BuildResult:
        logger.debug("local build of %s as %s from %s", source_ref, image_tag, context.context_dir)
        return BuildResult(
            image_tag=image_tag,
            success=True,
            log_ref=f"local://builds/{image_tag}",
        )


class LocalRegistry:
    """Registry stand-in with deterministic digests.

    Parameters
    ----------
    state_path:
        Optional JSON file mapping tag -> digest.  When set, pushes are
        persisted and reloaded on construction.
    """

    def __init__(self, state_path: Path | None = None) -> None:
        self._state_path = Path(state_path) if state_path is not None else None
        self._lock = threading.Lock()
        self._digests: dict[str, str] = {}
        if self._state_path is not None and self._state_path.exists():
            self._digests = json.loads(self._state_path.read_text(encoding="utf-8"))

    def push(self, image_tag: str) -> str:
        digest = f"sha256:{sha256_hex(image_tag.encode('utf-8'))}"
        with self._lock:
            self._digests[image_tag] = digest
            self._save()
        return digest

    def exists(self, image_tag: str) -> bool:
        with self._lock:
            return image_tag in self._digests

    def digest(self, image_tag: str) -> str | None:
        with self._lock:
            return self._digests.get(image_tag)

    def _save(self) -> None:
        if self._state_path is None:
            return
        self._state_path.parent.mkdir(parents=True, exist_ok=True)
        # Readers in other processes never see a half-written file.
        tmp_path = self._state_path.with_name(self._state_path.name + ".tmp")
        tmp_path.write_text(
            json.dumps(self._digests, indent=2, sort_keys=True), encoding="utf-8"
        )
        tmp_path.replace(self._state_path)


class SimulatedControlPlane:
    """Cluster stand-in that converges every applied manifest.

    Parameters
    ----------
    ramp:
        Ready replicas gained per ``get_status`` call.
    """

    def __init__(self, ramp: int = 1) -> None:
        self._ramp = max(1, ramp)
        self._lock = threading.Lock()
        self._revisions: dict[str, int] = {}
        self._desired: dict[str, int] = {}
        self._ready: dict[str, int] = {}

    def apply(self, manifest: Manifest) -> int:
        with self._lock:
            name = manifest.deployment_name
            revision = self._revisions.get(name, 0) + 1
            self._revisions[name] = revision
            self._desired[name] = manifest.replicas
            self._ready[name] = 0
        logger.debug("simulated apply of %s revision %d (%s)", name, revision, manifest.image)
        return revision

    def get_status(self, deployment_name: str) -> ControlPlaneStatus:
        with self._lock:
            desired = self._desired.get(deployment_name, 0)
            ready = min(desired, self._ready.get(deployment_name, 0) + self._ramp)
            self._ready[deployment_name] = ready
            return ControlPlaneStatus(
                revision=self._revisions.get(deployment_name, 0),
                ready_replicas=ready,
                desired_replicas=desired,
                state=(
                    RevisionStatus.AVAILABLE
                    if desired and ready >= desired
                    else RevisionStatus.PROGRESSING
                ),
            )
