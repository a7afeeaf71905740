"""kubectl-backed cluster control plane.

``apply`` pipes the rendered manifest body as JSON into ``kubectl apply``
and, once the Deployment controller has observed it, reads back the
revision it assigned.  ``get_status`` folds Deployment status and the
restart counts of the current revision's pods into a ``ControlPlaneStatus``.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from typing import Any

from shipyard.backends._process import CommandTimeout, run_command
from shipyard.core.errors import RolloutError
from shipyard.models.deployment import ControlPlaneStatus, Manifest, RevisionStatus

logger = logging.getLogger(__name__)

_REVISION_ANNOTATION = "deployment.kubernetes.io/revision"


def status_from_deployment(
    deployment: dict[str, Any], restart_count: int = 0
) -> ControlPlaneStatus:
    """Translate a Deployment object (``kubectl get -o json``) into a status."""
    metadata = deployment.get("metadata", {})
    spec = deployment.get("spec", {})
    status = deployment.get("status", {})

    revision = _revision_of(deployment)
    desired = int(spec.get("replicas", 1))
    ready = int(status.get("readyReplicas", 0))
    updated = int(status.get("updatedReplicas", 0))
    observed = int(status.get("observedGeneration", 0))
    generation = int(metadata.get("generation", 0))

    state = RevisionStatus.PROGRESSING
    for condition in status.get("conditions", []):
        if (
            condition.get("type") == "Progressing"
            and condition.get("reason") == "ProgressDeadlineExceeded"
        ):
            state = RevisionStatus.FAILED
    if (
        state != RevisionStatus.FAILED
        and observed >= generation
        and updated >= desired
        and ready >= desired
    ):
        state = RevisionStatus.AVAILABLE

    # Old-revision pods still count as ready mid-rollout; report only updated ones.
    return ControlPlaneStatus(
        revision=revision,
        ready_replicas=min(ready, updated),
        desired_replicas=desired,
        state=state,
        restart_count=restart_count,
    )


class KubectlControlPlane:
    """Control plane driven through the ``kubectl`` CLI.

    Parameters
    ----------
    namespace:
        Namespace all deployments live in.
    context:
        Optional kubeconfig context name.
    command_timeout_seconds:
        Bound on each ``kubectl`` call, and on waiting for the Deployment
        controller to observe an applied manifest.
    settle_interval_seconds:
        Delay between reads while waiting for that observation.
    clock / sleep:
        Injected for tests.
    """

    def __init__(
        self,
        namespace: str = "default",
        context: str | None = None,
        command_timeout_seconds: float = 60,
        settle_interval_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._namespace = namespace
        self._context = context
        self._timeout = command_timeout_seconds
        self._settle_interval = settle_interval_seconds
        self._clock = clock
        self._sleep = sleep

    def _kubectl(self, *args: str, input_text: str | None = None) -> str:
        base = ["kubectl", "--namespace", self._namespace]
        if self._context:
            base += ["--context", self._context]
        try:
            result = run_command(*base, *args, input_text=input_text, timeout=self._timeout)
        except CommandTimeout as exc:
            raise RolloutError(str(exc)) from exc
        if result.returncode != 0:
            raise RolloutError(f"kubectl {args[0]} failed: {result.stderr.strip()}")
        return result.stdout

    def _get_deployment(self, deployment_name: str) -> dict[str, Any]:
        return json.loads(self._kubectl("get", "deployment", deployment_name, "-o", "json"))

    def apply(self, manifest: Manifest) -> int:
        self._kubectl("apply", "-f", "-", input_text=json.dumps(manifest.body))
        deployment = self._await_observed(manifest.deployment_name)
        revision = _revision_of(deployment)
        logger.info("applied %s as revision %d", manifest.deployment_name, revision)
        return revision

    def _await_observed(self, deployment_name: str) -> dict[str, Any]:
        """Read the Deployment until its controller has caught up with the spec.

        The revision annotation is written by the Deployment controller, so
        it is stale until ``observedGeneration`` reaches ``generation``.
        """
        deadline = self._clock() + self._timeout
        while True:
            deployment = self._get_deployment(deployment_name)
            generation = int(deployment.get("metadata", {}).get("generation", 0))
            observed = int(deployment.get("status", {}).get("observedGeneration", 0))
            if observed >= generation:
                return deployment
            if self._clock() >= deadline:
                raise RolloutError(
                    f"deployment {deployment_name} generation {generation} not observed "
                    f"after {self._timeout:g}s (observed {observed})"
                )
            self._sleep(self._settle_interval)

    def get_status(self, deployment_name: str) -> ControlPlaneStatus:
        deployment = self._get_deployment(deployment_name)
        return status_from_deployment(deployment, self._restart_count(deployment))

    def _restart_count(self, deployment: dict[str, Any]) -> int:
        """Highest container restart count among pods of the current revision.

        Pods are matched through the ``pod-template-hash`` of the ReplicaSet
        carrying the Deployment's revision, so old-revision pods and their
        restart history are not counted.
        """
        labels = deployment.get("spec", {}).get("selector", {}).get("matchLabels", {})
        if not labels:
            return 0
        selector = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        revision = str(_revision_of(deployment))

        replica_sets = json.loads(self._kubectl("get", "replicasets", "-l", selector, "-o", "json"))
        template_hash = None
        for replica_set in replica_sets.get("items", []):
            metadata = replica_set.get("metadata", {})
            if metadata.get("annotations", {}).get(_REVISION_ANNOTATION) == revision:
                template_hash = metadata.get("labels", {}).get("pod-template-hash")
                break
        if template_hash is None:
            return 0

        pods = json.loads(
            self._kubectl(
                "get", "pods", "-l", f"{selector},pod-template-hash={template_hash}", "-o", "json"
            )
        )
        highest = 0
        for pod in pods.get("items", []):
            for container in pod.get("status", {}).get("containerStatuses", []):
                highest = max(highest, int(container.get("restartCount", 0)))
        return highest


def _revision_of(deployment: dict[str, Any]) -> int:
    return int(deployment.get("metadata", {}).get("annotations", {}).get(_REVISION_ANNOTATION, 0))
