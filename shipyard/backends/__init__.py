"""External collaborator backends: protocols plus local, docker, and kubectl implementations."""

from shipyard.backends.base import BuildBackend, ControlPlane, Registry
from shipyard.backends.local import LocalBuildBackend, LocalRegistry, SimulatedControlPlane

__all__ = [
    "BuildBackend",
    "ControlPlane",
    "Registry",
    "LocalBuildBackend",
    "LocalRegistry",
    "SimulatedControlPlane",
]
