"""Shipyard error taxonomy.

Each pipeline step fails with exactly one of these.  ``BuildError`` and
``PublishError`` carry a reason enum so callers can decide retryability
without parsing messages.
"""

from __future__ import annotations

from enum import Enum


class ShipyardError(RuntimeError):
    """Base class for all Shipyard errors."""


class ConfigError(ShipyardError):
    """Malformed pipeline configuration.  Surfaced at startup; fatal."""


class BuildFailureReason(str, Enum):
    SYNTAX_ERROR = "syntax_error"
    DEPENDENCY_FAILURE = "dependency_failure"
    TIMEOUT = "timeout"
    SOURCE_NOT_FOUND = "source_not_found"


class BuildError(ShipyardError):
    """The build backend could not produce an image."""

    def __init__(self, reason: BuildFailureReason, message: str = "") -> None:
        self.reason = reason
        self.message = message or reason.value
        super().__init__(f"build failed ({reason.value}): {self.message}")

    @property
    def retryable(self) -> bool:
        return self.reason == BuildFailureReason.TIMEOUT


class PublishFailureReason(str, Enum):
    AUTH_FAILURE = "auth_failure"
    NETWORK_FAILURE = "network_failure"
    QUOTA_EXCEEDED = "quota_exceeded"
    NOT_CONFIRMED = "not_confirmed"  # push returned but the tag never became queryable


class PublishError(ShipyardError):
    """The registry rejected or lost the push."""

    def __init__(self, reason: PublishFailureReason, message: str = "") -> None:
        self.reason = reason
        self.message = message or reason.value
        super().__init__(f"publish failed ({reason.value}): {self.message}")

    @property
    def retryable(self) -> bool:
        return self.reason in (
            PublishFailureReason.NETWORK_FAILURE,
            PublishFailureReason.NOT_CONFIRMED,
        )


class TemplateError(ShipyardError):
    """A manifest template references a field that was not supplied."""


class RolloutError(ShipyardError):
    """The control plane rejected a manifest or could not report status."""


class RolloutInProgressError(RolloutError):
    """A rollout for the same deployment name is already in flight."""


class InvalidTransitionError(ShipyardError):
    """Raised when a requested rollout state transition is not valid."""
