"""Trigger Listener — turns source-change events into pipeline runs.

Only events whose branch matches the configured pattern start a run.
The pattern is a regular expression applied with ``re.search``, so
``^main$`` means exactly ``main``.  Everything else is dropped quietly:
no run is created and no error is raised.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from shipyard.core.orchestrator import PipelineOrchestrator, new_run_id
from shipyard.models.events import TriggerEvent
from shipyard.models.runs import PipelineRun

logger = logging.getLogger(__name__)


class TriggerListener:
    """Filters trigger events by branch and starts runs for the matches."""

    def __init__(
        self, orchestrator: PipelineOrchestrator, branch_pattern: str | None = None
    ) -> None:
        self._orchestrator = orchestrator
        pattern = branch_pattern if branch_pattern is not None else orchestrator.config.branch_pattern
        self._pattern = re.compile(pattern)

    @property
    def pattern(self) -> str:
        return self._pattern.pattern

    def matches(self, branch: str) -> bool:
        return self._pattern.search(branch) is not None

    def handle(self, event: TriggerEvent) -> PipelineRun | None:
        """Start a run for *event* if its branch matches, else return None."""
        if not self.matches(event.branch):
            logger.debug(
                "dropping %s on %s: branch does not match %s",
                event.source_ref, event.branch, self.pattern,
            )
            return None
        return self._orchestrator.run(event.source_ref, event.branch, run_id=new_run_id())

    def handle_payload(self, payload: dict[str, Any]) -> PipelineRun | None:
        """Validate a raw ``{"sourceRef": ..., "branch": ...}`` mapping and handle it."""
        return self.handle(TriggerEvent.model_validate(payload))
