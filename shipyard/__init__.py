"""Shipyard: a push-to-deploy pipeline for containerised services.

Every push to a matching branch runs four steps in dependency order:

  - build    — turn a source ref into a tagged container image
  - publish  — push the image and pin it to its registry digest
  - render   — fill the deployment manifest template with the pinned image
  - rollout  — submit the manifest and wait for it to become available,
               rolling back to the last good revision if it does not

Runs and their step results are kept in an append-only, hash-chained
SQLite history.
"""

__version__ = "0.1.0"
__description__ = "Push-to-deploy pipeline: build, publish, render, roll out"

from shipyard.core.orchestrator import PipelineOrchestrator
from shipyard.core.trigger import TriggerListener
from shipyard.cli.app import app as cli

__all__ = ["PipelineOrchestrator", "TriggerListener", "cli", "__version__"]
