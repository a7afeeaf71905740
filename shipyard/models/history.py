"""Run history record model (append-only, hash-chained)."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class RecordKind(str, Enum):
    RUN = "run"  # a PipelineRun header snapshot (status, timestamps)
    STEP = "step"  # one StepResult


class HistoryEntry(BaseModel):
    """A single record in the run history.

    A run's current state is the latest RUN record plus every STEP record,
    in append order.
    """

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    kind: RecordKind
    payload: dict[str, Any]
    timestamp_utc: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    previous_entry_hash: str = ""
    entry_hash: str = ""
