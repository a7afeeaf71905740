"""Trigger event model."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class TriggerEvent(BaseModel):
    """A source-change notification: ``{"sourceRef": ..., "branch": ...}``."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    source_ref: str = Field(min_length=1)
    branch: str
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
