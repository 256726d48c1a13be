"""Batch progress event schemas shared by the executor, API stream and CLI."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """UTC now helper for consistent timestamps."""
    return datetime.now(timezone.utc)


class EventBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["start", "progress", "complete"]
    batch_id: str
    timestamp: datetime = Field(default_factory=utc_now)


class StartEvent(EventBase):
    type: Literal["start"] = "start"
    total: int = Field(ge=1)
    concurrency: int = Field(ge=1)
    variant: Literal["ai_filter", "visual_only"]


class ProgressEvent(EventBase):
    """One item reached its terminal outcome; counters are running totals."""

    type: Literal["progress"] = "progress"
    detection_id: str
    detection_index: int
    status: Literal["success", "no_match", "error"]
    message: str
    processed: int = Field(ge=0)
    total: int = Field(ge=1)
    success: int = Field(ge=0)
    no_match: int = Field(ge=0)
    errors: int = Field(ge=0)


class ItemResult(BaseModel):
    detection_id: str
    detection_index: int
    status: Literal["success", "no_match", "error"]
    reason: str | None = None
    selected_key: str | None = None
    selection_method: Literal["auto_select", "tie_break"] | None = None
    confidence: float | None = None
    searched: int = 0
    prefiltered: int = 0
    narrowed: int = 0
    error: str | None = None


class CompleteEvent(EventBase):
    type: Literal["complete"] = "complete"
    total: int = Field(ge=1)
    processed: int = Field(ge=0)
    success: int = Field(ge=0)
    no_match: int = Field(ge=0)
    errors: int = Field(ge=0)
    cancelled: bool = False
    duration_seconds: float = Field(ge=0.0)
    results: list[ItemResult] = Field(default_factory=list)


BatchEvent = Annotated[StartEvent | ProgressEvent | CompleteEvent, Field(discriminator="type")]
