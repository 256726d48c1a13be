"""API request models."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, model_validator

from shelfmatch.ingest.detections import DetectionRecord


class BatchRequest(BaseModel):
    detection_ids: list[str] | None = None
    image_id: str | None = None
    unresolved_only: bool = False
    concurrency: int | None = None
    variant: Literal["ai_filter", "visual_only"] = "visual_only"

    @model_validator(mode="after")
    def _one_selector(self) -> "BatchRequest":
        if self.detection_ids is None and self.image_id is None:
            raise ValueError("give detection_ids or image_id")
        if self.detection_ids is not None and self.image_id is not None:
            raise ValueError("give either detection_ids or image_id, not both")
        return self


class DetectionImportRequest(BaseModel):
    detections: list[DetectionRecord] = Field(min_length=1)


class ManualSelectionRequest(BaseModel):
    candidate_key: str = Field(min_length=1)
