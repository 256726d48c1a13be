"""Load upstream detections (attributes plus crop) from JSON documents."""

from __future__ import annotations

import base64
import binascii
import json
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from shelfmatch.types import Detection, ExtractedAttributes


class DetectionRecord(BaseModel):
    """One detection as produced by the detector and attribute extractor.

    The crop is given either inline (``crop_base64``) or as a file path resolved
    against the document's directory (``crop_path``).
    """

    model_config = ConfigDict(extra="ignore")

    detection_id: str = Field(min_length=1)
    image_id: str = Field(min_length=1)
    detection_index: int = Field(ge=0)
    brand: str | None = None
    product_name: str | None = None
    category: str | None = None
    flavor: str | None = None
    size: str | None = None
    description: str | None = None
    brand_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    product_name_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    category_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    flavor_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    size_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    description_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    visibility: Literal["clear", "partial", "none"] = "clear"
    is_product: bool | None = None
    store_name: str | None = None
    crop_path: str | None = None
    crop_base64: str | None = None

    @model_validator(mode="after")
    def _one_crop_source(self) -> "DetectionRecord":
        if self.crop_path and self.crop_base64:
            raise ValueError("give either crop_path or crop_base64, not both")
        return self

    def to_detection(self, base_dir: Path | None = None) -> Detection:
        crop: bytes | None = None
        if self.crop_base64:
            try:
                crop = base64.b64decode(self.crop_base64, validate=True)
            except binascii.Error as exc:
                raise ValueError(f"{self.detection_id}: crop_base64 is not valid base64") from exc
        elif self.crop_path:
            path = Path(self.crop_path)
            if not path.is_absolute() and base_dir is not None:
                path = base_dir / path
            crop = path.read_bytes()

        attributes = ExtractedAttributes(
            brand=self.brand,
            product_name=self.product_name,
            category=self.category,
            flavor=self.flavor,
            size=self.size,
            description=self.description,
            brand_confidence=self.brand_confidence,
            product_name_confidence=self.product_name_confidence,
            category_confidence=self.category_confidence,
            flavor_confidence=self.flavor_confidence,
            size_confidence=self.size_confidence,
            description_confidence=self.description_confidence,
        )
        return Detection(
            detection_id=self.detection_id,
            image_id=self.image_id,
            detection_index=self.detection_index,
            attributes=attributes,
            visibility=self.visibility,
            is_product=self.is_product,
            store_name=self.store_name,
            crop=crop,
        )


def parse_detections(payload: Any, base_dir: Path | None = None) -> list[Detection]:
    """Parse a list of detection records, or ``{"detections": [...]}``."""
    if isinstance(payload, dict):
        payload = payload.get("detections")
    if not isinstance(payload, list):
        raise ValueError("expected a list of detections or an object with a 'detections' list")
    out: list[Detection] = []
    for idx, item in enumerate(payload):
        try:
            record = DetectionRecord.model_validate(item)
        except ValidationError as exc:
            raise ValueError(f"detection #{idx} is invalid: {exc}") from exc
        out.append(record.to_detection(base_dir))
    return out


def load_detections(path: str | Path) -> list[Detection]:
    """Read detections from a JSON file; relative crop paths resolve next to it."""
    source = Path(path)
    with source.open("r", encoding="utf-8") as f:
        payload = json.load(f)
    return parse_detections(payload, base_dir=source.parent)
