"""Domain records shared across matching, storage and pipeline code."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

Stage = Literal["searched", "pre_filtered", "ai_filtered", "visual_matched"]
Verdict = Literal["identical", "close_variant", "rejected"]
Visibility = Literal["clear", "partial", "none"]
SelectionMethod = Literal["auto_select", "tie_break"]

STAGE_ORDER: dict[str, int] = {
    "searched": 0,
    "pre_filtered": 1,
    "ai_filtered": 2,
    "visual_matched": 3,
}

UNKNOWN_VALUES = {"", "unknown", "n/a", "none"}


def clean_text(value: str | None) -> str | None:
    """Return stripped text, or None for empty and 'Unknown' placeholders."""
    if value is None:
        return None
    stripped = str(value).strip()
    if stripped.lower() in UNKNOWN_VALUES:
        return None
    return stripped


def later_stage(current: str | None, proposed: str) -> str:
    """Return whichever stage is further along the funnel."""
    if proposed not in STAGE_ORDER:
        raise ValueError(f"Unknown stage: {proposed}")
    if current is None:
        return proposed
    return proposed if STAGE_ORDER[proposed] >= STAGE_ORDER[current] else current


@dataclass(frozen=True)
class ExtractedAttributes:
    """Attributes read off the product packaging, each with its own confidence."""

    brand: str | None = None
    product_name: str | None = None
    category: str | None = None
    flavor: str | None = None
    size: str | None = None
    description: str | None = None
    brand_confidence: float | None = None
    product_name_confidence: float | None = None
    category_confidence: float | None = None
    flavor_confidence: float | None = None
    size_confidence: float | None = None
    description_confidence: float | None = None

    def has_search_terms(self) -> bool:
        return clean_text(self.brand) is not None or clean_text(self.product_name) is not None

    def search_term(self) -> str:
        parts = [clean_text(self.brand), clean_text(self.product_name), clean_text(self.flavor), clean_text(self.size)]
        return " ".join(part for part in parts if part)


@dataclass(frozen=True)
class Detection:
    """One product instance located on a shelf photograph."""

    detection_id: str
    image_id: str
    detection_index: int
    attributes: ExtractedAttributes = field(default_factory=ExtractedAttributes)
    visibility: Visibility = "clear"
    is_product: bool | None = None
    store_name: str | None = None
    crop: bytes | None = None
    fully_resolved: bool = False
    selected_candidate_key: str | None = None
    selection_method: SelectionMethod | None = None
    resolution_confidence: float | None = None
    resolved_at: str | None = None

    @property
    def label(self) -> str:
        return clean_text(self.attributes.brand) or f"Product #{self.detection_index}"


@dataclass(frozen=True)
class CatalogProduct:
    """One catalog search hit."""

    key: str
    title: str
    rank: int
    brand: str | None = None
    manufacturer: str | None = None
    size: str | None = None
    category: str | None = None
    image_url: str | None = None
    source_urls: tuple[str, ...] = ()


@dataclass(frozen=True)
class SearchResult:
    term: str
    products: list[CatalogProduct]


@dataclass(frozen=True)
class CandidateRecord:
    """Persisted candidate row keyed by (detection_id, candidate_key)."""

    detection_id: str
    candidate_key: str
    stage: Stage
    rank: int | None = None
    name: str | None = None
    brand: str | None = None
    size: str | None = None
    category: str | None = None
    image_url: str | None = None
    search_term: str | None = None
    prefilter_score: float | None = None
    verdict: Verdict | None = None
    ai_confidence: float | None = None
    visual_similarity: float | None = None
    rationale: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
