"""Narrowing strategies that reduce pre-filter survivors to at most one selection."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from shelfmatch.errors import ComparisonError
from shelfmatch.matching.prefilter import ScoredProduct
from shelfmatch.matching.tiebreak import TieBreaker
from shelfmatch.types import Detection, SelectionMethod
from shelfmatch.vision.comparison import ComparisonService, ReferenceCandidate

logger = logging.getLogger(__name__)

PipelineVariant = Literal["ai_filter", "visual_only"]
VARIANTS: tuple[str, ...] = ("ai_filter", "visual_only")


@dataclass(frozen=True)
class Selection:
    candidate_key: str
    method: SelectionMethod
    confidence: float
    rationale: str = ""


@dataclass
class NarrowingResult:
    """Outcome of one narrowing pass.

    ``updates`` maps candidate_key to the candidate fields the pass produced,
    including the stage each candidate reached. The orchestrator persists them.
    """

    selection: Selection | None
    narrowed: int
    reason: str | None = None
    updates: dict[str, dict[str, Any]] = field(default_factory=dict)


class NarrowingStrategy(Protocol):
    def narrow(self, detection: Detection, survivors: list[ScoredProduct]) -> NarrowingResult:
        """Reduce comparable survivors (all with a reference image) to a selection."""


def reference_candidate(item: ScoredProduct) -> ReferenceCandidate:
    product = item.product
    return ReferenceCandidate(
        key=product.key,
        name=product.title,
        image_url=product.image_url or "",
        brand=product.brand,
        size=product.size,
        category=product.category,
    )


def _crop(detection: Detection) -> bytes:
    if not detection.crop:
        raise ComparisonError(f"detection {detection.detection_id} has no crop image")
    return detection.crop


def _tie_break(
    tiebreaker: TieBreaker,
    detection: Detection,
    candidates: list[ReferenceCandidate],
    updates: dict[str, dict[str, Any]],
) -> NarrowingResult:
    result = tiebreaker.resolve(_crop(detection), detection.attributes, candidates)
    for score in result.scores:
        if score.candidate_key == result.selected_key:
            verdict = "identical"
        elif score.passed:
            verdict = "close_variant"
        else:
            verdict = "rejected"
        row = updates.setdefault(score.candidate_key, {})
        row.update(
            stage="visual_matched",
            verdict=verdict,
            visual_similarity=score.visual_similarity,
            rationale=result.rationale or None,
        )

    passed = sum(1 for score in result.scores if score.passed)
    if result.selected_key is None:
        return NarrowingResult(selection=None, narrowed=passed, reason="no_visual_match", updates=updates)
    selection = Selection(
        candidate_key=result.selected_key,
        method="tie_break",
        confidence=result.confidence,
        rationale=result.rationale,
    )
    return NarrowingResult(selection=selection, narrowed=passed, updates=updates)


class AIFilterNarrowing:
    """Pairwise verdict per survivor, then a tie-break among the kept ones."""

    def __init__(self, comparator: ComparisonService, tiebreaker: TieBreaker) -> None:
        self.comparator = comparator
        self.tiebreaker = tiebreaker

    def narrow(self, detection: Detection, survivors: list[ScoredProduct]) -> NarrowingResult:
        updates: dict[str, dict[str, Any]] = {}
        kept: list[tuple[ReferenceCandidate, float, str]] = []
        crop = _crop(detection)
        for item in survivors:
            candidate = reference_candidate(item)
            comparison = self.comparator.compare(crop, candidate.image_url)
            updates[candidate.key] = {
                "stage": "ai_filtered",
                "verdict": comparison.verdict,
                "ai_confidence": comparison.confidence,
                "visual_similarity": comparison.visual_similarity,
                "rationale": comparison.reason or None,
            }
            if comparison.verdict != "rejected":
                kept.append((candidate, comparison.confidence, comparison.reason))

        logger.debug("%s: AI filter kept %d/%d", detection.detection_id, len(kept), len(survivors))
        if not kept:
            return NarrowingResult(selection=None, narrowed=0, reason="ai_filter_rejected_all", updates=updates)
        if len(kept) == 1:
            candidate, confidence, reason = kept[0]
            selection = Selection(candidate_key=candidate.key, method="auto_select", confidence=confidence, rationale=reason)
            return NarrowingResult(selection=selection, narrowed=1, updates=updates)
        return _tie_break(self.tiebreaker, detection, [candidate for candidate, _, _ in kept], updates)


class VisualOnlyNarrowing:
    """Skip pairwise filtering; one multi-candidate call when two or more survive."""

    def __init__(self, tiebreaker: TieBreaker, single_candidate_confidence: float = 0.95) -> None:
        self.tiebreaker = tiebreaker
        self.single_candidate_confidence = single_candidate_confidence

    def narrow(self, detection: Detection, survivors: list[ScoredProduct]) -> NarrowingResult:
        candidates = [reference_candidate(item) for item in survivors]
        if not candidates:
            return NarrowingResult(selection=None, narrowed=0, reason="no_comparable_candidates")
        if len(candidates) == 1:
            selection = Selection(
                candidate_key=candidates[0].key,
                method="auto_select",
                confidence=self.single_candidate_confidence,
                rationale="Only one candidate survived the pre-filter",
            )
            return NarrowingResult(selection=selection, narrowed=1)
        return _tie_break(self.tiebreaker, detection, candidates, {})
