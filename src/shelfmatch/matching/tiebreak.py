"""Resolve several visually plausible candidates down to at most one."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from shelfmatch.errors import ComparisonResponseError
from shelfmatch.matching.text import sizes_equivalent, string_similarity
from shelfmatch.types import ExtractedAttributes, clean_text
from shelfmatch.vision.comparison import ComparisonService, ReferenceCandidate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CandidateVisualScore:
    candidate_key: str
    visual_similarity: float
    passed: bool


@dataclass(frozen=True)
class TieBreakResult:
    scores: list[CandidateVisualScore]
    selected_key: str | None
    confidence: float
    rationale: str


def metadata_agreement(attributes: ExtractedAttributes, candidate: ReferenceCandidate) -> float:
    """How well a candidate's catalog metadata agrees with the extracted attributes.

    Brand and size weigh 1.0 each, flavor 0.5. Sizes are compared after unit
    conversion with a 5% tolerance; flavor is looked up in the candidate name.
    """
    total = 0.0
    brand = clean_text(attributes.brand)
    if brand is not None:
        total += max(string_similarity(brand, candidate.brand), string_similarity(brand, candidate.name) * 0.8)
    size = clean_text(attributes.size)
    if size is not None and sizes_equivalent(size, clean_text(candidate.size)):
        total += 1.0
    flavor = clean_text(attributes.flavor)
    if flavor is not None:
        total += 0.5 * string_similarity(flavor, candidate.name)
    return total


class TieBreaker:
    """One multi-candidate comparison call followed by a local decision rule."""

    def __init__(self, comparator: ComparisonService, pass_threshold: float = 0.7) -> None:
        self.comparator = comparator
        self.pass_threshold = pass_threshold

    def resolve(
        self,
        crop: bytes,
        attributes: ExtractedAttributes,
        candidates: list[ReferenceCandidate],
    ) -> TieBreakResult:
        if not candidates:
            return TieBreakResult(scores=[], selected_key=None, confidence=0.0, rationale="No candidates provided")

        response = self.comparator.select_best(crop, attributes, candidates)
        by_key = {candidate.key: candidate for candidate in candidates}

        similarity: dict[str, float] = {}
        for item in response.candidate_scores:
            if item.candidate_key not in by_key:
                raise ComparisonResponseError(f"unknown candidate key in response: {item.candidate_key!r}")
            similarity[item.candidate_key] = item.visual_similarity
        missing = [key for key in by_key if key not in similarity]
        if missing:
            raise ComparisonResponseError(f"response is missing scores for candidates: {missing}")
        if response.selected_key is not None and response.selected_key not in by_key:
            raise ComparisonResponseError(f"unknown selected key in response: {response.selected_key!r}")

        scores = [
            CandidateVisualScore(
                candidate_key=candidate.key,
                visual_similarity=similarity[candidate.key],
                passed=similarity[candidate.key] >= self.pass_threshold,
            )
            for candidate in candidates
        ]
        passers = [score for score in scores if score.passed]

        if not passers:
            return TieBreakResult(
                scores=scores,
                selected_key=None,
                confidence=0.0,
                rationale=response.rationale or "No candidate reached the visual similarity threshold",
            )

        if len(passers) == 1:
            winner = passers[0]
            rationale = response.rationale or "Only one candidate passed the visual similarity threshold"
        else:
            winner = self._break_tie(attributes, passers, by_key, response.selected_key)
            rationale = response.rationale
            if winner.candidate_key != response.selected_key:
                rationale = (
                    f"{len(passers)} candidates passed visually; metadata agreement favored "
                    f"{winner.candidate_key}. {response.rationale}"
                ).strip()

        if winner.candidate_key == response.selected_key:
            confidence = response.confidence
        else:
            confidence = winner.visual_similarity
        logger.debug(
            "tie-break picked %s among %d passers (confidence %.2f)",
            winner.candidate_key,
            len(passers),
            confidence,
        )
        return TieBreakResult(scores=scores, selected_key=winner.candidate_key, confidence=confidence, rationale=rationale)

    @staticmethod
    def _break_tie(
        attributes: ExtractedAttributes,
        passers: list[CandidateVisualScore],
        by_key: dict[str, ReferenceCandidate],
        service_pick: str | None,
    ) -> CandidateVisualScore:
        # Highest metadata agreement wins; the service's pick wins equal agreement,
        # then visual similarity, then candidate order.
        ranked = sorted(
            enumerate(passers),
            key=lambda pair: (
                -metadata_agreement(attributes, by_key[pair[1].candidate_key]),
                pair[1].candidate_key != service_pick,
                -pair[1].visual_similarity,
                pair[0],
            ),
        )
        return ranked[0][1]
