"""Per-detection matching state machine: search, pre-filter, narrow, persist."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

from shelfmatch.catalog.client import CatalogSearch
from shelfmatch.config import MatchingSettings
from shelfmatch.errors import PersistenceError, ShelfmatchError
from shelfmatch.matching.prefilter import PrefilterScorer
from shelfmatch.matching.tiebreak import TieBreaker
from shelfmatch.pipeline.narrowing import (
    VARIANTS,
    AIFilterNarrowing,
    NarrowingStrategy,
    PipelineVariant,
    VisualOnlyNarrowing,
)
from shelfmatch.storage.store import MatchStore
from shelfmatch.types import CatalogProduct, Detection, SelectionMethod, later_stage
from shelfmatch.vision.comparison import ComparisonService

logger = logging.getLogger(__name__)

ItemStatus = Literal["success", "no_match", "error"]
StageCallback = Callable[[str, str], None]


@dataclass(frozen=True)
class ItemOutcome:
    """Terminal result of processing one detection."""

    detection_id: str
    detection_index: int
    status: ItemStatus
    reason: str | None = None
    selected_key: str | None = None
    selection_method: SelectionMethod | None = None
    confidence: float | None = None
    searched: int = 0
    prefiltered: int = 0
    narrowed: int = 0
    error: str | None = None

    @property
    def message(self) -> str:
        if self.status == "success":
            return f"Matched {self.selected_key} via {self.selection_method} ({(self.confidence or 0.0):.2f})"
        if self.status == "no_match":
            return f"No match: {self.reason}"
        return f"Error: {self.error or self.reason}"


def input_error(detection: Detection) -> str | None:
    """Reason a detection cannot be matched at all, or None when it can."""
    if detection.is_product is False:
        return "not_a_product"
    if detection.visibility == "none":
        return "not_visible"
    if not detection.attributes.has_search_terms():
        return "no_search_attributes"
    return None


class MatchPipeline:
    """Run one detection through the matching funnel and persist every stage."""

    def __init__(
        self,
        catalog: CatalogSearch,
        comparator: ComparisonService,
        store: MatchStore,
        settings: MatchingSettings | None = None,
    ) -> None:
        self.catalog = catalog
        self.comparator = comparator
        self.store = store
        self.settings = settings or MatchingSettings()
        self.scorer = PrefilterScorer.from_settings(self.settings)
        self.tiebreaker = TieBreaker(comparator, pass_threshold=self.settings.visual_pass_threshold)
        self.strategies: dict[str, NarrowingStrategy] = {
            "ai_filter": AIFilterNarrowing(comparator, self.tiebreaker),
            "visual_only": VisualOnlyNarrowing(
                self.tiebreaker,
                single_candidate_confidence=self.settings.single_candidate_confidence,
            ),
        }

    def close(self) -> None:
        """Release the collaborators' HTTP clients."""
        for collaborator in (self.catalog, self.comparator):
            close = getattr(collaborator, "close", None)
            if callable(close):
                close()

    def process(
        self,
        detection: Detection,
        variant: PipelineVariant = "visual_only",
        on_stage: StageCallback | None = None,
    ) -> ItemOutcome:
        """Process one detection to exactly one terminal outcome.

        Collaborator and persistence failures become an ``error`` outcome; they are
        never retried here.
        """
        if variant not in VARIANTS:
            raise ValueError(f"Unknown pipeline variant: {variant}")

        skip = input_error(detection)
        if skip is not None:
            logger.info("%s: skipped (%s)", detection.detection_id, skip)
            return ItemOutcome(
                detection_id=detection.detection_id,
                detection_index=detection.detection_index,
                status="no_match",
                reason=skip,
            )

        def notify(stage: str, message: str) -> None:
            logger.debug("%s [%s] %s", detection.detection_id, stage, message)
            if on_stage is not None:
                on_stage(stage, message)

        try:
            outcome = self._run(detection, variant, notify)
        except PersistenceError as exc:
            logger.exception("%s: persistence failed", detection.detection_id)
            return self._error(detection, exc)
        except ShelfmatchError as exc:
            logger.error("%s: %s", detection.detection_id, exc, exc_info=True)
            return self._error(detection, exc)

        logger.info("%s: %s", detection.detection_id, outcome.message)
        return outcome

    @staticmethod
    def _error(detection: Detection, exc: Exception) -> ItemOutcome:
        return ItemOutcome(
            detection_id=detection.detection_id,
            detection_index=detection.detection_index,
            status="error",
            reason=type(exc).__name__,
            error=str(exc),
        )

    def _write(self, detection_id: str, stages: dict[str, str], rows: dict[str, dict[str, Any]]) -> None:
        """Persist candidate rows, never moving a stored stage backwards."""
        payload: list[dict[str, Any]] = []
        for key, fields in rows.items():
            row = {"candidate_key": key, **fields}
            if "stage" in row:
                requested = row["stage"]
                row["stage"] = later_stage(stages.get(key), requested)
                if row["stage"] != requested:
                    # Keep the rationale written by the later stage.
                    row.pop("rationale", None)
            payload.append(row)
        self.store.upsert_candidates(detection_id, payload)
        for row in payload:
            if "stage" in row:
                stages[row["candidate_key"]] = row["stage"]

    @staticmethod
    def _dedupe(products: list[CatalogProduct]) -> list[CatalogProduct]:
        seen: set[str] = set()
        unique: list[CatalogProduct] = []
        for product in products:
            if product.key in seen:
                continue
            seen.add(product.key)
            unique.append(product)
        return unique

    def _run(self, detection: Detection, variant: str, notify: StageCallback) -> ItemOutcome:
        detection_id = detection.detection_id
        if self.store.get_detection(detection_id) is None:
            self.store.upsert_detection(detection)
        stages = self.store.candidate_stages(detection_id)

        def outcome(status: ItemStatus, **kwargs: Any) -> ItemOutcome:
            return ItemOutcome(
                detection_id=detection_id,
                detection_index=detection.detection_index,
                status=status,
                **kwargs,
            )

        notify("search", "Searching catalog")
        result = self.catalog.search(detection.attributes, cap=self.settings.search_result_cap)
        products = self._dedupe(result.products)[: self.settings.search_result_cap]
        self._write(
            detection_id,
            stages,
            {
                product.key: {
                    "stage": "searched",
                    "rank": product.rank,
                    "name": product.title,
                    "brand": product.brand,
                    "size": product.size,
                    "category": product.category,
                    "image_url": product.image_url,
                    "search_term": result.term,
                }
                for product in products
            },
        )
        if not products:
            return outcome("no_match", reason="no_search_results")

        notify("pre_filter", f"Pre-filtering {len(products)} candidates")
        survivors = self.scorer.filter(products, detection.attributes, detection.store_name)
        self._write(
            detection_id,
            stages,
            {
                item.product.key: {
                    "stage": "pre_filtered",
                    "prefilter_score": item.score,
                    "rationale": "; ".join(item.result.reasons) or None,
                }
                for item in survivors
            },
        )
        counts = {"searched": len(products), "prefiltered": len(survivors)}
        if not survivors:
            return outcome("no_match", reason="no_prefilter_match", **counts)

        comparable = [item for item in survivors if item.product.image_url]
        if len(comparable) < len(survivors):
            logger.warning(
                "%s: %d pre-filter survivors have no reference image and were not compared",
                detection_id,
                len(survivors) - len(comparable),
            )
        if not comparable:
            return outcome("no_match", reason="no_comparable_candidates", **counts)

        notify("narrow", f"Narrowing {len(comparable)} candidates ({variant})")
        narrowed = self.strategies[variant].narrow(detection, comparable)
        if narrowed.updates:
            self._write(detection_id, stages, narrowed.updates)
        counts["narrowed"] = narrowed.narrowed

        selection = narrowed.selection
        if selection is None:
            return outcome("no_match", reason=narrowed.reason or "no_match", **counts)

        if selection.confidence < self.settings.save_threshold:
            return outcome(
                "no_match",
                reason="low_confidence",
                selected_key=selection.candidate_key,
                selection_method=selection.method,
                confidence=selection.confidence,
                **counts,
            )

        notify("persist", f"Saving {selection.candidate_key}")
        self.store.resolve_detection(
            detection_id,
            selection.candidate_key,
            selection_method=selection.method,
            confidence=selection.confidence,
        )
        return outcome(
            "success",
            selected_key=selection.candidate_key,
            selection_method=selection.method,
            confidence=selection.confidence,
            **counts,
        )
