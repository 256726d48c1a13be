"""Cheap textual pre-filter applied before any comparison-service call.

Each catalog hit is scored against the extracted attributes with three independent
sub-scores (brand, size, retailer) combined by fixed weights. Sub-scores that cannot
be computed because metadata is missing on either side get a neutral value rather
than zero, so sparse catalog entries are not penalized for what they do not say.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from shelfmatch.config import MatchingSettings
from shelfmatch.matching.text import (
    retailer_from_store_name,
    retailers_from_urls,
    size_similarity,
    string_similarity,
)
from shelfmatch.types import CatalogProduct, ExtractedAttributes, clean_text

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PrefilterScore:
    score: float
    passed: bool
    brand: float | None
    size: float | None
    retailer: float | None
    reasons: tuple[str, ...] = ()


@dataclass(frozen=True)
class ScoredProduct:
    product: CatalogProduct
    result: PrefilterScore

    @property
    def score(self) -> float:
        return self.result.score


@dataclass
class PrefilterScorer:
    """Weighted brand/size/retailer scorer with a pass threshold."""

    threshold: float = 0.85
    brand_weight: float = 0.35
    size_weight: float = 0.35
    retailer_weight: float = 0.30
    neutral: float = 0.5

    @classmethod
    def from_settings(cls, settings: MatchingSettings) -> "PrefilterScorer":
        return cls(
            threshold=settings.prefilter_threshold,
            brand_weight=settings.brand_weight,
            size_weight=settings.size_weight,
            retailer_weight=settings.retailer_weight,
            neutral=settings.neutral_subscore,
        )

    @staticmethod
    def brand_score(attributes: ExtractedAttributes, product: CatalogProduct) -> float | None:
        brand = clean_text(attributes.brand)
        if brand is None:
            return None
        fields = [product.brand, product.manufacturer, product.title]
        if not any(clean_text(value) for value in fields):
            return None
        return max(string_similarity(brand, value) for value in fields)

    @staticmethod
    def size_score(attributes: ExtractedAttributes, product: CatalogProduct) -> float | None:
        return size_similarity(clean_text(attributes.size), clean_text(product.size))

    @staticmethod
    def retailer_score(retailer: str | None, product: CatalogProduct) -> float | None:
        if retailer is None or not product.source_urls:
            return None
        return 1.0 if retailer in retailers_from_urls(product.source_urls) else 0.0

    def score(
        self,
        attributes: ExtractedAttributes,
        product: CatalogProduct,
        retailer: str | None = None,
    ) -> PrefilterScore:
        """Score one candidate; missing sub-scores count as neutral."""
        brand = self.brand_score(attributes, product)
        size = self.size_score(attributes, product)
        retail = self.retailer_score(retailer, product)

        total = (
            self.brand_weight * (self.neutral if brand is None else brand)
            + self.size_weight * (self.neutral if size is None else size)
            + self.retailer_weight * (self.neutral if retail is None else retail)
        )
        total = round(min(1.0, max(0.0, total)), 6)

        reasons: list[str] = []
        if brand is not None and brand > 0.5:
            reasons.append(f"Brand match: {brand * 100:.0f}%")
        if size is not None and size > 0.5:
            reasons.append(f"Size match: {attributes.size} ~ {product.size}")
        if retail:
            reasons.append(f"Retailer match: {retailer}")

        return PrefilterScore(
            score=total,
            passed=total >= self.threshold,
            brand=brand,
            size=size,
            retailer=retail,
            reasons=tuple(reasons),
        )

    def filter(
        self,
        products: list[CatalogProduct],
        attributes: ExtractedAttributes,
        store_name: str | None = None,
    ) -> list[ScoredProduct]:
        """Return passing products, best score first, ties in catalog rank order."""
        retailer = retailer_from_store_name(store_name)
        scored = [ScoredProduct(product=p, result=self.score(attributes, p, retailer)) for p in products]
        survivors = [item for item in scored if item.result.passed]
        survivors.sort(key=lambda item: (-item.score, item.product.rank, item.product.key))
        logger.debug(
            "pre-filter kept %d/%d candidates (threshold=%.2f, retailer=%s)",
            len(survivors),
            len(products),
            self.threshold,
            retailer,
        )
        return survivors
