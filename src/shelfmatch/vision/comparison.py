"""Gemini-backed multimodal comparison service."""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import google.generativeai as genai
import httpx
from PIL import Image, UnidentifiedImageError

from shelfmatch.config import ComparisonSettings
from shelfmatch.errors import ComparisonError
from shelfmatch.types import ExtractedAttributes, clean_text
from shelfmatch.vision.responses import PairwiseComparison, SelectionResponse, parse_pairwise, parse_selection

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReferenceCandidate:
    """Catalog candidate as presented to the multi-candidate selection call."""

    key: str
    name: str
    image_url: str
    brand: str | None = None
    size: str | None = None
    category: str | None = None


class ComparisonService(Protocol):
    """Multimodal comparison interface used by the pipeline."""

    def compare(self, crop: bytes, reference_url: str) -> PairwiseComparison:
        """Compare the shelf crop with one catalog reference image."""

    def select_best(
        self,
        crop: bytes,
        attributes: ExtractedAttributes,
        candidates: list[ReferenceCandidate],
    ) -> SelectionResponse:
        """Score every candidate against the crop in one call and pick at most one."""


PAIRWISE_PROMPT = """You are a retail product matching expert.
Image 1 is a product cropped from a store shelf photo. Image 2 is a catalog product image.
Decide whether they show the same product.

Classify as:
- "identical": same package form, colors, logo and graphics, brand, product name, variant and size.
- "almost_same": same product with minor packaging differences (refresh, claim text, regional tweak).
- "not_match": different form, colors, variant, brand, or a significantly different size.

Return JSON only:
{"matchStatus": "identical" | "almost_same" | "not_match",
 "confidence": 0.0-1.0,
 "visualSimilarity": 0.0-1.0,
 "reason": "short explanation naming form, colors, visual elements and key differences"}
"""


def _value(text: str | None) -> str:
    return clean_text(text) or "Unknown"


def build_selection_prompt(
    attributes: ExtractedAttributes,
    candidates: list[ReferenceCandidate],
    pass_threshold: float,
) -> str:
    lines = [
        "You are a visual product matching expert. Select the best match among catalog candidates.",
        "",
        "SHELF PRODUCT (read from the packaging):",
        f"- Brand: {_value(attributes.brand)}",
        f"- Product Name: {_value(attributes.product_name)}",
        f"- Size: {_value(attributes.size)}",
        f"- Flavor: {_value(attributes.flavor)}",
        f"- Category: {_value(attributes.category)}",
        "",
        f"CANDIDATES ({len(candidates)}):",
    ]
    for idx, candidate in enumerate(candidates, start=2):
        lines.extend(
            [
                f"- Image {idx}: candidateKey \"{candidate.key}\"",
                f"  Product Name: {_value(candidate.name)}",
                f"  Brand: {_value(candidate.brand)}",
                f"  Size: {_value(candidate.size)}",
                f"  Category: {_value(candidate.category)}",
            ]
        )
    lines.extend(
        [
            "",
            "Image 1 is the shelf product. The remaining images are the candidates in the order listed.",
            "Step 1: score visualSimilarity (0.0-1.0) for EVERY candidate, focusing on logos, graphics,",
            f"package form and colors. A candidate passes at visualSimilarity >= {pass_threshold:.2f}.",
            "Step 2: if two or more pass, break the tie with brand, size and flavor using fuzzy matching:",
            "units and near-equal sizes count as equal, flavor wording may differ. Never pick a candidate",
            "that did not pass Step 1.",
            "",
            "Return JSON only, echoing candidateKey values exactly as given:",
            '{"selectedCandidateKey": "<candidateKey>" or null,',
            ' "confidence": 0.0-1.0,',
            ' "reasoning": "why the candidate was selected or why none was",',
            ' "brandMatch": true|false, "sizeMatch": true|false, "flavorMatch": true|false,',
            ' "candidateScores": [{"candidateKey": "<candidateKey>", "visualSimilarity": 0.0-1.0,',
            '                      "passedThreshold": true|false}]}',
        ]
    )
    return "\n".join(lines)


class GeminiComparator:
    """Thin wrapper around Gemini image+JSON prompting for product comparison."""

    def __init__(
        self,
        *,
        api_key: str,
        model_name: str,
        timeout_seconds: float = 60.0,
        image_timeout_seconds: float = 15.0,
        pass_threshold: float = 0.7,
        http_client: httpx.Client | None = None,
    ) -> None:
        if not api_key.strip():
            raise ComparisonError("Gemini API key is missing")
        genai.configure(api_key=api_key)
        self.model = genai.GenerativeModel(
            model_name,
            generation_config={"temperature": 0, "response_mime_type": "application/json"},
        )
        self.timeout_seconds = timeout_seconds
        self.pass_threshold = pass_threshold
        self._http = http_client or httpx.Client(timeout=image_timeout_seconds, follow_redirects=True)

    @classmethod
    def from_settings(cls, settings: ComparisonSettings, api_key: str, pass_threshold: float) -> "GeminiComparator":
        return cls(
            api_key=api_key,
            model_name=settings.model,
            timeout_seconds=settings.timeout_seconds,
            image_timeout_seconds=settings.image_timeout_seconds,
            pass_threshold=pass_threshold,
        )

    def close(self) -> None:
        self._http.close()

    @staticmethod
    def _load_image(data: bytes, label: str) -> Image.Image:
        try:
            with Image.open(io.BytesIO(data)) as image:
                return image.convert("RGB")
        except (UnidentifiedImageError, OSError) as exc:
            raise ComparisonError(f"cannot decode {label} image: {exc}") from exc

    def _fetch_image(self, url: str) -> Image.Image:
        try:
            response = self._http.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ComparisonError(f"failed to fetch reference image {url}: {exc}") from exc
        return self._load_image(response.content, url)

    def _generate(self, parts: list[Any]) -> str:
        try:
            response = self.model.generate_content(parts, request_options={"timeout": self.timeout_seconds})
        except Exception as exc:  # noqa: BLE001
            raise ComparisonError(f"gemini_request_failed: {exc}") from exc
        try:
            return response.text or ""
        except ValueError as exc:
            # Raised by the SDK when the candidate was blocked or has no text part.
            raise ComparisonError(f"gemini_empty_response: {exc}") from exc

    def compare(self, crop: bytes, reference_url: str) -> PairwiseComparison:
        images = [self._load_image(crop, "crop"), self._fetch_image(reference_url)]
        try:
            text = self._generate([PAIRWISE_PROMPT, *images])
        finally:
            for image in images:
                image.close()
        result = parse_pairwise(text)
        logger.debug("pairwise %s: %s (confidence %.2f)", reference_url, result.verdict, result.confidence)
        return result

    def select_best(
        self,
        crop: bytes,
        attributes: ExtractedAttributes,
        candidates: list[ReferenceCandidate],
    ) -> SelectionResponse:
        if not candidates:
            raise ComparisonError("select_best requires at least one candidate")
        images = [self._load_image(crop, "crop")]
        try:
            for candidate in candidates:
                images.append(self._fetch_image(candidate.image_url))
            prompt = build_selection_prompt(attributes, candidates, self.pass_threshold)
            text = self._generate([prompt, *images])
        finally:
            for image in images:
                image.close()
        return parse_selection(text)
