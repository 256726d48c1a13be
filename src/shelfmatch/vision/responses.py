"""Typed comparison-service responses.

The service answers in JSON. Both call shapes are validated into a discriminated
union; any shape mismatch raises ``ComparisonResponseError`` instead of falling back
to defaults.
"""

from __future__ import annotations

import json
import re
from typing import Annotated, Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from shelfmatch.errors import ComparisonResponseError

# Service vocabulary -> persisted verdict.
VERDICT_MAP = {
    "identical": "identical",
    "almost_same": "close_variant",
    "close_variant": "close_variant",
    "not_match": "rejected",
    "rejected": "rejected",
}


class PairwiseComparison(BaseModel):
    """Verdict for one crop vs one catalog reference image."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    kind: Literal["pairwise"] = "pairwise"
    verdict: Literal["identical", "close_variant", "rejected"] = Field(
        validation_alias=AliasChoices("verdict", "matchStatus", "match_status")
    )
    confidence: float = Field(ge=0.0, le=1.0)
    visual_similarity: float | None = Field(
        default=None,
        ge=0.0,
        le=1.0,
        validation_alias=AliasChoices("visual_similarity", "visualSimilarity"),
    )
    reason: str = Field(default="", validation_alias=AliasChoices("reason", "reasoning"))

    @field_validator("verdict", mode="before")
    @classmethod
    def _map_verdict(cls, value: Any) -> Any:
        if isinstance(value, str):
            return VERDICT_MAP.get(value.strip().lower(), value)
        return value


class CandidateScore(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    candidate_key: str = Field(validation_alias=AliasChoices("candidate_key", "candidateKey", "candidateId"))
    visual_similarity: float = Field(
        ge=0.0,
        le=1.0,
        validation_alias=AliasChoices("visual_similarity", "visualSimilarity"),
    )
    passed_threshold: bool | None = Field(
        default=None,
        validation_alias=AliasChoices("passed_threshold", "passedThreshold"),
    )


class SelectionResponse(BaseModel):
    """Per-candidate similarity plus at most one selected candidate."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    kind: Literal["selection"] = "selection"
    candidate_scores: list[CandidateScore] = Field(
        validation_alias=AliasChoices("candidate_scores", "candidateScores")
    )
    selected_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("selected_key", "selectedCandidateKey", "selectedKey"),
    )
    confidence: float = Field(ge=0.0, le=1.0)
    rationale: str = Field(default="", validation_alias=AliasChoices("rationale", "reasoning"))
    brand_match: bool | None = Field(default=None, validation_alias=AliasChoices("brand_match", "brandMatch"))
    size_match: bool | None = Field(default=None, validation_alias=AliasChoices("size_match", "sizeMatch"))
    flavor_match: bool | None = Field(default=None, validation_alias=AliasChoices("flavor_match", "flavorMatch"))


ComparisonResponse = Annotated[PairwiseComparison | SelectionResponse, Field(discriminator="kind")]

_RESPONSE_ADAPTER: TypeAdapter[PairwiseComparison | SelectionResponse] = TypeAdapter(ComparisonResponse)


def extract_json(raw_text: str) -> dict[str, Any]:
    """Pull one JSON object out of model output, tolerating markdown fences."""
    text = (raw_text or "").strip()
    if not text:
        raise ComparisonResponseError("empty response from comparison service")
    if text.startswith("```"):
        lines = text.splitlines()[1:]
        if lines and lines[-1].strip().startswith("```"):
            lines = lines[:-1]
        text = "\n".join(lines).strip()
        if text.lower().startswith("json"):
            text = text[4:].strip()
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        match = re.search(r"\{.*\}", text, re.DOTALL)
        if match is None:
            raise ComparisonResponseError(f"no JSON object in response: {text[:120]!r}") from None
        try:
            payload = json.loads(match.group(0))
        except json.JSONDecodeError as exc:
            raise ComparisonResponseError(f"malformed JSON in response: {exc}") from exc
    if not isinstance(payload, dict):
        raise ComparisonResponseError(f"expected JSON object, got {type(payload).__name__}")
    return payload


def parse_response(kind: Literal["pairwise", "selection"], payload: dict[str, Any]) -> PairwiseComparison | SelectionResponse:
    """Validate a decoded payload as the given response kind."""
    try:
        return _RESPONSE_ADAPTER.validate_python({**payload, "kind": kind})
    except ValidationError as exc:
        raise ComparisonResponseError(f"invalid {kind} response: {exc.errors(include_url=False)}") from exc


def parse_pairwise(raw_text: str) -> PairwiseComparison:
    result = parse_response("pairwise", extract_json(raw_text))
    if not isinstance(result, PairwiseComparison):
        raise ComparisonResponseError("expected a pairwise comparison response")
    return result


def parse_selection(raw_text: str) -> SelectionResponse:
    result = parse_response("selection", extract_json(raw_text))
    if not isinstance(result, SelectionResponse):
        raise ComparisonResponseError("expected a selection response")
    return result
