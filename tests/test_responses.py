from __future__ import annotations

import pytest

from shelfmatch.errors import ComparisonResponseError
from shelfmatch.vision.responses import extract_json, parse_pairwise, parse_selection


def test_pairwise_maps_service_vocabulary() -> None:
    result = parse_pairwise('{"matchStatus": "almost_same", "confidence": 0.8, "visualSimilarity": 0.75}')

    assert result.kind == "pairwise"
    assert result.verdict == "close_variant"
    assert result.visual_similarity == 0.75

    assert parse_pairwise('{"matchStatus": "not_match", "confidence": 0.9}').verdict == "rejected"


def test_extract_json_strips_markdown_fences() -> None:
    raw = '```json\n{"matchStatus": "identical", "confidence": 0.97}\n```'

    assert extract_json(raw) == {"matchStatus": "identical", "confidence": 0.97}


def test_extract_json_finds_object_in_prose() -> None:
    assert extract_json('Here you go: {"a": 1} thanks') == {"a": 1}


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "not json at all",
        "[1, 2, 3]",
        '{"matchStatus": "maybe", "confidence": 0.5}',
        '{"matchStatus": "identical", "confidence": 1.5}',
        '{"matchStatus": "identical"}',
    ],
)
def test_malformed_pairwise_raises(raw: str) -> None:
    with pytest.raises(ComparisonResponseError):
        parse_pairwise(raw)


def test_selection_parses_candidate_scores() -> None:
    raw = """
    {"selectedCandidateKey": "00012345678905", "confidence": 0.88, "reasoning": "logo matches",
     "brandMatch": true, "sizeMatch": false,
     "candidateScores": [
        {"candidateKey": "00012345678905", "visualSimilarity": 0.91, "passedThreshold": true},
        {"candidateKey": "00098765432109", "visualSimilarity": 0.4, "passedThreshold": false}
     ]}
    """

    result = parse_selection(raw)

    assert result.kind == "selection"
    assert result.selected_key == "00012345678905"
    assert result.rationale == "logo matches"
    assert result.brand_match is True and result.size_match is False
    assert [s.candidate_key for s in result.candidate_scores] == ["00012345678905", "00098765432109"]


def test_selection_without_scores_raises() -> None:
    with pytest.raises(ComparisonResponseError):
        parse_selection('{"selectedCandidateKey": null, "confidence": 0.0}')
