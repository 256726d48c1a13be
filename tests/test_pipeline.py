from __future__ import annotations

import pytest

from fakes import FakeCatalog, FakeComparator, make_detection, make_product
from shelfmatch.config import MatchingSettings
from shelfmatch.errors import CatalogError, PersistenceError
from shelfmatch.storage.store import MatchStore


def _two_close_products():
    return [make_product("A", rank=1), make_product("B", rank=2)]


def test_visual_only_tie_break_resolves_and_persists_stages(store: MatchStore, pipeline_factory) -> None:
    catalog = FakeCatalog([*_two_close_products(), make_product("FAR", rank=3, brand="Zenith", size="64 oz")])
    comparator = FakeComparator(similarities={"A": 0.92, "B": 0.6}, selection_confidence=0.9)
    pipeline = pipeline_factory(catalog, comparator)

    outcome = pipeline.process(make_detection(), variant="visual_only")

    assert outcome.status == "success"
    assert outcome.selected_key == "A"
    assert outcome.selection_method == "tie_break"
    assert (outcome.searched, outcome.prefiltered, outcome.narrowed) == (3, 2, 1)
    assert comparator.compare_calls == []
    assert comparator.select_calls == [["A", "B"]]

    rows = {c.candidate_key: c for c in store.list_candidates("det-1")}
    assert rows["FAR"].stage == "searched"
    assert rows["A"].stage == "visual_matched" and rows["A"].verdict == "identical"
    assert rows["B"].stage == "visual_matched" and rows["B"].verdict == "rejected"
    assert rows["A"].prefilter_score is not None
    assert rows["A"].search_term == "Acme Peanut Butter 12 oz"

    detection = store.get_detection("det-1")
    assert detection is not None
    assert detection.fully_resolved and detection.selected_candidate_key == "A"


def test_single_survivor_is_auto_selected_without_service_call(store: MatchStore, pipeline_factory) -> None:
    comparator = FakeComparator()
    pipeline = pipeline_factory(FakeCatalog([make_product("ONLY")]), comparator)

    outcome = pipeline.process(make_detection(), variant="visual_only")

    assert outcome.status == "success"
    assert outcome.selection_method == "auto_select"
    assert outcome.confidence == 0.95
    assert comparator.compare_calls == [] and comparator.select_calls == []
    assert store.get_candidate("det-1", "ONLY").stage == "pre_filtered"


def test_ai_filter_drops_rejected_and_auto_selects_survivor(store: MatchStore, pipeline_factory) -> None:
    comparator = FakeComparator(verdicts={"A": ("not_match", 0.9), "B": ("almost_same", 0.82)})
    pipeline = pipeline_factory(FakeCatalog(_two_close_products()), comparator)

    outcome = pipeline.process(make_detection(), variant="ai_filter")

    assert outcome.status == "success"
    assert outcome.selected_key == "B"
    assert outcome.selection_method == "auto_select"
    assert outcome.confidence == 0.82
    assert len(comparator.compare_calls) == 2
    assert comparator.select_calls == []

    a = store.get_candidate("det-1", "A")
    b = store.get_candidate("det-1", "B")
    assert (a.stage, a.verdict) == ("ai_filtered", "rejected")
    assert (b.stage, b.verdict, b.ai_confidence) == ("ai_filtered", "close_variant", 0.82)


def test_ai_filter_with_two_kept_runs_tie_breaker(store: MatchStore, pipeline_factory) -> None:
    comparator = FakeComparator(similarities={"A": 0.8, "B": 0.9}, selection_confidence=0.85)
    pipeline = pipeline_factory(FakeCatalog(_two_close_products()), comparator)

    outcome = pipeline.process(make_detection(), variant="ai_filter")

    assert outcome.selection_method == "tie_break"
    assert outcome.selected_key == "B"
    assert comparator.select_calls == [["A", "B"]]
    a = store.get_candidate("det-1", "A")
    assert (a.stage, a.verdict, a.ai_confidence) == ("visual_matched", "close_variant", 0.9)


def test_ai_filter_rejecting_everything_is_no_match(store: MatchStore, pipeline_factory) -> None:
    comparator = FakeComparator(verdicts={"A": ("not_match", 0.9), "B": ("not_match", 0.7)})
    pipeline = pipeline_factory(FakeCatalog(_two_close_products()), comparator)

    outcome = pipeline.process(make_detection(), variant="ai_filter")

    assert outcome.status == "no_match"
    assert outcome.reason == "ai_filter_rejected_all"
    assert not store.get_detection("det-1").fully_resolved


def test_zero_search_results_is_terminal_no_match(store: MatchStore, pipeline_factory) -> None:
    comparator = FakeComparator()
    pipeline = pipeline_factory(FakeCatalog([]), comparator)

    outcome = pipeline.process(make_detection())

    assert outcome.status == "no_match"
    assert outcome.reason == "no_search_results"
    assert comparator.select_calls == []
    assert store.list_candidates("det-1") == []


def test_no_prefilter_survivors_is_no_match(store: MatchStore, pipeline_factory) -> None:
    far = make_product("FAR", brand="Zenith", title="Zenith Soup", size="64 oz")
    pipeline = pipeline_factory(FakeCatalog([far]))

    outcome = pipeline.process(make_detection())

    assert (outcome.status, outcome.reason, outcome.searched) == ("no_match", "no_prefilter_match", 1)
    assert store.get_candidate("det-1", "FAR").stage == "searched"


def test_candidates_without_image_are_not_compared(store: MatchStore, pipeline_factory) -> None:
    comparator = FakeComparator(similarities={"A": 0.9})
    products = [make_product("A", rank=1), make_product("NOIMG", rank=2, image_url=None)]
    pipeline = pipeline_factory(FakeCatalog(products), comparator)

    outcome = pipeline.process(make_detection(), variant="visual_only")

    assert outcome.status == "success"
    assert outcome.selection_method == "auto_select"
    assert store.get_candidate("det-1", "NOIMG").stage == "pre_filtered"


def test_low_confidence_selection_stays_unresolved(store: MatchStore, pipeline_factory) -> None:
    settings = MatchingSettings(save_threshold=0.6)
    comparator = FakeComparator(similarities={"A": 0.9, "B": 0.9}, selected_key="A", selection_confidence=0.59)
    pipeline = pipeline_factory(FakeCatalog(_two_close_products()), comparator, settings)

    outcome = pipeline.process(make_detection())

    assert outcome.status == "no_match"
    assert outcome.reason == "low_confidence"
    assert outcome.selected_key == "A"
    assert not store.get_detection("det-1").fully_resolved


@pytest.mark.parametrize(
    "overrides,reason",
    [
        ({"brand": None, "product_name": None}, "no_search_attributes"),
        ({"is_product": False}, "not_a_product"),
        ({"visibility": "none"}, "not_visible"),
    ],
)
def test_input_errors_make_no_service_calls(pipeline_factory, overrides, reason) -> None:
    catalog = FakeCatalog([make_product("A")])
    comparator = FakeComparator()
    pipeline = pipeline_factory(catalog, comparator)

    outcome = pipeline.process(make_detection(**overrides))

    assert (outcome.status, outcome.reason) == ("no_match", reason)
    assert catalog.calls == []
    assert comparator.compare_calls == [] and comparator.select_calls == []


def test_catalog_failure_is_item_error(pipeline_factory) -> None:
    pipeline = pipeline_factory(FakeCatalog(error=CatalogError("catalog down")))

    outcome = pipeline.process(make_detection())

    assert outcome.status == "error"
    assert outcome.reason == "CatalogError"
    assert outcome.error == "catalog down"


def test_missing_crop_is_item_error_when_comparison_needed(pipeline_factory) -> None:
    pipeline = pipeline_factory(FakeCatalog(_two_close_products()))

    outcome = pipeline.process(make_detection(crop=None))

    assert outcome.status == "error"
    assert "no crop" in (outcome.error or "")


def test_rerun_is_idempotent(store: MatchStore, pipeline_factory) -> None:
    comparator = FakeComparator(similarities={"A": 0.92, "B": 0.75})
    pipeline = pipeline_factory(FakeCatalog(_two_close_products()), comparator)

    first = pipeline.process(make_detection())
    rows_before = [(c.candidate_key, c.stage, c.verdict) for c in store.list_candidates("det-1")]
    second = pipeline.process(make_detection())
    rows_after = [(c.candidate_key, c.stage, c.verdict) for c in store.list_candidates("det-1")]

    assert first.status == second.status == "success"
    assert first.selected_key == second.selected_key
    assert rows_before == rows_after
    assert len(rows_after) == 2


def test_duplicate_search_hits_yield_one_row(store: MatchStore, pipeline_factory) -> None:
    products = [make_product("A", rank=1), make_product("A", rank=2), make_product("B", rank=3)]
    pipeline = pipeline_factory(FakeCatalog(products), FakeComparator(similarities={"A": 0.9, "B": 0.4}))

    outcome = pipeline.process(make_detection())

    assert outcome.searched == 2
    assert sorted(c.candidate_key for c in store.list_candidates("det-1")) == ["A", "B"]


def test_stages_never_regress_on_rerun(store: MatchStore, pipeline_factory) -> None:
    comparator = FakeComparator(similarities={"A": 0.92, "B": 0.75})
    pipeline_factory(FakeCatalog(_two_close_products()), comparator).process(make_detection())
    assert store.get_candidate("det-1", "B").stage == "visual_matched"

    # Second run: B no longer survives the pre-filter and is only searched again.
    far_b = make_product("B", rank=2, brand="Zenith", title="Zenith Soup", size="64 oz")
    outcome = pipeline_factory(FakeCatalog([make_product("A"), far_b]), FakeComparator()).process(make_detection())

    assert outcome.selection_method == "auto_select"
    assert store.get_candidate("det-1", "B").stage == "visual_matched"


def test_stage_callback_reports_progress(pipeline_factory) -> None:
    seen: list[str] = []
    pipeline = pipeline_factory(FakeCatalog(_two_close_products()), FakeComparator(similarities={"A": 0.9}))

    pipeline.process(make_detection(), on_stage=lambda stage, message: seen.append(stage))

    assert seen == ["search", "pre_filter", "narrow", "persist"]


def test_persistence_failure_is_item_error(store: MatchStore, pipeline_factory, monkeypatch) -> None:
    pipeline = pipeline_factory(FakeCatalog([make_product("ONLY")]))

    def broken(*args, **kwargs):
        raise PersistenceError("disk full")

    monkeypatch.setattr(store, "resolve_detection", broken)
    outcome = pipeline.process(make_detection())

    assert outcome.status == "error"
    assert outcome.reason == "PersistenceError"


def test_unknown_variant_is_rejected(pipeline_factory) -> None:
    with pytest.raises(ValueError):
        pipeline_factory(FakeCatalog([])).process(make_detection(), variant="fastest")


def test_prefilter_reasons_are_stored_as_rationale(store: MatchStore, pipeline_factory) -> None:
    pipeline_factory(FakeCatalog([make_product("ONLY")])).process(make_detection())

    record = store.get_candidate("det-1", "ONLY")
    assert record.stage == "pre_filtered"
    assert record.rationale == "Brand match: 100%; Size match: 12 oz ~ 12 oz"


def test_later_stage_rationale_survives_rerun(store: MatchStore, pipeline_factory) -> None:
    comparator = FakeComparator(similarities={"A": 0.92, "B": 0.75})
    pipeline_factory(FakeCatalog(_two_close_products()), comparator).process(make_detection())
    assert store.get_candidate("det-1", "A").rationale == "scripted"

    pipeline_factory(FakeCatalog([make_product("A")])).process(make_detection())

    record = store.get_candidate("det-1", "A")
    assert (record.stage, record.rationale) == ("visual_matched", "scripted")


def test_close_releases_collaborators_that_have_clients(pipeline_factory) -> None:
    catalog = FakeCatalog([])
    pipeline = pipeline_factory(catalog, FakeComparator())

    pipeline.close()

    assert catalog.closed
