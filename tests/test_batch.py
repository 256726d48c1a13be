from __future__ import annotations

import threading

import pytest

from fakes import FakeCatalog, FakeComparator, make_detection, make_product
from shelfmatch.errors import BatchRequestError, CatalogError
from shelfmatch.events.schemas import CompleteEvent, ProgressEvent, StartEvent
from shelfmatch.pipeline.batch import BatchExecutor, ProgressAggregator
from shelfmatch.pipeline.orchestrator import ItemOutcome
from shelfmatch.storage.store import MatchStore


def _mixed_catalog() -> FakeCatalog:
    # Acme -> two candidates (tie-break), Solo -> one candidate, Ghost -> nothing.
    return FakeCatalog(
        {
            "Acme": [make_product("A", rank=1), make_product("B", rank=2)],
            "Solo": [make_product("S", rank=1, brand="Solo", title="Solo Soda")],
            "Ghost": [],
        }
    )


def _detections(n: int) -> list:
    brands = ["Acme", "Solo", "Ghost"]
    return [make_detection(f"det-{i}", index=i, brand=brands[i % 3]) for i in range(n)]


def _collect(events) -> tuple[StartEvent, list[ProgressEvent], CompleteEvent]:
    items = list(events)
    assert isinstance(items[0], StartEvent)
    assert isinstance(items[-1], CompleteEvent)
    progress = [e for e in items[1:-1]]
    assert all(isinstance(e, ProgressEvent) for e in progress)
    return items[0], progress, items[-1]


def test_batch_reconciles_totals(pipeline_factory) -> None:
    pipeline = pipeline_factory(_mixed_catalog(), FakeComparator(similarities={"A": 0.9, "B": 0.5}))
    executor = BatchExecutor(pipeline, max_concurrency=4)
    detections = _detections(9)

    start, progress, complete = _collect(executor.run(detections, concurrency=3))

    assert (start.total, start.concurrency, start.variant) == (9, 3, "visual_only")
    assert len(progress) == 9
    assert [e.processed for e in progress] == list(range(1, 10))
    last = progress[-1]
    assert last.success + last.no_match + last.errors == 9
    assert (complete.success, complete.no_match, complete.errors) == (6, 3, 0)
    assert complete.success + complete.no_match + complete.errors == complete.total
    assert [r.detection_id for r in complete.results] == [d.detection_id for d in detections]
    assert not complete.cancelled
    assert {e.detection_id for e in progress} == {d.detection_id for d in detections}


def test_concurrency_is_bounded(pipeline_factory) -> None:
    comparator = FakeComparator(similarities={"A": 0.9, "B": 0.9}, delay=0.05)
    pipeline = pipeline_factory(FakeCatalog([make_product("A"), make_product("B")]), comparator)
    executor = BatchExecutor(pipeline, max_concurrency=10)

    list(executor.run([make_detection(f"det-{i}", index=i) for i in range(8)], concurrency=2))

    assert 1 <= comparator.peak <= 2
    assert len(comparator.select_calls) == 8


def test_concurrency_parity(tmp_path) -> None:
    from shelfmatch.pipeline.orchestrator import MatchPipeline

    detections = _detections(7)
    runs = {}
    for concurrency in (1, len(detections)):
        store = MatchStore(tmp_path / f"run-{concurrency}.db")
        pipeline = MatchPipeline(_mixed_catalog(), FakeComparator(similarities={"A": 0.9, "B": 0.5}), store)
        executor = BatchExecutor(pipeline, max_concurrency=len(detections))
        _, _, complete = _collect(executor.run(detections, concurrency=concurrency))
        resolutions = {}
        rows = {}
        for d in detections:
            stored = store.get_detection(d.detection_id)
            resolutions[d.detection_id] = (
                stored.fully_resolved,
                stored.selected_candidate_key,
                stored.selection_method,
            )
            rows[d.detection_id] = [
                (c.candidate_key, c.stage, c.verdict, c.prefilter_score) for c in store.list_candidates(d.detection_id)
            ]
        runs[concurrency] = (
            [(r.detection_id, r.status, r.selected_key) for r in complete.results],
            resolutions,
            rows,
        )

    assert runs[1] == runs[len(detections)]
    assert sum(resolved for resolved, _, _ in runs[1][1].values()) == 5


def test_concurrency_one_runs_in_input_order(pipeline_factory) -> None:
    pipeline = pipeline_factory(_mixed_catalog(), FakeComparator(similarities={"A": 0.9}))
    detections = _detections(5)

    _, progress, _ = _collect(BatchExecutor(pipeline).run(detections, concurrency=1))

    assert [e.detection_id for e in progress] == [d.detection_id for d in detections]


def test_item_failure_is_isolated(pipeline_factory) -> None:
    comparator = FakeComparator(similarities={"A": 0.9, "B": 0.9}, fail_for={"B"})
    catalog = FakeCatalog(
        {
            "Acme": [make_product("A"), make_product("B")],
            "Solo": [make_product("S", brand="Solo", title="Solo Soda")],
        }
    )
    pipeline = pipeline_factory(catalog, comparator)
    detections = [make_detection("det-0", brand="Acme"), make_detection("det-1", index=1, brand="Solo")]

    _, _, complete = _collect(BatchExecutor(pipeline).run(detections, concurrency=2))

    by_id = {r.detection_id: r for r in complete.results}
    assert by_id["det-0"].status == "error"
    assert by_id["det-1"].status == "success"
    assert complete.errors == 1 and complete.success == 1


def test_unexpected_worker_exception_becomes_error_outcome(pipeline_factory) -> None:
    class ExplodingCatalog(FakeCatalog):
        def search(self, attributes, cap=100):
            raise RuntimeError("boom")

    pipeline = pipeline_factory(ExplodingCatalog())

    _, progress, complete = _collect(BatchExecutor(pipeline).run([make_detection()], concurrency=1))

    assert progress[0].status == "error"
    assert complete.results[0].reason == "RuntimeError"
    assert complete.results[0].error == "boom"


@pytest.mark.parametrize(
    "detections,concurrency,variant",
    [
        ([], 1, "visual_only"),
        ([make_detection()], 0, "visual_only"),
        ([make_detection()], 11, "visual_only"),
        ([make_detection()], 1, "bogus"),
        ([make_detection("x"), make_detection("x", index=1)], 1, "visual_only"),
    ],
)
def test_invalid_requests_are_rejected_before_work(pipeline_factory, detections, concurrency, variant) -> None:
    catalog = FakeCatalog([make_product("A")])
    executor = BatchExecutor(pipeline_factory(catalog), max_concurrency=10)

    with pytest.raises(BatchRequestError):
        executor.run(detections, concurrency=concurrency, variant=variant)
    assert catalog.calls == []


def test_cancellation_stops_scheduling(pipeline_factory) -> None:
    cancel = threading.Event()
    pipeline = pipeline_factory(FakeCatalog([make_product("A")]))
    detections = [make_detection(f"det-{i}", index=i) for i in range(6)]

    events = BatchExecutor(pipeline).run(detections, concurrency=1, cancel_event=cancel)
    collected = []
    for event in events:
        collected.append(event)
        if isinstance(event, ProgressEvent) and event.processed == 2:
            cancel.set()

    complete = collected[-1]
    assert isinstance(complete, CompleteEvent)
    assert complete.cancelled
    assert complete.success == 2
    assert complete.errors == 4
    assert complete.success + complete.no_match + complete.errors == complete.total == 6
    assert [r.reason for r in complete.results[2:]] == ["cancelled"] * 4


def test_catalog_errors_count_as_errors(pipeline_factory) -> None:
    pipeline = pipeline_factory(FakeCatalog(error=CatalogError("401 unauthorized")))

    _, _, complete = _collect(BatchExecutor(pipeline).run(_detections(3), concurrency=2))

    assert complete.errors == 3


def test_aggregator_counts_each_status() -> None:
    aggregator = ProgressAggregator(total=3)
    for status in ("success", "no_match", "error"):
        aggregator.record(ItemOutcome(detection_id=status, detection_index=0, status=status))

    assert (aggregator.processed, aggregator.success, aggregator.no_match, aggregator.errors) == (3, 1, 1, 1)
    assert aggregator.reconciled
