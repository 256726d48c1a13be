"""Bounded-concurrency batch execution with a live progress event stream."""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import Counter
from collections.abc import Generator, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from uuid import uuid4

from shelfmatch.errors import BatchRequestError
from shelfmatch.events.schemas import CompleteEvent, EventBase, ItemResult, ProgressEvent, StartEvent
from shelfmatch.pipeline.narrowing import VARIANTS, PipelineVariant
from shelfmatch.pipeline.orchestrator import ItemOutcome, MatchPipeline
from shelfmatch.types import Detection

logger = logging.getLogger(__name__)


@dataclass
class ProgressAggregator:
    """Running totals for one batch.

    Only the thread consuming worker results calls ``record``; workers never
    touch these counters.
    """

    total: int
    processed: int = 0
    success: int = 0
    no_match: int = 0
    errors: int = 0

    def record(self, outcome: ItemOutcome) -> None:
        self.processed += 1
        if outcome.status == "success":
            self.success += 1
        elif outcome.status == "no_match":
            self.no_match += 1
        else:
            self.errors += 1

    @property
    def reconciled(self) -> bool:
        return self.success + self.no_match + self.errors == self.processed


class BatchExecutor:
    """Process many detections with at most ``concurrency`` in flight."""

    def __init__(self, pipeline: MatchPipeline, max_concurrency: int = 10, default_concurrency: int = 3) -> None:
        self.pipeline = pipeline
        self.max_concurrency = max_concurrency
        self.default_concurrency = min(default_concurrency, max_concurrency)

    def validate(self, detections: Sequence[Detection], concurrency: int, variant: str) -> None:
        """Reject a batch request before any work starts."""
        if not detections:
            raise BatchRequestError("batch has no detections")
        if concurrency < 1 or concurrency > self.max_concurrency:
            raise BatchRequestError(f"concurrency must be between 1 and {self.max_concurrency}, got {concurrency}")
        if variant not in VARIANTS:
            raise BatchRequestError(f"unknown variant {variant!r}; expected one of {list(VARIANTS)}")
        duplicates = sorted(key for key, count in Counter(d.detection_id for d in detections).items() if count > 1)
        if duplicates:
            raise BatchRequestError(f"duplicate detection ids in batch: {duplicates}")

    def run(
        self,
        detections: Sequence[Detection],
        concurrency: int | None = None,
        variant: PipelineVariant = "visual_only",
        cancel_event: threading.Event | None = None,
    ) -> Generator[EventBase, None, None]:
        """Validate the request, then return the event stream.

        The stream yields one ``start``, one ``progress`` per item in completion
        order and a final ``complete`` carrying per-item outcomes in input order.
        """
        n = self.default_concurrency if concurrency is None else concurrency
        self.validate(detections, n, variant)
        return self._events(list(detections), n, variant, cancel_event or threading.Event())

    def _work(
        self,
        index: int,
        detection: Detection,
        variant: PipelineVariant,
        results: queue.Queue[tuple[int, ItemOutcome]],
    ) -> None:
        try:
            outcome = self.pipeline.process(detection, variant)
        except Exception as exc:  # noqa: BLE001
            logger.exception("%s: unexpected failure", detection.detection_id)
            outcome = ItemOutcome(
                detection_id=detection.detection_id,
                detection_index=detection.detection_index,
                status="error",
                reason=type(exc).__name__,
                error=str(exc),
            )
        results.put((index, outcome))

    def _events(
        self,
        detections: list[Detection],
        concurrency: int,
        variant: PipelineVariant,
        cancel_event: threading.Event,
    ) -> Generator[EventBase, None, None]:
        batch_id = uuid4().hex
        total = len(detections)
        started = time.monotonic()
        aggregator = ProgressAggregator(total=total)
        outcomes: list[ItemOutcome | None] = [None] * total
        results: queue.Queue[tuple[int, ItemOutcome]] = queue.Queue()

        logger.info("batch %s: %d detections, concurrency %d, variant %s", batch_id, total, concurrency, variant)
        yield StartEvent(batch_id=batch_id, total=total, concurrency=concurrency, variant=variant)

        next_index = 0
        in_flight = 0
        with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="shelfmatch-batch") as pool:
            while True:
                while in_flight < concurrency and next_index < total and not cancel_event.is_set():
                    pool.submit(self._work, next_index, detections[next_index], variant, results)
                    next_index += 1
                    in_flight += 1
                if in_flight == 0:
                    break

                index, outcome = results.get()
                in_flight -= 1
                outcomes[index] = outcome
                aggregator.record(outcome)
                yield ProgressEvent(
                    batch_id=batch_id,
                    detection_id=outcome.detection_id,
                    detection_index=outcome.detection_index,
                    status=outcome.status,
                    message=outcome.message,
                    processed=aggregator.processed,
                    total=total,
                    success=aggregator.success,
                    no_match=aggregator.no_match,
                    errors=aggregator.errors,
                )

        cancelled = next_index < total
        for index, detection in enumerate(detections):
            if outcomes[index] is not None:
                continue
            skipped = ItemOutcome(
                detection_id=detection.detection_id,
                detection_index=detection.detection_index,
                status="error",
                reason="cancelled",
                error="batch cancelled before this item was scheduled",
            )
            outcomes[index] = skipped
            aggregator.record(skipped)

        if cancelled:
            logger.warning("batch %s cancelled; %d items were not scheduled", batch_id, total - next_index)
        logger.info(
            "batch %s done: %d success, %d no match, %d errors",
            batch_id,
            aggregator.success,
            aggregator.no_match,
            aggregator.errors,
        )
        yield CompleteEvent(
            batch_id=batch_id,
            total=total,
            processed=aggregator.processed,
            success=aggregator.success,
            no_match=aggregator.no_match,
            errors=aggregator.errors,
            cancelled=cancelled,
            duration_seconds=round(time.monotonic() - started, 3),
            results=[ItemResult(**asdict(outcome)) for outcome in outcomes if outcome is not None],
        )
