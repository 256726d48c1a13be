"""FastAPI routes: batch matching over SSE, detection reads, manual selection and export."""

from __future__ import annotations

import threading
from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import Response, StreamingResponse

from shelfmatch.api.schemas import BatchRequest, DetectionImportRequest, ManualSelectionRequest
from shelfmatch.api.stream import encode_sse
from shelfmatch.errors import BatchRequestError
from shelfmatch.pipeline.batch import BatchExecutor
from shelfmatch.storage.export import matched_csv_text, matched_rows
from shelfmatch.storage.store import MatchStore
from shelfmatch.types import STAGE_ORDER, Detection

router = APIRouter()


def _store(request: Request) -> MatchStore:
    return request.app.state.store


def _executor(request: Request) -> BatchExecutor:
    return request.app.state.executor


def _detection_payload(detection: Detection) -> dict[str, Any]:
    item = asdict(detection)
    item["has_crop"] = item.pop("crop") is not None
    return item


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/detections")
def import_detections(payload: DetectionImportRequest, request: Request) -> dict[str, Any]:
    store = _store(request)
    imported: list[str] = []
    for record in payload.detections:
        if record.crop_path:
            raise HTTPException(status_code=422, detail="crop_path is not accepted over HTTP; send crop_base64")
        try:
            detection = record.to_detection()
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        store.upsert_detection(detection)
        imported.append(detection.detection_id)
    return {"imported": len(imported), "detection_ids": imported}


@router.get("/detections")
def list_detections(
    request: Request,
    image_id: str | None = Query(None),
    unresolved_only: bool = Query(False),
) -> list[dict[str, Any]]:
    detections = _store(request).list_detections(image_id=image_id, unresolved_only=unresolved_only)
    return [_detection_payload(d) for d in detections]


@router.get("/detections/{detection_id}")
def get_detection(detection_id: str, request: Request) -> dict[str, Any]:
    store = _store(request)
    detection = store.get_detection(detection_id)
    if detection is None:
        raise HTTPException(status_code=404, detail=f"Detection not found: {detection_id}")
    item = _detection_payload(detection)
    item["stage_counts"] = store.stage_counts(detection_id)
    return item


@router.get("/detections/{detection_id}/candidates")
def list_candidates(
    detection_id: str,
    request: Request,
    stage: str | None = Query(None),
) -> list[dict[str, Any]]:
    store = _store(request)
    if stage is not None and stage not in STAGE_ORDER:
        raise HTTPException(status_code=422, detail=f"Unknown stage: {stage}")
    if store.get_detection(detection_id) is None:
        raise HTTPException(status_code=404, detail=f"Detection not found: {detection_id}")
    return [asdict(c) for c in store.list_candidates(detection_id, stage=stage)]


@router.post("/detections/{detection_id}/resolution")
def select_candidate(detection_id: str, payload: ManualSelectionRequest, request: Request) -> dict[str, Any]:
    store = _store(request)
    if store.get_detection(detection_id) is None:
        raise HTTPException(status_code=404, detail=f"Detection not found: {detection_id}")
    if store.get_candidate(detection_id, payload.candidate_key) is None:
        raise HTTPException(status_code=404, detail=f"Candidate not found: {payload.candidate_key}")
    detection = store.resolve_detection(detection_id, payload.candidate_key, selection_method=None, confidence=None)
    return _detection_payload(detection)


@router.delete("/detections/{detection_id}/resolution")
def clear_resolution(detection_id: str, request: Request) -> dict[str, Any]:
    if not _store(request).clear_resolution(detection_id):
        raise HTTPException(status_code=404, detail=f"Detection not found: {detection_id}")
    return {"detection_id": detection_id, "fully_resolved": False}


@router.get("/exports/matched-products")
def export_matched_products(request: Request, image_id: str | None = Query(None)) -> Response:
    rows = matched_rows(_store(request), image_id=image_id)
    if not rows:
        raise HTTPException(status_code=404, detail="No matched products found")
    filename = f"{image_id or 'all'}_matched_products.csv"
    return Response(
        content=matched_csv_text(rows),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/batches")
def run_batch(payload: BatchRequest, request: Request) -> StreamingResponse:
    store = _store(request)
    executor = _executor(request)
    retry_ms = int(request.app.state.settings.server.sse_retry_ms)

    if payload.detection_ids is not None:
        detections: list[Detection] = []
        missing: list[str] = []
        for detection_id in payload.detection_ids:
            detection = store.get_detection(detection_id)
            if detection is None:
                missing.append(detection_id)
            else:
                detections.append(detection)
        if missing:
            raise HTTPException(status_code=404, detail=f"Detections not found: {missing}")
    else:
        detections = store.list_detections(image_id=payload.image_id, unresolved_only=payload.unresolved_only)

    cancel = threading.Event()
    try:
        events = executor.run(detections, concurrency=payload.concurrency, variant=payload.variant, cancel_event=cancel)
    except BatchRequestError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    def event_stream():
        first = True
        try:
            for event in events:
                yield encode_sse(
                    event.model_dump(mode="json"),
                    event=event.type,
                    retry_ms=retry_ms if first else None,
                )
                first = False
        finally:
            # Stop scheduling once the client goes away; in-flight items still persist.
            cancel.set()
            events.close()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )
