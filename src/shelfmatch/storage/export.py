"""Matched-products export as CSV."""

from __future__ import annotations

import csv
import io
from pathlib import Path
from typing import Any, TextIO

from shelfmatch.storage.store import MatchStore

MATCHED_COLUMNS = (
    "product_key",
    "image_id",
    "product_number",
    "store_name",
    "product_image_url",
    "product_name",
    "brand",
    "size",
    "category",
    "selection_method",
    "confidence",
)


def matched_rows(store: MatchStore, image_id: str | None = None) -> list[dict[str, Any]]:
    """One row per resolved detection, with its chosen candidate's catalog data."""
    rows: list[dict[str, Any]] = []
    for detection, candidate in store.list_matched(image_id=image_id):
        rows.append(
            {
                "product_key": candidate.candidate_key,
                "image_id": detection.image_id,
                # Human-readable numbering on the shelf photo.
                "product_number": detection.detection_index + 1,
                "store_name": detection.store_name or "",
                "product_image_url": candidate.image_url or "",
                "product_name": candidate.name or "",
                "brand": candidate.brand or "",
                "size": candidate.size or "",
                "category": candidate.category or "",
                "selection_method": detection.selection_method or "manual",
                "confidence": "" if detection.resolution_confidence is None else f"{detection.resolution_confidence:.2f}",
            }
        )
    return rows


def write_matched_csv(rows: list[dict[str, Any]], stream: TextIO) -> int:
    writer = csv.DictWriter(stream, fieldnames=list(MATCHED_COLUMNS))
    writer.writeheader()
    for row in rows:
        writer.writerow({k: row.get(k, "") for k in MATCHED_COLUMNS})
    return len(rows)


def matched_csv_text(rows: list[dict[str, Any]]) -> str:
    buffer = io.StringIO()
    write_matched_csv(rows, buffer)
    return buffer.getvalue()


def export_matched(store: MatchStore, path: str | Path, image_id: str | None = None) -> int:
    """Write the matched products to ``path``; returns the number of rows."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    rows = matched_rows(store, image_id=image_id)
    with target.open("w", newline="", encoding="utf-8") as f:
        return write_matched_csv(rows, f)
