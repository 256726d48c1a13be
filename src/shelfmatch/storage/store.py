"""SQLite-backed detection and candidate persistence."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from shelfmatch.errors import PersistenceError
from shelfmatch.storage.db import connect, init_db
from shelfmatch.types import STAGE_ORDER, CandidateRecord, Detection, ExtractedAttributes

logger = logging.getLogger(__name__)

CANDIDATE_FIELDS = (
    "stage",
    "rank",
    "name",
    "brand",
    "size",
    "category",
    "image_url",
    "search_term",
    "prefilter_score",
    "verdict",
    "ai_confidence",
    "visual_similarity",
    "rationale",
)

ATTRIBUTE_FIELDS = (
    "brand",
    "product_name",
    "category",
    "flavor",
    "size",
    "description",
    "brand_confidence",
    "product_name_confidence",
    "category_confidence",
    "flavor_confidence",
    "size_confidence",
    "description_confidence",
)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class MatchStore:
    """Persistence layer for detections and their per-stage catalog candidates.

    Candidate rows are keyed by ``(detection_id, candidate_key)`` and written with
    ``INSERT ... ON CONFLICT DO UPDATE``, so re-running a detection updates rows in
    place. Only the fields passed to an upsert are overwritten. The store writes
    whatever stage it is given; callers keep stages moving forward.
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        try:
            init_db(self.db_path)
        except sqlite3.Error as exc:
            raise PersistenceError(f"cannot initialize database {self.db_path}: {exc}") from exc

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = connect(self.db_path)
        try:
            with conn:
                yield conn
        except sqlite3.Error as exc:
            raise PersistenceError(str(exc)) from exc
        finally:
            conn.close()

    # Detections

    def upsert_detection(self, detection: Detection) -> Detection:
        """Insert or update a detection's attributes; resolution fields are left alone."""
        attrs = detection.attributes
        now = utc_now()
        columns = [
            "detection_id",
            "image_id",
            "detection_index",
            *ATTRIBUTE_FIELDS,
            "visibility",
            "is_product",
            "store_name",
            "crop",
            "created_at",
            "updated_at",
        ]
        values = [
            detection.detection_id,
            detection.image_id,
            detection.detection_index,
            *(getattr(attrs, name) for name in ATTRIBUTE_FIELDS),
            detection.visibility,
            None if detection.is_product is None else int(detection.is_product),
            detection.store_name,
            detection.crop,
            now,
            now,
        ]
        updates = ",\n".join(
            f"{column}=excluded.{column}" for column in columns if column not in ("detection_id", "created_at")
        )
        with self._transaction() as conn:
            conn.execute(
                f"""
                INSERT INTO detections({", ".join(columns)})
                VALUES ({", ".join("?" for _ in columns)})
                ON CONFLICT(detection_id) DO UPDATE SET
                  {updates}
                """,
                tuple(values),
            )
        stored = self.get_detection(detection.detection_id)
        if stored is None:
            raise PersistenceError(f"detection vanished after upsert: {detection.detection_id}")
        return stored

    @staticmethod
    def _detection_from_row(row: sqlite3.Row) -> Detection:
        attributes = ExtractedAttributes(**{name: row[name] for name in ATTRIBUTE_FIELDS})
        return Detection(
            detection_id=row["detection_id"],
            image_id=row["image_id"],
            detection_index=int(row["detection_index"]),
            attributes=attributes,
            visibility=row["visibility"],
            is_product=None if row["is_product"] is None else bool(row["is_product"]),
            store_name=row["store_name"],
            crop=bytes(row["crop"]) if row["crop"] is not None else None,
            fully_resolved=bool(row["fully_resolved"]),
            selected_candidate_key=row["selected_candidate_key"],
            selection_method=row["selection_method"],
            resolution_confidence=row["resolution_confidence"],
            resolved_at=row["resolved_at"],
        )

    def get_detection(self, detection_id: str) -> Detection | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM detections WHERE detection_id=?", (detection_id,)).fetchone()
        return None if row is None else self._detection_from_row(row)

    def list_detections(self, image_id: str | None = None, unresolved_only: bool = False) -> list[Detection]:
        """List detections ordered by image and detection index."""
        filters: list[str] = []
        params: list[Any] = []
        if image_id is not None:
            filters.append("image_id=?")
            params.append(image_id)
        if unresolved_only:
            filters.append("fully_resolved=0")
        where = f"WHERE {' AND '.join(filters)}" if filters else ""
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM detections {where} ORDER BY image_id, detection_index, detection_id",
                tuple(params),
            ).fetchall()
        return [self._detection_from_row(row) for row in rows]

    def resolve_detection(
        self,
        detection_id: str,
        candidate_key: str,
        *,
        selection_method: str | None,
        confidence: float | None,
    ) -> Detection:
        """Mark a detection fully resolved to one of its own candidates.

        A manual choice passes ``selection_method=None`` and no confidence.
        """
        with self._transaction() as conn:
            exists = conn.execute(
                "SELECT 1 FROM candidates WHERE detection_id=? AND candidate_key=?",
                (detection_id, candidate_key),
            ).fetchone()
            if exists is None:
                raise PersistenceError(f"no candidate {candidate_key!r} recorded for detection {detection_id!r}")
            now = utc_now()
            conn.execute(
                """
                UPDATE detections
                SET fully_resolved=1,
                    selected_candidate_key=?,
                    selection_method=?,
                    resolution_confidence=?,
                    resolved_at=?,
                    updated_at=?
                WHERE detection_id=?
                """,
                (candidate_key, selection_method, confidence, now, now, detection_id),
            )
        resolved = self.get_detection(detection_id)
        if resolved is None:
            raise PersistenceError(f"detection not found: {detection_id}")
        return resolved

    def list_matched(self, image_id: str | None = None) -> list[tuple[Detection, CandidateRecord]]:
        """Resolved detections paired with their chosen candidate, in image order."""
        matched: list[tuple[Detection, CandidateRecord]] = []
        for detection in self.list_detections(image_id=image_id):
            if not detection.fully_resolved or detection.selected_candidate_key is None:
                continue
            candidate = self.get_candidate(detection.detection_id, detection.selected_candidate_key)
            if candidate is not None:
                matched.append((detection, candidate))
        return matched

    def clear_resolution(self, detection_id: str) -> bool:
        with self._transaction() as conn:
            result = conn.execute(
                """
                UPDATE detections
                SET fully_resolved=0,
                    selected_candidate_key=NULL,
                    selection_method=NULL,
                    resolution_confidence=NULL,
                    resolved_at=NULL,
                    updated_at=?
                WHERE detection_id=?
                """,
                (utc_now(), detection_id),
            )
            return result.rowcount > 0

    # Candidates

    @staticmethod
    def _check_fields(fields: Mapping[str, Any]) -> None:
        unknown = sorted(set(fields) - set(CANDIDATE_FIELDS))
        if unknown:
            raise ValueError(f"Unknown candidate fields: {unknown}")
        stage = fields.get("stage")
        if stage is not None and stage not in STAGE_ORDER:
            raise ValueError(f"Unknown stage: {stage}")

    def _upsert_candidate(
        self,
        conn: sqlite3.Connection,
        detection_id: str,
        candidate_key: str,
        fields: Mapping[str, Any],
        now: str,
    ) -> None:
        insert_fields = dict(fields)
        insert_fields.setdefault("stage", "searched")
        columns = ["detection_id", "candidate_key", *insert_fields, "created_at", "updated_at"]
        values = [detection_id, candidate_key, *insert_fields.values(), now, now]
        updates = [f"{name}=excluded.{name}" for name in fields]
        updates.append("updated_at=excluded.updated_at")
        conn.execute(
            f"""
            INSERT INTO candidates({", ".join(columns)})
            VALUES ({", ".join("?" for _ in columns)})
            ON CONFLICT(detection_id, candidate_key) DO UPDATE SET
              {", ".join(updates)}
            """,
            tuple(values),
        )

    def upsert_candidate(self, detection_id: str, candidate_key: str, **fields: Any) -> CandidateRecord:
        """Insert or update one candidate row; unspecified fields keep their stored value."""
        self._check_fields(fields)
        with self._transaction() as conn:
            self._upsert_candidate(conn, detection_id, candidate_key, fields, utc_now())
        record = self.get_candidate(detection_id, candidate_key)
        if record is None:
            raise PersistenceError(f"candidate vanished after upsert: {detection_id}/{candidate_key}")
        return record

    def upsert_candidates(self, detection_id: str, rows: list[Mapping[str, Any]]) -> int:
        """Upsert many candidate rows in one transaction.

        Each row carries ``candidate_key`` plus any candidate fields. Returns the
        number of rows written.
        """
        prepared: list[tuple[str, dict[str, Any]]] = []
        for row in rows:
            fields = dict(row)
            key = fields.pop("candidate_key", None)
            if not key:
                raise ValueError("candidate row without candidate_key")
            self._check_fields(fields)
            prepared.append((str(key), fields))
        if not prepared:
            return 0
        now = utc_now()
        with self._transaction() as conn:
            for key, fields in prepared:
                self._upsert_candidate(conn, detection_id, key, fields, now)
        logger.debug("upserted %d candidate rows for %s", len(prepared), detection_id)
        return len(prepared)

    @staticmethod
    def _candidate_from_row(row: sqlite3.Row) -> CandidateRecord:
        return CandidateRecord(
            detection_id=row["detection_id"],
            candidate_key=row["candidate_key"],
            **{name: row[name] for name in CANDIDATE_FIELDS},
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def get_candidate(self, detection_id: str, candidate_key: str) -> CandidateRecord | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM candidates WHERE detection_id=? AND candidate_key=?",
                (detection_id, candidate_key),
            ).fetchone()
        return None if row is None else self._candidate_from_row(row)

    def list_candidates(self, detection_id: str, stage: str | None = None) -> list[CandidateRecord]:
        """List candidates for a detection in catalog rank order, optionally at one stage."""
        query = "SELECT * FROM candidates WHERE detection_id=?"
        params: list[Any] = [detection_id]
        if stage is not None:
            query += " AND stage=?"
            params.append(stage)
        query += " ORDER BY rank IS NULL, rank, candidate_key"
        with self._transaction() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._candidate_from_row(row) for row in rows]

    def candidate_stages(self, detection_id: str) -> dict[str, str]:
        """Map candidate_key to its stored stage for one detection."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT candidate_key, stage FROM candidates WHERE detection_id=?",
                (detection_id,),
            ).fetchall()
        return {row["candidate_key"]: row["stage"] for row in rows}

    def stage_counts(self, detection_id: str) -> dict[str, int]:
        """Count candidates per stage, with every stage present."""
        counts = {stage: 0 for stage in STAGE_ORDER}
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT stage, COUNT(*) AS c FROM candidates WHERE detection_id=? GROUP BY stage",
                (detection_id,),
            ).fetchall()
        for row in rows:
            counts[row["stage"]] = int(row["c"])
        return counts
