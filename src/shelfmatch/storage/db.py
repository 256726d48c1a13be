"""SQLite database initialization and connection helpers."""

from __future__ import annotations

import sqlite3
from pathlib import Path


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS detections (
  detection_id TEXT PRIMARY KEY,
  image_id TEXT NOT NULL,
  detection_index INTEGER NOT NULL,
  brand TEXT,
  product_name TEXT,
  category TEXT,
  flavor TEXT,
  size TEXT,
  description TEXT,
  brand_confidence REAL,
  product_name_confidence REAL,
  category_confidence REAL,
  flavor_confidence REAL,
  size_confidence REAL,
  description_confidence REAL,
  visibility TEXT NOT NULL DEFAULT 'clear' CHECK (visibility IN ('clear', 'partial', 'none')),
  is_product INTEGER,
  store_name TEXT,
  crop BLOB,
  fully_resolved INTEGER NOT NULL DEFAULT 0,
  selected_candidate_key TEXT,
  selection_method TEXT CHECK (selection_method IS NULL OR selection_method IN ('auto_select', 'tie_break')),
  resolution_confidence REAL,
  resolved_at TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  CHECK (fully_resolved = 0 OR selected_candidate_key IS NOT NULL)
);

CREATE INDEX IF NOT EXISTS idx_detections_image_index ON detections(image_id, detection_index);

CREATE TABLE IF NOT EXISTS candidates (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  detection_id TEXT NOT NULL REFERENCES detections(detection_id) ON DELETE CASCADE,
  candidate_key TEXT NOT NULL,
  stage TEXT NOT NULL CHECK (stage IN ('searched', 'pre_filtered', 'ai_filtered', 'visual_matched')),
  rank INTEGER,
  name TEXT,
  brand TEXT,
  size TEXT,
  category TEXT,
  image_url TEXT,
  search_term TEXT,
  prefilter_score REAL,
  verdict TEXT CHECK (verdict IS NULL OR verdict IN ('identical', 'close_variant', 'rejected')),
  ai_confidence REAL,
  visual_similarity REAL CHECK (visual_similarity IS NULL OR (visual_similarity >= 0 AND visual_similarity <= 1)),
  rationale TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  UNIQUE (detection_id, candidate_key)
);

CREATE INDEX IF NOT EXISTS idx_candidates_detection_stage ON candidates(detection_id, stage);
"""


def connect(db_path: str | Path) -> sqlite3.Connection:
    """Open SQLite connection with row factory and foreign keys configured."""
    conn = sqlite3.connect(str(db_path), check_same_thread=False, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db(db_path: str | Path) -> None:
    """Initialize database schema."""
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    conn = connect(path)
    try:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.executescript(SCHEMA_SQL)
        conn.commit()
    finally:
        conn.close()
