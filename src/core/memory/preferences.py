"""
Preference Store — per-user key/value preferences with embeddings.

Keyed by (user_id, category, key) with upsert semantics.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

import numpy as np

from src.core.storage import (
    SQLiteStore,
    dump_json,
    from_iso,
    load_json,
    pack_vector,
    to_iso,
    unpack_vector,
    utc_now,
)

logger = logging.getLogger(__name__)


class PreferenceSource(str, Enum):
    EXPLICIT = "explicit"
    INFERRED = "inferred"
    LEARNED = "learned"
    ERROR_CLASSIFICATION = "error_classification"


@dataclass
class Preference:
    user_id: str
    category: str
    key: str
    value: Any
    source: PreferenceSource = PreferenceSource.EXPLICIT
    confidence: float = 1.0
    embedding: Optional[np.ndarray] = None
    updated_at: datetime = field(default_factory=utc_now)


class PreferenceStore(SQLiteStore):
    """SQLite-backed preference storage."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS preferences (
        user_id TEXT NOT NULL,
        category TEXT NOT NULL,
        pref_key TEXT NOT NULL,
        value TEXT NOT NULL,
        source TEXT NOT NULL,
        confidence REAL NOT NULL DEFAULT 1.0,
        embedding BLOB,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (user_id, category, pref_key)
    );
    """

    def _row_to_preference(self, row: sqlite3.Row) -> Preference:
        return Preference(
            user_id=row["user_id"],
            category=row["category"],
            key=row["pref_key"],
            value=load_json(row["value"]),
            source=PreferenceSource(row["source"]),
            confidence=row["confidence"],
            embedding=unpack_vector(row["embedding"]),
            updated_at=from_iso(row["updated_at"]),
        )

    def upsert(self, pref: Preference) -> Optional[Preference]:
        """Insert or overwrite; returns the previous value if any."""
        previous = self.get(pref.user_id, pref.category, pref.key)
        pref.updated_at = utc_now()
        with self._transaction() as conn:
            conn.execute(
                """INSERT INTO preferences
                   (user_id, category, pref_key, value, source, confidence, embedding, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(user_id, category, pref_key) DO UPDATE SET
                     value = excluded.value,
                     source = excluded.source,
                     confidence = excluded.confidence,
                     embedding = excluded.embedding,
                     updated_at = excluded.updated_at""",
                (
                    pref.user_id, pref.category, pref.key, dump_json(pref.value),
                    pref.source.value, pref.confidence, pack_vector(pref.embedding),
                    to_iso(pref.updated_at),
                ),
            )
        return previous

    def get(self, user_id: str, category: str, key: str) -> Optional[Preference]:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM preferences WHERE user_id = ? AND category = ? AND pref_key = ?",
                (user_id, category, key),
            ).fetchone()
        return self._row_to_preference(row) if row else None

    def list(self, user_id: str, category: Optional[str] = None, limit: int = 100) -> List[Preference]:
        sql = "SELECT * FROM preferences WHERE user_id = ?"
        params: list = [user_id]
        if category:
            sql += " AND category = ?"
            params.append(category)
        sql += " ORDER BY confidence DESC, updated_at DESC LIMIT ?"
        params.append(limit)
        with self._read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_preference(r) for r in rows]

    def embedded(self, user_id: str) -> List[Preference]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM preferences WHERE user_id = ? AND embedding IS NOT NULL",
                (user_id,),
            ).fetchall()
        return [self._row_to_preference(r) for r in rows]

    def delete(self, user_id: str, category: str, key: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                "DELETE FROM preferences WHERE user_id = ? AND category = ? AND pref_key = ?",
                (user_id, category, key),
            )
        return cur.rowcount == 1
