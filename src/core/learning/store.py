"""
Learning Store — SQLite persistence for rules, corrections and graduation state.

Rules are the only mutable learning entity; corrections are append-only
apart from the pattern_matched flag.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from src.core.learning.models import Correction, GraduationProposal, Rule, RuleSource
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


def clamp_confidence(value: float) -> float:
    return round(min(1.0, max(0.0, value)), 3)


class LearningStore(SQLiteStore):
    """Rules, corrections and per-category graduation counters."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS rules (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        category TEXT NOT NULL,
        rule_text TEXT NOT NULL,
        embedding BLOB,
        confidence REAL NOT NULL,
        active INTEGER NOT NULL DEFAULT 1,
        source TEXT NOT NULL,
        derived_from TEXT NOT NULL DEFAULT '[]',
        applications_count INTEGER NOT NULL DEFAULT 0,
        rejections_count INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        last_reinforced_at TEXT
    );
    CREATE INDEX IF NOT EXISTS idx_rules_user ON rules(user_id, active, category);

    CREATE TABLE IF NOT EXISTS corrections (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        decision_id TEXT,
        original_action TEXT NOT NULL DEFAULT '',
        correction_text TEXT NOT NULL,
        category TEXT NOT NULL,
        embedding BLOB,
        pattern_matched INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_corrections_user ON corrections(user_id, category, pattern_matched);

    CREATE TABLE IF NOT EXISTS graduation_state (
        user_id TEXT NOT NULL,
        category TEXT NOT NULL,
        consecutive_approvals INTEGER NOT NULL DEFAULT 0,
        backoff_multiplier INTEGER NOT NULL DEFAULT 1,
        proposal_id TEXT,
        proposed_tier INTEGER,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (user_id, category)
    );
    """

    # ── Rules ────────────────────────────────────────────────────

    def _row_to_rule(self, row: sqlite3.Row) -> Rule:
        return Rule(
            id=row["id"],
            user_id=row["user_id"],
            category=row["category"],
            rule_text=row["rule_text"],
            embedding=unpack_vector(row["embedding"]),
            confidence=row["confidence"],
            active=bool(row["active"]),
            source=RuleSource(row["source"]),
            derived_from=load_json(row["derived_from"], []),
            applications_count=row["applications_count"],
            rejections_count=row["rejections_count"],
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
            last_reinforced_at=from_iso(row["last_reinforced_at"]),
        )

    def add_rule(self, rule: Rule) -> Rule:
        rule.confidence = clamp_confidence(rule.confidence)
        with self._transaction() as conn:
            conn.execute(
                """INSERT INTO rules
                   (id, user_id, category, rule_text, embedding, confidence, active,
                    source, derived_from, applications_count, rejections_count,
                    created_at, updated_at, last_reinforced_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    rule.id, rule.user_id, rule.category, rule.rule_text,
                    pack_vector(rule.embedding), rule.confidence, 1 if rule.active else 0,
                    rule.source.value, dump_json(rule.derived_from),
                    rule.applications_count, rule.rejections_count,
                    to_iso(rule.created_at), to_iso(rule.updated_at),
                    to_iso(rule.last_reinforced_at),
                ),
            )
        logger.info(
            "Rule %s created for user %s [%s] confidence=%.2f",
            rule.id, rule.user_id, rule.category, rule.confidence,
        )
        return rule

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM rules WHERE id = ?", (rule_id,)).fetchone()
        return self._row_to_rule(row) if row else None

    def list_rules(
        self,
        user_id: str,
        active_only: bool = True,
        category: Optional[str] = None,
        limit: int = 100,
    ) -> List[Rule]:
        sql = "SELECT * FROM rules WHERE user_id = ?"
        params: List[Any] = [user_id]
        if active_only:
            sql += " AND active = 1"
        if category:
            sql += " AND category = ?"
            params.append(category)
        sql += " ORDER BY confidence DESC, updated_at DESC LIMIT ?"
        params.append(limit)
        with self._read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_rule(r) for r in rows]

    def embedded_active_rules(self, user_id: str) -> List[Rule]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM rules WHERE user_id = ? AND active = 1 AND embedding IS NOT NULL",
                (user_id,),
            ).fetchall()
        return [self._row_to_rule(r) for r in rows]

    def update_rule(
        self,
        rule_id: str,
        confidence: float,
        active: bool,
        applied: bool = False,
        rejected: bool = False,
        reinforced: bool = False,
    ) -> None:
        now = to_iso(utc_now())
        with self._transaction() as conn:
            conn.execute(
                """UPDATE rules SET
                     confidence = ?,
                     active = ?,
                     applications_count = applications_count + ?,
                     rejections_count = rejections_count + ?,
                     updated_at = ?,
                     last_reinforced_at = CASE WHEN ? THEN ? ELSE last_reinforced_at END
                   WHERE id = ?""",
                (
                    clamp_confidence(confidence), 1 if active else 0,
                    1 if applied else 0, 1 if rejected else 0, now,
                    1 if reinforced else 0, now, rule_id,
                ),
            )

    def stale_rules(self, updated_before: datetime, user_id: Optional[str] = None) -> List[Rule]:
        sql = "SELECT * FROM rules WHERE active = 1 AND updated_at < ?"
        params: List[Any] = [to_iso(updated_before)]
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        with self._read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_rule(r) for r in rows]

    def decay_rule(self, rule_id: str, confidence: float, active: bool) -> None:
        """Lower confidence without touching updated_at, so decay repeats each run."""
        with self._transaction() as conn:
            conn.execute(
                "UPDATE rules SET confidence = ?, active = ? WHERE id = ?",
                (clamp_confidence(confidence), 1 if active else 0, rule_id),
            )

    def deactivate_below(self, threshold: float, user_id: Optional[str] = None) -> int:
        sql = "UPDATE rules SET active = 0, updated_at = ? WHERE active = 1 AND confidence < ?"
        params: List[Any] = [to_iso(utc_now()), threshold]
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        with self._transaction() as conn:
            cur = conn.execute(sql, params)
        return cur.rowcount

    # ── Corrections ──────────────────────────────────────────────

    def _row_to_correction(self, row: sqlite3.Row) -> Correction:
        return Correction(
            id=row["id"],
            user_id=row["user_id"],
            decision_id=row["decision_id"],
            original_action=row["original_action"],
            correction_text=row["correction_text"],
            category=row["category"],
            embedding=unpack_vector(row["embedding"]),
            pattern_matched=bool(row["pattern_matched"]),
            created_at=from_iso(row["created_at"]),
        )

    def add_correction(self, correction: Correction) -> Correction:
        with self._transaction() as conn:
            conn.execute(
                """INSERT INTO corrections
                   (id, user_id, decision_id, original_action, correction_text, category,
                    embedding, pattern_matched, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    correction.id, correction.user_id, correction.decision_id,
                    correction.original_action, correction.correction_text,
                    correction.category, pack_vector(correction.embedding),
                    1 if correction.pattern_matched else 0, to_iso(correction.created_at),
                ),
            )
        return correction

    def get_correction(self, correction_id: str) -> Optional[Correction]:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM corrections WHERE id = ?", (correction_id,)
            ).fetchone()
        return self._row_to_correction(row) if row else None

    def unmatched_corrections(
        self,
        user_id: str,
        category: Optional[str] = None,
        limit: int = 50,
    ) -> List[Correction]:
        """Corrections not yet promoted into a rule, newest first."""
        sql = "SELECT * FROM corrections WHERE user_id = ? AND pattern_matched = 0"
        params: List[Any] = [user_id]
        if category:
            sql += " AND category = ?"
            params.append(category)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self._read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_correction(r) for r in rows]

    def list_corrections(self, user_id: str, limit: int = 100) -> List[Correction]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM corrections WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [self._row_to_correction(r) for r in rows]

    def mark_pattern_matched(self, correction_ids: Iterable[str]) -> int:
        ids = list(correction_ids)
        if not ids:
            return 0
        placeholders = ",".join("?" for _ in ids)
        with self._transaction() as conn:
            cur = conn.execute(
                f"UPDATE corrections SET pattern_matched = 1 WHERE id IN ({placeholders})", ids
            )
        return cur.rowcount

    def users_with_unmatched_corrections(self) -> List[str]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT DISTINCT user_id FROM corrections WHERE pattern_matched = 0"
            ).fetchall()
        return [r["user_id"] for r in rows]

    def delete_matched_corrections(self, older_than: datetime) -> int:
        with self._transaction() as conn:
            cur = conn.execute(
                "DELETE FROM corrections WHERE pattern_matched = 1 AND created_at < ?",
                (to_iso(older_than),),
            )
        return cur.rowcount

    # ── Graduation State ─────────────────────────────────────────

    def get_graduation_state(self, user_id: str, category: str) -> Dict[str, Any]:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM graduation_state WHERE user_id = ? AND category = ?",
                (user_id, category),
            ).fetchone()
        if row is None:
            return {
                "user_id": user_id,
                "category": category,
                "consecutive_approvals": 0,
                "backoff_multiplier": 1,
                "proposal_id": None,
                "proposed_tier": None,
            }
        return dict(row)

    def save_graduation_state(self, state: Dict[str, Any]) -> None:
        with self._transaction() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO graduation_state
                   (user_id, category, consecutive_approvals, backoff_multiplier,
                    proposal_id, proposed_tier, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    state["user_id"], state["category"], state["consecutive_approvals"],
                    state["backoff_multiplier"], state.get("proposal_id"),
                    state.get("proposed_tier"), to_iso(utc_now()),
                ),
            )

    def pending_graduations(self, user_id: str) -> List[GraduationProposal]:
        with self._read() as conn:
            rows = conn.execute(
                """SELECT * FROM graduation_state
                   WHERE user_id = ? AND proposal_id IS NOT NULL""",
                (user_id,),
            ).fetchall()
        return [
            GraduationProposal(
                id=r["proposal_id"],
                user_id=r["user_id"],
                category=r["category"],
                current_tier=max(1, (r["proposed_tier"] or 2) - 1),
                proposed_tier=r["proposed_tier"] or 2,
                consecutive_approvals=r["consecutive_approvals"],
            )
            for r in rows
        ]
