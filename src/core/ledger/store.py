"""
Decision Ledger — SQLite store for decisions, approvals and outcomes.

The decisions table is append-only apart from the feedback and outcome
annotations. Pending actions leave `pending` exactly once through a
conditional UPDATE. Outcomes are unique per (decision, task) pair.

Public API:
    DecisionLedger(db_path)
    record_decision(decision)            → Decision
    record_gated(decision, pending)      → (Decision, PendingAction)
    resolve_pending(id, status, by)      → PendingAction | None
    record_outcome(outcome)              → bool
    record_execution(user, action, ok, ms) → ToolGenome
    append_trajectory(...)               → Trajectory
    cleanup(retention_days)              → dict
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from src.core.ledger.models import (
    Decision,
    DecisionType,
    FeedbackType,
    Outcome,
    OutcomeType,
    PendingAction,
    PendingStatus,
    ToolGenome,
    Trajectory,
    Verdict,
)
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


class DecisionLedger(SQLiteStore):
    """Append-only record of gating decisions and their consequences."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS decisions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        conversation_id TEXT NOT NULL DEFAULT '',
        decision_type TEXT NOT NULL,
        action_name TEXT NOT NULL,
        category TEXT NOT NULL,
        parameters TEXT NOT NULL DEFAULT '{}',
        reasoning TEXT NOT NULL DEFAULT '',
        confidence_factors TEXT NOT NULL DEFAULT '{}',
        confidence REAL,
        verdict TEXT NOT NULL,
        embedding BLOB,
        feedback TEXT,
        correction TEXT,
        outcome TEXT,
        created_at TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_decisions_user ON decisions(user_id, created_at);
    CREATE INDEX IF NOT EXISTS idx_decisions_action ON decisions(user_id, action_name);

    CREATE TABLE IF NOT EXISTS pending_actions (
        id TEXT PRIMARY KEY,
        decision_id TEXT NOT NULL REFERENCES decisions(id),
        user_id TEXT NOT NULL,
        conversation_id TEXT NOT NULL DEFAULT '',
        action_name TEXT NOT NULL,
        parameters TEXT NOT NULL DEFAULT '{}',
        reason TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL DEFAULT 'pending',
        created_at TEXT NOT NULL,
        resolved_at TEXT,
        resolved_by TEXT
    );
    CREATE UNIQUE INDEX IF NOT EXISTS idx_pending_decision ON pending_actions(decision_id);
    CREATE INDEX IF NOT EXISTS idx_pending_user ON pending_actions(user_id, status);

    CREATE TABLE IF NOT EXISTS outcomes (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        decision_id TEXT,
        task_id TEXT,
        action_name TEXT NOT NULL,
        outcome_type TEXT NOT NULL,
        details TEXT NOT NULL DEFAULT '{}',
        measured_at TEXT NOT NULL
    );
    CREATE UNIQUE INDEX IF NOT EXISTS idx_outcomes_pair
        ON outcomes(IFNULL(decision_id, ''), IFNULL(task_id, ''));
    CREATE INDEX IF NOT EXISTS idx_outcomes_action ON outcomes(user_id, action_name, measured_at);

    CREATE TABLE IF NOT EXISTS trajectories (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        conversation_id TEXT NOT NULL DEFAULT '',
        intent_hash TEXT NOT NULL,
        actions TEXT NOT NULL DEFAULT '[]',
        is_golden INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_trajectories_intent ON trajectories(user_id, intent_hash);

    CREATE TABLE IF NOT EXISTS tool_genome (
        user_id TEXT NOT NULL,
        action_name TEXT NOT NULL,
        total_executions INTEGER NOT NULL DEFAULT 0,
        successes INTEGER NOT NULL DEFAULT 0,
        failures INTEGER NOT NULL DEFAULT 0,
        ema_success_rate REAL NOT NULL DEFAULT 0,
        avg_duration_ms REAL NOT NULL DEFAULT 0,
        last_error TEXT,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (user_id, action_name)
    );
    """

    # ── Decisions ────────────────────────────────────────────────

    def _insert_decision(self, conn: sqlite3.Connection, d: Decision) -> None:
        conn.execute(
            """INSERT INTO decisions
               (id, user_id, conversation_id, decision_type, action_name, category,
                parameters, reasoning, confidence_factors, confidence, verdict,
                embedding, feedback, correction, outcome, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                d.id, d.user_id, d.conversation_id, d.decision_type.value,
                d.action_name, d.category, dump_json(d.parameters), d.reasoning,
                dump_json(d.confidence_factors), d.confidence, d.verdict.value,
                pack_vector(d.embedding),
                d.feedback.value if d.feedback else None,
                d.correction,
                d.outcome.value if d.outcome else None,
                to_iso(d.created_at),
            ),
        )

    def record_decision(self, decision: Decision) -> Decision:
        """Append one decision row."""
        with self._transaction() as conn:
            self._insert_decision(conn, decision)
        logger.debug(
            "Decision %s recorded: %s %s (%s)",
            decision.id, decision.action_name, decision.verdict.value, decision.user_id,
        )
        return decision

    def record_gated(
        self, decision: Decision, pending: PendingAction
    ) -> Tuple[Decision, PendingAction]:
        """Write a gated decision and its pending action in one transaction."""
        if decision.verdict != Verdict.GATED:
            raise ValueError("record_gated requires a gated decision")
        pending.decision_id = decision.id
        with self._transaction() as conn:
            self._insert_decision(conn, decision)
            conn.execute(
                """INSERT INTO pending_actions
                   (id, decision_id, user_id, conversation_id, action_name,
                    parameters, reason, status, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    pending.id, pending.decision_id, pending.user_id,
                    pending.conversation_id, pending.action_name,
                    dump_json(pending.parameters), pending.reason,
                    pending.status.value, to_iso(pending.created_at),
                ),
            )
        logger.info(
            "Gated %s for user %s (pending=%s)", decision.action_name, decision.user_id, pending.id,
        )
        return decision, pending

    def _row_to_decision(self, row: sqlite3.Row) -> Decision:
        return Decision(
            id=row["id"],
            user_id=row["user_id"],
            conversation_id=row["conversation_id"],
            decision_type=DecisionType(row["decision_type"]),
            action_name=row["action_name"],
            category=row["category"],
            parameters=load_json(row["parameters"], {}),
            reasoning=row["reasoning"],
            confidence_factors=load_json(row["confidence_factors"], {}),
            confidence=row["confidence"],
            verdict=Verdict(row["verdict"]),
            embedding=unpack_vector(row["embedding"]),
            feedback=FeedbackType(row["feedback"]) if row["feedback"] else None,
            correction=row["correction"],
            outcome=OutcomeType(row["outcome"]) if row["outcome"] else None,
            created_at=from_iso(row["created_at"]),
        )

    def get_decision(self, decision_id: str) -> Optional[Decision]:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM decisions WHERE id = ?", (decision_id,)).fetchone()
        return self._row_to_decision(row) if row else None

    def list_decisions(
        self,
        user_id: str,
        limit: int = 50,
        decision_type: Optional[DecisionType] = None,
    ) -> List[Decision]:
        sql = "SELECT * FROM decisions WHERE user_id = ?"
        params: List[Any] = [user_id]
        if decision_type is not None:
            sql += " AND decision_type = ?"
            params.append(decision_type.value)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self._read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_decision(r) for r in rows]

    def set_feedback(
        self,
        decision_id: str,
        feedback: FeedbackType,
        correction: Optional[str] = None,
    ) -> Optional[Decision]:
        """Attach human feedback to a decision."""
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE decisions SET feedback = ?, correction = ? WHERE id = ?",
                (feedback.value, correction, decision_id),
            )
        if cur.rowcount == 0:
            return None
        return self.get_decision(decision_id)

    def decisions_with_feedback(
        self,
        user_id: str,
        action_name: Optional[str] = None,
        limit: int = 5,
    ) -> List[Decision]:
        """Most recent decisions that carry feedback, newest first."""
        sql = "SELECT * FROM decisions WHERE user_id = ? AND feedback IS NOT NULL"
        params: List[Any] = [user_id]
        if action_name:
            sql += " AND action_name = ?"
            params.append(action_name)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self._read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_decision(r) for r in rows]

    def embedded_decisions(self, user_id: str, with_feedback: bool = True) -> List[Decision]:
        """Decisions with an embedding; the candidate set for vector search."""
        sql = "SELECT * FROM decisions WHERE user_id = ? AND embedding IS NOT NULL"
        if with_feedback:
            sql += " AND feedback IS NOT NULL"
        with self._read() as conn:
            rows = conn.execute(sql, (user_id,)).fetchall()
        return [self._row_to_decision(r) for r in rows]

    # ── Pending Actions ──────────────────────────────────────────

    def _row_to_pending(self, row: sqlite3.Row) -> PendingAction:
        return PendingAction(
            id=row["id"],
            decision_id=row["decision_id"],
            user_id=row["user_id"],
            conversation_id=row["conversation_id"],
            action_name=row["action_name"],
            parameters=load_json(row["parameters"], {}),
            reason=row["reason"],
            status=PendingStatus(row["status"]),
            created_at=from_iso(row["created_at"]),
            resolved_at=from_iso(row["resolved_at"]),
            resolved_by=row["resolved_by"],
        )

    def get_pending(self, pending_id: str) -> Optional[PendingAction]:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM pending_actions WHERE id = ?", (pending_id,)
            ).fetchone()
        return self._row_to_pending(row) if row else None

    def pending_for_decision(self, decision_id: str) -> Optional[PendingAction]:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM pending_actions WHERE decision_id = ?", (decision_id,)
            ).fetchone()
        return self._row_to_pending(row) if row else None

    def list_pending(
        self,
        user_id: Optional[str] = None,
        status: Optional[PendingStatus] = PendingStatus.PENDING,
        limit: int = 100,
    ) -> List[PendingAction]:
        sql = "SELECT * FROM pending_actions WHERE 1 = 1"
        params: List[Any] = []
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self._read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_pending(r) for r in rows]

    def resolve_pending(
        self,
        pending_id: str,
        status: PendingStatus,
        resolved_by: Optional[str] = None,
    ) -> Optional[PendingAction]:
        """Move a pending action out of `pending`.

        Returns the updated row, or None when it was not pending any more
        (another caller won the transition or it never existed).
        """
        if status == PendingStatus.PENDING:
            raise ValueError("Cannot resolve a pending action to 'pending'")
        with self._transaction() as conn:
            cur = conn.execute(
                """UPDATE pending_actions
                   SET status = ?, resolved_at = ?, resolved_by = ?
                   WHERE id = ? AND status = 'pending'""",
                (status.value, to_iso(utc_now()), resolved_by, pending_id),
            )
        if cur.rowcount != 1:
            return None
        return self.get_pending(pending_id)

    def expire_pending(self, older_than: datetime, user_id: Optional[str] = None) -> int:
        """Expire pending actions created before `older_than`."""
        sql = """UPDATE pending_actions
                 SET status = 'expired', resolved_at = ?, resolved_by = 'system'
                 WHERE status = 'pending' AND created_at < ?"""
        params: List[Any] = [to_iso(utc_now()), to_iso(older_than)]
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        with self._transaction() as conn:
            cur = conn.execute(sql, params)
        if cur.rowcount:
            logger.info("Expired %d pending action(s)", cur.rowcount)
        return cur.rowcount

    # ── Outcomes ─────────────────────────────────────────────────

    def record_outcome(self, outcome: Outcome) -> bool:
        """Insert an outcome unless the (decision, task) pair is already scored.

        Returns True when a row was written.
        """
        with self._transaction() as conn:
            cur = conn.execute(
                """INSERT OR IGNORE INTO outcomes
                   (id, user_id, decision_id, task_id, action_name, outcome_type,
                    details, measured_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    outcome.id, outcome.user_id, outcome.decision_id, outcome.task_id,
                    outcome.action_name, outcome.outcome_type.value,
                    dump_json(outcome.details), to_iso(outcome.measured_at),
                ),
            )
            written = cur.rowcount == 1
            if written and outcome.decision_id:
                conn.execute(
                    "UPDATE decisions SET outcome = ? WHERE id = ?",
                    (outcome.outcome_type.value, outcome.decision_id),
                )
        return written

    def scored_task_ids(self, task_ids: Iterable[str]) -> Set[str]:
        ids = list(task_ids)
        if not ids:
            return set()
        placeholders = ",".join("?" for _ in ids)
        with self._read() as conn:
            rows = conn.execute(
                f"SELECT task_id FROM outcomes WHERE task_id IN ({placeholders})", ids
            ).fetchall()
        return {r["task_id"] for r in rows}

    def recent_outcomes(self, user_id: str, action_name: str, limit: int = 20) -> List[Outcome]:
        with self._read() as conn:
            rows = conn.execute(
                """SELECT * FROM outcomes WHERE user_id = ? AND action_name = ?
                   ORDER BY measured_at DESC LIMIT ?""",
                (user_id, action_name, limit),
            ).fetchall()
        return [
            Outcome(
                id=r["id"],
                user_id=r["user_id"],
                decision_id=r["decision_id"],
                task_id=r["task_id"],
                action_name=r["action_name"],
                outcome_type=OutcomeType(r["outcome_type"]),
                details=load_json(r["details"], {}),
                measured_at=from_iso(r["measured_at"]),
            )
            for r in rows
        ]

    # ── Tool Genome ──────────────────────────────────────────────

    @staticmethod
    def _row_to_genome(row: sqlite3.Row) -> ToolGenome:
        return ToolGenome(
            user_id=row["user_id"],
            action_name=row["action_name"],
            total_executions=row["total_executions"],
            successes=row["successes"],
            failures=row["failures"],
            ema_success_rate=row["ema_success_rate"],
            avg_duration_ms=row["avg_duration_ms"],
            last_error=row["last_error"],
            updated_at=from_iso(row["updated_at"]),
        )

    def get_genome(self, user_id: str, action_name: str) -> Optional[ToolGenome]:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM tool_genome WHERE user_id = ? AND action_name = ?",
                (user_id, action_name),
            ).fetchone()
        return self._row_to_genome(row) if row else None

    def record_execution(
        self,
        user_id: str,
        action_name: str,
        success: bool,
        duration_ms: int,
        alpha: float = 0.15,
        error: Optional[str] = None,
    ) -> ToolGenome:
        """Update the user's genome for this action with one execution result."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM tool_genome WHERE user_id = ? AND action_name = ?",
                (user_id, action_name),
            ).fetchone()
            genome = self._row_to_genome(row) if row else ToolGenome(user_id=user_id, action_name=action_name)
            genome.record(success, duration_ms, alpha, error)
            conn.execute(
                """INSERT OR REPLACE INTO tool_genome
                   (user_id, action_name, total_executions, successes, failures,
                    ema_success_rate, avg_duration_ms, last_error, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    genome.user_id, genome.action_name, genome.total_executions, genome.successes,
                    genome.failures, genome.ema_success_rate, genome.avg_duration_ms,
                    genome.last_error, to_iso(genome.updated_at),
                ),
            )
        return genome

    # ── Trajectories ─────────────────────────────────────────────

    def _row_to_trajectory(self, row: sqlite3.Row) -> Trajectory:
        return Trajectory(
            id=row["id"],
            user_id=row["user_id"],
            conversation_id=row["conversation_id"],
            intent_hash=row["intent_hash"],
            actions=load_json(row["actions"], []),
            is_golden=bool(row["is_golden"]),
            created_at=from_iso(row["created_at"]),
        )

    def append_trajectory(
        self,
        user_id: str,
        conversation_id: str,
        intent_hash: str,
        action_name: str,
    ) -> Trajectory:
        """Append an executed action to the conversation's trajectory."""
        with self._transaction() as conn:
            row = conn.execute(
                """SELECT * FROM trajectories
                   WHERE user_id = ? AND conversation_id = ? AND intent_hash = ?""",
                (user_id, conversation_id, intent_hash),
            ).fetchone()
            if row is None:
                trajectory = Trajectory(
                    user_id=user_id,
                    conversation_id=conversation_id,
                    intent_hash=intent_hash,
                    actions=[action_name],
                )
                conn.execute(
                    """INSERT INTO trajectories
                       (id, user_id, conversation_id, intent_hash, actions, is_golden, created_at)
                       VALUES (?, ?, ?, ?, ?, 0, ?)""",
                    (
                        trajectory.id, user_id, conversation_id, intent_hash,
                        dump_json(trajectory.actions), to_iso(trajectory.created_at),
                    ),
                )
                return trajectory
            trajectory = self._row_to_trajectory(row)
            trajectory.actions.append(action_name)
            conn.execute(
                "UPDATE trajectories SET actions = ? WHERE id = ?",
                (dump_json(trajectory.actions), trajectory.id),
            )
        return trajectory

    def mark_golden(self, trajectory_id: str, golden: bool = True) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE trajectories SET is_golden = ? WHERE id = ?",
                (1 if golden else 0, trajectory_id),
            )
        return cur.rowcount == 1

    def list_trajectories(self, user_id: str, intent_hash: Optional[str] = None) -> List[Trajectory]:
        sql = "SELECT * FROM trajectories WHERE user_id = ?"
        params: List[Any] = [user_id]
        if intent_hash:
            sql += " AND intent_hash = ?"
            params.append(intent_hash)
        sql += " ORDER BY created_at DESC"
        with self._read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_trajectory(r) for r in rows]

    def golden_trajectory(self, user_id: str, intent_hash: str) -> Optional[Trajectory]:
        with self._read() as conn:
            row = conn.execute(
                """SELECT * FROM trajectories
                   WHERE user_id = ? AND intent_hash = ? AND is_golden = 1
                   ORDER BY created_at DESC LIMIT 1""",
                (user_id, intent_hash),
            ).fetchone()
        return self._row_to_trajectory(row) if row else None

    # ── Retention ────────────────────────────────────────────────

    def cleanup(
        self,
        retention_days: int,
        genome_reset_rate: float = 0.9,
        now: Optional[datetime] = None,
    ) -> Dict[str, int]:
        """Delete stale evidence past the retention window."""
        now = now or utc_now()
        cutoff = to_iso(now - timedelta(days=retention_days))
        outcome_cutoff = to_iso(now - timedelta(days=retention_days * 2))
        with self._transaction() as conn:
            trajectories = conn.execute(
                "DELETE FROM trajectories WHERE is_golden = 0 AND created_at < ?", (cutoff,)
            ).rowcount
            decisions = conn.execute(
                """DELETE FROM decisions
                   WHERE feedback IS NULL AND embedding IS NULL AND created_at < ?
                     AND id NOT IN (SELECT decision_id FROM pending_actions WHERE status = 'pending')""",
                (cutoff,),
            ).rowcount
            outcomes = conn.execute(
                "DELETE FROM outcomes WHERE measured_at < ?", (outcome_cutoff,)
            ).rowcount
            genomes = conn.execute(
                """UPDATE tool_genome SET ema_success_rate = ?, updated_at = ?
                   WHERE updated_at < ?""",
                (genome_reset_rate, to_iso(now), cutoff),
            ).rowcount
        result = {
            "trajectories_deleted": trajectories,
            "decisions_deleted": decisions,
            "outcomes_deleted": outcomes,
            "genomes_reset": genomes,
        }
        logger.info("Ledger cleanup: %s", result)
        return result
