"""
Heartbeat Task Store — the tasks the scanners raise for the owner.

A partial unique index allows at most one open task per
(user, entity_type, entity_id, trigger_type), so concurrent or repeated
heartbeat runs cannot duplicate work. Terminal tasks are stamped with
`measured_at` once their outcome is recorded. A small key/value table holds
scheduler state such as the last retention cleanup time.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from src.core.ledger.models import OutcomeType
from src.core.storage import SQLiteStore, dump_json, from_iso, generate_id, load_json, to_iso, utc_now

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    PENDING_INPUT = "pending_input"
    IN_PROGRESS = "in_progress"
    SCHEDULED = "scheduled"
    PAUSED = "paused"
    COMPLETED = "completed"
    DISMISSED = "dismissed"
    CANCELLED = "cancelled"

    @property
    def is_open(self) -> bool:
        return self in OPEN_STATUSES


OPEN_STATUSES = frozenset({
    TaskStatus.PENDING_INPUT,
    TaskStatus.IN_PROGRESS,
    TaskStatus.SCHEDULED,
    TaskStatus.PAUSED,
})

# Terminal status → how the outcome pass scores it
TERMINAL_OUTCOMES: Dict[TaskStatus, OutcomeType] = {
    TaskStatus.COMPLETED: OutcomeType.SUCCESS,
    TaskStatus.DISMISSED: OutcomeType.USER_OVERRIDE,
    TaskStatus.CANCELLED: OutcomeType.FAILURE,
}


class TaskPriority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


@dataclass
class Task:
    """One actionable item raised by a scanner."""
    user_id: str
    title: str
    category: str
    trigger_type: str
    entity_type: str
    entity_id: str
    status: TaskStatus = TaskStatus.PENDING_INPUT
    priority: TaskPriority = TaskPriority.NORMAL
    description: str = ""
    recommendation: str = ""
    decision_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=generate_id)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    measured_at: Optional[datetime] = None

    @property
    def dedup_key(self) -> str:
        return f"{self.entity_type}:{self.entity_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "category": self.category,
            "trigger_type": self.trigger_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "status": self.status.value,
            "priority": self.priority.value,
            "description": self.description,
            "recommendation": self.recommendation,
            "decision_id": self.decision_id,
            "data": dict(self.data),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "measured_at": self.measured_at.isoformat() if self.measured_at else None,
        }


_OPEN_SQL = ", ".join(f"'{s.value}'" for s in sorted(OPEN_STATUSES, key=lambda s: s.value))


class TaskStore(SQLiteStore):
    """SQLite persistence for heartbeat tasks and heartbeat state."""

    SCHEMA = f"""
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        title TEXT NOT NULL,
        category TEXT NOT NULL,
        trigger_type TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        status TEXT NOT NULL,
        priority TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        recommendation TEXT NOT NULL DEFAULT '',
        decision_id TEXT,
        data TEXT NOT NULL DEFAULT '{{}}',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        measured_at TEXT
    );
    CREATE UNIQUE INDEX IF NOT EXISTS idx_tasks_open_entity
        ON tasks(user_id, entity_type, entity_id, trigger_type)
        WHERE status IN ({_OPEN_SQL});
    CREATE INDEX IF NOT EXISTS idx_tasks_user_status ON tasks(user_id, status);
    CREATE INDEX IF NOT EXISTS idx_tasks_unmeasured ON tasks(user_id) WHERE measured_at IS NULL;

    CREATE TABLE IF NOT EXISTS heartbeat_state (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    );
    """

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        return Task(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            category=row["category"],
            trigger_type=row["trigger_type"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            status=TaskStatus(row["status"]),
            priority=TaskPriority(row["priority"]),
            description=row["description"],
            recommendation=row["recommendation"],
            decision_id=row["decision_id"],
            data=load_json(row["data"], {}),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
            measured_at=from_iso(row["measured_at"]),
        )

    def create_if_absent(self, task: Task) -> Optional[Task]:
        """Insert unless an open task for the same entity and trigger exists.

        Returns the task when inserted, None when it was a duplicate.
        """
        with self._transaction() as conn:
            cur = conn.execute(
                """INSERT OR IGNORE INTO tasks
                   (id, user_id, title, category, trigger_type, entity_type, entity_id,
                    status, priority, description, recommendation, decision_id, data,
                    created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    task.id, task.user_id, task.title, task.category, task.trigger_type,
                    task.entity_type, task.entity_id, task.status.value, task.priority.value,
                    task.description, task.recommendation, task.decision_id,
                    dump_json(task.data), to_iso(task.created_at), to_iso(task.updated_at),
                ),
            )
        if cur.rowcount != 1:
            return None
        logger.info("Task created for user %s: %s", task.user_id, task.title)
        return task

    def has_open_task(self, user_id: str, entity_type: str, entity_id: str, trigger_type: str) -> bool:
        with self._read() as conn:
            row = conn.execute(
                f"""SELECT 1 FROM tasks
                    WHERE user_id = ? AND entity_type = ? AND entity_id = ? AND trigger_type = ?
                      AND status IN ({_OPEN_SQL})
                    LIMIT 1""",
                (user_id, entity_type, entity_id, trigger_type),
            ).fetchone()
        return row is not None

    def get(self, task_id: str) -> Optional[Task]:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return self._row_to_task(row) if row else None

    def list_tasks(
        self,
        user_id: str,
        status: Optional[TaskStatus] = None,
        open_only: bool = False,
        limit: int = 100,
    ) -> List[Task]:
        sql = "SELECT * FROM tasks WHERE user_id = ?"
        params: List[Any] = [user_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        elif open_only:
            sql += f" AND status IN ({_OPEN_SQL})"
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self._read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_task(r) for r in rows]

    def update_status(self, task_id: str, status: TaskStatus) -> Optional[Task]:
        """Move a task to a new status.

        Raises:
            sqlite3.IntegrityError: Reopening a task when another open task
                already covers the same entity and trigger.
        """
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE tasks SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, to_iso(utc_now()), task_id),
            )
        if cur.rowcount == 0:
            return None
        return self.get(task_id)

    def record_action(
        self,
        task_id: str,
        decision_id: str,
        status: TaskStatus,
        description: str,
        recommendation: str,
    ) -> Optional[Task]:
        """Attach the decision for an action proposed on this task's behalf."""
        with self._transaction() as conn:
            cur = conn.execute(
                """UPDATE tasks SET decision_id = ?, status = ?, description = ?,
                     recommendation = ?, updated_at = ?
                   WHERE id = ?""",
                (decision_id, status.value, description, recommendation, to_iso(utc_now()), task_id),
            )
        if cur.rowcount == 0:
            return None
        return self.get(task_id)

    def unmeasured_terminal_tasks(self, user_id: str) -> List[Task]:
        terminal = ", ".join(f"'{s.value}'" for s in TERMINAL_OUTCOMES)
        with self._read() as conn:
            rows = conn.execute(
                f"""SELECT * FROM tasks
                    WHERE user_id = ? AND measured_at IS NULL AND status IN ({terminal})""",
                (user_id,),
            ).fetchall()
        return [self._row_to_task(r) for r in rows]

    def mark_measured(self, task_ids: List[str], when: Optional[datetime] = None) -> int:
        if not task_ids:
            return 0
        placeholders = ",".join("?" for _ in task_ids)
        with self._transaction() as conn:
            cur = conn.execute(
                f"UPDATE tasks SET measured_at = ? WHERE measured_at IS NULL AND id IN ({placeholders})",
                [to_iso(when or utc_now()), *task_ids],
            )
        return cur.rowcount

    # ── Heartbeat state ──────────────────────────────────────────

    def get_state(self, key: str) -> Optional[str]:
        with self._read() as conn:
            row = conn.execute("SELECT value FROM heartbeat_state WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_state(self, key: str, value: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                """INSERT INTO heartbeat_state (key, value) VALUES (?, ?)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value""",
                (key, value),
            )
