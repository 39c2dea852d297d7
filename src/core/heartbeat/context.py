"""
Heartbeat Context — mutable state for one user's heartbeat cycle.

Holds the task budget, the `entity_type:entity_id` dedup set shared by all
scanners in the cycle, counters, findings and error strings. Scanners run
sequentially against one context, so it needs no locking.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from src.core.autonomy.config import HeartbeatConfig
from src.core.autonomy.settings import AutonomySettings
from src.core.heartbeat.tasks import Task, TaskStatus, TaskStore
from src.core.ledger.models import Verdict

logger = logging.getLogger(__name__)

# propose(user_id, action_name, parameters, reasoning) → GateVerdict
Proposer = Callable[[str, str, Dict[str, Any], str], Any]


@dataclass
class Finding:
    """A condition a scanner detected, whether or not it became a task."""
    scanner: str
    entity_key: str
    title: str
    outcome: str  # created | duplicate | open_task | budget_exhausted

    def to_dict(self) -> Dict[str, str]:
        return {
            "scanner": self.scanner,
            "entity_key": self.entity_key,
            "title": self.title,
            "outcome": self.outcome,
        }


class HeartbeatContext:
    """Budget, dedup set and counters for one user-cycle."""

    def __init__(
        self,
        user_id: str,
        tasks: TaskStore,
        settings: AutonomySettings,
        config: HeartbeatConfig,
        now: datetime,
        proposer: Optional[Proposer] = None,
    ) -> None:
        self.user_id = user_id
        self.settings = settings
        self.config = config
        self.now = now
        self._tasks = tasks
        self._proposer = proposer
        self.budget = config.task_budget
        self.seen: Set[str] = set()
        self.tasks_created = 0
        self.actions_auto_executed = 0
        self.outcomes_measured = 0
        self.pending_expired = 0
        self.findings: List[Finding] = []
        self.errors: List[str] = []

    @property
    def budget_remaining(self) -> int:
        return max(0, self.budget - self.tasks_created)

    @property
    def budget_exhausted(self) -> bool:
        return self.budget_remaining == 0

    @property
    def can_propose(self) -> bool:
        return self._proposer is not None

    def claim(self, scanner: str, entity_type: str, entity_id: str, trigger_type: str, title: str) -> bool:
        """Decide whether a detected condition may become a task.

        Checks, in order: already handled this cycle, open task with the
        same trigger, budget. The finding is recorded either way.
        """
        key = f"{entity_type}:{entity_id}"
        if key in self.seen:
            self.findings.append(Finding(scanner, key, title, "duplicate"))
            return False
        self.seen.add(key)
        if self._tasks.has_open_task(self.user_id, entity_type, entity_id, trigger_type):
            self.findings.append(Finding(scanner, key, title, "open_task"))
            return False
        if self.budget_exhausted:
            self.findings.append(Finding(scanner, key, title, "budget_exhausted"))
            logger.debug("Task budget exhausted for user %s, recording %s only", self.user_id, key)
            return False
        return True

    def add_task(self, scanner: str, task: Task) -> Optional[Task]:
        """Insert a claimed task; None if a concurrent run created it first."""
        created = self._tasks.create_if_absent(task)
        if created is None:
            self.findings.append(Finding(scanner, task.dedup_key, task.title, "open_task"))
            return None
        self.tasks_created += 1
        self.findings.append(Finding(scanner, task.dedup_key, task.title, "created"))
        return created

    def create_task(self, scanner: str, task: Task) -> Optional[Task]:
        if not self.claim(scanner, task.entity_type, task.entity_id, task.trigger_type, task.title):
            return None
        return self.add_task(scanner, task)

    def attach_action(
        self,
        task: Task,
        decision_id: str,
        status: TaskStatus,
        description: str,
        recommendation: str,
    ) -> Optional[Task]:
        return self._tasks.record_action(task.id, decision_id, status, description, recommendation)

    def propose(self, action_name: str, parameters: Dict[str, Any], reasoning: str) -> Any:
        """Send an action through the autonomy gate on the user's behalf."""
        if self._proposer is None:
            return None
        verdict = self._proposer(self.user_id, action_name, parameters, reasoning)
        if verdict is not None and verdict.status == Verdict.AUTO_EXECUTED:
            self.actions_auto_executed += 1
        return verdict

    def record_error(self, message: str) -> None:
        logger.error(message)
        self.errors.append(message)
