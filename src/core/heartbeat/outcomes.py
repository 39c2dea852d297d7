"""
Outcome measurement — scores terminal heartbeat tasks exactly once.

completed → success, dismissed → user_override, cancelled → failure.
A task is stamped `measured_at` after its outcome is written, so later
runs never look at it again even once retention has removed the Outcome
row. The outcomes table's unique (decision, task) index makes a concurrent
second write a no-op.
"""

from __future__ import annotations

import logging

from src.core.heartbeat.tasks import TERMINAL_OUTCOMES, TaskStore
from src.core.ledger.models import Outcome
from src.core.ledger.store import DecisionLedger

logger = logging.getLogger(__name__)


def measure_outcomes(ledger: DecisionLedger, tasks: TaskStore, user_id: str) -> int:
    """Record an Outcome for every unmeasured terminal task; returns the count."""
    terminal = tasks.unmeasured_terminal_tasks(user_id)
    if not terminal:
        return 0
    # Outcomes written by a run that stopped before stamping its tasks
    scored = ledger.scored_task_ids(t.id for t in terminal)
    written = 0
    for task in terminal:
        if task.id in scored:
            continue
        outcome = Outcome(
            user_id=user_id,
            action_name=f"heartbeat:{task.trigger_type}",
            outcome_type=TERMINAL_OUTCOMES[task.status],
            task_id=task.id,
            details={
                "status": task.status.value,
                "category": task.category,
                "decision_id": task.decision_id,
            },
        )
        if ledger.record_outcome(outcome):
            written += 1
    tasks.mark_measured([t.id for t in terminal])
    if written:
        logger.info("Measured %d task outcome(s) for user %s", written, user_id)
    return written
