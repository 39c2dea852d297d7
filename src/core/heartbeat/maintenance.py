"""
Retention maintenance — the once-per-interval cleanup run by the heartbeat.

Deletes stale ledger evidence and old pattern-matched corrections, retires
low-confidence rules, decays rules nobody has touched, and re-runs
correction pattern detection to catch any missed events. The last run
time lives in the task store's state table so the interval survives
restarts.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from src.core.autonomy.config import AutonomyConfig
from src.core.heartbeat.tasks import TaskStore
from src.core.learning.pipeline import LearningPipeline
from src.core.learning.store import LearningStore
from src.core.ledger.store import DecisionLedger
from src.core.storage import from_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

_LAST_CLEANUP_KEY = "last_cleanup_at"


class RetentionJob:
    """Periodic cleanup across the ledger and the learning store."""

    def __init__(
        self,
        ledger: DecisionLedger,
        learning_store: Optional[LearningStore],
        tasks: TaskStore,
        config: AutonomyConfig,
        pipeline: Optional[LearningPipeline] = None,
    ) -> None:
        self._ledger = ledger
        self._learning = learning_store
        self._tasks = tasks
        self._config = config
        self._pipeline = pipeline

    def last_run_at(self) -> Optional[datetime]:
        return from_iso(self._tasks.get_state(_LAST_CLEANUP_KEY))

    def is_due(self, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        last = self.last_run_at()
        if last is None:
            return True
        return now - last >= timedelta(hours=self._config.heartbeat.cleanup_interval_hours)

    def run_if_due(self, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        now = now or utc_now()
        if not self.is_due(now):
            return None
        return self.run(now)

    def run(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utc_now()
        persistence = self._config.persistence
        result: Dict[str, Any] = dict(self._ledger.cleanup(
            persistence.retention_days, persistence.genome_reset_rate, now,
        ))
        result["rules_deactivated"] = 0
        result["corrections_deleted"] = 0
        if self._learning is not None:
            result["rules_deactivated"] = self._learning.deactivate_below(persistence.rule_cleanup_below)
            result["corrections_deleted"] = self._learning.delete_matched_corrections(
                now - timedelta(days=persistence.retention_days),
            )
        if self._pipeline is not None:
            decay = self._pipeline.decay_stale_rules(now)
            result["rules_decayed"] = decay["decayed"]
            result["rules_deactivated"] += decay["deactivated"]
            result["patterns"] = self._pipeline.run_batch()
        self._tasks.set_state(_LAST_CLEANUP_KEY, to_iso(now))
        logger.info("Retention cleanup complete: %s", result)
        return result
