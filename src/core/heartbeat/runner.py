"""
Heartbeat Runner — budgeted, deduplicated sweep across users.

Users are processed in batches of `batch_size` on a thread pool; every
future is settled and a failing user only adds an `[user:<id>] ...` string
to the result. Per user, in order:

1. outcome measurement for terminal tasks
2. scanners (sequential, sharing one HeartbeatContext)
3. pending-approval expiry

After the sweep the retention job runs if its interval has elapsed.

Usage:
    runner = HeartbeatRunner(engine, source, task_store)
    result = runner.run()            # all users
    result = runner.run("user-1")    # one user
    runner.start_tick_loop()         # every heartbeat.interval_s
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from src.core import feature_flags
from src.core.autonomy.engine import AutonomyEngine
from src.core.errors import ScannerDataError
from src.core.heartbeat.context import HeartbeatContext
from src.core.heartbeat.maintenance import RetentionJob
from src.core.heartbeat.outcomes import measure_outcomes
from src.core.heartbeat.scanners import Scanner, default_scanners
from src.core.heartbeat.sources import PropertyDataSource
from src.core.heartbeat.tasks import TaskStore
from src.core.storage import utc_now

logger = logging.getLogger(__name__)


@dataclass
class HeartbeatResult:
    """Aggregate of one heartbeat run."""
    processed: int = 0
    tasks_created: int = 0
    actions_auto_executed: int = 0
    errors: List[str] = field(default_factory=list)
    cleanup: Optional[Dict[str, Any]] = None

    def merge(self, ctx: HeartbeatContext) -> None:
        self.processed += 1
        self.tasks_created += ctx.tasks_created
        self.actions_auto_executed += ctx.actions_auto_executed
        self.errors.extend(ctx.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "tasks_created": self.tasks_created,
            "actions_auto_executed": self.actions_auto_executed,
            "errors": list(self.errors),
        }


class HeartbeatRunner:
    """Runs scanners for every user and keeps the stores tidy."""

    def __init__(
        self,
        engine: AutonomyEngine,
        source: PropertyDataSource,
        tasks: TaskStore,
        scanners: Optional[List[Scanner]] = None,
    ) -> None:
        self._engine = engine
        self._source = source
        self._tasks = tasks
        self._config = engine.config.heartbeat
        self._scanners = scanners if scanners is not None else default_scanners()
        self._retention = RetentionJob(
            engine.ledger,
            engine.learning_store,
            tasks,
            engine.config,
            engine.learning,
        )
        self._run_lock = threading.Lock()
        self._tick_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._last_result: Optional[HeartbeatResult] = None

    @property
    def tasks(self) -> TaskStore:
        return self._tasks

    @property
    def last_result(self) -> Optional[HeartbeatResult]:
        return self._last_result

    # ── One user ─────────────────────────────────────────────────

    def _propose(self, user_id: str, action_name: str, parameters: Dict[str, Any], reasoning: str):
        return self._engine.propose(user_id, action_name, parameters, reasoning, conversation_id="heartbeat")

    def process_user(self, user_id: str, now: Optional[datetime] = None) -> HeartbeatContext:
        now = now or utc_now()
        ctx = HeartbeatContext(
            user_id=user_id,
            tasks=self._tasks,
            settings=self._engine.settings.get(user_id),
            config=self._config,
            now=now,
            proposer=self._propose,
        )

        ctx.outcomes_measured = measure_outcomes(self._engine.ledger, self._tasks, user_id)

        for scanner in self._scanners:
            try:
                scanner.scan(ctx, self._source)
            except ScannerDataError as exc:
                ctx.record_error(str(exc))
            except Exception as exc:
                ctx.record_error(str(ScannerDataError(scanner.name, user_id, str(exc))))

        ctx.pending_expired = self._engine.expire_pending(user_id, now)

        logger.info(
            "Heartbeat for user %s: %d task(s), %d auto-executed, %d finding(s), %d error(s)",
            user_id, ctx.tasks_created, ctx.actions_auto_executed, len(ctx.findings), len(ctx.errors),
        )
        return ctx

    # ── All users ────────────────────────────────────────────────

    def run(self, user_id: Optional[str] = None, now: Optional[datetime] = None) -> HeartbeatResult:
        """Process one user or every user; never raises for per-user failures."""
        now = now or utc_now()
        result = HeartbeatResult()
        users = [user_id] if user_id else self._source.list_user_ids()
        batch_size = self._config.batch_size

        with self._run_lock:
            for start in range(0, len(users), batch_size):
                batch = users[start:start + batch_size]
                with concurrent.futures.ThreadPoolExecutor(max_workers=len(batch)) as executor:
                    futures = {executor.submit(self.process_user, uid, now): uid for uid in batch}
                    for future in concurrent.futures.as_completed(futures):
                        uid = futures[future]
                        try:
                            result.merge(future.result())
                        except Exception as exc:
                            message = f"[user:{uid}] {exc}"
                            logger.error("Heartbeat failed: %s", message)
                            result.errors.append(message)

            if user_id is None:
                try:
                    result.cleanup = self._retention.run_if_due(now)
                except Exception as exc:
                    logger.error("Retention cleanup failed: %s", exc)
                    result.errors.append(f"cleanup: {exc}")

        self._last_result = result
        logger.info(
            "Heartbeat complete: %d user(s), %d task(s), %d auto-executed, %d error(s)",
            result.processed, result.tasks_created, result.actions_auto_executed, len(result.errors),
        )
        return result

    # ── Tick loop ────────────────────────────────────────────────

    def start_tick_loop(self) -> None:
        """Start the background heartbeat loop."""
        if not feature_flags.FEATURE_HEARTBEAT or not self._config.enabled:
            logger.info("Heartbeat disabled; tick loop not started")
            return
        if self._tick_thread and self._tick_thread.is_alive():
            logger.warning("Heartbeat loop already running")
            return
        self._stop_event.clear()
        self._tick_thread = threading.Thread(target=self._tick_loop, daemon=True, name="heartbeat-tick")
        self._tick_thread.start()
        logger.info("Heartbeat loop started (%ds interval)", self._config.interval_s)

    def stop(self) -> None:
        self._stop_event.set()
        if self._tick_thread:
            self._tick_thread.join(timeout=5)
        logger.info("Heartbeat loop stopped")

    def _tick_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run()
            except Exception:
                logger.exception("Heartbeat tick error")
            if self._stop_event.wait(self._config.interval_s):
                return
