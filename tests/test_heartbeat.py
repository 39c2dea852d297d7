"""
Tests for the Heartbeat: scanners, task dedup, budget and outcomes.

These tests validate:
- One run turns portfolio state into tasks; a second run creates none
- Rent arrears reminders go through the autonomy gate
- The per-user task budget caps task creation but not findings
- Malformed rows and failing users are reported, not raised
- Terminal tasks are scored exactly once
- At most one open task per entity and trigger
- Retention cleanup runs once per interval
"""

import sqlite3
from datetime import timedelta

import pytest

from src.core.autonomy.config import AutonomyConfig, HeartbeatConfig, PersistenceConfig
from src.core.heartbeat.maintenance import RetentionJob
from src.core.heartbeat.outcomes import measure_outcomes
from src.core.heartbeat.runner import HeartbeatRunner
from src.core.heartbeat.scanners import RentArrearsScanner, default_scanners, parse_datetime
from src.core.heartbeat.sources import InMemoryPropertySource
from src.core.heartbeat.tasks import Task, TaskPriority, TaskStatus, TaskStore
from src.core.ledger.models import Outcome, OutcomeType
from src.core.storage import utc_now

NOW = utc_now()


def _tasks(engine):
    store = TaskStore(engine.config.db_path)
    store.initialize()
    return store


def _portfolio():
    source = InMemoryPropertySource()
    source.add("u1", "leases", {
        "id": "t1", "address": "12 Oak St", "tenant_names": "Jo Smith",
        "lease_end_date": (NOW + timedelta(days=10)).date().isoformat(),
    })
    source.add("u1", "arrears", {
        "id": "a1", "tenancy_id": "t1", "tenant_name": "Jo Smith",
        "tenant_email": "jo@example.com", "address": "12 Oak St",
        "total_overdue": 850, "days_overdue": 8, "created_at": NOW - timedelta(hours=2),
    })
    source.add("u1", "maintenance", {
        "id": "m1", "title": "Burst pipe", "address": "12 Oak St", "urgency": "emergency",
        "status": "open", "updated_at": NOW - timedelta(hours=1),
    })
    source.add("u1", "communications", {
        "id": "msg1", "sender_name": "Jo Smith", "subject": "Heater",
        "received_at": NOW - timedelta(hours=30),
    })
    return source


def _by_trigger(tasks, user_id="u1"):
    return {t.trigger_type: t for t in tasks.list_tasks(user_id)}


# ---------------------------------------------------------------------------
# Full runs
# ---------------------------------------------------------------------------
class TestHeartbeatRun:
    def test_first_run_creates_tasks(self, engine, handlers):
        tasks = _tasks(engine)
        runner = HeartbeatRunner(engine, _portfolio(), tasks)
        result = runner.run(now=NOW)

        assert result.processed == 1
        assert result.tasks_created == 4
        assert result.actions_auto_executed == 1
        assert result.errors == []
        assert result.cleanup is not None
        assert runner.last_result is result

        created = _by_trigger(tasks)
        assert set(created) == {"lease_expiry", "overdue_rent", "maintenance_followup", "unanswered_message"}
        assert created["lease_expiry"].priority == TaskPriority.URGENT
        assert created["maintenance_followup"].priority == TaskPriority.URGENT
        assert created["unanswered_message"].priority == TaskPriority.NORMAL

        arrears = created["overdue_rent"]
        assert arrears.status == TaskStatus.IN_PROGRESS
        assert arrears.priority == TaskPriority.HIGH
        assert arrears.decision_id is not None
        assert "sent automatically" in arrears.description
        assert handlers.count("send_rent_reminder") == 1

    def test_second_run_is_idempotent(self, engine, handlers):
        tasks = _tasks(engine)
        runner = HeartbeatRunner(engine, _portfolio(), tasks)
        runner.run(now=NOW)
        again = runner.run(now=NOW)
        assert again.tasks_created == 0
        assert again.actions_auto_executed == 0
        assert again.cleanup is None
        assert len(tasks.list_tasks("u1")) == 4
        assert handlers.count("send_rent_reminder") == 1

    def test_single_user_run_skips_cleanup(self, engine):
        runner = HeartbeatRunner(engine, _portfolio(), _tasks(engine))
        result = runner.run("u1", now=NOW)
        assert result.tasks_created == 4
        assert result.cleanup is None

    def test_failing_user_isolated(self, engine):
        class FlakyTaskStore(TaskStore):
            def unmeasured_terminal_tasks(self, user_id):
                if user_id == "bad-user":
                    raise RuntimeError("db down")
                return super().unmeasured_terminal_tasks(user_id)

        tasks = FlakyTaskStore(engine.config.db_path)
        tasks.initialize()
        source = _portfolio()
        source.add_user("bad-user")
        result = HeartbeatRunner(engine, source, tasks).run(now=NOW)

        assert result.processed == 1
        assert result.tasks_created == 4
        assert "[user:bad-user] db down" in result.errors

    def test_to_dict(self, engine):
        result = HeartbeatRunner(engine, _portfolio(), _tasks(engine)).run(now=NOW)
        assert result.to_dict()["tasks_created"] == 4


# ---------------------------------------------------------------------------
# Budget and data errors
# ---------------------------------------------------------------------------
class TestBudgetAndErrors:
    def test_budget_caps_tasks_not_findings(self, make_engine, tmp_data_dir):
        cfg = AutonomyConfig(
            persistence=PersistenceConfig(data_dir=str(tmp_data_dir)),
            heartbeat=HeartbeatConfig(task_budget=2),
        )
        engine = make_engine(cfg=cfg)
        source = InMemoryPropertySource()
        for i in range(5):
            source.add("u1", "communications", {
                "id": f"msg{i}", "sender_name": f"Tenant {i}", "received_at": NOW - timedelta(days=2),
            })
        ctx = HeartbeatRunner(engine, source, _tasks(engine)).process_user("u1", NOW)

        assert ctx.tasks_created == 2
        outcomes = [f.outcome for f in ctx.findings]
        assert outcomes.count("created") == 2
        assert outcomes.count("budget_exhausted") == 3

    def test_malformed_row_reported(self, engine):
        source = _portfolio()
        source.add("u1", "leases", {"id": "t2", "address": "3 Elm Rd"})
        result = HeartbeatRunner(engine, source, _tasks(engine)).run("u1", now=NOW)
        assert result.errors == ["[user:u1] lease_expiry: row t2 missing 'lease_end_date'"]
        assert result.tasks_created == 4

    def test_bad_date_reported(self, engine):
        source = InMemoryPropertySource()
        source.add("u1", "inspections", {"id": "i1", "scheduled_date": "next tuesday"})
        result = HeartbeatRunner(engine, source, _tasks(engine)).run("u1", now=NOW)
        assert result.errors[0].startswith("[user:u1] inspections: row i1 bad 'scheduled_date'")

    def test_parse_datetime(self):
        assert parse_datetime("2026-03-01T10:00:00Z").tzinfo is not None
        assert parse_datetime("") is None
        with pytest.raises(ValueError):
            parse_datetime(42)


# ---------------------------------------------------------------------------
# Scanners
# ---------------------------------------------------------------------------
class TestScanners:
    def _run(self, engine, kind, *rows):
        source = InMemoryPropertySource()
        source.add("u1", kind, *rows)
        tasks = _tasks(engine)
        HeartbeatRunner(engine, source, tasks).process_user("u1", NOW)
        return tasks.list_tasks("u1")

    @pytest.mark.parametrize("days,priority", [
        (10, TaskPriority.URGENT), (20, TaskPriority.HIGH), (45, TaskPriority.NORMAL),
    ])
    def test_lease_windows(self, engine, days, priority):
        created = self._run(engine, "leases", {
            "id": "t1", "lease_end_date": (NOW + timedelta(days=days)).date(),
        })
        assert [t.priority for t in created] == [priority]
        assert created[0].data["days_until_expiry"] == days

    @pytest.mark.parametrize("days", [-1, 61])
    def test_lease_outside_windows(self, engine, days):
        assert self._run(engine, "leases", {
            "id": "t1", "lease_end_date": (NOW + timedelta(days=days)).date(),
        }) == []

    def test_old_or_resolved_arrears_ignored(self, engine):
        assert self._run(
            engine, "arrears",
            {"id": "a1", "total_overdue": 100, "created_at": NOW - timedelta(hours=30)},
            {"id": "a2", "total_overdue": 100, "created_at": NOW, "is_resolved": True},
        ) == []

    def test_arrears_without_email_waits_for_owner(self, engine, handlers):
        created = self._run(engine, "arrears", {
            "id": "a1", "total_overdue": 300, "days_overdue": 15, "created_at": NOW,
        })
        assert created[0].status == TaskStatus.PENDING_INPUT
        assert created[0].priority == TaskPriority.URGENT
        assert created[0].decision_id is None
        assert handlers.count("send_rent_reminder") == 0

    def test_gated_reminder(self, engine, handlers):
        engine.settings.set_override("u1", "action", "L1")
        created = self._run(engine, "arrears", {
            "id": "a1", "tenant_email": "jo@example.com", "total_overdue": 300,
            "days_overdue": 3, "created_at": NOW,
        })
        task = created[0]
        assert task.status == TaskStatus.PENDING_INPUT
        assert "waiting for your approval" in task.description
        assert task.decision_id is not None
        assert handlers.count("send_rent_reminder") == 0
        assert len(engine.list_pending("u1")) == 1

    def test_failed_reminder_still_creates_task(self, engine, handlers):
        handlers.fail["send_rent_reminder"] = ValueError("mailbox rejected address")
        source = InMemoryPropertySource()
        source.add("u1", "arrears", {
            "id": "a1", "tenant_email": "jo@example.com", "total_overdue": 300,
            "days_overdue": 3, "created_at": NOW,
        })
        tasks = _tasks(engine)
        ctx = HeartbeatRunner(engine, source, tasks).process_user("u1", NOW)
        assert ctx.errors[0].startswith("[user:u1] rent_arrears: reminder failed:")
        assert tasks.list_tasks("u1")[0].status == TaskStatus.PENDING_INPUT

    def test_no_reminder_when_task_insert_loses_race(self, engine, handlers):
        class RacingTaskStore(TaskStore):
            # Another run inserts between the open-task check and the insert
            def has_open_task(self, user_id, entity_type, entity_id, trigger_type):
                return False

        tasks = RacingTaskStore(engine.config.db_path)
        tasks.initialize()
        tasks.create_if_absent(Task(
            user_id="u1", title="Overdue rent", category="rent_collection",
            trigger_type="overdue_rent", entity_type="arrears_record", entity_id="a1",
        ))
        source = InMemoryPropertySource()
        source.add("u1", "arrears", {
            "id": "a1", "tenant_email": "jo@example.com", "total_overdue": 300,
            "days_overdue": 3, "created_at": NOW,
        })
        ctx = HeartbeatRunner(engine, source, tasks).process_user("u1", NOW)

        assert ctx.tasks_created == 0
        assert [f.outcome for f in ctx.findings] == ["open_task"]
        assert handlers.count("send_rent_reminder") == 0
        assert ctx.actions_auto_executed == 0

    def test_no_auto_remind(self, make_engine, tmp_data_dir, handlers):
        cfg = AutonomyConfig(
            persistence=PersistenceConfig(data_dir=str(tmp_data_dir)),
            heartbeat=HeartbeatConfig(arrears_auto_remind=False),
        )
        engine = make_engine(cfg=cfg)
        self._run(engine, "arrears", {
            "id": "a1", "tenant_email": "jo@example.com", "total_overdue": 300, "created_at": NOW,
        })
        assert handlers.count("send_rent_reminder") == 0

    def test_maintenance(self, engine):
        created = self._run(
            engine, "maintenance",
            {"id": "m1", "title": "Fence", "updated_at": NOW - timedelta(days=15)},
            {"id": "m2", "title": "Tap", "updated_at": NOW - timedelta(days=8)},
            {"id": "m3", "title": "Door", "updated_at": NOW - timedelta(days=2)},
            {"id": "m4", "title": "Roof", "updated_at": NOW - timedelta(days=30), "status": "completed"},
        )
        priorities = {t.entity_id: t.priority for t in created}
        assert priorities == {"m1": TaskPriority.HIGH, "m2": TaskPriority.NORMAL}

    def test_inspections(self, engine):
        created = self._run(
            engine, "inspections",
            {"id": "i1", "scheduled_date": NOW - timedelta(days=10)},
            {"id": "i2", "scheduled_date": NOW + timedelta(days=5)},
            {"id": "i3", "scheduled_date": NOW + timedelta(days=40)},
        )
        by_id = {t.entity_id: t for t in created}
        assert set(by_id) == {"i1", "i2"}
        assert by_id["i1"].priority == TaskPriority.HIGH
        assert by_id["i2"].status == TaskStatus.SCHEDULED

    def test_compliance(self, engine):
        created = self._run(
            engine, "compliance",
            {"id": "c1", "item_type": "smoke_alarm", "address": "12 Oak St", "due_date": NOW + timedelta(days=3)},
            {"id": "c2", "item_type": "pool_fence", "due_date": NOW - timedelta(days=2)},
            {"id": "c3", "item_type": "gas", "due_date": NOW + timedelta(days=90)},
            {"id": "c4", "item_type": "gas", "due_date": NOW, "status": "compliant"},
        )
        by_id = {t.entity_id: t for t in created}
        assert set(by_id) == {"c1", "c2"}
        assert by_id["c1"].title == "Compliance: smoke alarm - 12 Oak St"
        assert by_id["c1"].priority == TaskPriority.HIGH
        assert by_id["c2"].priority == TaskPriority.URGENT

    def test_applications(self, engine):
        created = self._run(
            engine, "applications",
            {"id": "ap1", "applicant_name": "Sam", "submitted_at": NOW - timedelta(hours=50)},
            {"id": "ap2", "applicant_name": "Lee", "submitted_at": NOW - timedelta(hours=2)},
        )
        titles = sorted(t.title for t in created)
        assert titles[0].startswith("Application awaiting review - Sam")
        assert titles[1].startswith("New application - Lee")

    def test_stale_listings(self, engine):
        created = self._run(
            engine, "listings",
            {"id": "l1", "published_at": NOW - timedelta(days=30), "view_count": 3},
            {"id": "l2", "published_at": NOW - timedelta(days=30), "view_count": 25},
            {"id": "l3", "published_at": NOW - timedelta(days=30), "recent_applications": 1},
            {"id": "l4", "published_at": NOW - timedelta(days=5)},
        )
        assert [t.entity_id for t in created] == ["l1"]
        assert created[0].status == TaskStatus.IN_PROGRESS

    def test_replied_messages_skipped(self, engine):
        assert self._run(engine, "communications", {
            "id": "msg1", "received_at": NOW - timedelta(days=3), "replied": True,
        }) == []

    def test_scanner_order(self):
        assert [s.name for s in default_scanners()] == [
            "lease_expiry", "rent_arrears", "maintenance", "inspections",
            "compliance", "applications", "stale_listings", "communications",
        ]

    @pytest.mark.parametrize("days,priority", [
        (3, TaskPriority.NORMAL), (7, TaskPriority.HIGH), (20, TaskPriority.URGENT),
    ])
    def test_arrears_priority(self, days, priority):
        assert RentArrearsScanner.priority_for(days) == priority


# ---------------------------------------------------------------------------
# Task lifecycle and outcomes
# ---------------------------------------------------------------------------
class TestTaskLifecycle:
    def _lease_only(self):
        source = InMemoryPropertySource()
        source.add("u1", "leases", {"id": "t1", "lease_end_date": (NOW + timedelta(days=10)).date()})
        return source

    def test_outcome_measured_once(self, engine):
        tasks = _tasks(engine)
        HeartbeatRunner(engine, self._lease_only(), tasks).run("u1", now=NOW)
        task = tasks.list_tasks("u1")[0]
        tasks.update_status(task.id, TaskStatus.COMPLETED)

        assert measure_outcomes(engine.ledger, tasks, "u1") == 1
        assert measure_outcomes(engine.ledger, tasks, "u1") == 0
        outcomes = engine.ledger.recent_outcomes("u1", "heartbeat:lease_expiry")
        assert [o.outcome_type for o in outcomes] == [OutcomeType.SUCCESS]
        assert outcomes[0].task_id == task.id
        assert tasks.get(task.id).measured_at is not None

    def test_not_rescored_after_retention(self, engine):
        tasks = _tasks(engine)
        HeartbeatRunner(engine, self._lease_only(), tasks).run("u1", now=NOW)
        task = tasks.list_tasks("u1")[0]
        tasks.update_status(task.id, TaskStatus.COMPLETED)
        assert measure_outcomes(engine.ledger, tasks, "u1") == 1

        later = NOW + timedelta(days=200)
        result = RetentionJob(engine.ledger, engine.learning_store, tasks, engine.config).run(later)
        assert result["outcomes_deleted"] == 1
        assert engine.ledger.recent_outcomes("u1", "heartbeat:lease_expiry") == []

        assert measure_outcomes(engine.ledger, tasks, "u1") == 0
        assert engine.ledger.recent_outcomes("u1", "heartbeat:lease_expiry") == []

    def test_existing_outcome_stamps_task(self, engine):
        tasks = _tasks(engine)
        HeartbeatRunner(engine, self._lease_only(), tasks).run("u1", now=NOW)
        task = tasks.list_tasks("u1")[0]
        tasks.update_status(task.id, TaskStatus.CANCELLED)
        engine.ledger.record_outcome(Outcome(
            user_id="u1", action_name="heartbeat:lease_expiry",
            outcome_type=OutcomeType.FAILURE, task_id=task.id,
        ))

        assert measure_outcomes(engine.ledger, tasks, "u1") == 0
        assert tasks.unmeasured_terminal_tasks("u1") == []
        assert len(engine.ledger.recent_outcomes("u1", "heartbeat:lease_expiry")) == 1

    def test_dismissed_task_scored_as_override(self, engine):
        tasks = _tasks(engine)
        runner = HeartbeatRunner(engine, self._lease_only(), tasks)
        runner.run("u1", now=NOW)
        tasks.update_status(tasks.list_tasks("u1")[0].id, TaskStatus.DISMISSED)
        runner.run("u1", now=NOW)
        outcomes = engine.ledger.recent_outcomes("u1", "heartbeat:lease_expiry")
        assert [o.outcome_type for o in outcomes] == [OutcomeType.USER_OVERRIDE]

    def test_single_open_task_per_entity(self, engine):
        tasks = _tasks(engine)
        runner = HeartbeatRunner(engine, self._lease_only(), tasks)
        runner.run("u1", now=NOW)
        first = tasks.list_tasks("u1")[0]
        tasks.update_status(first.id, TaskStatus.DISMISSED)

        assert runner.run("u1", now=NOW).tasks_created == 1
        assert len(tasks.list_tasks("u1", open_only=True)) == 1
        with pytest.raises(sqlite3.IntegrityError):
            tasks.update_status(first.id, TaskStatus.PENDING_INPUT)

    def test_update_unknown_task(self, engine):
        assert _tasks(engine).update_status("missing", TaskStatus.COMPLETED) is None


class TestRetentionJob:
    def test_interval(self, engine):
        tasks = _tasks(engine)
        job = RetentionJob(engine.ledger, engine.learning_store, tasks, engine.config, engine.learning)
        assert job.is_due(NOW)

        result = job.run(NOW)
        assert {"decisions_deleted", "rules_deactivated", "rules_decayed", "patterns"} <= set(result)
        assert job.last_run_at() == NOW
        assert not job.is_due(NOW + timedelta(hours=1))
        assert job.run_if_due(NOW + timedelta(hours=1)) is None
        assert job.is_due(NOW + timedelta(hours=25))

    def test_retires_low_confidence_rules(self, engine):
        from src.core.learning.models import Rule

        rule = engine.learning_store.add_rule(Rule(user_id="u1", rule_text="Call first", confidence=0.1))
        job = RetentionJob(engine.ledger, engine.learning_store, _tasks(engine), engine.config)
        assert job.run(NOW)["rules_deactivated"] == 1
        assert engine.learning_store.get_rule(rule.id).active is False

    def test_deletes_old_matched_corrections(self, engine):
        from src.core.learning.models import Correction

        store = engine.learning_store
        old = NOW - timedelta(days=120)
        matched = store.add_correction(Correction(
            user_id="u1", original_action="send_message", correction_text="Call first", created_at=old,
        ))
        unmatched = store.add_correction(Correction(
            user_id="u1", original_action="send_message", correction_text="Use email", created_at=old,
        ))
        recent = store.add_correction(Correction(
            user_id="u1", original_action="send_message", correction_text="Call first",
        ))
        store.mark_pattern_matched([matched.id, recent.id])

        job = RetentionJob(engine.ledger, store, _tasks(engine), engine.config)
        assert job.run(NOW)["corrections_deleted"] == 1
        remaining = {c.id for c in store.list_corrections("u1")}
        assert remaining == {unmatched.id, recent.id}
