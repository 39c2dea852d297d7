"""
Heartbeat Scanners — turn portfolio state into owner tasks.

Scanners run in a fixed order per user (lease expiry, rent arrears,
maintenance, inspections, compliance, applications, stale listings,
communications) against one HeartbeatContext, so an entity raised by an
earlier scanner is skipped by later ones in the same cycle.

A malformed row raises ScannerDataError; Scanner.scan() records it with the
`[user:<id>]` prefix and moves on to the next row.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, List, Optional

from src.core.errors import ActionExecutionError, ScannerDataError
from src.core.heartbeat.context import HeartbeatContext
from src.core.heartbeat.sources import PropertyDataSource, Row
from src.core.heartbeat.tasks import Task, TaskPriority, TaskStatus
from src.core.ledger.models import Verdict

logger = logging.getLogger(__name__)


# ── Row helpers ──────────────────────────────────────────────────

def parse_datetime(value: Any) -> Optional[datetime]:
    """datetime, date or ISO string → aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"not a date: {value!r}")


class Scanner:
    """Base scanner: fetch rows, check each one."""

    name = "scanner"
    trigger_type = ""
    entity_type = ""
    category = ""

    def rows(self, source: PropertyDataSource, user_id: str) -> List[Row]:
        raise NotImplementedError

    def check(self, ctx: HeartbeatContext, row: Row) -> None:
        raise NotImplementedError

    def scan(self, ctx: HeartbeatContext, source: PropertyDataSource) -> None:
        for row in self.rows(source, ctx.user_id):
            try:
                self.check(ctx, row)
            except ScannerDataError as exc:
                ctx.record_error(str(exc))

    # Helpers for subclasses

    def _field(self, ctx: HeartbeatContext, row: Row, key: str) -> Any:
        value = row.get(key)
        if value is None:
            raise ScannerDataError(self.name, ctx.user_id, f"row {row.get('id', '?')} missing '{key}'")
        return value

    def _when(self, ctx: HeartbeatContext, row: Row, key: str, required: bool = True) -> Optional[datetime]:
        try:
            value = parse_datetime(row.get(key))
        except ValueError as exc:
            raise ScannerDataError(self.name, ctx.user_id, f"row {row.get('id', '?')} bad '{key}': {exc}") from exc
        if value is None and required:
            raise ScannerDataError(self.name, ctx.user_id, f"row {row.get('id', '?')} missing '{key}'")
        return value

    def _number(self, ctx: HeartbeatContext, row: Row, key: str, default: Optional[float] = None) -> float:
        value = row.get(key, default)
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ScannerDataError(self.name, ctx.user_id, f"row {row.get('id', '?')} bad '{key}': {value!r}") from None

    def _task(self, ctx: HeartbeatContext, row: Row, title: str, **kwargs: Any) -> Task:
        return Task(
            user_id=ctx.user_id,
            title=title,
            category=self.category,
            trigger_type=self.trigger_type,
            entity_type=self.entity_type,
            entity_id=str(self._field(ctx, row, "id")),
            **kwargs,
        )


# ── Scanners ─────────────────────────────────────────────────────

class LeaseExpiryScanner(Scanner):
    """Leases ending inside the 14/30/60-day windows; nearest window wins."""

    name = "lease_expiry"
    trigger_type = "lease_expiry"
    entity_type = "tenancy"
    category = "lease_management"

    _PRIORITIES = (TaskPriority.URGENT, TaskPriority.HIGH, TaskPriority.NORMAL)

    def rows(self, source: PropertyDataSource, user_id: str) -> List[Row]:
        return source.leases(user_id)

    def check(self, ctx: HeartbeatContext, row: Row) -> None:
        if row.get("status", "active") != "active":
            return
        end = self._when(ctx, row, "lease_end_date")
        days = (end.date() - ctx.now.date()).days
        if days < 0:
            return
        windows = sorted(ctx.config.lease_windows_days)
        for index, window in enumerate(windows):
            if days > window:
                continue
            priority = self._PRIORITIES[min(index, len(self._PRIORITIES) - 1)]
            address = row.get("address", "the property")
            tenants = row.get("tenant_names") or "the tenant"
            ctx.create_task(self.name, self._task(
                ctx, row,
                f"Lease expiry in {days} days - {address}",
                priority=priority,
                description=(
                    f"The lease for {tenants} at {address} ends on {end.date().isoformat()}. "
                    f"Decide whether to renew, go periodic or end the tenancy."
                ),
                recommendation=(
                    f"Contact {tenants} now about renewal." if days <= windows[0]
                    else f"Review market rent and plan your approach before contacting {tenants}."
                ),
                data={"days_until_expiry": days, "window_days": window},
            ))
            return


class RentArrearsScanner(Scanner):
    """New arrears in the lookback window; proposes a reminder through the gate."""

    name = "rent_arrears"
    trigger_type = "overdue_rent"
    entity_type = "arrears_record"
    category = "rent_collection"
    reminder_action = "send_rent_reminder"

    def rows(self, source: PropertyDataSource, user_id: str) -> List[Row]:
        return source.arrears(user_id)

    @staticmethod
    def priority_for(days_overdue: float) -> TaskPriority:
        if days_overdue >= 14:
            return TaskPriority.URGENT
        if days_overdue >= 7:
            return TaskPriority.HIGH
        return TaskPriority.NORMAL

    def check(self, ctx: HeartbeatContext, row: Row) -> None:
        if row.get("is_resolved"):
            return
        created = self._when(ctx, row, "created_at")
        if created < ctx.now - timedelta(hours=ctx.config.arrears_lookback_hours):
            return
        amount = self._number(ctx, row, "total_overdue")
        days_overdue = self._number(ctx, row, "days_overdue", 0)
        tenant = row.get("tenant_name") or "Tenant"
        address = row.get("address", "the property")
        arrears_id = str(self._field(ctx, row, "id"))
        title = f"Overdue rent - {tenant} at {address}"

        if not ctx.claim(self.name, self.entity_type, arrears_id, self.trigger_type, title):
            return

        summary = f"{tenant} has ${amount:.2f} in overdue rent at {address}."
        manual = "Send a friendly payment reminder, call the tenant, or issue a formal breach notice."
        task = ctx.add_task(self.name, self._task(
            ctx, row, title,
            priority=self.priority_for(days_overdue),
            description=f"{summary} Your input is needed on next steps.",
            recommendation=manual,
            data={"total_overdue": amount, "days_overdue": days_overdue},
        ))
        # The reminder only goes out for the run that owns the task
        if task is None:
            return
        if not (ctx.config.arrears_auto_remind and row.get("tenant_email") and ctx.can_propose):
            return

        try:
            verdict = ctx.propose(
                self.reminder_action,
                {
                    "tenancy_id": row.get("tenancy_id"),
                    "tenant_email": row["tenant_email"],
                    "arrears": amount,
                },
                f"Rent of ${amount:.2f} is {days_overdue:.0f} days overdue at {address}; "
                f"send {tenant} a payment reminder.",
            )
        except ActionExecutionError as exc:
            ctx.record_error(f"[user:{ctx.user_id}] {self.name}: reminder failed: {exc}")
            return
        if verdict is None:
            return

        if verdict.status == Verdict.AUTO_EXECUTED:
            ctx.attach_action(
                task, verdict.decision_id, TaskStatus.IN_PROGRESS,
                f"{summary} A payment reminder has been sent automatically.",
                "If payment is not received within 7 days, consider a formal breach notice.",
            )
        elif verdict.status == Verdict.GATED:
            ctx.attach_action(
                task, verdict.decision_id, TaskStatus.PENDING_INPUT,
                f"{summary} A payment reminder is waiting for your approval.",
                manual,
            )
        else:
            ctx.attach_action(
                task, verdict.decision_id, TaskStatus.PENDING_INPUT,
                f"{summary} Your input is needed on next steps.",
                manual,
            )


class MaintenanceScanner(Scanner):
    """Emergency requests and requests with no progress for a week."""

    name = "maintenance"
    trigger_type = "maintenance_followup"
    entity_type = "maintenance_request"
    category = "maintenance"

    _CLOSED = {"completed", "cancelled", "closed"}

    def rows(self, source: PropertyDataSource, user_id: str) -> List[Row]:
        return source.maintenance(user_id)

    def check(self, ctx: HeartbeatContext, row: Row) -> None:
        if row.get("status") in self._CLOSED:
            return
        title_text = row.get("title", "Maintenance request")
        address = row.get("address", "the property")
        updated = self._when(ctx, row, "updated_at")
        idle_days = (ctx.now - updated).days
        if row.get("urgency") == "emergency":
            ctx.create_task(self.name, self._task(
                ctx, row, f"Emergency maintenance - {title_text} at {address}",
                priority=TaskPriority.URGENT,
                description=f"An emergency request at {address} needs a trade booked today.",
                data={"idle_days": idle_days, "urgency": "emergency"},
            ))
        elif idle_days >= ctx.config.stale_maintenance_days:
            ctx.create_task(self.name, self._task(
                ctx, row, f"Stalled maintenance - {title_text} at {address}",
                priority=TaskPriority.HIGH if idle_days >= 2 * ctx.config.stale_maintenance_days
                else TaskPriority.NORMAL,
                description=f"No progress on this request for {idle_days} days.",
                recommendation="Chase the assigned trade or request a new quote.",
                data={"idle_days": idle_days},
            ))


class InspectionsDueScanner(Scanner):
    """Overdue scheduled inspections and ones coming up soon."""

    name = "inspections"
    trigger_type = "inspection_due"
    entity_type = "inspection"
    category = "inspections"

    def rows(self, source: PropertyDataSource, user_id: str) -> List[Row]:
        return source.inspections(user_id)

    def check(self, ctx: HeartbeatContext, row: Row) -> None:
        if row.get("status", "scheduled") != "scheduled":
            return
        scheduled = self._when(ctx, row, "scheduled_date")
        days = (scheduled.date() - ctx.now.date()).days
        address = row.get("address", "the property")
        kind = row.get("inspection_type", "routine")
        if days < 0:
            overdue = -days
            ctx.create_task(self.name, self._task(
                ctx, row, f"Overdue inspection - {address}",
                priority=TaskPriority.HIGH if overdue >= 7 else TaskPriority.NORMAL,
                description=f"The {kind} inspection at {address} was due {overdue} days ago.",
                recommendation="Reschedule with the tenant and give the required notice.",
                data={"overdue_days": overdue},
            ))
        elif days <= ctx.config.inspection_lookahead_days:
            ctx.create_task(self.name, self._task(
                ctx, row, f"Upcoming inspection in {days} days - {address}",
                status=TaskStatus.SCHEDULED,
                priority=TaskPriority.NORMAL,
                description=f"A {kind} inspection at {address} is scheduled for {scheduled.date().isoformat()}.",
                data={"days_until": days},
            ))


class ComplianceScanner(Scanner):
    """Compliance items (smoke alarms, pool, gas) due or overdue."""

    name = "compliance"
    trigger_type = "compliance_deadline"
    entity_type = "compliance_item"
    category = "compliance"

    def rows(self, source: PropertyDataSource, user_id: str) -> List[Row]:
        return source.compliance(user_id)

    def check(self, ctx: HeartbeatContext, row: Row) -> None:
        if row.get("status") in ("completed", "compliant"):
            return
        due = self._when(ctx, row, "due_date")
        days = (due.date() - ctx.now.date()).days
        if days > ctx.config.compliance_lookahead_days:
            return
        item = str(row.get("item_type", "compliance check")).replace("_", " ")
        address = row.get("address", "the property")
        if days < 0:
            priority, when = TaskPriority.URGENT, f"was due {-days} days ago"
        elif days <= 7:
            priority, when = TaskPriority.HIGH, f"is due in {days} days"
        else:
            priority, when = TaskPriority.NORMAL, f"is due in {days} days"
        ctx.create_task(self.name, self._task(
            ctx, row, f"Compliance: {item} - {address}",
            priority=priority,
            description=f"The {item} for {address} {when}.",
            recommendation="Book a certified contractor and record the certificate when done.",
            data={"days_until_due": days, "item_type": row.get("item_type")},
        ))


class ApplicationsScanner(Scanner):
    """Submitted tenancy applications awaiting review."""

    name = "applications"
    trigger_type = "new_application"
    entity_type = "application"
    category = "tenant_finding"

    def rows(self, source: PropertyDataSource, user_id: str) -> List[Row]:
        return source.applications(user_id)

    def check(self, ctx: HeartbeatContext, row: Row) -> None:
        if row.get("status", "submitted") != "submitted":
            return
        submitted = self._when(ctx, row, "submitted_at")
        waiting_hours = (ctx.now - submitted).total_seconds() / 3600
        applicant = row.get("applicant_name", "An applicant")
        address = row.get("address", "your listing")
        stale = waiting_hours >= ctx.config.application_stale_hours
        ctx.create_task(self.name, self._task(
            ctx, row,
            f"Application awaiting review - {applicant} for {address}" if stale
            else f"New application - {applicant} for {address}",
            priority=TaskPriority.HIGH,
            description=f"{applicant} applied for {address} {waiting_hours:.0f} hours ago.",
            recommendation="Review the application and run the standard checks.",
            data={"waiting_hours": round(waiting_hours, 1)},
        ))


class StaleListingsScanner(Scanner):
    """Listings live for weeks with little engagement and no recent applications."""

    name = "stale_listings"
    trigger_type = "stale_listing"
    entity_type = "listing"
    category = "listings"

    def rows(self, source: PropertyDataSource, user_id: str) -> List[Row]:
        return source.listings(user_id)

    def check(self, ctx: HeartbeatContext, row: Row) -> None:
        if row.get("status", "active") != "active":
            return
        published = self._when(ctx, row, "published_at")
        days_live = (ctx.now - published).days
        if days_live < ctx.config.stale_listing_days:
            return
        views = int(self._number(ctx, row, "view_count", 0))
        recent = int(self._number(ctx, row, "recent_applications", 0))
        if views >= 10 or recent > 0:
            return
        address = row.get("address", "your listing")
        ctx.create_task(self.name, self._task(
            ctx, row, f"Stale listing - {address}",
            status=TaskStatus.IN_PROGRESS,
            priority=TaskPriority.HIGH,
            description=(
                f"'{row.get('title', 'Listing')}' has been live for {days_live} days "
                f"with {views} views and no recent applications."
            ),
            recommendation="Refresh the photos and description, or lower the rent by 5-10%.",
            data={"days_live": days_live, "view_count": views},
        ))


class CommunicationsScanner(Scanner):
    """Inbound messages without a reply."""

    name = "communications"
    trigger_type = "unanswered_message"
    entity_type = "message"
    category = "communication"

    def rows(self, source: PropertyDataSource, user_id: str) -> List[Row]:
        return source.communications(user_id)

    def check(self, ctx: HeartbeatContext, row: Row) -> None:
        if row.get("replied"):
            return
        received = self._when(ctx, row, "received_at")
        hours = (ctx.now - received).total_seconds() / 3600
        if hours < ctx.config.communication_stale_hours:
            return
        sender = row.get("sender_name", "A tenant")
        ctx.create_task(self.name, self._task(
            ctx, row, f"Unanswered message from {sender}",
            priority=TaskPriority.HIGH if hours >= 72 else TaskPriority.NORMAL,
            description=f"'{row.get('subject', 'Message')}' has waited {hours:.0f} hours for a reply.",
            recommendation="Reply or let me draft a response.",
            data={"hours_waiting": round(hours, 1)},
        ))


def default_scanners() -> List[Scanner]:
    """Scanners in execution order."""
    return [
        LeaseExpiryScanner(),
        RentArrearsScanner(),
        MaintenanceScanner(),
        InspectionsDueScanner(),
        ComplianceScanner(),
        ApplicationsScanner(),
        StaleListingsScanner(),
        CommunicationsScanner(),
    ]
