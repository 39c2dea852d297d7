"""
Default property-management action catalog.

min_autonomy_tier is the autonomy tier (1-5) the user must hold for the
action's category before it may auto-execute. Query actions sit at tier 1
and are never gated; critical actions are gated regardless of tier.
"""

from __future__ import annotations

from typing import List

from src.core.catalog.models import (
    ActionCategory as C,
    ActionDefinition,
    ResiliencePolicy,
    RiskLevel as R,
)
from src.core.catalog.registry import ActionCatalog


def _a(name: str, category: C, risk: R, tier: int, reversible: bool = False,
       compensation: str | None = None, resilience: ResiliencePolicy | None = None,
       description: str = "") -> ActionDefinition:
    return ActionDefinition(
        name=name,
        category=category,
        risk_level=risk,
        min_autonomy_tier=tier,
        reversible=reversible,
        compensation_action=compensation,
        resilience=resilience,
        description=description,
    )


DEFAULT_ACTIONS: List[ActionDefinition] = [
    # Queries
    _a("get_properties", C.QUERY, R.NONE, 1, description="List the owner's properties"),
    _a("get_tenancies", C.QUERY, R.NONE, 1),
    _a("get_arrears", C.QUERY, R.NONE, 1),
    _a("get_maintenance", C.QUERY, R.NONE, 1),
    _a("get_inspections", C.QUERY, R.NONE, 1),
    _a("get_listings", C.QUERY, R.NONE, 1),
    _a("get_applications", C.QUERY, R.NONE, 1),
    _a("get_compliance_status", C.QUERY, R.NONE, 1),
    _a("get_financial_summary", C.QUERY, R.NONE, 1),

    # Actions
    _a("create_property", C.ACTION, R.MEDIUM, 4, True, "delete_property"),
    _a("update_property", C.ACTION, R.LOW, 3, True),
    _a("delete_property", C.ACTION, R.HIGH, 5, True),
    _a("create_listing", C.ACTION, R.MEDIUM, 3, True),
    _a("publish_listing", C.ACTION, R.MEDIUM, 4, True, "pause_listing"),
    _a("pause_listing", C.ACTION, R.LOW, 3, True),
    _a("send_message", C.ACTION, R.MEDIUM, 3),
    _a("send_rent_reminder", C.ACTION, R.LOW, 2,
       description="Send a polite rent reminder to a tenant in arrears"),
    _a("send_breach_notice", C.ACTION, R.CRITICAL, 5,
       description="Serve a formal breach notice (legal)"),
    _a("create_maintenance", C.ACTION, R.LOW, 3, True),
    _a("update_maintenance_status", C.ACTION, R.LOW, 3, True),
    _a("schedule_inspection", C.ACTION, R.LOW, 2, True, "cancel_inspection"),
    _a("cancel_inspection", C.ACTION, R.LOW, 3),
    _a("create_work_order", C.ACTION, R.MEDIUM, 3, True),
    _a("approve_quote", C.ACTION, R.HIGH, 5),
    _a("accept_application", C.ACTION, R.HIGH, 5),
    _a("reject_application", C.ACTION, R.HIGH, 5),
    _a("create_payment_plan", C.ACTION, R.MEDIUM, 4, True),
    _a("escalate_arrears", C.ACTION, R.HIGH, 5),
    _a("change_rent_amount", C.ACTION, R.HIGH, 5),
    _a("record_compliance", C.ACTION, R.LOW, 3, True),
    _a("process_payment", C.ACTION, R.CRITICAL, 5,
       description="Commit an outbound payment"),
    _a("terminate_lease", C.ACTION, R.CRITICAL, 5,
       description="End a tenancy (legal notice)"),
    _a("claim_bond", C.ACTION, R.CRITICAL, 5,
       description="Lodge a claim against the tenant's bond"),

    # Generation
    _a("draft_message", C.GENERATE, R.NONE, 2),
    _a("triage_maintenance", C.GENERATE, R.NONE, 2),
    _a("score_application", C.GENERATE, R.NONE, 2),
    _a("suggest_rent_price", C.GENERATE, R.NONE, 3),
    _a("generate_notice", C.GENERATE, R.HIGH, 5),
    _a("generate_financial_report", C.GENERATE, R.NONE, 2),

    # External
    _a("web_search", C.EXTERNAL, R.NONE, 2),
    _a("find_local_trades", C.EXTERNAL, R.LOW, 2),
    _a("request_quote", C.EXTERNAL, R.MEDIUM, 4),

    # Integrations
    _a("syndicate_listing", C.INTEGRATION, R.MEDIUM, 4, True),
    _a("run_credit_check", C.INTEGRATION, R.LOW, 4),
    _a("send_sms", C.INTEGRATION, R.LOW, 3),
    _a("send_email", C.INTEGRATION, R.LOW, 3),
    _a("refund_payment", C.INTEGRATION, R.CRITICAL, 5),

    # Workflows
    _a("workflow_find_tenant", C.WORKFLOW, R.MEDIUM, 3),
    _a("workflow_maintenance_lifecycle", C.WORKFLOW, R.MEDIUM, 3),
    _a("workflow_end_tenancy", C.WORKFLOW, R.HIGH, 5),

    # Memory
    _a("remember", C.MEMORY, R.NONE, 1, True),
    _a("recall", C.MEMORY, R.NONE, 1),
    _a("search_precedent", C.MEMORY, R.NONE, 1),

    # Planning
    _a("plan_task", C.PLANNING, R.NONE, 2),
    _a("check_plan", C.PLANNING, R.NONE, 1),
]


def default_catalog() -> ActionCatalog:
    """Build and validate the default catalog."""
    catalog = ActionCatalog(DEFAULT_ACTIONS)
    catalog.validate()
    return catalog
