"""
Autonomy Gate — decides auto-execute, hold-for-approval or refuse.

Evaluation order:
1. Unknown action          → refused
2. Critical risk           → gated (every preset, every confidence)
3. Read-only query         → auto-executed
4. Amount over threshold   → gated
5. User tier < required    → gated (required rises by one when confidence is low)
6. Confidence < category minimum → gated
7. Otherwise               → auto-executed

Execution is only reachable through GatedExecutor, which accepts nothing
but an ExecutionGrant minted here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from src.core.autonomy.config import GateConfig
from src.core.autonomy.settings import AutonomySettings, format_tier
from src.core.catalog.models import MAX_TIER, ActionDefinition, ExecutionResult
from src.core.catalog.registry import ActionCatalog, HandlerRegistry
from src.core.catalog.resilience import ResilientRunner
from src.core.errors import GateViolation
from src.core.ledger.models import Decision, PendingAction, PendingStatus, Verdict

logger = logging.getLogger(__name__)


class GateReason(str, Enum):
    UNKNOWN_ACTION = "unknown_action"
    CRITICAL_RISK = "critical_risk"
    FINANCIAL_THRESHOLD = "financial_threshold"
    READ_ONLY = "read_only"
    TIER_TOO_LOW = "tier_too_low"
    LOW_CONFIDENCE = "low_confidence"
    AUTONOMY_SATISFIED = "autonomy_satisfied"


@dataclass(frozen=True)
class GateDecision:
    """The gate's verdict with the facts behind it."""
    verdict: Verdict
    reason: GateReason
    explanation: str
    user_tier: int = 0
    required_tier: int = 0
    confidence: float = 0.0


def _extract_amount(parameters: Dict[str, Any], keys) -> Optional[float]:
    for key in keys:
        value = parameters.get(key)
        if value is None or isinstance(value, bool):
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            continue
    return None


class AutonomyGate:
    """Stateless verdict computation plus grant issuing."""

    def __init__(self, config: Optional[GateConfig] = None) -> None:
        self._config = config or GateConfig()

    @property
    def config(self) -> GateConfig:
        return self._config

    def evaluate(
        self,
        definition: Optional[ActionDefinition],
        settings: AutonomySettings,
        confidence: float,
        parameters: Optional[Dict[str, Any]] = None,
        action_name: str = "",
    ) -> GateDecision:
        parameters = parameters or {}

        if definition is None:
            return GateDecision(
                verdict=Verdict.REFUSED,
                reason=GateReason.UNKNOWN_ACTION,
                explanation=f"I can't run '{action_name}': it is not a recognised action.",
                confidence=confidence,
            )

        category = definition.category.value
        user_tier = settings.tier_for(category)
        required = definition.min_autonomy_tier
        pretty = definition.name.replace("_", " ")

        if definition.is_critical:
            return GateDecision(
                verdict=Verdict.GATED,
                reason=GateReason.CRITICAL_RISK,
                explanation=(
                    f"'{pretty}' is a critical-risk action, so it always needs your "
                    f"approval regardless of your autonomy settings."
                ),
                user_tier=user_tier,
                required_tier=required,
                confidence=confidence,
            )

        if definition.is_read_only:
            return GateDecision(
                verdict=Verdict.AUTO_EXECUTED,
                reason=GateReason.READ_ONLY,
                explanation=f"'{pretty}' only reads data.",
                user_tier=user_tier,
                required_tier=required,
                confidence=confidence,
            )

        amount = _extract_amount(parameters, self._config.amount_keys)
        if amount is not None and amount > self._config.financial_threshold:
            return GateDecision(
                verdict=Verdict.GATED,
                reason=GateReason.FINANCIAL_THRESHOLD,
                explanation=(
                    f"'{pretty}' commits ${amount:,.2f}, above your "
                    f"${self._config.financial_threshold:,.0f} approval threshold."
                ),
                user_tier=user_tier,
                required_tier=required,
                confidence=confidence,
            )

        low_confidence = confidence < self._config.low_confidence_threshold
        effective_required = min(required + 1, MAX_TIER) if low_confidence else required

        if user_tier < effective_required:
            if user_tier >= required:
                reason = GateReason.LOW_CONFIDENCE
                explanation = (
                    f"My confidence in '{pretty}' is low ({confidence:.2f}), so I'm asking "
                    f"first even though your {category} setting is {format_tier(user_tier)}."
                )
            else:
                reason = GateReason.TIER_TOO_LOW
                explanation = (
                    f"'{pretty}' needs approval: your autonomy for {category} actions is "
                    f"{format_tier(user_tier)} and this action requires {format_tier(required)}."
                )
            return GateDecision(
                verdict=Verdict.GATED,
                reason=reason,
                explanation=explanation,
                user_tier=user_tier,
                required_tier=effective_required,
                confidence=confidence,
            )

        minimum = self._config.min_confidence_for(category)
        if confidence < minimum:
            return GateDecision(
                verdict=Verdict.GATED,
                reason=GateReason.LOW_CONFIDENCE,
                explanation=(
                    f"My confidence in '{pretty}' is {confidence:.2f}, below the "
                    f"{minimum:.2f} needed to act on my own for {category} actions."
                ),
                user_tier=user_tier,
                required_tier=effective_required,
                confidence=confidence,
            )

        return GateDecision(
            verdict=Verdict.AUTO_EXECUTED,
            reason=GateReason.AUTONOMY_SATISFIED,
            explanation=f"Your {category} autonomy ({format_tier(user_tier)}) covers '{pretty}'.",
            user_tier=user_tier,
            required_tier=effective_required,
            confidence=confidence,
        )

    # ── Grants ───────────────────────────────────────────────────

    def grant_for_decision(self, decision: Decision, definition: ActionDefinition) -> "ExecutionGrant":
        """Grant for an auto-executed decision that is already in the ledger."""
        if decision.verdict != Verdict.AUTO_EXECUTED:
            raise GateViolation(f"Decision {decision.id} was not auto-executed")
        if definition.is_critical:
            raise GateViolation(f"Critical action {definition.name} cannot auto-execute")
        return ExecutionGrant(
            decision_id=decision.id,
            user_id=decision.user_id,
            action_name=definition.name,
            approved_pending_id=None,
            _token=_GRANT_TOKEN,
        )

    def grant_for_approval(self, decision: Decision, pending: PendingAction) -> "ExecutionGrant":
        """Grant for a pending action that a human approved."""
        if pending.status != PendingStatus.APPROVED:
            raise GateViolation(f"Pending action {pending.id} is {pending.status.value}, not approved")
        return ExecutionGrant(
            decision_id=decision.id,
            user_id=pending.user_id,
            action_name=pending.action_name,
            approved_pending_id=pending.id,
            _token=_GRANT_TOKEN,
        )


_GRANT_TOKEN = object()


@dataclass(frozen=True)
class ExecutionGrant:
    """Permission to run exactly one action for one recorded decision."""
    decision_id: str
    user_id: str
    action_name: str
    approved_pending_id: Optional[str]
    _token: object = None


class GatedExecutor:
    """Runs action handlers, but only under a grant from AutonomyGate."""

    def __init__(
        self,
        catalog: ActionCatalog,
        handlers: HandlerRegistry,
        runner: Optional[ResilientRunner] = None,
    ) -> None:
        handlers.validate(catalog)
        self._catalog = catalog
        self._handlers = handlers
        self._runner = runner or ResilientRunner()

    def execute(
        self,
        grant: ExecutionGrant,
        parameters: Dict[str, Any],
        conversation_id: str = "",
    ) -> ExecutionResult:
        """Run the granted action.

        Raises:
            GateViolation: Missing/forged grant, or a critical action
                without an approved pending action.
            ActionExecutionError: The handler failed after retries.
        """
        if not isinstance(grant, ExecutionGrant) or grant._token is not _GRANT_TOKEN:
            raise GateViolation("Execution attempted without a gate grant")
        definition = self._catalog.require(grant.action_name)
        if definition.is_critical and not grant.approved_pending_id:
            raise GateViolation(f"Critical action {definition.name} requires an approved pending action")
        handler = self._handlers.get(definition.name)
        if handler is None:
            raise GateViolation(f"No handler registered for {definition.name}")
        logger.info(
            "Executing %s for %s (decision=%s, approved=%s)",
            definition.name, grant.user_id, grant.decision_id, grant.approved_pending_id,
        )
        return self._runner.run(
            definition, handler, parameters, grant.user_id, grant.decision_id, conversation_id,
        )
