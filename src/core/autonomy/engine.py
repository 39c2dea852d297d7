"""
Autonomy Engine — the single entry point for proposed actions.

propose() estimates confidence, asks the gate for a verdict, writes the
Decision (and PendingAction when gated) before anything runs, then executes
auto-approved actions through GatedExecutor. resolve_pending() is the only
path from a gated action to execution.

Usage:
    engine = AutonomyEngine.from_config(handlers=registry)
    verdict = engine.propose("u1", "send_message", {"to": "t1"}, "Remind tenant of inspection")
    if verdict.status == Verdict.GATED:
        engine.resolve_pending(verdict.pending_action_id, approve=True, resolved_by="u1")
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from src.core import feature_flags
from src.core.autonomy.config import AutonomyConfig, load_autonomy_config
from src.core.autonomy.confidence import ConfidenceContext, ConfidenceEstimator
from src.core.autonomy.gate import AutonomyGate, GatedExecutor, GateDecision, GateReason
from src.core.autonomy.settings import AutonomySettingsStore
from src.core.catalog.actions import default_catalog
from src.core.catalog.models import ActionDefinition, ExecutionResult
from src.core.catalog.registry import ActionCatalog, HandlerRegistry
from src.core.catalog.resilience import ResilientRunner
from src.core.errors import ActionExecutionError, CatalogError, GateViolation, PendingActionError
from src.core.learning.classifier import compute_intent_hash, infer_category
from src.core.learning.graduation import GraduationTracker
from src.core.learning.models import FeedbackResult
from src.core.learning.pipeline import LearningPipeline
from src.core.learning.store import LearningStore
from src.core.ledger.models import (
    Decision,
    DecisionType,
    FeedbackType,
    Outcome,
    OutcomeType,
    PendingAction,
    PendingStatus,
    Verdict,
)
from src.core.ledger.store import DecisionLedger
from src.core.memory.embeddings import build_embedder
from src.core.memory.preferences import PreferenceStore
from src.core.memory.service import MemoryService
from src.core.storage import utc_now

logger = logging.getLogger(__name__)


@dataclass
class GateVerdict:
    """What the caller learns about one proposed action."""
    status: Verdict
    decision_id: str
    explanation: str
    reason: str
    confidence: float = 0.0
    confidence_factors: Dict[str, float] = field(default_factory=dict)
    pending_action_id: Optional[str] = None
    result: Optional[ExecutionResult] = None

    def to_dict(self) -> Dict[str, Any]:
        result = None
        if self.result is not None:
            result = {
                "success": self.result.success,
                "data": self.result.data,
                "attempts": self.result.attempts,
                "duration_ms": self.result.duration_ms,
            }
        return {
            "status": self.status.value,
            "decision_id": self.decision_id,
            "pending_action_id": self.pending_action_id,
            "confidence": self.confidence,
            "confidence_factors": dict(self.confidence_factors),
            "explanation": self.explanation,
            "reason": self.reason,
            "result": result,
        }


class AutonomyEngine:
    """Wires catalog, estimator, gate, ledger and learning together."""

    def __init__(
        self,
        catalog: ActionCatalog,
        handlers: HandlerRegistry,
        ledger: DecisionLedger,
        settings: AutonomySettingsStore,
        memory: MemoryService,
        learning: Optional[LearningPipeline] = None,
        graduation: Optional[GraduationTracker] = None,
        config: Optional[AutonomyConfig] = None,
        runner: Optional[ResilientRunner] = None,
        learning_store: Optional[LearningStore] = None,
    ) -> None:
        self._config = config or AutonomyConfig()
        self._catalog = catalog
        self._ledger = ledger
        self._settings = settings
        self._memory = memory
        self._learning = learning
        self._graduation = graduation
        self._learning_store = learning_store or (learning.store if learning else None)
        self._gate = AutonomyGate(self._config.gate)
        self._estimator = ConfidenceEstimator(ledger, memory, self._config.confidence)
        # The handler registry is only reachable through the executor.
        self._executor = GatedExecutor(catalog, handlers, runner)

    @classmethod
    def from_config(
        cls,
        handlers: HandlerRegistry,
        config: Optional[AutonomyConfig] = None,
        catalog: Optional[ActionCatalog] = None,
        runner: Optional[ResilientRunner] = None,
    ) -> "AutonomyEngine":
        """Build every store on the configured SQLite file."""
        config = config or load_autonomy_config()
        os.makedirs(config.persistence.data_dir, exist_ok=True)
        db_path = config.db_path

        ledger = DecisionLedger(db_path)
        learning_store = LearningStore(db_path)
        preferences = PreferenceStore(db_path)
        settings = AutonomySettingsStore(db_path)
        for store in (ledger, learning_store, preferences, settings):
            store.initialize()

        embedder = None
        if feature_flags.FEATURE_SEMANTIC_MEMORY:
            embedder = build_embedder(config.memory.embedder, config.memory.embedding_dimension)
        memory = MemoryService(ledger, learning_store, preferences, embedder, config.memory)

        graduation = GraduationTracker(learning_store, settings, config.learning.graduation)
        learning = None
        if feature_flags.FEATURE_LEARNING:
            learning = LearningPipeline(ledger, learning_store, memory, graduation, config.learning)

        return cls(
            catalog=catalog or default_catalog(),
            handlers=handlers,
            ledger=ledger,
            settings=settings,
            memory=memory,
            learning=learning,
            graduation=graduation,
            config=config,
            runner=runner,
            learning_store=learning_store,
        )

    # ── Accessors ────────────────────────────────────────────────

    @property
    def config(self) -> AutonomyConfig:
        return self._config

    @property
    def catalog(self) -> ActionCatalog:
        return self._catalog

    @property
    def ledger(self) -> DecisionLedger:
        return self._ledger

    @property
    def settings(self) -> AutonomySettingsStore:
        return self._settings

    @property
    def memory(self) -> MemoryService:
        return self._memory

    @property
    def learning(self) -> Optional[LearningPipeline]:
        return self._learning

    @property
    def graduation(self) -> Optional[GraduationTracker]:
        return self._graduation

    @property
    def learning_store(self) -> Optional[LearningStore]:
        return self._learning_store

    # ── Proposals ────────────────────────────────────────────────

    def propose(
        self,
        user_id: str,
        action_name: str,
        parameters: Optional[Dict[str, Any]] = None,
        reasoning: str = "",
        conversation_id: str = "",
        intent: Optional[str] = None,
    ) -> GateVerdict:
        """Gate one proposed action and run it when the gate allows.

        Raises:
            ActionExecutionError: The auto-executed action failed after
                retries. The decision and failure outcome are recorded.
        """
        return self._propose(
            user_id, action_name, parameters or {}, reasoning, conversation_id, intent,
            DecisionType.AUTONOMY_GATE,
        )

    def _propose(
        self,
        user_id: str,
        action_name: str,
        parameters: Dict[str, Any],
        reasoning: str,
        conversation_id: str,
        intent: Optional[str],
        decision_type: DecisionType,
    ) -> GateVerdict:
        definition = self._catalog.get(action_name)
        settings = self._settings.get(user_id)

        if definition is None:
            gate = self._gate.evaluate(None, settings, 0.0, parameters, action_name)
            decision = self._ledger.record_decision(Decision(
                user_id=user_id,
                action_name=action_name,
                category="unknown",
                verdict=gate.verdict,
                decision_type=decision_type,
                conversation_id=conversation_id,
                parameters=parameters,
                reasoning=reasoning,
            ))
            logger.warning("Refused unknown action %s for user %s", action_name, user_id)
            return self._verdict(decision, gate)

        embedding = self._memory.embed_decision(action_name, reasoning, parameters)
        intent_hash = compute_intent_hash(intent) if intent else None
        factors = self._estimator.estimate(ConfidenceContext(
            user_id=user_id,
            action_name=action_name,
            category=definition.category.value,
            topic=infer_category(reasoning) if reasoning else None,
            embedding=embedding,
            intent_hash=intent_hash,
        ))
        gate = self._gate.evaluate(definition, settings, factors.composite, parameters, action_name)

        decision = Decision(
            user_id=user_id,
            action_name=action_name,
            category=definition.category.value,
            verdict=gate.verdict,
            decision_type=decision_type,
            conversation_id=conversation_id,
            parameters=parameters,
            reasoning=reasoning,
            confidence_factors=factors.to_dict(),
            confidence=factors.composite,
            embedding=embedding,
        )

        if gate.verdict == Verdict.GATED:
            _, pending = self._ledger.record_gated(decision, PendingAction(
                decision_id=decision.id,
                user_id=user_id,
                action_name=action_name,
                parameters=parameters,
                reason=gate.explanation,
                conversation_id=conversation_id,
            ))
            verdict = self._verdict(decision, gate)
            verdict.pending_action_id = pending.id
            return verdict

        self._ledger.record_decision(decision)
        logger.info(
            "Auto-executing %s for user %s (%s, confidence=%.3f)",
            action_name, user_id, gate.reason.value, factors.composite,
        )
        grant = self._gate.grant_for_decision(decision, definition)
        verdict = self._verdict(decision, gate)
        verdict.result = self._execute(grant, definition, decision, parameters, conversation_id, intent_hash)
        return verdict

    def _verdict(self, decision: Decision, gate: GateDecision) -> GateVerdict:
        return GateVerdict(
            status=gate.verdict,
            decision_id=decision.id,
            explanation=gate.explanation,
            reason=gate.reason.value,
            confidence=decision.confidence or 0.0,
            confidence_factors=dict(decision.confidence_factors),
        )

    def _execute(
        self,
        grant,
        definition: ActionDefinition,
        decision: Decision,
        parameters: Dict[str, Any],
        conversation_id: str,
        intent_hash: Optional[str],
    ) -> ExecutionResult:
        alpha = self._config.confidence.ema_alpha
        started = utc_now()
        try:
            result = self._executor.execute(grant, parameters, conversation_id)
        except ActionExecutionError as exc:
            elapsed = int((utc_now() - started).total_seconds() * 1000)
            self._ledger.record_execution(decision.user_id, definition.name, False, elapsed, alpha, str(exc))
            self._ledger.record_outcome(Outcome(
                user_id=decision.user_id,
                action_name=definition.name,
                outcome_type=OutcomeType.FAILURE,
                decision_id=decision.id,
                details={"error": str(exc), "attempts": exc.attempts, "category": exc.error_category},
            ))
            logger.error("[user:%s] %s failed: %s", decision.user_id, definition.name, exc)
            raise

        self._ledger.record_execution(decision.user_id, definition.name, True, result.duration_ms, alpha)
        self._ledger.record_outcome(Outcome(
            user_id=decision.user_id,
            action_name=definition.name,
            outcome_type=OutcomeType.SUCCESS,
            decision_id=decision.id,
            details={"attempts": result.attempts, "duration_ms": result.duration_ms},
        ))
        if intent_hash:
            self._ledger.append_trajectory(decision.user_id, conversation_id, intent_hash, definition.name)
        return result

    # ── Pending approvals ────────────────────────────────────────

    def list_pending(self, user_id: Optional[str] = None) -> list[PendingAction]:
        return self._ledger.list_pending(user_id)

    def resolve_pending(
        self,
        pending_id: str,
        approve: bool,
        resolved_by: Optional[str] = None,
        intent: Optional[str] = None,
    ) -> GateVerdict:
        """Approve or reject a pending action; approval executes it once.

        Raises:
            PendingActionError: Unknown pending action (status None) or one
                that is no longer pending (status set).
            ActionExecutionError: The approved action failed after retries.
        """
        pending = self._ledger.get_pending(pending_id)
        if pending is None:
            raise PendingActionError(pending_id, "pending action not found")
        if pending.is_resolved:
            raise PendingActionError(
                pending_id, f"already {pending.status.value}", status=pending.status.value,
            )

        target = PendingStatus.APPROVED if approve else PendingStatus.REJECTED
        resolved = self._ledger.resolve_pending(pending_id, target, resolved_by)
        if resolved is None:
            current = self._ledger.get_pending(pending_id)
            status = current.status.value if current else None
            raise PendingActionError(pending_id, f"already {status}", status=status)

        original = self._ledger.get_decision(resolved.decision_id)
        category = original.category if original else "unknown"
        self._feedback_from_resolution(original, approve)

        if not approve:
            decision = self._ledger.record_decision(Decision(
                user_id=resolved.user_id,
                action_name=resolved.action_name,
                category=category,
                verdict=Verdict.REFUSED,
                decision_type=DecisionType.TOOL_EXECUTION_REJECTED,
                conversation_id=resolved.conversation_id,
                parameters=resolved.parameters,
                reasoning=f"Rejected by {resolved_by or 'user'}",
            ))
            logger.info("Pending action %s rejected by %s", pending_id, resolved_by)
            return GateVerdict(
                status=Verdict.REFUSED,
                decision_id=decision.id,
                explanation=f"Okay, I won't {resolved.action_name.replace('_', ' ')}.",
                reason="rejected",
            )

        definition = self._catalog.get(resolved.action_name)
        if definition is None:
            raise CatalogError(f"Action {resolved.action_name} is no longer in the catalog")

        decision = self._ledger.record_decision(Decision(
            user_id=resolved.user_id,
            action_name=resolved.action_name,
            category=category,
            verdict=Verdict.GATED,
            decision_type=DecisionType.TOOL_EXECUTION_APPROVED,
            conversation_id=resolved.conversation_id,
            parameters=resolved.parameters,
            reasoning=f"Approved by {resolved_by or 'user'} (pending {pending_id})",
            confidence=original.confidence if original else None,
            confidence_factors=original.confidence_factors if original else {},
        ))
        logger.info("Pending action %s approved by %s, executing", pending_id, resolved_by)
        grant = self._gate.grant_for_approval(decision, resolved)
        result = self._execute(
            grant, definition, decision, resolved.parameters, resolved.conversation_id,
            compute_intent_hash(intent) if intent else None,
        )
        return GateVerdict(
            status=Verdict.AUTO_EXECUTED,
            decision_id=decision.id,
            explanation=f"Done: {definition.name.replace('_', ' ')} ran after your approval.",
            reason="approved",
            confidence=decision.confidence or 0.0,
            confidence_factors=dict(decision.confidence_factors),
            result=result,
        )

    def _feedback_from_resolution(self, original: Optional[Decision], approve: bool) -> None:
        if original is None or self._learning is None:
            return
        feedback = FeedbackType.APPROVED if approve else FeedbackType.REJECTED
        try:
            self._learning.process_feedback(original.id, feedback)
        except Exception as exc:
            logger.warning("Learning from resolution of %s failed: %s", original.id, exc)

    def expire_pending(self, user_id: Optional[str] = None, now: Optional[datetime] = None) -> int:
        now = now or utc_now()
        cutoff = now - timedelta(days=self._config.heartbeat.pending_ttl_days)
        return self._ledger.expire_pending(cutoff, user_id)

    # ── Compensation ─────────────────────────────────────────────

    def compensate(self, decision_id: str) -> GateVerdict:
        """Undo an executed decision with its catalog compensation action.

        The compensation action is proposed like any other, so it can be
        gated.

        Raises:
            KeyError: Unknown decision.
            GateViolation: The decision never executed successfully.
            CatalogError: The action has no compensation.
        """
        decision = self._ledger.get_decision(decision_id)
        if decision is None:
            raise KeyError(f"No decision with id {decision_id}")
        if decision.outcome != OutcomeType.SUCCESS:
            raise GateViolation(f"Decision {decision_id} has no successful execution to compensate")
        definition = self._catalog.require(decision.action_name)
        if not definition.reversible or not definition.compensation_action:
            raise CatalogError(f"Action {definition.name} has no compensation action")

        logger.info("Compensating decision %s with %s", decision_id, definition.compensation_action)
        return self._propose(
            decision.user_id,
            definition.compensation_action,
            dict(decision.parameters, compensates=decision_id),
            f"Compensating {definition.name} (decision {decision_id})",
            decision.conversation_id,
            None,
            DecisionType.COMPENSATION,
        )

    # ── Learning ─────────────────────────────────────────────────

    def record_feedback(
        self,
        decision_id: str,
        feedback: FeedbackType,
        correction: Optional[str] = None,
    ) -> FeedbackResult:
        """Raises RuntimeError when learning is disabled, KeyError for unknown decisions."""
        if self._learning is None:
            raise RuntimeError("Learning pipeline is disabled")
        return self._learning.process_feedback(decision_id, feedback, correction)

    def mark_golden(self, trajectory_id: str) -> bool:
        return self._ledger.mark_golden(trajectory_id)


__all__ = ["AutonomyEngine", "GateVerdict", "GateReason"]
