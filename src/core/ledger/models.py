"""
Decision Ledger Data Models

Decisions, pending approvals, measured outcomes, action trajectories and
per-action execution statistics (tool genome).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np

from src.core.storage import generate_id, utc_now


# ── Enums ────────────────────────────────────────────────────────

class Verdict(str, Enum):
    """Outcome of the autonomy gate for one proposed action."""
    AUTO_EXECUTED = "auto_executed"
    GATED = "gated"
    REFUSED = "refused"


class FeedbackType(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    CORRECTED = "corrected"


class PendingStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class OutcomeType(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    USER_OVERRIDE = "user_override"


class DecisionType(str, Enum):
    AUTONOMY_GATE = "autonomy_gate"
    TOOL_EXECUTION = "tool_execution"
    TOOL_EXECUTION_APPROVED = "tool_execution_approved"
    TOOL_EXECUTION_REJECTED = "tool_execution_rejected"
    COMPENSATION = "compensation"
    PREFERENCE_CHANGED = "preference_changed"


# ── Records ──────────────────────────────────────────────────────

@dataclass
class Decision:
    """One gating verdict or execution attempt."""
    user_id: str
    action_name: str
    category: str
    verdict: Verdict
    decision_type: DecisionType = DecisionType.TOOL_EXECUTION
    conversation_id: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)
    reasoning: str = ""
    confidence_factors: Dict[str, float] = field(default_factory=dict)
    confidence: Optional[float] = None
    embedding: Optional[np.ndarray] = None
    feedback: Optional[FeedbackType] = None
    correction: Optional[str] = None
    outcome: Optional[OutcomeType] = None
    id: str = field(default_factory=generate_id)
    created_at: datetime = field(default_factory=utc_now)

    @property
    def was_auto_executed(self) -> bool:
        return self.verdict == Verdict.AUTO_EXECUTED


@dataclass
class PendingAction:
    """A gated action awaiting human approval."""
    decision_id: str
    user_id: str
    action_name: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    reason: str = ""
    status: PendingStatus = PendingStatus.PENDING
    conversation_id: str = ""
    id: str = field(default_factory=generate_id)
    created_at: datetime = field(default_factory=utc_now)
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None

    @property
    def is_resolved(self) -> bool:
        return self.status != PendingStatus.PENDING


@dataclass
class Outcome:
    """Measured result of a decision or a heartbeat task."""
    user_id: str
    action_name: str
    outcome_type: OutcomeType
    decision_id: Optional[str] = None
    task_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=generate_id)
    measured_at: datetime = field(default_factory=utc_now)


@dataclass
class Trajectory:
    """Ordered sequence of actions executed for one intent."""
    user_id: str
    intent_hash: str
    conversation_id: str = ""
    actions: List[str] = field(default_factory=list)
    is_golden: bool = False
    id: str = field(default_factory=generate_id)
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class ToolGenome:
    """Execution statistics for one action type, per user."""
    user_id: str
    action_name: str
    total_executions: int = 0
    successes: int = 0
    failures: int = 0
    ema_success_rate: float = 0.0
    avg_duration_ms: float = 0.0
    last_error: Optional[str] = None
    updated_at: datetime = field(default_factory=utc_now)

    def record(self, success: bool, duration_ms: int, alpha: float, error: Optional[str] = None) -> None:
        """Fold one execution into the running statistics."""
        sample = 1.0 if success else 0.0
        if self.total_executions == 0:
            self.ema_success_rate = 0.9 if success else 0.5
            self.avg_duration_ms = float(duration_ms)
        else:
            self.ema_success_rate = alpha * sample + (1 - alpha) * self.ema_success_rate
            self.avg_duration_ms = alpha * duration_ms + (1 - alpha) * self.avg_duration_ms
        self.total_executions += 1
        if success:
            self.successes += 1
        else:
            self.failures += 1
            self.last_error = error
        self.updated_at = utc_now()
